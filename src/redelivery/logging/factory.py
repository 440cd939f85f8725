"""Logging setup for services embedding redelivery."""
import logging
import sys

from src.redelivery.logging.context import MessageContextFilter
from src.redelivery.logging.formatters import StructuredJSONFormatter

_logger = logging.getLogger(__name__)


def configure_logging(
    service_name: str,
    level: int = logging.INFO,
    enable_console: bool = True,
) -> None:
    """Configure root logging with structured JSON output.

    Args:
        service_name: Service name for all logs
        level: Global log level
        enable_console: Write to stdout
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    if enable_console:
        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(level)
        handler.setFormatter(StructuredJSONFormatter(service_name=service_name))
        handler.addFilter(MessageContextFilter())
        root_logger.addHandler(handler)

    _logger.info(
        "Logging configured",
        extra={
            "service_name": service_name,
            "log_level": logging.getLevelName(level),
        },
    )


def disable_logging() -> None:
    """Disable all logging output.

    Useful for tests.
    """
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(logging.NullHandler())
