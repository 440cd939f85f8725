"""Log context management using contextvars for async-safe metadata."""
import contextvars
import logging
from typing import Any, Dict, Optional


# Context variables for async-safe context propagation
_processor_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "processor", default=None
)
_message_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "message_id", default=None
)
_correlation_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "correlation_id", default=None
)


def get_context() -> Dict[str, Any]:
    """Get all context values as a dictionary."""
    return {
        "processor": _processor_var.get(),
        "message_id": _message_id_var.get(),
        "correlation_id": _correlation_id_var.get(),
    }


class message_context:
    """Async context manager tagging logs with the message being processed.

    Example:
        async with message_context(processor="orders", message_id="abc"):
            logger.info("Handling")  # carries processor and message_id
    """

    def __init__(
        self,
        processor: Optional[str] = None,
        message_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ):
        self.processor = processor
        self.message_id = message_id
        self.correlation_id = correlation_id
        self._tokens = []

    async def __aenter__(self) -> "message_context":
        self._tokens = [
            (_processor_var, _processor_var.set(self.processor)),
            (_message_id_var, _message_id_var.set(self.message_id)),
            (_correlation_id_var, _correlation_id_var.set(self.correlation_id)),
        ]
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens = []


class MessageContextFilter(logging.Filter):
    """Copies the current message context onto every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in get_context().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True
