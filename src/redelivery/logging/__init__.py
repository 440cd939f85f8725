"""Structured JSON logging for message processing."""

from src.redelivery.logging.context import (
    MessageContextFilter,
    get_context,
    message_context,
)
from src.redelivery.logging.factory import configure_logging, disable_logging
from src.redelivery.logging.formatters import StructuredJSONFormatter

__all__ = [
    # Context management
    "MessageContextFilter",
    "get_context",
    "message_context",
    # Formatters
    "StructuredJSONFormatter",
    # Setup
    "configure_logging",
    "disable_logging",
]
