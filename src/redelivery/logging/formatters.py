"""Structured JSON log formatters."""
import json
import logging
import traceback
from datetime import datetime, timezone
from typing import Any, Dict

# Attributes every LogRecord carries; anything else came from `extra`.
_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "asctime"}

# Substrings of field names whose values never reach the log output
_SENSITIVE_KEYS = ("password", "passwd", "token", "secret", "authorization")

_REDACTED = "[REDACTED]"

# Message bodies logged on failure
_PAYLOAD_FIELDS = frozenset({"payload", "body"})


def _to_json_value(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    if isinstance(value, dict):
        return {str(k): _to_json_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_to_json_value(v) for v in value]
    if hasattr(value, "model_dump"):
        return _to_json_value(value.model_dump(mode="json"))
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return repr(value)


def _is_sensitive(key: Any) -> bool:
    lowered = str(key).lower()
    return any(fragment in lowered for fragment in _SENSITIVE_KEYS)


def _redact(data: Any) -> Any:
    """Replace values of sensitive keys, at any depth, with ``[REDACTED]``.

    Nested dicts and lists (e.g. logged payloads) are walked too.
    """
    if isinstance(data, dict):
        return {
            key: _REDACTED if _is_sensitive(key) else _redact(value)
            for key, value in data.items()
        }
    if isinstance(data, list):
        return [_redact(item) for item in data]
    return data


class StructuredJSONFormatter(logging.Formatter):
    """One JSON object per log line.

    Fields:
    - timestamp (ISO 8601 UTC), level, service_name, logger_name, message
    - source_function, source_line
    - processor, message_id, correlation_id when set by
      ``MessageContextFilter`` or passed in ``extra``
    - every other ``extra`` field, redacted
    - exception {type, message, module} and stack_trace

    ``payload`` and ``body`` fields are cut to ``max_payload_chars``.
    """

    def __init__(self, service_name: str = "unknown", max_payload_chars: int = 4096):
        """Initialize formatter.

        Args:
            service_name: Service name stamped on every record
            max_payload_chars: Truncation limit for logged message bodies
        """
        super().__init__()
        self.service_name = service_name
        self.max_payload_chars = max_payload_chars

    def format(self, record: logging.LogRecord) -> str:
        entry = self._base_fields(record)
        entry.update(self._extra_fields(record))
        if record.exc_info:
            entry.update(self._exception_fields(record))

        try:
            return json.dumps(entry, default=str)
        except (TypeError, ValueError) as e:
            return json.dumps({
                "level": record.levelname,
                "logger_name": record.name,
                "message": record.getMessage(),
                "serialization_error": str(e),
            })

    def _base_fields(self, record: logging.LogRecord) -> Dict[str, Any]:
        return {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "service_name": self.service_name,
            "logger_name": record.name,
            "message": record.getMessage(),
            "source_function": record.funcName,
            "source_line": record.lineno,
        }

    def _extra_fields(self, record: logging.LogRecord) -> Dict[str, Any]:
        fields = {}
        for key, value in vars(record).items():
            if key in _RESERVED_ATTRS:
                continue
            value = _to_json_value(value)
            if key in _PAYLOAD_FIELDS:
                value = self._truncate(value)
            fields[key] = value
        return _redact(fields)

    def _truncate(self, value: Any) -> Any:
        if isinstance(value, str) and len(value) > self.max_payload_chars:
            dropped = len(value) - self.max_payload_chars
            return f"{value[:self.max_payload_chars]}...[{dropped} chars truncated]"
        return value

    @staticmethod
    def _exception_fields(record: logging.LogRecord) -> Dict[str, Any]:
        exc_type, exc_value, exc_tb = record.exc_info
        fields: Dict[str, Any] = {
            "exception": {
                "type": exc_type.__name__ if exc_type else None,
                "message": str(exc_value) if exc_value else None,
                "module": exc_type.__module__ if exc_type else None,
            }
        }
        if exc_tb:
            fields["stack_trace"] = traceback.format_exception(exc_type, exc_value, exc_tb)
        return fields
