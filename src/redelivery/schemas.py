"""Wire envelope wrapping every published payload."""
import logging
import threading
import time
from typing import Any, Dict, Optional
from uuid import uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictInt,
    StrictStr,
    model_validator,
)

logger = logging.getLogger(__name__)


_clock_lock = threading.Lock()
_last_published_at = 0


def now_millis() -> int:
    """Current epoch time in milliseconds, never lower than a previous call."""
    global _last_published_at

    with _clock_lock:
        current = time.time_ns() // 1_000_000
        if current < _last_published_at:
            current = _last_published_at
        _last_published_at = current
        return current


class EnvelopeMeta(BaseModel):
    """Delivery metadata attached by the publisher.

    Serialized with camelCase keys: ``id``, ``publishedAt``, ``correlationId``.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: StrictStr
    published_at: StrictInt = Field(..., alias="publishedAt")
    correlation_id: StrictStr = Field(..., alias="correlationId")

    @model_validator(mode="before")
    @classmethod
    def default_correlation_id(cls, data: Any) -> Any:
        """Older publishers omit correlationId; it then equals the message id."""
        if isinstance(data, dict) and "correlationId" not in data and "correlation_id" not in data:
            if "id" in data:
                return {**data, "correlationId": data["id"]}
        return data


class Envelope(BaseModel):
    """Envelope ``{"message": <payload>, "meta": {...}}``.

    Both fields are always present; ``meta.id`` is unique per publish call.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    message: Dict[str, Any]
    meta: EnvelopeMeta

    @classmethod
    def create(
        cls,
        payload: Any,
        correlation_id: Optional[str] = None,
    ) -> "Envelope":
        """Wrap a payload with a fresh id and the current timestamp.

        Args:
            payload: JSON object (dict) or pydantic model
            correlation_id: Correlation id (defaults to the new message id)

        Returns:
            New envelope
        """
        if isinstance(payload, BaseModel):
            payload = payload.model_dump(mode="json")

        message_id = str(uuid4())
        return cls(
            message=payload,
            meta=EnvelopeMeta(
                id=message_id,
                published_at=now_millis(),
                correlation_id=correlation_id or message_id,
            ),
        )

    def to_wire(self) -> Dict[str, Any]:
        """Return the JSON-compatible wire representation."""
        return self.model_dump(mode="json", by_alias=True)
