"""Builders shared by unit tests."""
from typing import Any, Dict, List, Optional

from src.redelivery.testing import FakeIncomingMessage

VALID_BODY = b'{"message":{"field1":"a"},"meta":{"id":"m-1","publishedAt":1}}'


def make_delivery(
    body: bytes = VALID_BODY,
    headers: Optional[Dict[str, Any]] = None,
    message_id: str = "m-1",
) -> FakeIncomingMessage:
    """Build a standalone delivery (not attached to a broker)."""
    return FakeIncomingMessage(
        body=body,
        headers=headers,
        message_id=message_id,
        correlation_id=message_id,
        exchange="redelivery.router",
        routing_key="orders",
        queue_name="orders",
    )


def rejected_death_header(count: int, queue: str = "orders") -> List[Dict[str, Any]]:
    """Build an x-death header with one rejected record."""
    return [{"reason": "rejected", "count": count, "queue": queue, "exchange": "redelivery.router"}]
