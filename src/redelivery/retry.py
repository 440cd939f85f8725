"""Attempt counting derived from broker dead-lettering history."""
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel

from src.redelivery.constants import DEATH_HEADER, DEATH_REASON_REJECTED

logger = logging.getLogger(__name__)


class DeathRecord(BaseModel):
    """One entry of the broker-maintained death-history header."""

    reason: str
    count: int = 0
    queue: Optional[str] = None
    exchange: Optional[str] = None


class IRetryLedger(ABC):
    """Interface for deriving how many times a delivery has been attempted.

    What changes: Where the attempt history lives (broker headers, external store)
    What never changes: Headers in, attempt count out, no process state kept
    """

    @abstractmethod
    def attempts(self, headers: Mapping[str, Any], queue_name: str) -> int:
        """Derive the attempt count for a delivery.

        Args:
            headers: Delivery headers
            queue_name: Queue the delivery was consumed from

        Returns:
            Attempt count (0 for a first delivery)
        """
        pass


def _as_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        return value.decode("utf-8", errors="replace")
    return str(value)


def parse_death_records(headers: Mapping[str, Any]) -> List[DeathRecord]:
    """Extract death records from delivery headers.

    Malformed entries are skipped.

    Args:
        headers: Delivery headers

    Returns:
        Death records in header order
    """
    raw = headers.get(DEATH_HEADER) if headers else None
    if not isinstance(raw, (list, tuple)):
        return []

    records = []
    for entry in raw:
        if not isinstance(entry, dict):
            continue
        reason = _as_str(entry.get("reason"))
        if reason is None:
            continue
        count = entry.get("count", 0)
        if isinstance(count, bool) or not isinstance(count, int):
            count = 0
        records.append(
            DeathRecord(
                reason=reason,
                count=count,
                queue=_as_str(entry.get("queue")),
                exchange=_as_str(entry.get("exchange")),
            )
        )
    return records


class DeathHeaderRetryLedger(IRetryLedger):
    """Reads the ``x-death`` header that the broker maintains on dead-lettering.

    Only ``rejected`` records count. The record for the consuming queue is
    preferred; when no record names it, the first ``rejected`` record is
    used. Attempts are ``count + 1`` for a matching record and 0 otherwise.
    """

    def attempts(self, headers: Mapping[str, Any], queue_name: str) -> int:
        rejected = [
            record for record in parse_death_records(headers)
            if record.reason == DEATH_REASON_REJECTED
        ]
        if not rejected:
            return 0

        if len(rejected) > 1:
            logger.warning(
                f"Delivery from {queue_name} has {len(rejected)} rejection records",
                extra={"queues": [r.queue for r in rejected]},
            )

        record = next((r for r in rejected if r.queue == queue_name), rejected[0])
        return record.count + 1


class FirstRejectionRetryLedger(IRetryLedger):
    """Uses the first ``rejected`` record regardless of which queue it names."""

    def attempts(self, headers: Mapping[str, Any], queue_name: str) -> int:
        for record in parse_death_records(headers):
            if record.reason == DEATH_REASON_REJECTED:
                return record.count + 1
        return 0


def describe_death_history(headers: Mapping[str, Any]) -> List[Dict[str, Any]]:
    """Death records as plain dicts, for logging."""
    return [record.model_dump() for record in parse_death_records(headers)]
