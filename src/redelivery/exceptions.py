"""Messaging-related exceptions."""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class MessagingError(Exception):
    """Base exception for all redelivery errors."""

    def __init__(
        self,
        message: str,
        original: Optional[Exception] = None,
    ):
        self.message = message
        self.original = original
        if original:
            super().__init__(f"{message}: {original}")
        else:
            super().__init__(message)


class ConnectionError(MessagingError):
    """Broker connection could not be established.

    Raised when:
    - All connection attempts are exhausted at startup
    - Authentication fails on every attempt

    Attributes:
        attempts: Number of attempts made before giving up
    """

    def __init__(
        self,
        message: str,
        attempts: Optional[int] = None,
        original: Optional[Exception] = None,
    ):
        self.attempts = attempts
        super().__init__(message, original=original)


class ConnectionNotEstablishedError(ConnectionError):
    """An operation needed a connection before connect() succeeded."""


class TopologyError(MessagingError):
    """Queue, exchange or binding declaration failed.

    Fatal for the registration of the processor it belongs to.
    """


class TTLPolicyUndefinedError(TopologyError):
    """Retry delay was delegated to an operator policy that could not be applied."""

    def __init__(self, queue_name: str, original: Optional[Exception] = None):
        self.queue_name = queue_name
        super().__init__(
            f"TTL policy undefined for queue {queue_name}",
            original=original,
        )


class SerializationError(MessagingError):
    """Envelope could not be serialized for publishing."""


class DeserializationError(MessagingError):
    """Message body is empty, not UTF-8 or not valid JSON."""


class ValidationViolation(BaseModel):
    """One failed validation rule.

    Attributes:
        path: JSON pointer into the envelope, e.g. ``/message/user/email``
        rule: Failing rule, e.g. ``type``, ``required``, ``envelope``
        message: Human-readable description
        value: Offending value, if any
        details: Expected value and failing sub-schema
    """

    path: str
    rule: str
    message: str
    value: Any = None
    details: Dict[str, Any] = Field(default_factory=dict)


class SchemaValidationError(MessagingError):
    """Envelope is structurally invalid or payload fails the configured schema.

    Attributes:
        violations: Every rule that failed
    """

    def __init__(
        self,
        message: str,
        violations: Optional[List[ValidationViolation]] = None,
    ):
        self.violations = violations or []
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a dict suitable for structured logging."""
        return {
            "message": self.message,
            "violations": [v.model_dump() for v in self.violations],
        }


class ProcessingError(MessagingError):
    """User handler raised while processing a message."""


class AcknowledgeAfterDeadLetterError(MessagingError):
    """Acknowledge failed after the message was published to the dead-letter queue.

    The message may now exist twice in the system. This error must reach
    the supervisor and must never be retried locally.
    """

    def __init__(self, message_id: Optional[str], original: Optional[Exception] = None):
        self.message_id = message_id
        super().__init__(
            "A message acknowledge failed after publishing to final dead letter",
            original=original,
        )


class PublishError(MessagingError):
    """Publishing an envelope to the broker failed."""


class ManagementAPIError(MessagingError):
    """Management HTTP API request failed.

    Attributes:
        status_code: HTTP status code if a response was received
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        original: Optional[Exception] = None,
    ):
        self.status_code = status_code
        super().__init__(message, original=original)


class CapabilityUnavailableError(MessagingError):
    """Broker lacks the management capability an operation requires."""
