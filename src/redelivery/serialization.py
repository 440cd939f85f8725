"""Envelope serialization and deserialization."""
import json
import logging
from typing import List, Optional

from pydantic import ValidationError

from src.redelivery.exceptions import (
    DeserializationError,
    SchemaValidationError,
    SerializationError,
    ValidationViolation,
)
from src.redelivery.schemas import Envelope
from src.redelivery.validation import ISchemaValidator

logger = logging.getLogger(__name__)


class EnvelopeSerializer:
    """Serializes envelopes to UTF-8 JSON bytes."""

    def serialize(self, envelope: Envelope) -> bytes:
        """Serialize an envelope.

        Args:
            envelope: Envelope to serialize

        Returns:
            UTF-8 encoded JSON

        Raises:
            SerializationError: If the payload is not JSON-serializable
        """
        try:
            return json.dumps(envelope.to_wire(), separators=(",", ":")).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise SerializationError("Failed to serialize message", original=e) from e


class EnvelopeDeserializer:
    """Turns raw message bodies back into envelopes.

    Rejects, each with a distinct error:
    - empty or non-UTF-8 body (DeserializationError)
    - invalid JSON (DeserializationError)
    - structurally invalid envelope (SchemaValidationError, rule ``envelope``)
    - payload failing the configured schema (SchemaValidationError)
    """

    def __init__(self, validator: Optional[ISchemaValidator] = None):
        """Initialize deserializer.

        Args:
            validator: Payload validator (None disables schema checks)
        """
        self._validator = validator

    def deserialize(self, body: bytes) -> Envelope:
        """Deserialize and validate a message body.

        Args:
            body: Raw message body

        Returns:
            Validated envelope

        Raises:
            DeserializationError: Empty body, bad encoding or invalid JSON
            SchemaValidationError: Invalid envelope or payload
        """
        if not body:
            raise DeserializationError("Input must be a non-empty message body")

        try:
            parsed = json.loads(body.decode("utf-8") if isinstance(body, (bytes, bytearray)) else body)
        except UnicodeDecodeError as e:
            raise DeserializationError("Message body is not valid UTF-8", original=e) from e
        except json.JSONDecodeError as e:
            raise DeserializationError("Failed to parse JSON", original=e) from e

        if not isinstance(parsed, dict):
            raise SchemaValidationError(
                "Invalid message format: not a valid envelope structure",
                [
                    ValidationViolation(
                        path="",
                        rule="envelope",
                        message="Envelope must be a JSON object",
                        value=parsed,
                    )
                ],
            )

        try:
            envelope = Envelope.model_validate(parsed)
        except ValidationError as e:
            raise SchemaValidationError(
                "Invalid message format: not a valid envelope structure",
                self._envelope_violations(e),
            ) from e

        if self._validator is not None:
            violations = self._validator.validate(envelope.message)
            if violations:
                raise SchemaValidationError(
                    "Message validation failed against schema",
                    violations,
                )

        return envelope

    @staticmethod
    def _envelope_violations(error: ValidationError) -> List[ValidationViolation]:
        """Map pydantic errors to envelope violations."""
        violations = []
        for err in error.errors():
            path = "".join(f"/{part}" for part in err["loc"])
            violations.append(
                ValidationViolation(
                    path=path,
                    rule="envelope",
                    message=err["msg"],
                    value=err.get("input"),
                    details={"expected": err["type"]},
                )
            )
        return violations
