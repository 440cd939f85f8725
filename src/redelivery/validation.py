"""Payload validation against a configured message schema."""
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError

from src.redelivery.config import MessageSchema
from src.redelivery.exceptions import ValidationViolation

logger = logging.getLogger(__name__)


class ISchemaValidator(ABC):
    """Interface for payload validators.

    What changes: Schema language and engine
    What never changes: A payload goes in, a list of violations comes out
    """

    @abstractmethod
    def validate(self, payload: Any) -> List[ValidationViolation]:
        """Validate a payload.

        Args:
            payload: Deserialized ``message`` field of the envelope

        Returns:
            Violations (empty if the payload is valid)
        """
        pass


class JsonSchemaValidator(ISchemaValidator):
    """JSON Schema (Draft 2020-12) validator collecting all errors."""

    def __init__(self, schema: Dict[str, Any], root_path: str = "/message"):
        """Compile the schema once.

        Args:
            schema: JSON Schema document
            root_path: JSON pointer prefix for reported paths

        Raises:
            ValueError: If the schema itself is invalid
        """
        try:
            Draft202012Validator.check_schema(schema)
        except SchemaError as e:
            raise ValueError(f"Invalid message schema: {e.message}") from e

        self._validator = Draft202012Validator(schema)
        self._root_path = root_path

    def validate(self, payload: Any) -> List[ValidationViolation]:
        violations = []
        for error in sorted(self._validator.iter_errors(payload), key=lambda e: [str(p) for p in e.absolute_path]):
            pointer = "".join(f"/{part}" for part in error.absolute_path)
            violations.append(
                ValidationViolation(
                    path=f"{self._root_path}{pointer}",
                    rule=str(error.validator),
                    message=error.message,
                    value=error.instance,
                    details={
                        "expected": error.validator_value,
                        "schema": error.schema,
                    },
                )
            )
        return violations


def get_validator(message_schema: MessageSchema) -> ISchemaValidator:
    """Build the validator for a processor's message schema.

    Args:
        message_schema: Schema configuration

    Returns:
        Validator instance

    Raises:
        ValueError: If the schema type is not supported
    """
    if message_schema.type == "jsonschema":
        return JsonSchemaValidator(message_schema.schema_)
    raise ValueError(f"Unsupported schema type: {message_schema.type}")
