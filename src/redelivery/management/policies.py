"""Broker-side TTL policies and queue metadata via the management API."""
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from src.redelivery.config import ManagementConfig, ProcessorConfig
from src.redelivery.constants import (
    MESSAGE_TTL_POLICY_PREFIX,
    METADATA_PARAMETER_PREFIX,
    METADATA_SCHEMA_VERSION,
    TTL_POLICY_PRIORITY,
)
from src.redelivery.exceptions import CapabilityUnavailableError
from src.redelivery.management.client import ManagementClient

logger = logging.getLogger(__name__)


class TTLPolicy(BaseModel):
    """Operator policy setting ``message-ttl`` on one queue."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str
    pattern: str
    definition: Dict[str, Any]
    apply_to: Literal["queues"] = Field(default="queues", alias="apply-to")
    priority: int = TTL_POLICY_PRIORITY

    @classmethod
    def policy_name(cls, queue_name: str) -> str:
        return MESSAGE_TTL_POLICY_PREFIX + queue_name

    @classmethod
    def create_for(cls, queue_name: str, ttl_ms: int) -> "TTLPolicy":
        """Build the policy matching exactly ``queue_name``."""
        return cls(
            name=cls.policy_name(queue_name),
            pattern=f"^{re.escape(queue_name)}$",
            definition={"message-ttl": ttl_ms},
        )

    @property
    def ttl_ms(self) -> int:
        return self.definition["message-ttl"]

    def to_api(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class QueueMetadata(BaseModel):
    """Versioned configuration record stored next to a queue.

    Attributes:
        version: Schema version of the record
        max_retries: Attempts configured for the processor
        created_at: ISO-8601 time the record was first written
        updated_at: ISO-8601 time of the last update (absent until updated)
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    version: int = METADATA_SCHEMA_VERSION
    max_retries: int = Field(..., alias="maxRetries")
    created_at: str = Field(..., alias="createdAt")
    updated_at: Optional[str] = Field(default=None, alias="updatedAt")

    @staticmethod
    def parameter_name(queue_name: str) -> str:
        return METADATA_PARAMETER_PREFIX + queue_name

    @classmethod
    def create_for(
        cls,
        max_retries: int,
        existing: Optional["QueueMetadata"] = None,
    ) -> "QueueMetadata":
        """Build a record, preserving ``created_at`` from ``existing``."""
        now = datetime.now(timezone.utc).isoformat()
        return cls(
            max_retries=max_retries,
            created_at=existing.created_at if existing else now,
            updated_at=now if existing else None,
        )

    def to_api(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class TTLPolicyManager:
    """Applies retry delays as operator policies.

    ``initialize()`` checks the management API once; the result is cached
    as ``is_enabled`` for the lifetime of the manager.
    """

    def __init__(self, client: Optional[ManagementClient] = None):
        """Initialize TTL policy manager.

        Args:
            client: Management client (None when no endpoint is configured)
        """
        self._client = client
        self._enabled = False

    async def initialize(self) -> None:
        if self._client is None:
            logger.warning("Management client not configured, TTL policies disabled")
            return

        self._enabled = await self._client.check_enabled()
        if self._enabled:
            logger.info("Management API available, TTL policies enabled")
        else:
            logger.warning("Management API not available, TTL policies disabled")

    @property
    def is_enabled(self) -> bool:
        return self._enabled

    async def apply(self, queue_name: str, ttl_ms: int) -> bool:
        """Create or update the TTL policy for a queue.

        Returns:
            True if applied; False if disabled or rejected. Never raises.
        """
        if not self._enabled or self._client is None:
            return False
        policy = TTLPolicy.create_for(queue_name, ttl_ms)
        return await self._client.put_operator_policy(policy.to_api())

    async def cleanup(self, queue_name: str) -> bool:
        """Delete the TTL policy for a queue (missing counts as success)."""
        if not self._enabled or self._client is None:
            return False
        return await self._client.delete_operator_policy(TTLPolicy.policy_name(queue_name))


class MetadataManager:
    """Stores per-queue metadata as management API parameters."""

    def __init__(self, client: Optional[ManagementClient] = None):
        self._client = client
        self._enabled = False

    async def initialize(self) -> None:
        if self._client is None:
            logger.warning("Management client not configured, metadata storage disabled")
            return

        self._enabled = await self._client.check_enabled()
        if self._enabled:
            logger.info("Metadata storage initialized")
        else:
            logger.warning("Management API not available, metadata storage disabled")

    @property
    def is_enabled(self) -> bool:
        return self._enabled

    async def apply(self, queue_name: str, max_retries: int) -> bool:
        """Store or update metadata for a queue.

        Existing metadata keeps its ``created_at`` and gains ``updated_at``.

        Returns:
            True if stored, False otherwise
        """
        if not self._enabled or self._client is None:
            logger.warning(
                f"Cannot store metadata for queue '{queue_name}', management API not available"
            )
            return False

        existing = await self.get_metadata(queue_name)
        metadata = QueueMetadata.create_for(max_retries, existing)
        stored = await self._client.set_parameter(
            QueueMetadata.parameter_name(queue_name),
            metadata.to_api(),
        )
        if not stored:
            logger.error(f"Failed to store metadata for queue: {queue_name}")
            return False

        action = "Updated" if existing else "Created"
        logger.info(f"{action} metadata for queue: {queue_name}")
        return True

    async def get_metadata(self, queue_name: str) -> Optional[QueueMetadata]:
        """Fetch stored metadata, or None if absent or unreadable."""
        if not self._enabled or self._client is None:
            return None

        value = await self._client.get_parameter(QueueMetadata.parameter_name(queue_name))
        if value is None:
            return None
        try:
            return QueueMetadata.model_validate(value)
        except ValueError as e:
            logger.warning(f"Ignoring malformed metadata for queue {queue_name}: {e}")
            return None

    async def cleanup(self, queue_name: str) -> bool:
        """Delete metadata for a queue (missing counts as success)."""
        if not self._enabled or self._client is None:
            return False
        deleted = await self._client.delete_parameter(QueueMetadata.parameter_name(queue_name))
        if deleted:
            logger.info(f"Deleted metadata for queue: {queue_name}")
        return deleted


class PolicyManager:
    """TTL and metadata managers sharing one management client.

    ``is_enabled`` is the explicit management capability flag. It is False
    when no endpoint is configured or the endpoint was unreachable at
    ``initialize()``; callers that need the capability check it rather than
    relying on silent no-ops.
    """

    def __init__(
        self,
        config: Optional[ManagementConfig] = None,
        client: Optional[ManagementClient] = None,
    ):
        """Initialize policy manager.

        Args:
            config: Management endpoint (None disables management features)
            client: Pre-built client, overrides ``config``
        """
        if client is None and config is not None:
            client = ManagementClient(config)
        self._client = client
        self.ttl = TTLPolicyManager(client)
        self.metadata = MetadataManager(client)
        self._initialized = False

    async def initialize(self) -> None:
        """Probe the management API once; later calls are no-ops."""
        if self._initialized:
            return
        await self.ttl.initialize()
        await self.metadata.initialize()
        self._initialized = True

    @property
    def is_configured(self) -> bool:
        """True if a management endpoint was supplied."""
        return self._client is not None

    @property
    def is_enabled(self) -> bool:
        return self.ttl.is_enabled and self.metadata.is_enabled

    def require_enabled(self, operation: str) -> None:
        """Raise if management capability is missing.

        Raises:
            CapabilityUnavailableError: If ``is_enabled`` is False
        """
        if not self.is_enabled:
            raise CapabilityUnavailableError(
                f"{operation} requires the broker management API, which is not available"
            )

    async def cleanup(self, config: ProcessorConfig) -> None:
        """Best-effort removal of a processor's TTL policy and metadata."""
        await self.ttl.cleanup(config.retry_queue_name)
        await self.metadata.cleanup(config.name)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
