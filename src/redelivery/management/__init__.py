"""Optional broker management API integration (TTL policies, queue metadata)."""

from src.redelivery.management.client import ManagementClient
from src.redelivery.management.policies import (
    MetadataManager,
    PolicyManager,
    QueueMetadata,
    TTLPolicy,
    TTLPolicyManager,
)

__all__ = [
    "ManagementClient",
    "MetadataManager",
    "PolicyManager",
    "QueueMetadata",
    "TTLPolicy",
    "TTLPolicyManager",
]
