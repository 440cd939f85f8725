"""Reliable message processing on RabbitMQ with broker-native retries.

Provides:
- Facade (Redelivery)
- Configuration (ConnectionConfig, ProcessorConfig, MessageSchema)
- Envelope wire format (Envelope, EnvelopeMeta)
- Processing pipeline and stages (ProcessingPipeline, PipelineBuilder)
- Retry ledgers (DeathHeaderRetryLedger, FirstRejectionRetryLedger)
- Topology declaration (TopologyPlanner)
- Consumer orchestration (ConsumerOrchestrator)
- Publishing (EnvelopePublisher, FailureLoggingPublisher)
- Management API integration (PolicyManager)
- Metrics tracking (MessagingMetrics, get_metrics)
"""

# Configuration
from src.redelivery.config import (
    ConnectionConfig,
    ManagementConfig,
    MessageSchema,
    ProcessorConfig,
)

# Exceptions
from src.redelivery.exceptions import (
    MessagingError,
    ConnectionError,
    ConnectionNotEstablishedError,
    TopologyError,
    TTLPolicyUndefinedError,
    SerializationError,
    DeserializationError,
    SchemaValidationError,
    ValidationViolation,
    ProcessingError,
    AcknowledgeAfterDeadLetterError,
    PublishError,
    ManagementAPIError,
    CapabilityUnavailableError,
)

# Schemas
from src.redelivery.schemas import Envelope, EnvelopeMeta

# Core logic
from src.redelivery.retry import (
    DeathRecord,
    IRetryLedger,
    DeathHeaderRetryLedger,
    FirstRejectionRetryLedger,
)

from src.redelivery.pipeline import (
    MessageHandler,
    ProcessingStage,
    ProcessingPipeline,
    PipelineBuilder,
    build_processing_pipeline,
)

from src.redelivery.message import InboundMessage, ProcessingState

from src.redelivery.metrics import (
    MessagingMetrics,
    get_metrics,
    reset_metrics,
)

# Infrastructure
from src.redelivery.connection import ConnectionManager
from src.redelivery.topology import TopologyPlanner
from src.redelivery.management import PolicyManager

# Publisher/Consumer APIs
from src.redelivery.publisher import (
    IEnvelopePublisher,
    EnvelopePublisher,
    FailureLoggingPublisher,
)

from src.redelivery.consumer import ConsumerOrchestrator, ConsumerWorker

from src.redelivery.client import Redelivery

__all__ = [
    # Facade
    "Redelivery",
    # Configuration
    "ConnectionConfig",
    "ManagementConfig",
    "MessageSchema",
    "ProcessorConfig",
    # Exceptions
    "MessagingError",
    "ConnectionError",
    "ConnectionNotEstablishedError",
    "TopologyError",
    "TTLPolicyUndefinedError",
    "SerializationError",
    "DeserializationError",
    "SchemaValidationError",
    "ValidationViolation",
    "ProcessingError",
    "AcknowledgeAfterDeadLetterError",
    "PublishError",
    "ManagementAPIError",
    "CapabilityUnavailableError",
    # Schemas
    "Envelope",
    "EnvelopeMeta",
    # Core logic
    "DeathRecord",
    "IRetryLedger",
    "DeathHeaderRetryLedger",
    "FirstRejectionRetryLedger",
    "MessageHandler",
    "ProcessingStage",
    "ProcessingPipeline",
    "PipelineBuilder",
    "build_processing_pipeline",
    "InboundMessage",
    "ProcessingState",
    # Metrics
    "MessagingMetrics",
    "get_metrics",
    "reset_metrics",
    # Infrastructure
    "ConnectionManager",
    "TopologyPlanner",
    "PolicyManager",
    # Publisher/Consumer
    "IEnvelopePublisher",
    "EnvelopePublisher",
    "FailureLoggingPublisher",
    "ConsumerOrchestrator",
    "ConsumerWorker",
]
