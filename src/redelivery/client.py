"""Public entry point: connect, register processors, publish, disconnect."""
import asyncio
import logging
from typing import Any, Optional

from src.redelivery.config import ConnectionConfig, ProcessorConfig
from src.redelivery.connection import ConnectionManager
from src.redelivery.consumer import ConsumerOrchestrator, FatalErrorCallback
from src.redelivery.exceptions import ConnectionNotEstablishedError
from src.redelivery.management.policies import PolicyManager
from src.redelivery.metrics import MessagingMetrics, get_metrics
from src.redelivery.pipeline import MessageHandler
from src.redelivery.publisher import IEnvelopePublisher, create_publisher
from src.redelivery.retry import IRetryLedger
from src.redelivery.schemas import Envelope

logger = logging.getLogger(__name__)


class Redelivery:
    """Reliable message processing with broker-native retries.

    Owns one connection manager. Processors registered with ``process()``
    consume on their own channels; ``publish()`` uses a separate channel.

    Example:
        redelivery = await Redelivery.start(ConnectionConfig(url="amqp://localhost/"))

        async def handle(envelope: Envelope) -> None:
            print(envelope.message)

        await redelivery.process(
            "orders.created",
            ProcessorConfig(name="orders", attempts=3, attempts_delay_ms=5000),
            handle,
        )
        await redelivery.publish("orders.created", {"order_id": 42})
        await redelivery.disconnect()
    """

    def __init__(
        self,
        config: ConnectionConfig,
        connection: Optional[ConnectionManager] = None,
        ledger: Optional[IRetryLedger] = None,
        metrics: Optional[MessagingMetrics] = None,
        on_fatal: Optional[FatalErrorCallback] = None,
    ):
        """Initialize Redelivery (not connected; see ``start()``).

        Args:
            config: Connection configuration
            connection: Connection manager (built from ``config`` if None)
            ledger: Attempt-count strategy for every processor
            metrics: Metrics sink
            on_fatal: Supervisor callback for escalated acknowledge failures
        """
        self.config = config
        self._connection = connection or ConnectionManager(config)
        self._metrics = metrics or get_metrics()
        self._policy_manager = PolicyManager(config.management)
        self._orchestrator = ConsumerOrchestrator(
            self._connection,
            policy_manager=self._policy_manager,
            ledger=ledger,
            metrics=self._metrics,
            on_fatal=on_fatal,
        )
        self._publisher: Optional[IEnvelopePublisher] = None
        self._publisher_lock = asyncio.Lock()

    @classmethod
    async def start(
        cls,
        config: Optional[ConnectionConfig] = None,
        **kwargs: Any,
    ) -> "Redelivery":
        """Connect and return an active instance.

        Args:
            config: Connection configuration (environment defaults if None)
            **kwargs: Passed to the constructor

        Raises:
            ConnectionError: If every connection attempt fails
        """
        instance = cls(config or ConnectionConfig(), **kwargs)
        await instance._connection.connect()
        return instance

    def is_active(self) -> bool:
        return self._connection.is_connected

    @property
    def metrics(self) -> MessagingMetrics:
        return self._metrics

    @property
    def policy_manager(self) -> PolicyManager:
        return self._policy_manager

    async def process(
        self,
        topic: str,
        config: ProcessorConfig,
        handler: MessageHandler,
    ) -> None:
        """Register a processor consuming messages published on ``topic``.

        Raises:
            ConnectionNotEstablishedError: If not connected
            TopologyError: If the processor's topology cannot be asserted
        """
        self._require_active()
        await self._orchestrator.create_consumer(topic, config, handler)

    async def publish(
        self,
        topic: str,
        payload: Any,
        correlation_id: Optional[str] = None,
    ) -> Envelope:
        """Publish a payload to every processor bound on ``topic``.

        Raises:
            ConnectionNotEstablishedError: If not connected
            SerializationError: If the payload is not a JSON object
            PublishError: If the broker publish fails
        """
        self._require_active()
        publisher = await self._get_publisher()
        return await publisher.publish(topic, payload, correlation_id)

    async def disconnect(self, timeout: float = 30.0) -> None:
        """Stop consumers gracefully, then close channels and the connection.

        Args:
            timeout: Maximum seconds to wait for in-flight messages
        """
        await self._orchestrator.stop(timeout)
        self._publisher = None
        await self._policy_manager.close()
        await self._connection.close()
        logger.info("Redelivery disconnected")

    async def _get_publisher(self) -> IEnvelopePublisher:
        async with self._publisher_lock:
            if self._publisher is None:
                channel = await self._connection.open_channel()
                self._publisher = await create_publisher(channel, self._metrics)
            return self._publisher

    def _require_active(self) -> None:
        if not self.is_active():
            raise ConnectionNotEstablishedError("Redelivery is not connected. Call start() first.")

    def __repr__(self) -> str:
        return (
            f"Redelivery(active={self.is_active()}, "
            f"processors={self._orchestrator.processors})"
        )
