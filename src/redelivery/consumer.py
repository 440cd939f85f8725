"""Consumer orchestration: topology, metadata and parallel consumer workers."""
import asyncio
import inspect
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Set, Union

from aio_pika.abc import AbstractChannel, AbstractIncomingMessage, AbstractQueue

from src.redelivery.config import ProcessorConfig
from src.redelivery.connection import ConnectionManager
from src.redelivery.exceptions import AcknowledgeAfterDeadLetterError
from src.redelivery.management.policies import PolicyManager
from src.redelivery.message import InboundMessage
from src.redelivery.metrics import MessagingMetrics, get_metrics
from src.redelivery.pipeline import MessageHandler, ProcessingPipeline, build_processing_pipeline
from src.redelivery.retry import IRetryLedger
from src.redelivery.serialization import EnvelopeDeserializer
from src.redelivery.topology import TopologyPlanner
from src.redelivery.validation import get_validator

logger = logging.getLogger(__name__)


FatalErrorCallback = Callable[[AcknowledgeAfterDeadLetterError], Union[None, Awaitable[None]]]
PipelineFactory = Callable[[], ProcessingPipeline]


class ConsumerWorker:
    """One consume loop on its own channel.

    Deliveries are processed one at a time; parallelism comes from running
    several workers per processor. Each delivery gets a fresh pipeline.
    """

    def __init__(
        self,
        config: ProcessorConfig,
        index: int,
        channel: AbstractChannel,
        pipeline_factory: PipelineFactory,
        on_fatal: Optional[FatalErrorCallback] = None,
    ):
        """Initialize consumer worker.

        Args:
            config: Processor configuration
            index: Worker slot number (for logging)
            channel: Channel owned by this worker
            pipeline_factory: Builds a pipeline for each delivery
            on_fatal: Called when a dead-lettered message could not be acked
        """
        self.config = config
        self.index = index
        self._channel = channel
        self._pipeline_factory = pipeline_factory
        self._on_fatal = on_fatal

        self._queue: Optional[AbstractQueue] = None
        self._consumer_tag: Optional[str] = None
        self._lock = asyncio.Lock()
        self._in_flight = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self._stopping = False

    @property
    def channel(self) -> AbstractChannel:
        return self._channel

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def is_consuming(self) -> bool:
        return self._consumer_tag is not None

    async def start(self) -> None:
        """Start consuming from the processor's main queue."""
        self._queue = await self._channel.get_queue(self.config.name, ensure=False)
        self._consumer_tag = await self._queue.consume(self._on_delivery, no_ack=False)
        logger.info(
            f"Worker {self.index} consuming from {self.config.name}",
            extra={"processor": self.config.name, "worker": self.index},
        )

    async def stop(self, timeout: float = 30.0) -> None:
        """Stop accepting deliveries, then wait for the in-flight one to finish.

        Args:
            timeout: Maximum seconds to wait for in-flight processing
        """
        self._stopping = True
        if self._queue is not None and self._consumer_tag is not None:
            try:
                await self._queue.cancel(self._consumer_tag)
            except Exception as e:
                logger.error(f"Error cancelling consumer {self._consumer_tag}: {e}")
            self._consumer_tag = None

        try:
            await asyncio.wait_for(self._idle.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"Worker {self.index} of {self.config.name} still has "
                f"{self._in_flight} in-flight message(s) after {timeout}s",
                extra={"processor": self.config.name, "worker": self.index},
            )

    async def _on_delivery(self, delivery: AbstractIncomingMessage) -> None:
        if self._stopping:
            # Consumer was cancelled; hand the delivery back to the broker.
            await delivery.nack(requeue=True)
            return

        # Counted before waiting on the lock so stop() also waits for queued deliveries.
        self._enter()
        try:
            async with self._lock:
                if self._stopping:
                    await delivery.nack(requeue=True)
                    return
                task = asyncio.ensure_future(self._process(delivery))
                try:
                    # Shielded so shutdown cannot cut a pipeline short before ack/nack.
                    await asyncio.shield(task)
                finally:
                    if not task.done():
                        # Callback cancelled: keep the channel locked until the message settles.
                        await asyncio.wait({task})
        finally:
            self._leave()

    def _enter(self) -> None:
        self._in_flight += 1
        self._idle.clear()

    def _leave(self) -> None:
        self._in_flight -= 1
        if self._in_flight == 0:
            self._idle.set()

    async def _process(self, delivery: AbstractIncomingMessage) -> None:
        message = InboundMessage(delivery, self._channel, self.config.name)
        pipeline = self._pipeline_factory()
        try:
            await pipeline.consume(message)
        except AcknowledgeAfterDeadLetterError as e:
            await self._escalate(e)
        except Exception as e:
            # Already logged by the pipeline; the broker redelivers unacked messages.
            logger.error(
                f"Worker {self.index} of {self.config.name} failed to settle message: {e}",
                extra={"processor": self.config.name, "worker": self.index},
            )

    async def _escalate(self, error: AcknowledgeAfterDeadLetterError) -> None:
        logger.critical(
            f"Fatal error in {self.config.name}: {error}",
            extra={"processor": self.config.name, "message_id": error.message_id},
        )
        if self._on_fatal is None:
            return
        result = self._on_fatal(error)
        if inspect.isawaitable(result):
            await result

    def __repr__(self) -> str:
        return (
            f"ConsumerWorker(processor={self.config.name}, index={self.index}, "
            f"consuming={self.is_consuming})"
        )


class ConsumerOrchestrator:
    """Registers processors and runs their consumer workers.

    For each processor:
    1. Initializes the policy manager (once)
    2. Asserts the topology on a dedicated channel
    3. Stores ``{maxRetries}`` metadata if a management endpoint is configured
    4. Starts ``consumers_count`` workers, each on its own channel
    """

    def __init__(
        self,
        connection: ConnectionManager,
        policy_manager: Optional[PolicyManager] = None,
        ledger: Optional[IRetryLedger] = None,
        metrics: Optional[MessagingMetrics] = None,
        on_fatal: Optional[FatalErrorCallback] = None,
    ):
        """Initialize consumer orchestrator.

        Args:
            connection: Shared connection manager
            policy_manager: Management API integration (disabled if None)
            ledger: Attempt-count strategy for every processor
            metrics: Metrics sink
            on_fatal: Supervisor callback for escalated errors
        """
        self._connection = connection
        self._policy_manager = policy_manager or PolicyManager()
        self._ledger = ledger
        self._metrics = metrics or get_metrics()
        self._on_fatal = on_fatal
        self._workers: Dict[str, List[ConsumerWorker]] = {}
        self._registering: Set[str] = set()

    @property
    def processors(self) -> List[str]:
        return list(self._workers)

    def workers(self, processor_name: str) -> List[ConsumerWorker]:
        return list(self._workers.get(processor_name, []))

    async def create_consumer(
        self,
        topic: str,
        config: ProcessorConfig,
        handler: MessageHandler,
    ) -> List[ConsumerWorker]:
        """Register a processor and start its workers.

        Args:
            topic: Routing key publishers use
            config: Processor configuration
            handler: User callback receiving each envelope

        Returns:
            Started workers

        Raises:
            ValueError: If a processor with the same name is already registered
            TopologyError: If the topology cannot be asserted
        """
        if config.name in self._workers or config.name in self._registering:
            raise ValueError(f"Processor {config.name} is already registered")

        self._registering.add(config.name)
        try:
            await self._policy_manager.initialize()
            await self._assert_topology(topic, config)

            if self._policy_manager.is_configured:
                await self._policy_manager.metadata.apply(config.name, config.attempts)

            pipeline_factory = self._pipeline_factory(config, handler)
            workers = await self._start_workers(config, pipeline_factory)
            self._workers[config.name] = workers
        finally:
            self._registering.discard(config.name)

        logger.info(
            f"Processor {config.name} registered on topic {topic} "
            f"with {config.consumers_count} worker(s)",
            extra={
                "processor": config.name,
                "topic": topic,
                "attempts": config.attempts,
                "attempts_delay_ms": config.attempts_delay_ms,
            },
        )
        return list(workers)

    async def stop(self, timeout: float = 30.0) -> None:
        """Stop every worker and close its channel.

        Args:
            timeout: Maximum seconds each worker waits for in-flight work
        """
        workers = [w for ws in self._workers.values() for w in ws]
        self._workers = {}
        if not workers:
            return

        logger.info(f"Stopping {len(workers)} consumer worker(s)...")
        await asyncio.gather(*(w.stop(timeout) for w in workers))
        for worker in workers:
            await self._connection.close_channel(worker.channel)
        logger.info("Consumer workers stopped")

    async def _start_workers(
        self,
        config: ProcessorConfig,
        pipeline_factory: PipelineFactory,
    ) -> List[ConsumerWorker]:
        """Start all workers of a processor, or none of them."""
        workers: List[ConsumerWorker] = []
        channels: List[AbstractChannel] = []
        try:
            for index in range(config.consumers_count):
                channel = await self._connection.open_channel(
                    prefetch_count=self._connection.prefetch_count,
                )
                channels.append(channel)
                worker = ConsumerWorker(config, index, channel, pipeline_factory, self._on_fatal)
                await worker.start()
                workers.append(worker)
        except Exception as e:
            logger.error(
                f"Failed to start workers for {config.name}, rolling back: {e}",
                extra={"processor": config.name, "started": len(workers)},
            )
            await asyncio.gather(*(w.stop() for w in workers))
            for channel in channels:
                await self._connection.close_channel(channel)
            raise
        return workers

    async def _assert_topology(self, topic: str, config: ProcessorConfig) -> None:
        channel = await self._connection.open_channel()
        try:
            planner = TopologyPlanner(channel, self._policy_manager.ttl)
            await planner.assert_topology(config, topic)
        finally:
            await self._connection.close_channel(channel)

    def _pipeline_factory(
        self,
        config: ProcessorConfig,
        handler: MessageHandler,
    ) -> PipelineFactory:
        # Validator compiles the schema once per processor.
        validator = get_validator(config.message_schema) if config.message_schema else None
        deserializer = EnvelopeDeserializer(validator)

        def factory() -> ProcessingPipeline:
            return build_processing_pipeline(
                config,
                handler,
                ledger=self._ledger,
                metrics=self._metrics,
                deserializer=deserializer,
            )

        return factory
