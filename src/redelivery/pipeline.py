"""Ordered message-processing pipeline wrapping a user handler.

Stages, outermost to innermost:

    ExceptionLoggerStage
    SucceededAcknowledgerStage
    FailedRejecterStage
    RetriesCheckerStage
    FailureLoggerStage
    BaseHandlerStage

Each stage receives the message and a ``call_next`` coroutine for the
stage below it. A stage returns True when the message was processed
successfully, False when the failure was fully handled below it (nack or
dead-letter already issued), or raises.
"""
import inspect
import logging
import time
import traceback
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, List, Optional, Type, Union

from src.redelivery.config import ProcessorConfig
from src.redelivery.constants import DEAD_LETTER_ROUTER_EXCHANGE_NAME
from src.redelivery.exceptions import (
    AcknowledgeAfterDeadLetterError,
    MessagingError,
    ProcessingError,
    SchemaValidationError,
)
from src.redelivery.logging import message_context
from src.redelivery.message import InboundMessage, ProcessingState
from src.redelivery.metrics import MessagingMetrics, get_metrics
from src.redelivery.retry import DeathHeaderRetryLedger, IRetryLedger, describe_death_history
from src.redelivery.schemas import Envelope
from src.redelivery.serialization import EnvelopeDeserializer
from src.redelivery.validation import get_validator

logger = logging.getLogger(__name__)


NextStage = Callable[[InboundMessage], Awaitable[bool]]
MessageHandler = Callable[[Envelope], Union[None, Awaitable[None]]]


class ProcessingStage(ABC):
    """One link of the processing pipeline."""

    #: Terminal stages never call ``call_next``; a pipeline must end with one.
    terminal: bool = False

    @abstractmethod
    async def consume(self, message: InboundMessage, call_next: NextStage) -> bool:
        """Process a message.

        Args:
            message: Delivery being processed
            call_next: Invokes the next (inner) stage

        Returns:
            True on success, False if the failure was already handled
        """
        pass


class BaseHandlerStage(ProcessingStage):
    """Deserializes the envelope, validates it and invokes the user handler."""

    terminal = True

    def __init__(
        self,
        handler: MessageHandler,
        deserializer: EnvelopeDeserializer,
        metrics: Optional[MessagingMetrics] = None,
    ):
        """Initialize base handler.

        Args:
            handler: User callback (sync or async) receiving the envelope
            deserializer: Envelope deserializer (with schema validator, if any)
            metrics: Metrics sink
        """
        self._handler = handler
        self._deserializer = deserializer
        self._metrics = metrics or get_metrics()

    async def consume(self, message: InboundMessage, call_next: NextStage) -> bool:
        message.state = ProcessingState.PROCESSING
        envelope = self._deserializer.deserialize(message.body)

        start_time = time.monotonic()
        try:
            result = self._handler(envelope)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            raise ProcessingError(
                f"Handler failed for processor {message.processor_name}",
                original=e,
            ) from e
        finally:
            self._metrics.record_time(
                f"handler.{message.processor_name}",
                (time.monotonic() - start_time) * 1000,
            )
        return True


class FailureLoggerStage(ProcessingStage):
    """Logs every failure from the handler with payload and stack, then rethrows."""

    async def consume(self, message: InboundMessage, call_next: NextStage) -> bool:
        try:
            return await call_next(message)
        except Exception as e:
            extra = {
                "payload": message.body_text(),
                "error": str(e),
                "error_type": type(e).__name__,
                "stack": traceback.format_exc(),
            }
            if isinstance(e, SchemaValidationError):
                extra["violations"] = [v.model_dump() for v in e.violations]
            logger.error("Message processing failed", extra=extra)
            raise


class RetriesCheckerStage(ProcessingStage):
    """Dead-letters a failing message once it has used up its attempts.

    Below the limit the error is rethrown so the rejecter nacks the
    message and the broker routes it through the retry queue. At or above
    the limit the original body and headers are published to the
    dead-letter queue and the delivery is acknowledged.
    """

    def __init__(
        self,
        config: ProcessorConfig,
        ledger: Optional[IRetryLedger] = None,
        metrics: Optional[MessagingMetrics] = None,
    ):
        """Initialize retries checker.

        Args:
            config: Processor configuration (attempt limit, queue names)
            ledger: Attempt-count strategy
            metrics: Metrics sink
        """
        self._config = config
        self._ledger = ledger or DeathHeaderRetryLedger()
        self._metrics = metrics or get_metrics()

    @property
    def max_attempts(self) -> int:
        return self._config.attempts

    async def consume(self, message: InboundMessage, call_next: NextStage) -> bool:
        try:
            return await call_next(message)
        except Exception:
            attempts = self._ledger.attempts(message.headers, self._config.name)
            if attempts < self.max_attempts:
                raise

            logger.error(
                "Message reached maximum retries. Moving to dead-letter queue.",
                extra={
                    "payload": message.body_text(),
                    "attempts": attempts,
                    "max_attempts": self.max_attempts,
                    "death_history": describe_death_history(message.headers),
                },
            )
            await self._move_to_dead_letter(message)
            await self._acknowledge(message)
            message.state = ProcessingState.DEAD_LETTERED
            self._metrics.record_message_dead_lettered(self._config.name)
            return False

    async def _move_to_dead_letter(self, message: InboundMessage) -> None:
        await message.republish(
            DEAD_LETTER_ROUTER_EXCHANGE_NAME,
            self._config.dead_letter_queue_name,
        )

    async def _acknowledge(self, message: InboundMessage) -> None:
        try:
            await message.ack()
        except Exception as e:
            message.state = ProcessingState.FATAL_ESCALATED
            error = AcknowledgeAfterDeadLetterError(message.message_id, original=e)
            logger.critical(
                error.message,
                extra={"cause": str(e), "message_id": message.message_id},
            )
            raise error from e


class FailedRejecterStage(ProcessingStage):
    """Nacks without requeue so the broker dead-letters into the retry queue."""

    def __init__(self, metrics: Optional[MessagingMetrics] = None):
        self._metrics = metrics or get_metrics()

    async def consume(self, message: InboundMessage, call_next: NextStage) -> bool:
        try:
            return await call_next(message)
        except AcknowledgeAfterDeadLetterError:
            raise
        except Exception as e:
            await message.nack(requeue=False)
            message.state = ProcessingState.RETRY_PENDING
            self._metrics.record_message_nacked(message.processor_name)
            self._metrics.record_error(message.processor_name, type(e).__name__)
            return False


class SucceededAcknowledgerStage(ProcessingStage):
    """Acks successfully processed messages."""

    def __init__(self, metrics: Optional[MessagingMetrics] = None):
        self._metrics = metrics or get_metrics()

    async def consume(self, message: InboundMessage, call_next: NextStage) -> bool:
        result = await call_next(message)
        if result:
            await message.ack()
            message.state = ProcessingState.SUCCEEDED
            self._metrics.record_message_acked(message.processor_name)
        return result


class ExceptionLoggerStage(ProcessingStage):
    """Logs any exception escaping the pipeline and rethrows it."""

    async def consume(self, message: InboundMessage, call_next: NextStage) -> bool:
        try:
            return await call_next(message)
        except Exception as e:
            logger.exception(
                f"Unhandled error in pipeline for {message.processor_name}: {e}",
                extra={"error_type": type(e).__name__},
            )
            raise


class ProcessingPipeline:
    """An ordered, immutable list of stages."""

    def __init__(self, stages: List[ProcessingStage]):
        """Initialize pipeline.

        Args:
            stages: Stages, outermost first; the last one must be terminal

        Raises:
            ValueError: If the stage list is empty or does not end in a terminal stage
        """
        if not stages:
            raise ValueError("Pipeline needs at least one stage")
        if not stages[-1].terminal:
            raise ValueError(
                f"Pipeline must end with a terminal stage, got {type(stages[-1]).__name__}"
            )
        self._stages = tuple(stages)

    @property
    def stages(self) -> List[ProcessingStage]:
        return list(self._stages)

    async def consume(self, message: InboundMessage) -> bool:
        """Run a message through every stage.

        Args:
            message: Delivery to process

        Returns:
            True if processed and acked, False if the failure was handled

        Raises:
            AcknowledgeAfterDeadLetterError: Dead-lettered message could not be acked
        """
        async with message_context(
            processor=message.processor_name,
            message_id=message.message_id,
            correlation_id=message.correlation_id,
        ):
            return await self._call(0, message)

    async def _call(self, index: int, message: InboundMessage) -> bool:
        stage = self._stages[index]

        async def call_next(msg: InboundMessage) -> bool:
            if index + 1 >= len(self._stages):
                raise MessagingError(f"{type(stage).__name__} has no next stage")
            return await self._call(index + 1, msg)

        return await stage.consume(message, call_next)

    def __repr__(self) -> str:
        names = " -> ".join(type(s).__name__ for s in self._stages)
        return f"ProcessingPipeline({names})"


class PipelineBuilder:
    """Builds a ProcessingPipeline stage by stage.

    Example:
        pipeline = (
            PipelineBuilder()
            .add(ExceptionLoggerStage())
            .add(BaseHandlerStage(handler, EnvelopeDeserializer()))
            .build()
        )
    """

    def __init__(self):
        self._stages: List[ProcessingStage] = []

    def add(self, stage: ProcessingStage) -> "PipelineBuilder":
        """Append a stage (innermost so far)."""
        self._stages.append(stage)
        return self

    def insert_before(
        self,
        stage_type: Type[ProcessingStage],
        stage: ProcessingStage,
    ) -> "PipelineBuilder":
        """Insert a stage directly outside the first stage of ``stage_type``.

        Raises:
            ValueError: If no stage of that type was added
        """
        index = self._index_of(stage_type)
        self._stages.insert(index, stage)
        return self

    def remove(self, stage_type: Type[ProcessingStage]) -> "PipelineBuilder":
        """Remove the first stage of ``stage_type``.

        Raises:
            ValueError: If no stage of that type was added
        """
        del self._stages[self._index_of(stage_type)]
        return self

    def build(self) -> ProcessingPipeline:
        return ProcessingPipeline(list(self._stages))

    def _index_of(self, stage_type: Type[ProcessingStage]) -> int:
        for index, stage in enumerate(self._stages):
            if isinstance(stage, stage_type):
                return index
        raise ValueError(f"No {stage_type.__name__} in pipeline")


def build_processing_pipeline(
    config: ProcessorConfig,
    handler: MessageHandler,
    ledger: Optional[IRetryLedger] = None,
    metrics: Optional[MessagingMetrics] = None,
    deserializer: Optional[EnvelopeDeserializer] = None,
) -> ProcessingPipeline:
    """Build the standard pipeline for a processor.

    Args:
        config: Processor configuration
        handler: User callback
        ledger: Attempt-count strategy (defaults to the death-header ledger)
        metrics: Metrics sink (defaults to global metrics)
        deserializer: Envelope deserializer (defaults to one using the
            processor's message schema)

    Returns:
        Pipeline ready to consume messages
    """
    metrics = metrics or get_metrics()
    if deserializer is None:
        validator = get_validator(config.message_schema) if config.message_schema else None
        deserializer = EnvelopeDeserializer(validator)

    return (
        PipelineBuilder()
        .add(ExceptionLoggerStage())
        .add(SucceededAcknowledgerStage(metrics))
        .add(FailedRejecterStage(metrics))
        .add(RetriesCheckerStage(config, ledger, metrics))
        .add(FailureLoggerStage())
        .add(BaseHandlerStage(handler, deserializer, metrics))
        .build()
    )


__all__ = [
    "MessageHandler",
    "ProcessingStage",
    "BaseHandlerStage",
    "FailureLoggerStage",
    "RetriesCheckerStage",
    "FailedRejecterStage",
    "SucceededAcknowledgerStage",
    "ExceptionLoggerStage",
    "ProcessingPipeline",
    "PipelineBuilder",
    "build_processing_pipeline",
]
