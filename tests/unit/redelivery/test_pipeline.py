"""Unit tests for the message-processing pipeline."""
import json
import logging
from unittest.mock import AsyncMock, MagicMock

import pytest
from aio_pika import ExchangeType

from src.redelivery.config import MessageSchema, ProcessorConfig
from src.redelivery.constants import DEAD_LETTER_ROUTER_EXCHANGE_NAME
from src.redelivery.exceptions import AcknowledgeAfterDeadLetterError, ProcessingError
from src.redelivery.message import InboundMessage, ProcessingState
from src.redelivery.metrics import MessagingMetrics
from src.redelivery.pipeline import (
    BaseHandlerStage,
    ExceptionLoggerStage,
    FailedRejecterStage,
    FailureLoggerStage,
    PipelineBuilder,
    ProcessingPipeline,
    RetriesCheckerStage,
    SucceededAcknowledgerStage,
    build_processing_pipeline,
)
from src.redelivery.serialization import EnvelopeDeserializer
from src.redelivery.testing import FakeChannel
from tests.helpers import make_delivery, rejected_death_header


@pytest.fixture
async def channel(broker):
    """Channel with the dead-letter router declared."""
    channel = FakeChannel(broker)
    await channel.declare_exchange(
        name=DEAD_LETTER_ROUTER_EXCHANGE_NAME,
        type=ExchangeType.DIRECT,
        durable=True,
    )
    return channel


@pytest.fixture
def metrics():
    return MessagingMetrics()


def _dead_letter_publishes(broker):
    return broker.exchanges[DEAD_LETTER_ROUTER_EXCHANGE_NAME].published


@pytest.mark.asyncio
async def test_success_acks_once(channel, metrics):
    """Should call the handler with the envelope and ack exactly once."""
    handler = AsyncMock()
    delivery = make_delivery()
    message = InboundMessage(delivery, channel, "orders")
    pipeline = build_processing_pipeline(ProcessorConfig(name="orders"), handler, metrics=metrics)

    result = await pipeline.consume(message)

    assert result is True
    envelope = handler.await_args.args[0]
    assert envelope.message == {"field1": "a"}
    assert envelope.meta.id == "m-1"
    assert delivery.ack_count == 1
    assert delivery.nack_calls == []
    assert message.state == ProcessingState.SUCCEEDED
    assert metrics.get_counter("messages.acked.orders") == 1


@pytest.mark.asyncio
async def test_sync_handler_is_supported(channel, metrics):
    """Should accept plain (non-async) callables."""
    received = []
    delivery = make_delivery()
    pipeline = build_processing_pipeline(ProcessorConfig(name="orders"), received.append, metrics=metrics)

    await pipeline.consume(InboundMessage(delivery, channel, "orders"))

    assert len(received) == 1
    assert delivery.ack_count == 1


@pytest.mark.asyncio
async def test_failure_below_limit_nacks_without_dead_letter(channel, broker, metrics):
    """Should nack without requeue and never publish to the dead-letter queue."""
    handler = AsyncMock(side_effect=RuntimeError("boom"))
    delivery = make_delivery(headers={"x-death": rejected_death_header(count=1)})
    message = InboundMessage(delivery, channel, "orders")
    config = ProcessorConfig(name="orders", attempts=3)

    result = await build_processing_pipeline(config, handler, metrics=metrics).consume(message)

    assert result is False
    assert delivery.nack_calls == [False]
    assert delivery.ack_count == 0
    assert _dead_letter_publishes(broker) == []
    assert message.state == ProcessingState.RETRY_PENDING
    assert metrics.get_counter("messages.nacked.orders") == 1
    assert metrics.get_error_summary("orders") == {"ProcessingError": 1}


@pytest.mark.asyncio
async def test_failure_at_limit_dead_letters_once_and_acks_once(channel, broker, metrics):
    """Should publish body and headers to the DLQ once, then ack once."""
    handler = AsyncMock(side_effect=RuntimeError("boom"))
    headers = {"x-death": rejected_death_header(count=2), "x-tenant": "acme"}
    delivery = make_delivery(headers=headers)
    message = InboundMessage(delivery, channel, "orders")
    config = ProcessorConfig(name="orders", attempts=3)

    result = await build_processing_pipeline(config, handler, metrics=metrics).consume(message)

    assert result is False
    published = _dead_letter_publishes(broker)
    assert len(published) == 1
    assert published[0]["routing_key"] == "_dlq.orders"
    assert published[0]["message"].body == delivery.body
    assert published[0]["message"].headers["x-tenant"] == "acme"
    assert published[0]["message"].message_id == "m-1"
    assert delivery.ack_count == 1
    assert delivery.nack_calls == []
    assert message.state == ProcessingState.DEAD_LETTERED
    assert metrics.get_counter("messages.dead_lettered.orders") == 1


@pytest.mark.asyncio
async def test_default_single_attempt_dead_letters_first_redelivery(channel, broker, metrics):
    """Should dead-letter once one rejection is recorded and attempts is 1."""
    handler = AsyncMock(side_effect=RuntimeError("boom"))
    delivery = make_delivery(headers={"x-death": rejected_death_header(count=0)})

    await build_processing_pipeline(ProcessorConfig(name="orders"), handler, metrics=metrics).consume(
        InboundMessage(delivery, channel, "orders")
    )

    assert len(_dead_letter_publishes(broker)) == 1
    assert delivery.ack_count == 1


@pytest.mark.asyncio
async def test_ack_failure_after_dead_letter_escalates(channel, broker, metrics):
    """Should raise the fatal error and never nack the message."""
    handler = AsyncMock(side_effect=RuntimeError("boom"))
    delivery = make_delivery(headers={"x-death": rejected_death_header(count=2)})
    delivery.fail_ack = True
    message = InboundMessage(delivery, channel, "orders")
    config = ProcessorConfig(name="orders", attempts=3)

    with pytest.raises(AcknowledgeAfterDeadLetterError) as exc_info:
        await build_processing_pipeline(config, handler, metrics=metrics).consume(message)

    assert exc_info.value.message_id == "m-1"
    assert len(_dead_letter_publishes(broker)) == 1
    assert delivery.nack_calls == []
    assert message.state == ProcessingState.FATAL_ESCALATED


@pytest.mark.asyncio
async def test_unreadable_body_goes_through_retry(channel, metrics):
    """Should treat a bad body like any other failure and nack it."""
    handler = AsyncMock()
    delivery = make_delivery(body=b"not json")
    config = ProcessorConfig(name="orders", attempts=3)

    await build_processing_pipeline(config, handler, metrics=metrics).consume(
        InboundMessage(delivery, channel, "orders")
    )

    handler.assert_not_awaited()
    assert delivery.nack_calls == [False]
    assert metrics.get_error_summary("orders") == {"DeserializationError": 1}


@pytest.mark.asyncio
async def test_schema_failure_is_logged_with_violations(channel, metrics, caplog):
    """Should log the violations and nack the message."""
    schema = MessageSchema(schema={"type": "object", "properties": {"field1": {"type": "string"}}})
    config = ProcessorConfig(name="orders", attempts=3, message_schema=schema)
    body = json.dumps({"message": {"field1": 123}, "meta": {"id": "m-1", "publishedAt": 1}}).encode()
    delivery = make_delivery(body=body)

    with caplog.at_level(logging.ERROR, logger="src.redelivery.pipeline"):
        await build_processing_pipeline(config, AsyncMock(), metrics=metrics).consume(
            InboundMessage(delivery, channel, "orders")
        )

    record = next(r for r in caplog.records if r.getMessage() == "Message processing failed")
    assert record.violations[0]["path"] == "/message/field1"
    assert record.violations[0]["rule"] == "type"
    assert delivery.nack_calls == [False]


@pytest.mark.asyncio
async def test_failure_logger_records_payload_and_stack(channel, caplog):
    """Should log payload, error and stack, then rethrow unchanged."""
    message = InboundMessage(make_delivery(), channel, "orders")
    error = ProcessingError("handler broke")

    async def failing_next(msg):
        raise error

    with caplog.at_level(logging.ERROR, logger="src.redelivery.pipeline"):
        with pytest.raises(ProcessingError) as exc_info:
            await FailureLoggerStage().consume(message, failing_next)

    assert exc_info.value is error
    record = caplog.records[-1]
    assert record.payload == make_delivery().body.decode()
    assert record.error == "handler broke"
    assert "Traceback" in record.stack


@pytest.mark.asyncio
async def test_handler_errors_are_wrapped(channel, metrics):
    """Should wrap user exceptions in ProcessingError with the cause attached."""
    cause = KeyError("missing")
    stage = BaseHandlerStage(AsyncMock(side_effect=cause), EnvelopeDeserializer(), metrics)

    with pytest.raises(ProcessingError) as exc_info:
        await stage.consume(InboundMessage(make_delivery(), channel, "orders"), AsyncMock())

    assert exc_info.value.original is cause


@pytest.mark.asyncio
async def test_acknowledger_skips_handled_failures(channel):
    """Should not ack when the inner stage reports a handled failure."""
    delivery = make_delivery()
    stage = SucceededAcknowledgerStage(MessagingMetrics())

    result = await stage.consume(InboundMessage(delivery, channel, "orders"), AsyncMock(return_value=False))

    assert result is False
    assert delivery.ack_count == 0


@pytest.mark.asyncio
async def test_rejecter_lets_escalated_errors_through(channel):
    """Should not nack when the dead-letter acknowledge failed."""
    delivery = make_delivery()
    stage = FailedRejecterStage(MessagingMetrics())

    with pytest.raises(AcknowledgeAfterDeadLetterError):
        await stage.consume(
            InboundMessage(delivery, channel, "orders"),
            AsyncMock(side_effect=AcknowledgeAfterDeadLetterError("m-1")),
        )

    assert delivery.nack_calls == []


@pytest.mark.asyncio
async def test_exception_logger_never_swallows(channel, caplog):
    """Should log and rethrow anything that escapes."""
    message = InboundMessage(make_delivery(), channel, "orders")

    with caplog.at_level(logging.ERROR, logger="src.redelivery.pipeline"):
        with pytest.raises(RuntimeError):
            await ExceptionLoggerStage().consume(message, AsyncMock(side_effect=RuntimeError("x")))

    assert caplog.records[-1].exc_info is not None


@pytest.mark.asyncio
async def test_retries_checker_uses_injected_ledger(channel, broker):
    """Should ask the ledger for attempts with the processor's queue name."""
    ledger = MagicMock()
    ledger.attempts.return_value = 0
    stage = RetriesCheckerStage(ProcessorConfig(name="orders", attempts=2), ledger, MessagingMetrics())

    with pytest.raises(RuntimeError):
        await stage.consume(
            InboundMessage(make_delivery(), channel, "orders"),
            AsyncMock(side_effect=RuntimeError("x")),
        )

    ledger.attempts.assert_called_once()
    assert ledger.attempts.call_args.args[1] == "orders"
    assert _dead_letter_publishes(broker) == []


def test_standard_stage_order():
    """Should order stages from exception logger down to the handler."""
    pipeline = build_processing_pipeline(ProcessorConfig(name="orders"), AsyncMock())

    assert [type(s) for s in pipeline.stages] == [
        ExceptionLoggerStage,
        SucceededAcknowledgerStage,
        FailedRejecterStage,
        RetriesCheckerStage,
        FailureLoggerStage,
        BaseHandlerStage,
    ]


def test_pipeline_requires_terminal_stage():
    """Should reject empty pipelines and pipelines without a handler stage."""
    with pytest.raises(ValueError):
        ProcessingPipeline([])

    with pytest.raises(ValueError, match="terminal"):
        ProcessingPipeline([ExceptionLoggerStage()])


def test_builder_insert_and_remove():
    """Should insert stages before a given type and remove by type."""
    handler_stage = BaseHandlerStage(AsyncMock(), EnvelopeDeserializer())

    pipeline = (
        PipelineBuilder()
        .add(ExceptionLoggerStage())
        .add(FailureLoggerStage())
        .add(handler_stage)
        .insert_before(FailureLoggerStage, SucceededAcknowledgerStage())
        .remove(ExceptionLoggerStage)
        .build()
    )

    assert [type(s) for s in pipeline.stages] == [
        SucceededAcknowledgerStage,
        FailureLoggerStage,
        BaseHandlerStage,
    ]

    with pytest.raises(ValueError):
        PipelineBuilder().remove(FailureLoggerStage)
