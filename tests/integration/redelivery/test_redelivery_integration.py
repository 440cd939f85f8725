"""Integration tests for Redelivery with real RabbitMQ.

These tests require RabbitMQ (with the management plugin) running via Docker.
Set RUN_INTEGRATION_TESTS=1 and ensure RabbitMQ is accessible.
"""
import asyncio
import uuid

import aio_pika
import pytest

from src.redelivery.client import Redelivery
from src.redelivery.config import ProcessorConfig
from src.redelivery.management.client import ManagementClient


def _processor_name() -> str:
    return f"it-{uuid.uuid4().hex[:8]}"


async def _delete_queues(url: str, config: ProcessorConfig) -> None:
    connection = await aio_pika.connect_robust(url)
    async with connection:
        channel = await connection.channel()
        for name in (config.name, config.retry_queue_name, config.dead_letter_queue_name):
            await channel.queue_delete(name)


async def _wait_for_depth(url: str, queue_name: str, expected: int, timeout: float = 10.0) -> int:
    connection = await aio_pika.connect_robust(url)
    async with connection:
        channel = await connection.channel()
        depth = -1
        for _ in range(int(timeout * 10)):
            queue = await channel.declare_queue(queue_name, passive=True)
            depth = queue.declaration_result.message_count
            if depth == expected:
                return depth
            await asyncio.sleep(0.1)
        return depth


@pytest.mark.integration
@pytest.mark.asyncio
async def test_publish_and_process(rabbitmq_manager):
    """Test a published payload reaches the handler and is acked."""
    config = ProcessorConfig(name=_processor_name())
    redelivery = await Redelivery.start(rabbitmq_manager.connection_config())

    received = []
    done = asyncio.Event()

    async def handle(envelope):
        received.append(envelope)
        done.set()

    try:
        await redelivery.process(config.name, config, handle)
        envelope = await redelivery.publish(config.name, {"order_id": 1})

        try:
            await asyncio.wait_for(done.wait(), timeout=5.0)
        except asyncio.TimeoutError:
            pytest.fail("Message was not processed within timeout")

        assert received[0].meta.id == envelope.meta.id
        assert received[0].message == {"order_id": 1}
    finally:
        await redelivery.disconnect(timeout=5)
        await _delete_queues(rabbitmq_manager.url, config)


@pytest.mark.integration
@pytest.mark.asyncio
async def test_failing_message_reaches_dead_letter_queue(rabbitmq_manager):
    """Test retries go through the delay queue and end in the DLQ."""
    config = ProcessorConfig(name=_processor_name(), attempts=3, attempts_delay_ms=100)
    redelivery = await Redelivery.start(rabbitmq_manager.connection_config())

    calls = []

    async def handle(envelope):
        calls.append(envelope.meta.id)
        raise RuntimeError("always fails")

    try:
        await redelivery.process(config.name, config, handle)
        await redelivery.publish(config.name, {"order_id": 2})

        depth = await _wait_for_depth(rabbitmq_manager.url, config.dead_letter_queue_name, 1)

        assert depth == 1
        assert len(calls) == 3
    finally:
        await redelivery.disconnect(timeout=5)
        await _delete_queues(rabbitmq_manager.url, config)


@pytest.mark.integration
@pytest.mark.asyncio
async def test_ttl_policy_and_metadata_are_stored(rabbitmq_manager):
    """Test policy-driven delays and queue metadata via the management API."""
    config = ProcessorConfig(
        name=_processor_name(),
        attempts=2,
        attempts_delay_ms=200,
        use_policies_for_delay=True,
    )
    connection_config = rabbitmq_manager.connection_config(with_management=True)
    redelivery = await Redelivery.start(connection_config)

    try:
        await redelivery.process(config.name, config, lambda envelope: None)
        assert redelivery.policy_manager.is_enabled

        async with ManagementClient(connection_config.management) as client:
            policy = await client.get_operator_policy(f"redelivery-ttl-{config.retry_queue_name}")
            metadata = await client.get_parameter(f"redelivery-metadata-{config.name}")

        assert policy["definition"] == {"message-ttl": 200}
        assert metadata["maxRetries"] == 2
        assert "createdAt" in metadata
    finally:
        await redelivery.policy_manager.cleanup(config)
        await redelivery.disconnect(timeout=5)
        await _delete_queues(rabbitmq_manager.url, config)
