"""Unit tests for per-processor topology declaration."""
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.redelivery.config import ProcessorConfig
from src.redelivery.constants import DEAD_LETTER_ROUTER_EXCHANGE_NAME, ROUTER_EXCHANGE_NAME
from src.redelivery.exceptions import TopologyError, TTLPolicyUndefinedError
from src.redelivery.management.policies import TTLPolicyManager
from src.redelivery.testing import FakeChannel
from src.redelivery.topology import TopologyPlanner


def _snapshot(broker):
    return (
        {name: q.arguments for name, q in broker.queues.items()},
        {name: {k: list(v) for k, v in keys.items()} for name, keys in broker.bindings.items()},
        sorted(broker.exchanges),
    )


@pytest.mark.asyncio
async def test_declares_three_queues_and_two_exchanges(broker):
    """Should declare main, retry and dead-letter queues with their arguments."""
    config = ProcessorConfig(name="orders", attempts_delay_ms=5000)

    await TopologyPlanner(FakeChannel(broker)).assert_topology(config, "orders.created")

    assert sorted(broker.exchanges) == sorted([ROUTER_EXCHANGE_NAME, DEAD_LETTER_ROUTER_EXCHANGE_NAME])
    assert broker.queues["orders"].arguments == {
        "x-dead-letter-exchange": DEAD_LETTER_ROUTER_EXCHANGE_NAME,
        "x-dead-letter-routing-key": "orders",
    }
    assert broker.queues["_retry_delay.orders"].arguments == {
        "x-dead-letter-exchange": ROUTER_EXCHANGE_NAME,
        "x-message-ttl": 5000,
    }
    assert broker.queues["_dlq.orders"].arguments == {
        "x-dead-letter-exchange": ROUTER_EXCHANGE_NAME,
        "x-dead-letter-routing-key": "_dlq.orders",
    }
    assert all(q.durable for q in broker.queues.values())


@pytest.mark.asyncio
async def test_binds_main_queue_on_topic_and_name(broker):
    """Should bind the main queue on topic, name and DLQ name, the others on the dead-letter router."""
    config = ProcessorConfig(name="orders")

    await TopologyPlanner(FakeChannel(broker)).assert_topology(config, "orders.created")

    router = broker.bindings[ROUTER_EXCHANGE_NAME]
    assert router["orders.created"] == ["orders"]
    assert router["orders"] == ["orders"]
    assert router["_dlq.orders"] == ["orders"]
    dead_router = broker.bindings[DEAD_LETTER_ROUTER_EXCHANGE_NAME]
    assert dead_router["orders"] == ["_retry_delay.orders"]
    assert dead_router["_dlq.orders"] == ["_dlq.orders"]


@pytest.mark.asyncio
async def test_assert_topology_is_idempotent(broker):
    """Should succeed twice and leave identical state."""
    config = ProcessorConfig(name="orders", attempts=3)
    planner = TopologyPlanner(FakeChannel(broker))

    await planner.assert_topology(config, "orders.created")
    first = _snapshot(broker)
    await planner.assert_topology(config, "orders.created")

    assert _snapshot(broker) == first


@pytest.mark.asyncio
async def test_conflicting_redeclaration_raises_topology_error(broker):
    """Should wrap broker declaration failures in TopologyError."""
    await TopologyPlanner(FakeChannel(broker)).assert_topology(
        ProcessorConfig(name="orders", attempts_delay_ms=1000), "orders"
    )

    with pytest.raises(TopologyError, match="_retry_delay.orders"):
        await TopologyPlanner(FakeChannel(broker)).assert_topology(
            ProcessorConfig(name="orders", attempts_delay_ms=2000), "orders"
        )


@pytest.mark.asyncio
async def test_policy_delay_declares_retry_queue_without_ttl(broker):
    """Should delegate the delay to the policy manager."""
    ttl_manager = MagicMock(spec=TTLPolicyManager)
    ttl_manager.apply = AsyncMock(return_value=True)
    config = ProcessorConfig(name="orders", attempts_delay_ms=3000, use_policies_for_delay=True)

    await TopologyPlanner(FakeChannel(broker), ttl_manager).assert_topology(config, "orders")

    ttl_manager.apply.assert_awaited_once_with("_retry_delay.orders", 3000)
    assert "x-message-ttl" not in broker.queues["_retry_delay.orders"].arguments


@pytest.mark.asyncio
async def test_policy_delay_failure_is_fatal(broker):
    """Should raise TTLPolicyUndefinedError when the policy cannot be applied."""
    ttl_manager = MagicMock(spec=TTLPolicyManager)
    ttl_manager.apply = AsyncMock(return_value=False)
    config = ProcessorConfig(name="orders", use_policies_for_delay=True)

    with pytest.raises(TTLPolicyUndefinedError) as exc_info:
        await TopologyPlanner(FakeChannel(broker), ttl_manager).assert_topology(config, "orders")

    assert exc_info.value.queue_name == "_retry_delay.orders"
    assert "_retry_delay.orders" not in broker.queues


@pytest.mark.asyncio
async def test_policy_delay_without_manager_is_fatal(broker):
    """Should fail registration when no management capability exists."""
    config = ProcessorConfig(name="orders", use_policies_for_delay=True)

    with pytest.raises(TTLPolicyUndefinedError):
        await TopologyPlanner(FakeChannel(broker)).assert_topology(config, "orders")


@pytest.mark.asyncio
async def test_dead_letter_queue_redrives_into_main_queue(broker):
    """Should route a rejected DLQ message back to the main queue."""
    config = ProcessorConfig(name="orders")
    channel = FakeChannel(broker)
    await TopologyPlanner(channel).assert_topology(config, "orders.created")
    dead_router = await channel.get_exchange(DEAD_LETTER_ROUTER_EXCHANGE_NAME)
    await dead_router.publish(
        MagicMock(body=b"{}", headers={}, message_id="m-1", correlation_id="m-1"),
        routing_key="_dlq.orders",
    )
    parked = broker.get("_dlq.orders")

    await parked.nack(requeue=False)

    assert broker.depth("_dlq.orders") == 0
    assert broker.depth("orders") == 1
    assert broker.get("orders").message_id == "m-1"
