"""Per-processor queue, exchange and binding declaration."""
import logging
from typing import Any, Dict, Optional

from aio_pika import ExchangeType
from aio_pika.abc import AbstractChannel, AbstractExchange

from src.redelivery.config import ProcessorConfig
from src.redelivery.constants import (
    DEAD_LETTER_ROUTER_EXCHANGE_NAME,
    ROUTER_EXCHANGE_NAME,
)
from src.redelivery.exceptions import TopologyError, TTLPolicyUndefinedError
from src.redelivery.management.policies import TTLPolicyManager

logger = logging.getLogger(__name__)


class TopologyPlanner:
    """Declares the retry/dead-letter cycle for a processor.

    Declares:
    - Main router and dead-letter router (direct exchanges)
    - Main queue ``name``, dead-lettering into the dead-letter router
    - Retry queue, expiring back into the main router after the retry delay
    - Dead-letter queue, re-drivable into the main flow
    - Bindings between them

    Every declaration is idempotent: asserting an existing topology with
    the same arguments leaves it unchanged.
    """

    def __init__(
        self,
        channel: AbstractChannel,
        ttl_policy_manager: Optional[TTLPolicyManager] = None,
    ):
        """Initialize topology planner.

        Args:
            channel: Channel dedicated to topology declarations
            ttl_policy_manager: Applies retry delay as an operator policy
        """
        self._channel = channel
        self._ttl_policy_manager = ttl_policy_manager

    async def assert_topology(self, config: ProcessorConfig, topic: str) -> None:
        """Declare exchanges, queues and bindings for a processor.

        Args:
            config: Processor configuration
            topic: Routing key publishers use for this processor

        Raises:
            TTLPolicyUndefinedError: If the retry delay policy cannot be applied
            TopologyError: If any declaration fails
        """
        router = await self._declare_exchange(ROUTER_EXCHANGE_NAME)
        dead_letter_router = await self._declare_exchange(DEAD_LETTER_ROUTER_EXCHANGE_NAME)

        await self._declare_queues(config)
        await self._bind_queues(config, topic, router, dead_letter_router)

        logger.info(
            f"Topology asserted for processor {config.name}",
            extra={
                "processor": config.name,
                "topic": topic,
                "retry_queue": config.retry_queue_name,
                "dead_letter_queue": config.dead_letter_queue_name,
            },
        )

    async def _declare_exchange(self, name: str) -> AbstractExchange:
        try:
            exchange = await self._channel.declare_exchange(
                name=name,
                type=ExchangeType.DIRECT,
                durable=True,
            )
            logger.debug(f"Declared exchange: {name}")
            return exchange
        except Exception as e:
            logger.error(f"Failed to declare exchange {name}: {e}")
            raise TopologyError(f"Failed to declare exchange {name}", original=e) from e

    async def _declare_queues(self, config: ProcessorConfig) -> None:
        await self._declare_queue(config.name, main_queue_arguments(config))

        if config.use_policies_for_delay:
            await self._apply_retry_delay_policy(config)
        await self._declare_queue(config.retry_queue_name, retry_queue_arguments(config))

        await self._declare_queue(
            config.dead_letter_queue_name,
            dead_letter_queue_arguments(config),
        )

    async def _apply_retry_delay_policy(self, config: ProcessorConfig) -> None:
        """Attach the retry delay to the retry queue as an operator policy.

        Raises:
            TTLPolicyUndefinedError: If no policy manager is available or it fails
        """
        applied = False
        if self._ttl_policy_manager is not None:
            applied = await self._ttl_policy_manager.apply(
                config.retry_queue_name,
                config.attempts_delay_ms,
            )
        if not applied:
            logger.error(
                f"Could not apply TTL policy for {config.retry_queue_name}",
                extra={"processor": config.name},
            )
            raise TTLPolicyUndefinedError(config.retry_queue_name)

    async def _declare_queue(self, name: str, arguments: Dict[str, Any]) -> None:
        try:
            await self._channel.declare_queue(
                name=name,
                durable=True,
                arguments=arguments,
            )
            logger.debug(f"Declared queue: {name} with args: {arguments}")
        except Exception as e:
            logger.error(f"Failed to declare queue {name}: {e}")
            raise TopologyError(f"Failed to declare queue {name}", original=e) from e

    async def _bind_queues(
        self,
        config: ProcessorConfig,
        topic: str,
        router: AbstractExchange,
        dead_letter_router: AbstractExchange,
    ) -> None:
        # Main queue is reachable by topic, by name (retry) and by DLQ name (re-drive).
        await self._bind(config.name, router, topic)
        if topic != config.name:
            await self._bind(config.name, router, config.name)
        await self._bind(config.name, router, config.dead_letter_queue_name)
        await self._bind(config.retry_queue_name, dead_letter_router, config.name)
        await self._bind(
            config.dead_letter_queue_name,
            dead_letter_router,
            config.dead_letter_queue_name,
        )

    async def _bind(self, queue_name: str, exchange: AbstractExchange, routing_key: str) -> None:
        try:
            queue = await self._channel.get_queue(queue_name, ensure=False)
            await queue.bind(exchange, routing_key=routing_key)
            logger.debug(f"Bound queue {queue_name} to {exchange.name} on {routing_key}")
        except Exception as e:
            logger.error(f"Failed to bind queue {queue_name} to {routing_key}: {e}")
            raise TopologyError(
                f"Failed to bind queue {queue_name} to {routing_key}",
                original=e,
            ) from e


def main_queue_arguments(config: ProcessorConfig) -> Dict[str, Any]:
    """Main queue rejects into the dead-letter router, keyed by processor name."""
    return {
        "x-dead-letter-exchange": DEAD_LETTER_ROUTER_EXCHANGE_NAME,
        "x-dead-letter-routing-key": config.name,
    }


def retry_queue_arguments(config: ProcessorConfig) -> Dict[str, Any]:
    """Retry queue expires back into the main router.

    Expired messages keep their routing key (the processor name), which
    the main queue is bound on. With policy-driven delay no TTL argument
    is declared.
    """
    arguments: Dict[str, Any] = {
        "x-dead-letter-exchange": ROUTER_EXCHANGE_NAME,
    }
    if not config.use_policies_for_delay:
        arguments["x-message-ttl"] = config.attempts_delay_ms
    return arguments


def dead_letter_queue_arguments(config: ProcessorConfig) -> Dict[str, Any]:
    """Dead-letter queue re-drives into the main router.

    Rejected or expired DLQ messages keep the dead-letter name as routing
    key; the main queue is bound on it as well.
    """
    return {
        "x-dead-letter-exchange": ROUTER_EXCHANGE_NAME,
        "x-dead-letter-routing-key": config.dead_letter_queue_name,
    }
