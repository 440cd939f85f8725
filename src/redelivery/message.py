"""Inbound delivery wrapper handed to the processing pipeline."""
import enum
import logging
from typing import Any, Dict, Optional

import aio_pika
from aio_pika.abc import AbstractChannel, AbstractIncomingMessage

logger = logging.getLogger(__name__)


class ProcessingState(str, enum.Enum):
    """Lifecycle of one delivery inside the pipeline."""

    RECEIVED = "received"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    RETRY_PENDING = "retry_pending"
    DEAD_LETTERED = "dead_lettered"
    FATAL_ESCALATED = "fatal_escalated"


class InboundMessage:
    """One broker delivery plus the channel it arrived on.

    Owned by exactly one pipeline run. Once that run has issued an ack or
    a nack the instance is discarded.
    """

    def __init__(
        self,
        delivery: AbstractIncomingMessage,
        channel: AbstractChannel,
        processor_name: str,
    ):
        """Initialize inbound message.

        Args:
            delivery: Raw aio-pika delivery
            channel: Channel the delivery arrived on
            processor_name: Name of the processor consuming it
        """
        self._delivery = delivery
        self._channel = channel
        self.processor_name = processor_name
        self.state = ProcessingState.RECEIVED

    @property
    def body(self) -> bytes:
        return self._delivery.body

    @property
    def headers(self) -> Dict[str, Any]:
        return dict(self._delivery.headers or {})

    @property
    def message_id(self) -> Optional[str]:
        return self._delivery.message_id

    @property
    def correlation_id(self) -> Optional[str]:
        return self._delivery.correlation_id

    @property
    def delivery_tag(self) -> Optional[int]:
        return self._delivery.delivery_tag

    @property
    def exchange(self) -> Optional[str]:
        return self._delivery.exchange

    @property
    def routing_key(self) -> Optional[str]:
        return self._delivery.routing_key

    @property
    def channel(self) -> AbstractChannel:
        return self._channel

    def body_text(self) -> str:
        """Body decoded for logging; undecodable bytes are replaced."""
        return self.body.decode("utf-8", errors="replace")

    async def ack(self) -> None:
        """Acknowledge the delivery."""
        await self._delivery.ack()

    async def nack(self, requeue: bool = False) -> None:
        """Negatively acknowledge the delivery.

        Args:
            requeue: Put the message back on its queue instead of dead-lettering it
        """
        await self._delivery.nack(requeue=requeue)

    async def republish(self, exchange_name: str, routing_key: str) -> None:
        """Publish the original body and headers to another route.

        Args:
            exchange_name: Target exchange
            routing_key: Target routing key
        """
        exchange = await self._channel.get_exchange(exchange_name, ensure=False)
        await exchange.publish(
            aio_pika.Message(
                body=self.body,
                headers=self.headers,
                message_id=self.message_id,
                correlation_id=self.correlation_id,
                content_type="application/json",
                delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            ),
            routing_key=routing_key,
        )

    def __repr__(self) -> str:
        return (
            f"InboundMessage(processor={self.processor_name}, "
            f"message_id={self.message_id}, delivery_tag={self.delivery_tag})"
        )
