"""Outbound publishing: envelope construction, serialization, failure logging."""
import asyncio
import logging
import traceback
from abc import ABC, abstractmethod
from typing import Any, Optional

import aio_pika
from aio_pika.abc import AbstractChannel
from pydantic import ValidationError

from src.redelivery.constants import ROUTER_EXCHANGE_NAME
from src.redelivery.exceptions import MessagingError, PublishError, SerializationError
from src.redelivery.metrics import MessagingMetrics, get_metrics
from src.redelivery.schemas import Envelope
from src.redelivery.serialization import EnvelopeSerializer

logger = logging.getLogger(__name__)


class IEnvelopePublisher(ABC):
    """Publishes payloads wrapped in envelopes."""

    @abstractmethod
    async def publish(
        self,
        topic: str,
        payload: Any,
        correlation_id: Optional[str] = None,
    ) -> Envelope:
        """Publish a payload.

        Args:
            topic: Routing key on the main router
            payload: JSON object (dict) or pydantic model
            correlation_id: Correlation id (defaults to the message id)

        Returns:
            The envelope that was published
        """
        pass


class EnvelopePublisher(IEnvelopePublisher):
    """Publishes envelopes to the main router on a dedicated channel.

    Publishes on one channel are serialized with a lock; the channel is
    never used by any other call site.
    """

    def __init__(
        self,
        channel: AbstractChannel,
        serializer: Optional[EnvelopeSerializer] = None,
        metrics: Optional[MessagingMetrics] = None,
    ):
        """Initialize envelope publisher.

        Args:
            channel: Channel owned by this publisher
            serializer: Envelope serializer
            metrics: Metrics sink
        """
        self._channel = channel
        self._serializer = serializer or EnvelopeSerializer()
        self._metrics = metrics or get_metrics()
        self._lock = asyncio.Lock()

    async def publish(
        self,
        topic: str,
        payload: Any,
        correlation_id: Optional[str] = None,
    ) -> Envelope:
        """Publish a payload to the main router.

        Raises:
            SerializationError: If the payload is not a JSON object
            PublishError: If the broker publish fails
        """
        try:
            envelope = Envelope.create(payload, correlation_id=correlation_id)
        except ValidationError as e:
            raise SerializationError("Payload must be a JSON object", original=e) from e
        body = self._serializer.serialize(envelope)

        message = aio_pika.Message(
            body=body,
            message_id=envelope.meta.id,
            correlation_id=envelope.meta.correlation_id,
            content_type="application/json",
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
        )

        try:
            async with self._lock:
                exchange = await self._channel.get_exchange(ROUTER_EXCHANGE_NAME, ensure=False)
                await exchange.publish(message, routing_key=topic)
        except Exception as e:
            raise PublishError(f"Failed to publish to {topic}", original=e) from e

        self._metrics.record_message_published(topic)
        logger.debug(
            f"Published message to {topic}",
            extra={"message_id": envelope.meta.id, "topic": topic},
        )
        return envelope


class FailureLoggingPublisher(IEnvelopePublisher):
    """Logs failed publishes with payload and stack, then rethrows."""

    def __init__(self, inner: IEnvelopePublisher):
        self._inner = inner

    async def publish(
        self,
        topic: str,
        payload: Any,
        correlation_id: Optional[str] = None,
    ) -> Envelope:
        try:
            return await self._inner.publish(topic, payload, correlation_id)
        except MessagingError as e:
            logger.error(
                "Message publishing failed",
                extra={
                    "topic": topic,
                    "payload": _describe_payload(payload),
                    "error": str(e),
                    "stack": traceback.format_exc(),
                },
            )
            raise


def _describe_payload(payload: Any) -> Any:
    if hasattr(payload, "model_dump"):
        return payload.model_dump(mode="json")
    return payload if isinstance(payload, (dict, list, str, int, float, bool)) else repr(payload)


async def create_publisher(
    channel: AbstractChannel,
    metrics: Optional[MessagingMetrics] = None,
) -> IEnvelopePublisher:
    """Declare the main router and build the standard publisher chain."""
    await channel.declare_exchange(
        name=ROUTER_EXCHANGE_NAME,
        type=aio_pika.ExchangeType.DIRECT,
        durable=True,
    )
    return FailureLoggingPublisher(EnvelopePublisher(channel, metrics=metrics))
