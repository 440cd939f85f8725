"""Broker connection management."""
import asyncio
import logging
from typing import List, Optional

import aio_pika
import tenacity
from aio_pika.abc import AbstractChannel, AbstractRobustConnection

from src.redelivery.config import ConnectionConfig
from src.redelivery.exceptions import ConnectionError, ConnectionNotEstablishedError

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Owns the single broker connection of a Redelivery instance.

    The connection is multiplexed into channels: every consumer worker,
    the publisher and the topology planner each get their own channel
    from ``open_channel()``. Channels are never shared between call sites.
    """

    def __init__(self, config: ConnectionConfig):
        """Initialize connection manager.

        Args:
            config: Connection configuration
        """
        self._config = config
        self._connection: Optional[AbstractRobustConnection] = None
        self._channels: List[AbstractChannel] = []
        self._is_connected = False

    async def connect(self) -> None:
        """Establish the connection, retrying with a fixed delay.

        Raises:
            ConnectionError: If every attempt fails
        """
        if self._is_connected:
            logger.debug("Already connected to broker")
            return

        max_attempts = self._config.max_reconnect_attempts
        delay_seconds = self._config.reconnect_delay_ms / 1000

        retrying = tenacity.AsyncRetrying(
            stop=tenacity.stop_after_attempt(max_attempts),
            wait=tenacity.wait_fixed(delay_seconds),
            retry=tenacity.retry_if_exception_type(Exception),
            before_sleep=lambda rs: logger.warning(
                f"Failed to connect to broker (attempt {rs.attempt_number}/{max_attempts}), "
                f"retrying in {delay_seconds:.2f}s",
                extra={
                    "attempt": rs.attempt_number,
                    "error": str(rs.outcome.exception()) if rs.outcome else None,
                },
            ),
            reraise=False,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    logger.info(
                        f"Connection attempt {attempt.retry_state.attempt_number}/{max_attempts}"
                    )
                    self._connection = await aio_pika.connect_robust(self._config.url)
        except tenacity.RetryError as e:
            last_error = e.last_attempt.exception()
            logger.error(
                f"Failed to connect to broker after {max_attempts} attempts: {last_error}"
            )
            raise ConnectionError(
                f"Exceeded {max_attempts} connection attempts",
                attempts=max_attempts,
                original=last_error,
            ) from last_error

        self._is_connected = True
        logger.info("Connected to broker")

    async def open_channel(self, prefetch_count: Optional[int] = None) -> AbstractChannel:
        """Open a new channel on the shared connection.

        Args:
            prefetch_count: QoS prefetch to set on the channel (None to skip)

        Returns:
            Fresh channel owned by the caller

        Raises:
            ConnectionNotEstablishedError: If connect() has not succeeded
        """
        connection = self.connection
        channel = await connection.channel()
        if prefetch_count is not None:
            await channel.set_qos(prefetch_count=prefetch_count)
        self._channels.append(channel)
        return channel

    async def close_channel(self, channel: AbstractChannel) -> None:
        """Close a channel previously opened with open_channel()."""
        if channel in self._channels:
            self._channels.remove(channel)
        if not channel.is_closed:
            await channel.close()

    async def close(self) -> None:
        """Close all channels, then the connection."""
        if not self._is_connected:
            logger.debug("Not connected, nothing to close")
            return

        logger.info("Closing broker connection...")
        channels, self._channels = self._channels, []
        results = await asyncio.gather(
            *(ch.close() for ch in channels if not ch.is_closed),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, Exception):
                logger.warning(f"Error closing channel: {result}")

        if self._connection is not None and not self._connection.is_closed:
            await self._connection.close()

        self._connection = None
        self._is_connected = False
        logger.info("Broker connection closed")

    @property
    def connection(self) -> AbstractRobustConnection:
        """Get the underlying connection.

        Raises:
            ConnectionNotEstablishedError: If not connected
        """
        if not self._is_connected or self._connection is None:
            raise ConnectionNotEstablishedError(
                "Connection not established. Call connect() first."
            )
        return self._connection

    @property
    def prefetch_count(self) -> int:
        return self._config.prefetch_count

    @property
    def is_connected(self) -> bool:
        """Check if connection is active."""
        return (
            self._is_connected
            and self._connection is not None
            and not self._connection.is_closed
        )

    def __repr__(self) -> str:
        return f"ConnectionManager(connected={self._is_connected})"
