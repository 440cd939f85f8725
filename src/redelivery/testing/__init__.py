"""Test doubles for the broker transport."""

from src.redelivery.testing.mocks import (
    FakeChannel,
    FakeConnection,
    FakeExchange,
    FakeIncomingMessage,
    FakeQueue,
    InMemoryBroker,
    NotFound,
    PreconditionFailed,
)

__all__ = [
    "FakeChannel",
    "FakeConnection",
    "FakeExchange",
    "FakeIncomingMessage",
    "FakeQueue",
    "InMemoryBroker",
    "NotFound",
    "PreconditionFailed",
]
