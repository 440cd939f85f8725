"""Root pytest configuration."""
import os

import pytest

from src.redelivery.metrics import reset_metrics
from src.redelivery.testing import InMemoryBroker


def pytest_configure(config):
    """Configure pytest to handle integration test markers."""
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests (requires RabbitMQ)"
    )


def pytest_runtest_setup(item):
    """Skip integration tests if not enabled."""
    if item.get_closest_marker("integration"):
        if not os.getenv("RUN_INTEGRATION_TESTS"):
            pytest.skip(
                "Integration tests skipped. Set RUN_INTEGRATION_TESTS=1 to run."
            )


# Import fixtures from fixtures module to make them available globally
pytest_plugins = [
    "tests.fixtures.rabbitmq",
]


@pytest.fixture(autouse=True)
def clean_metrics():
    """Start every test with empty global metrics."""
    reset_metrics()
    yield
    reset_metrics()


@pytest.fixture
def broker() -> InMemoryBroker:
    """Provide an empty in-memory broker."""
    return InMemoryBroker()

