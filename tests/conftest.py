"""
Pytest Configuration and Shared Test Fixtures

This module provides pytest configuration and reusable fixtures for all tests.
All fixtures defined here are automatically available to all test files.
"""

import os
import sys
from unittest.mock import AsyncMock, MagicMock

import pytest

# Add project root to sys.path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))


# ============================================================================
# Pytest Configuration
# ============================================================================

# pytest-asyncio runs in auto mode (see pyproject.toml)


# ============================================================================
# Time Control Fixtures
# ============================================================================


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSleep:
    """
    Awaitable replacement for asyncio.sleep.

    Returns immediately, advances the shared clock and records every delay.
    """

    def __init__(self, clock: FakeClock):
        self._clock = clock
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        self._clock.advance(seconds)

    @property
    def total(self) -> float:
        return sum(self.calls)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_sleep(clock):
    return FakeSleep(clock)


# ============================================================================
# Environment-Based Integration Toggles
# ============================================================================


@pytest.fixture(scope="session")
def use_real_redis():
    """Check if real Redis should be used for integration tests."""
    return os.getenv("USE_REAL_REDIS", "0").lower() in ("1", "true", "yes")


# ============================================================================
# Mock Configuration Fixtures
# ============================================================================


@pytest.fixture
def settings():
    """Fresh settings built from defaults and the test environment."""
    from src.core.config.settings import Settings

    return Settings()


# ============================================================================
# In-Memory Infrastructure Fixtures
# ============================================================================


@pytest.fixture
def kv_store(clock):
    """Expiring key-value store driven by the fake clock."""
    from src.core.interfaces.key_value import InMemoryKeyValueStore

    return InMemoryKeyValueStore(clock=clock)


@pytest.fixture
def job_queues():
    """One in-memory job queue per job kind."""
    from src.core.config.constants import JobKind, job_queue_for
    from tests.test_fixtures import InMemoryMessageQueue

    return {kind: InMemoryMessageQueue(job_queue_for(kind)) for kind in JobKind}


@pytest.fixture
def reply_queues():
    """One in-memory reply queue per job kind."""
    from src.core.config.constants import JobKind, reply_queue_for
    from tests.test_fixtures import InMemoryMessageQueue

    return {kind: InMemoryMessageQueue(reply_queue_for(kind)) for kind in JobKind}


@pytest.fixture
def record_store():
    from src.infrastructure.storage import InMemoryRecordStore

    return InMemoryRecordStore()


@pytest.fixture
def fake_partner():
    """In-process partner without simulated latency."""
    from src.infrastructure.partner.fake_partner import FakePartnerApi

    return FakePartnerApi(latency_seconds=0)


@pytest.fixture
def mock_partner():
    """Partner mock returning a fixed quote; set side_effect to fail."""
    from tests.test_fixtures import PartnerResultFactory

    partner = AsyncMock()
    partner.execute = AsyncMock(return_value=PartnerResultFactory.quote())
    partner.close = AsyncMock()
    return partner


# ============================================================================
# Mock Infrastructure Fixtures
# ============================================================================


@pytest.fixture
def mock_metrics_collector():
    """Mock metrics collector for monitoring testing."""
    from src.infrastructure.monitoring.metrics_collector import MetricsCollector

    return MagicMock(spec=MetricsCollector)


@pytest.fixture
def mock_redis_client():
    """Generic mock RedisClient for testing."""
    client = AsyncMock()
    client.connect = AsyncMock()
    client.get = AsyncMock(return_value=None)
    client.set = AsyncMock(return_value=True)
    client.delete = AsyncMock(return_value=1)
    client.exists = AsyncMock(return_value=0)
    client.zadd = AsyncMock(return_value=1)
    client.zcard = AsyncMock(return_value=0)
    client.zrevrange = AsyncMock(return_value=[])
    client.ping = AsyncMock(return_value=True)
    client.health_check = AsyncMock(return_value={"status": "healthy"})
    return client
