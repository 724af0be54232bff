"""
Unit Tests for Monitoring Infrastructure

Tests health checking and metrics collection functionality.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest
from prometheus_client import REGISTRY

from src.core.exceptions import CacheConnectionError
from src.infrastructure.monitoring.health_checker import HealthChecker, get_health_checker
from src.infrastructure.monitoring.metrics_collector import MetricsCollector, get_metrics_collector
from tests.test_fixtures import FailingQueue, InMemoryMessageQueue


def sample(name, **labels):
    return REGISTRY.get_sample_value(name, labels) or 0.0


@pytest.mark.unit
class TestHealthChecker:
    """Test suite for HealthChecker."""

    @pytest.fixture
    def health_checker(self):
        """Create HealthChecker for testing."""
        return HealthChecker()

    @pytest.mark.asyncio
    async def test_liveness(self, health_checker):
        """Test that liveness only needs the process."""
        result = await health_checker.liveness_check()

        assert result["status"] == "alive"
        assert result["version"] == health_checker.settings.app.APP_VERSION
        assert "timestamp" in result

    @pytest.mark.asyncio
    async def test_ready_when_redis_and_queues_answer(self, health_checker, mock_redis_client):
        """Test readiness with every dependency reachable."""
        queue = InMemoryMessageQueue("quote-requested")
        queue.set_depth(3)
        await health_checker.initialize(mock_redis_client, {"quote": queue})

        result = await health_checker.readiness_check()

        assert result["status"] == "ready"
        assert result["components"]["redis"] == {"status": "healthy"}
        assert result["components"]["queue:quote-requested"] == {"status": "healthy", "depth": 3}
        assert "failed_components" not in result

    @pytest.mark.asyncio
    async def test_not_ready_without_redis_client(self, health_checker):
        """Test that an uninitialized checker is not ready."""
        result = await health_checker.readiness_check()

        assert result["status"] == "not_ready"
        assert result["failed_components"] == ["redis"]

    @pytest.mark.asyncio
    async def test_not_ready_when_redis_down(self, health_checker, mock_redis_client):
        """Test that a failing ping fails readiness."""
        mock_redis_client.ping.side_effect = CacheConnectionError("Connection refused")
        await health_checker.initialize(mock_redis_client)

        result = await health_checker.readiness_check()

        assert result["status"] == "not_ready"
        assert result["components"]["redis"]["status"] == "unhealthy"
        assert "Connection refused" in result["components"]["redis"]["error"]

    @pytest.mark.asyncio
    async def test_not_ready_when_ping_hangs(self, health_checker, mock_redis_client, monkeypatch):
        """Test that a ping that never answers times out."""
        monkeypatch.setattr("src.infrastructure.monitoring.health_checker.CHECK_TIMEOUT_SECONDS", 0.01)

        async def hang():
            await asyncio.sleep(10)

        mock_redis_client.ping = AsyncMock(side_effect=hang)
        await health_checker.initialize(mock_redis_client)

        result = await health_checker.readiness_check()

        assert result["components"]["redis"] == {"status": "unhealthy", "error": "TimeoutError"}

    @pytest.mark.asyncio
    async def test_not_ready_when_queue_unreachable(self, health_checker, mock_redis_client):
        """Test that an unreachable job queue fails readiness."""
        await health_checker.initialize(
            mock_redis_client,
            {"quote": InMemoryMessageQueue("quote-requested"), "booking": FailingQueue("booking-requested")},
        )

        result = await health_checker.readiness_check()

        assert result["status"] == "not_ready"
        assert result["failed_components"] == ["queue:booking-requested"]

    def test_global_checker_is_singleton(self):
        """Test that get_health_checker returns one instance."""
        assert get_health_checker() is get_health_checker()


@pytest.mark.unit
class TestMetricsCollector:
    """Test suite for MetricsCollector."""

    @pytest.fixture
    def metrics(self):
        return MetricsCollector()

    def test_record_correlation(self, metrics):
        """Test that correlation outcomes and latency are recorded."""
        labels = {"kind": "quote", "outcome": "timeout"}
        before = sample("bridge_correlation_outcomes_total", **labels)
        observed_before = sample("bridge_correlation_latency_seconds_count", kind="quote")

        metrics.record_correlation("quote", "timeout", 60.0)

        assert sample("bridge_correlation_outcomes_total", **labels) == before + 1
        assert sample("bridge_correlation_latency_seconds_count", kind="quote") == observed_before + 1

    def test_record_job_without_duration(self, metrics):
        """Test that a result without timing only counts."""
        labels = {"kind": "booking", "result": "duplicate"}
        before = sample("bridge_jobs_processed_total", **labels)
        observed_before = sample("bridge_job_duration_seconds_count", kind="booking")

        metrics.record_job("booking", "duplicate")

        assert sample("bridge_jobs_processed_total", **labels) == before + 1
        assert sample("bridge_job_duration_seconds_count", kind="booking") == observed_before

    def test_jobs_in_flight_gauge(self, metrics):
        """Test that started and finished jobs balance out."""
        before = sample("bridge_jobs_in_flight")

        metrics.job_started()
        assert sample("bridge_jobs_in_flight") == before + 1
        metrics.job_finished()

        assert sample("bridge_jobs_in_flight") == before

    def test_queue_nack_actions(self, metrics):
        """Test that requeues and dead letters are counted separately."""
        requeue_before = sample("bridge_queue_nacks_total", queue_name="quote-requested", action="requeue")
        dead_before = sample("bridge_queue_nacks_total", queue_name="quote-requested", action="dead_letter")

        metrics.record_queue_nack("quote-requested", True)
        metrics.record_queue_nack("quote-requested", False)

        assert sample("bridge_queue_nacks_total", queue_name="quote-requested", action="requeue") == requeue_before + 1
        assert sample("bridge_queue_nacks_total", queue_name="quote-requested", action="dead_letter") == dead_before + 1

    def test_autoscaler_metrics(self, metrics):
        """Test worker count, scaling events and unexpected exits."""
        up_before = sample("bridge_autoscaler_scaling_events_total", direction="up")
        exits_before = sample("bridge_autoscaler_worker_exits_total")

        metrics.set_worker_count(4)
        metrics.record_scaling_event("up", 3)
        metrics.record_worker_exit()

        assert sample("bridge_autoscaler_workers") == 4
        assert sample("bridge_autoscaler_scaling_events_total", direction="up") == up_before + 3
        assert sample("bridge_autoscaler_worker_exits_total") == exits_before + 1

    def test_queue_depth_gauge(self, metrics):
        """Test that the last reported depth wins."""
        metrics.record_queue_depth("booking-requested", 12)
        metrics.record_queue_depth("booking-requested", 7)

        assert sample("bridge_queue_depth", queue_name="booking-requested") == 7

    def test_prometheus_export(self, metrics):
        """Test that the exposition output contains bridge metrics."""
        metrics.record_http_request("POST", "/api/quotes", 200, 0.4)

        output = metrics.get_prometheus_metrics()

        assert isinstance(output, bytes)
        assert b"bridge_http_requests_total" in output
        assert metrics.get_content_type().startswith("text/plain")

    def test_global_collector_is_singleton(self):
        """Test that get_metrics_collector returns one instance."""
        assert get_metrics_collector() is get_metrics_collector()
