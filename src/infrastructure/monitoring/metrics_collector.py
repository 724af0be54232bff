#!/usr/bin/env python3
"""
Metrics Collector with Prometheus Integration

This module provides production-ready metrics collection with:
- HTTP request counts and latency by route
- Correlation outcomes (success, partner error, timeout, enqueue failure)
- Worker job results and processing latency
- Partner call counts and latency
- Queue depth, produce results and nacks
- Autoscaler worker count and scaling events

Architectural Decision: prometheus-client for industry-standard metrics
- Compatible with Grafana dashboards
- Efficient storage and aggregation
- Histogram buckets for latency percentiles

Author: Senior Solution Architect
Date: 2025-12-05
"""


from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)

from src.core.config.settings import get_settings
from src.core.logging.logger import get_logger

logger = get_logger(__name__)


# ============================================================================
# Metric Definitions
# ============================================================================

# HTTP metrics
REQUEST_COUNT = Counter(
    'bridge_http_requests_total',
    'Total HTTP requests',
    ['method', 'route', 'status_code']
)

REQUEST_DURATION = Histogram(
    'bridge_http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'route'],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0)
)

# Correlator metrics
CORRELATION_OUTCOMES = Counter(
    'bridge_correlation_outcomes_total',
    'Correlated request outcomes',
    ['kind', 'outcome']  # success, error, timeout, enqueue_failed
)

CORRELATION_LATENCY = Histogram(
    'bridge_correlation_latency_seconds',
    'Time from submission to reply',
    ['kind'],
    buckets=(0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 20.0, 30.0, 60.0)
)

ENQUEUE_RETRIES = Counter(
    'bridge_enqueue_retries_total',
    'Enqueue attempts that had to be retried',
    ['kind']
)

# Worker metrics
JOBS_PROCESSED = Counter(
    'bridge_jobs_processed_total',
    'Jobs handled by workers by result',
    ['kind', 'result']  # success, duplicate, replayed, requeued, failed, invalid
)

JOB_DURATION = Histogram(
    'bridge_job_duration_seconds',
    'Worker processing time per job',
    ['kind'],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0)
)

JOBS_IN_FLIGHT = Gauge(
    'bridge_jobs_in_flight',
    'Jobs currently being processed by this worker'
)

# Partner metrics
PARTNER_REQUESTS = Counter(
    'bridge_partner_requests_total',
    'Total requests to the insurance partner',
    ['kind', 'status']  # success, rejected, transient, timeout
)

PARTNER_LATENCY = Histogram(
    'bridge_partner_latency_seconds',
    'Partner response latency',
    ['kind'],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0)
)

# Queue metrics
QUEUE_PRODUCE = Counter(
    'bridge_queue_produce_total',
    'Queue produce results',
    ['queue_type', 'queue_name', 'result']
)

QUEUE_DEPTH = Gauge(
    'bridge_queue_depth',
    'Current queue depth',
    ['queue_name']
)

QUEUE_BACKPRESSURE_RETRIES = Counter(
    'bridge_queue_backpressure_retries_total',
    'Total backpressure retry attempts',
    ['queue_type']
)

QUEUE_NACKS = Counter(
    'bridge_queue_nacks_total',
    'Negative acknowledgements',
    ['queue_name', 'action']  # requeue, dead_letter
)

# Autoscaler metrics
WORKER_COUNT = Gauge(
    'bridge_autoscaler_workers',
    'Workers currently managed by the autoscaler'
)

SCALING_EVENTS = Counter(
    'bridge_autoscaler_scaling_events_total',
    'Scaling decisions applied',
    ['direction']  # up, down
)

WORKER_EXITS = Counter(
    'bridge_autoscaler_worker_exits_total',
    'Managed workers that exited without being asked to stop'
)

# Error metrics
ERRORS = Counter(
    'bridge_errors_total',
    'Total errors by type',
    ['error_type', 'stage']
)

# App info
APP_INFO = Info(
    'bridge_app',
    'Application information'
)


class MetricsCollector:
    """
    Centralized metrics collector.

    STAGE-M: Metrics collection

    Usage:
        metrics = get_metrics_collector()

        metrics.record_correlation("quote", "success", 1.2)
        metrics.record_job("booking", "requeued")

        output = metrics.get_prometheus_metrics()
    """

    def __init__(self):
        self.settings = get_settings()

        APP_INFO.info({
            'version': self.settings.app.APP_VERSION,
            'environment': self.settings.app.ENVIRONMENT,
            'app_name': self.settings.app.APP_NAME
        })

        logger.debug("Metrics collector initialized", stage="M.0")

    # =========================================================================
    # HTTP Metrics
    # =========================================================================

    def record_http_request(
        self, method: str, route: str, status_code: int, duration_seconds: float
    ) -> None:
        REQUEST_COUNT.labels(method=method, route=route, status_code=str(status_code)).inc()
        REQUEST_DURATION.labels(method=method, route=route).observe(duration_seconds)

    # =========================================================================
    # Correlator Metrics
    # =========================================================================

    def record_correlation(self, kind: str, outcome: str, duration_seconds: float | None = None) -> None:
        """Record how a correlated request ended."""
        CORRELATION_OUTCOMES.labels(kind=kind, outcome=outcome).inc()
        if duration_seconds is not None:
            CORRELATION_LATENCY.labels(kind=kind).observe(duration_seconds)

    def record_enqueue_retry(self, kind: str) -> None:
        ENQUEUE_RETRIES.labels(kind=kind).inc()

    # =========================================================================
    # Worker Metrics
    # =========================================================================

    def record_job(self, kind: str, result: str, duration_seconds: float | None = None) -> None:
        """Record a job result."""
        JOBS_PROCESSED.labels(kind=kind, result=result).inc()
        if duration_seconds is not None:
            JOB_DURATION.labels(kind=kind).observe(duration_seconds)

    def job_started(self) -> None:
        JOBS_IN_FLIGHT.inc()

    def job_finished(self) -> None:
        JOBS_IN_FLIGHT.dec()

    # =========================================================================
    # Partner Metrics
    # =========================================================================

    def record_partner_request(self, kind: str, status: str, duration_seconds: float) -> None:
        PARTNER_REQUESTS.labels(kind=kind, status=status).inc()
        PARTNER_LATENCY.labels(kind=kind).observe(duration_seconds)

    # =========================================================================
    # Queue Metrics
    # =========================================================================

    def record_queue_produce(self, queue_type: str, queue_name: str, result: str) -> None:
        QUEUE_PRODUCE.labels(queue_type=queue_type, queue_name=queue_name, result=result).inc()

    def record_queue_depth(self, queue_name: str, depth: int) -> None:
        QUEUE_DEPTH.labels(queue_name=queue_name).set(depth)

    def record_queue_backpressure_retry(self, queue_type: str) -> None:
        QUEUE_BACKPRESSURE_RETRIES.labels(queue_type=queue_type).inc()

    def record_queue_nack(self, queue_name: str, requeue: bool) -> None:
        action = "requeue" if requeue else "dead_letter"
        QUEUE_NACKS.labels(queue_name=queue_name, action=action).inc()

    # =========================================================================
    # Autoscaler Metrics
    # =========================================================================

    def set_worker_count(self, count: int) -> None:
        WORKER_COUNT.set(count)

    def record_scaling_event(self, direction: str, count: int = 1) -> None:
        SCALING_EVENTS.labels(direction=direction).inc(count)

    def record_worker_exit(self) -> None:
        WORKER_EXITS.inc()

    # =========================================================================
    # Error Metrics
    # =========================================================================

    def record_error(self, error_type: str, stage: str) -> None:
        ERRORS.labels(error_type=error_type, stage=stage).inc()

    # =========================================================================
    # Export
    # =========================================================================

    def get_prometheus_metrics(self) -> bytes:
        """
        Get Prometheus metrics output.

        Returns:
            bytes: Prometheus text format metrics
        """
        return generate_latest(REGISTRY)

    def get_content_type(self) -> str:
        return CONTENT_TYPE_LATEST


# Global metrics collector
_metrics: MetricsCollector | None = None


def get_metrics_collector() -> MetricsCollector:
    """Get global metrics collector."""
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics
