#!/usr/bin/env python3
"""
Health Checker Module

Liveness and readiness for the HTTP process:
- Liveness: the process answers
- Readiness: Redis answers a ping and every job queue answers a depth query

Author: Senior Solution Architect
Date: 2025-12-05
"""

import asyncio
from collections.abc import Mapping
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from src.core.config.settings import get_settings
from src.core.exceptions import CacheError, QueueError
from src.core.logging.logger import get_logger

logger = get_logger(__name__)

CHECK_TIMEOUT_SECONDS = 2.0


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class HealthStatus(str, Enum):
    """Health status enumeration."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class HealthChecker:
    """
    Health checker for the bridge's dependencies.

    STAGE-H: Health check orchestration

    Usage:
        checker = HealthChecker()
        await checker.initialize(redis_client, queues)

        await checker.liveness_check()
        await checker.readiness_check()
    """

    def __init__(self):
        self.settings = get_settings()
        self._redis = None
        self._queues: dict[str, Any] = {}

        logger.info("Health checker initialized", stage="H.0")

    async def initialize(self, redis_client=None, queues: Mapping[Any, Any] | None = None) -> None:
        """
        Args:
            redis_client: Key-value store to ping
            queues: Job queues to probe (any mapping of label -> MessageQueue)
        """
        self._redis = redis_client
        self._queues = {getattr(q, "name", str(label)): q for label, q in (queues or {}).items()}

        logger.info("Health checker dependencies set", stage="H.0.1", queues=list(self._queues))

    async def _check_redis(self) -> dict[str, Any]:
        if self._redis is None:
            return {"status": HealthStatus.UNHEALTHY.value, "error": "Redis client not initialized"}
        try:
            ok = await asyncio.wait_for(self._redis.ping(), timeout=CHECK_TIMEOUT_SECONDS)
        except (CacheError, asyncio.TimeoutError) as e:
            return {"status": HealthStatus.UNHEALTHY.value, "error": str(e) or type(e).__name__}
        return {"status": (HealthStatus.HEALTHY if ok else HealthStatus.UNHEALTHY).value}

    async def _check_queue(self, queue) -> dict[str, Any]:
        try:
            depth = await asyncio.wait_for(queue.depth(), timeout=CHECK_TIMEOUT_SECONDS)
        except (QueueError, asyncio.TimeoutError) as e:
            return {"status": HealthStatus.UNHEALTHY.value, "error": str(e) or type(e).__name__}
        return {"status": HealthStatus.HEALTHY.value, "depth": depth}

    async def liveness_check(self) -> dict[str, Any]:
        """Kubernetes liveness probe."""
        return {
            "status": "alive",
            "timestamp": _now(),
            "version": self.settings.app.APP_VERSION,
        }

    async def readiness_check(self) -> dict[str, Any]:
        """
        Kubernetes readiness probe.

        STAGE-H.2: Redis ping + queue reachability
        """
        components = {"redis": await self._check_redis()}
        for name, queue in self._queues.items():
            components[f"queue:{name}"] = await self._check_queue(queue)

        failed = [name for name, result in components.items() if result["status"] != HealthStatus.HEALTHY.value]
        report = {
            "status": "not_ready" if failed else "ready",
            "timestamp": _now(),
            "version": self.settings.app.APP_VERSION,
            "environment": self.settings.app.ENVIRONMENT,
            "components": components,
        }
        if failed:
            report["failed_components"] = failed
            logger.warning("Readiness check failed", stage="H.2", failed=failed)
        return report


# Global health checker
_health_checker: HealthChecker | None = None


def get_health_checker() -> HealthChecker:
    """Get global health checker."""
    global _health_checker
    if _health_checker is None:
        _health_checker = HealthChecker()
    return _health_checker
