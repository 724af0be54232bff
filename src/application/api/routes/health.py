"""
Health Check Routes - Educational Documentation
================================================

KUBERNETES HEALTH PROBES:
--------------------------
1. LIVENESS (/health):
   - Question: "Is the process running?"
   - If fails: the container is restarted
   - Never touches Redis or the queues

2. READINESS (/health/ready):
   - Question: "Can this instance accept insurance requests?"
   - If fails: the pod is removed from the load balancer, not restarted
   - Checks Redis (pending markers and replies live there) and every job
     queue (requests are enqueued there)

Scenario: Redis is down
- Liveness: PASS (the API process answers)
- Readiness: FAIL with 503, so no new quote requests are accepted
- When Redis recovers: readiness passes and traffic resumes

METRICS (/metrics):
-------------------
Prometheus text exposition of everything MetricsCollector records.
"""

from fastapi import APIRouter, HTTPException, Response
from pydantic import BaseModel

from src.infrastructure.monitoring.health_checker import get_health_checker
from src.infrastructure.monitoring.metrics_collector import get_metrics_collector

# ============================================================================
# ROUTER SETUP
# ============================================================================

router = APIRouter(prefix="/health", tags=["Health"])
metrics_router = APIRouter(tags=["Monitoring"])


class LivenessResponse(BaseModel):
    status: str  # "alive"
    timestamp: str  # ISO 8601
    version: str


# ============================================================================
# HEALTH CHECK ENDPOINTS
# ============================================================================


@router.get("", response_model=LivenessResponse)
async def liveness_probe():
    """
    Liveness probe for load balancers and Kubernetes.

    HTTP Status Codes:
        200: Process is alive
    """
    return await get_health_checker().liveness_check()


@router.get("/ready")
async def readiness_probe():
    """
    Readiness probe: Redis ping plus a depth query on every job queue.

    Raises:
        HTTPException: 503 with the full report if any component failed
    """
    result = await get_health_checker().readiness_check()

    if result["status"] != "ready":
        raise HTTPException(status_code=503, detail=result)

    return result


@metrics_router.get("/metrics")
async def prometheus_metrics():
    collector = get_metrics_collector()
    return Response(content=collector.get_prometheus_metrics(), media_type=collector.get_content_type())
