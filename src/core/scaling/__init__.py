"""
Scaling Module - Queue-depth driven worker capacity

COMPONENTS:
===========
- QueueAutoscaler: periodic backlog check with hysteresis
- WorkerSupervisor: start/stop/on_exit over processes, compose or tasks
"""

from .queue_autoscaler import (
    AutoscalerConfig,
    AutoscalerState,
    QueueAutoscaler,
    ScaleDirection,
    ScalingDecision,
    build_queue_autoscaler,
    decide_scaling,
)
from .worker_supervisor import (
    ComposeWorkerSupervisor,
    InProcessWorkerSupervisor,
    ProcessWorkerSupervisor,
    WorkerHandle,
    WorkerSupervisor,
    create_worker_supervisor,
)

__all__ = [
    "AutoscalerConfig",
    "AutoscalerState",
    "QueueAutoscaler",
    "ScaleDirection",
    "ScalingDecision",
    "build_queue_autoscaler",
    "decide_scaling",
    "ComposeWorkerSupervisor",
    "InProcessWorkerSupervisor",
    "ProcessWorkerSupervisor",
    "WorkerHandle",
    "WorkerSupervisor",
    "create_worker_supervisor",
]
