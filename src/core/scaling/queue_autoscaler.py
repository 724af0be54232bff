"""
Queue Depth Autoscaler - Worker capacity follows job backlog

Architecture:
    QueueAutoscaler (Public API, state machine)
        ├── DepthMonitor (sum of depth across monitored queues)
        ├── decide_scaling() (pure hysteresis rule)
        ├── WorkerPool (handles in start order, LIFO scale-down)
        └── DistributedLock (optional leader election)

States:
    STOPPED --start()--> RUNNING --stop()--> STOPPED
    RUNNING --queue error during a tick--> RECONNECTING --delay--> RUNNING

Scaling rule (defaults up=10, down=2, min=1, max=5):
    total > up   and current < max: start min(max - current, ceil(total / up))
    total < down and current > min: stop  min(current - min, ceil((down - total) / down))
    otherwise: no action (hysteresis band)

Author: System Architect
Date: 2025-12-13
"""

import asyncio
import math
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum

from src.core.config.constants import AUTOSCALER_LEADER_LOCK_NAME, Stage
from src.core.exceptions import CacheError, QueueError, SupervisorError
from src.core.interfaces.message_queue import MessageQueue
from src.core.logging.logger import get_logger
from src.core.resilience.distributed_lock import DistributedLock
from src.core.scaling.worker_supervisor import WorkerHandle, WorkerSupervisor

logger = get_logger(__name__)

Sleep = Callable[[float], Awaitable[None]]


# =============================================================================
# CONFIGURATION & DECISION
# =============================================================================


@dataclass
class AutoscalerConfig:
    min_workers: int = 1
    max_workers: int = 5
    scale_up_threshold: int = 10
    scale_down_threshold: int = 2
    check_interval_ms: int = 10000
    reconnect_delay_seconds: float = 5.0
    monitored_queues: list[str] = field(default_factory=lambda: ["quote-requested", "booking-requested"])
    leader_lock_enabled: bool = False
    leader_lock_ttl_seconds: int = 30

    def __post_init__(self):
        if self.min_workers < 0 or self.min_workers > self.max_workers:
            raise ValueError("Require 0 <= min_workers <= max_workers")
        if self.scale_up_threshold <= 0 or self.scale_down_threshold <= 0:
            raise ValueError("Scaling thresholds must be positive")

    @classmethod
    def from_settings(cls, settings) -> "AutoscalerConfig":
        section = settings.autoscaler
        return cls(
            min_workers=section.MIN_WORKERS,
            max_workers=section.MAX_WORKERS,
            scale_up_threshold=section.SCALE_UP_THRESHOLD,
            scale_down_threshold=section.SCALE_DOWN_THRESHOLD,
            check_interval_ms=section.CHECK_INTERVAL_MS,
            reconnect_delay_seconds=section.AUTOSCALER_RECONNECT_DELAY_SECONDS,
            monitored_queues=list(section.MONITORED_QUEUES),
            leader_lock_enabled=section.AUTOSCALER_LEADER_LOCK_ENABLED,
            leader_lock_ttl_seconds=section.AUTOSCALER_LEADER_LOCK_TTL_SECONDS,
        )


class ScaleDirection(str, Enum):
    UP = "up"
    DOWN = "down"
    NONE = "none"


@dataclass(frozen=True)
class ScalingDecision:
    direction: ScaleDirection
    count: int = 0


def decide_scaling(total_messages: int, current_workers: int, config: AutoscalerConfig) -> ScalingDecision:
    """
    Apply the hysteresis rule.

    Example:
        >>> decide_scaling(25, 1, AutoscalerConfig())
        ScalingDecision(direction=<ScaleDirection.UP: 'up'>, count=3)
        >>> decide_scaling(5, 3, AutoscalerConfig())
        ScalingDecision(direction=<ScaleDirection.NONE: 'none'>, count=0)
    """
    if total_messages > config.scale_up_threshold and current_workers < config.max_workers:
        count = min(
            config.max_workers - current_workers,
            math.ceil(total_messages / config.scale_up_threshold),
        )
        return ScalingDecision(ScaleDirection.UP, count)

    if total_messages < config.scale_down_threshold and current_workers > config.min_workers:
        count = min(
            current_workers - config.min_workers,
            math.ceil((config.scale_down_threshold - total_messages) / config.scale_down_threshold),
        )
        return ScalingDecision(ScaleDirection.DOWN, count)

    return ScalingDecision(ScaleDirection.NONE)


# =============================================================================
# LAYER 1: DEPTH MONITOR
# =============================================================================


class DepthMonitor:
    """Reads the backlog of every monitored queue."""

    def __init__(self, queues: Sequence[MessageQueue], metrics=None):
        self._queues = list(queues)
        self._metrics = metrics

    @property
    def queues(self) -> list[MessageQueue]:
        return self._queues

    async def connect(self) -> None:
        for queue in self._queues:
            await queue.initialize()

    async def disconnect(self) -> None:
        for queue in self._queues:
            try:
                await queue.close()
            except QueueError as e:
                logger.warning("Error closing monitored queue", queue=queue.name, error=str(e))

    async def total_depth(self) -> int:
        """
        Raises:
            QueueError: If any queue cannot be measured
        """
        total = 0
        for queue in self._queues:
            depth = await queue.depth()
            total += depth
            if self._metrics is not None:
                self._metrics.record_queue_depth(queue.name, depth)
            logger.debug("Queue depth", stage=Stage.SCALE_TICK.value, queue=queue.name, depth=depth)
        return total


# =============================================================================
# LAYER 2: WORKER POOL
# =============================================================================


class WorkerPool:
    """
    Tracks the workers this autoscaler started, oldest first.

    A handle is removed from the pool before it is stopped, so the supervisor's
    exit notification for a deliberate stop finds nothing to restart.
    """

    def __init__(self, supervisor: WorkerSupervisor, config: AutoscalerConfig, metrics=None):
        self._supervisor = supervisor
        self._config = config
        self._metrics = metrics
        self._handles: list[WorkerHandle] = []
        self._exit_listener: Callable[[], None] | None = None

    @property
    def count(self) -> int:
        return len(self._handles)

    @property
    def handles(self) -> list[WorkerHandle]:
        return list(self._handles)

    def set_exit_listener(self, listener: Callable[[], None]) -> None:
        self._exit_listener = listener

    def _publish_count(self) -> None:
        if self._metrics is not None:
            self._metrics.set_worker_count(len(self._handles))

    async def start_workers(self, count: int) -> int:
        """Start up to ``count`` workers, never exceeding max_workers."""
        started = 0
        for _ in range(count):
            if len(self._handles) >= self._config.max_workers:
                break
            try:
                handle = await self._supervisor.start()
            except SupervisorError as e:
                logger.error("Failed to start worker", stage=Stage.SCALE_UP.value, error=e.message)
                break
            self._handles.append(handle)
            self._supervisor.on_exit(handle, self._on_exit)
            started += 1
        self._publish_count()
        return started

    async def stop_workers(self, count: int, floor: int | None = None) -> int:
        """
        Stop up to ``count`` workers, most recently started first.

        A worker the supervisor failed to stop may still be running, so it
        stays tracked and does not count as stopped.
        """
        floor = self._config.min_workers if floor is None else floor
        stopped = 0
        still_running: list[WorkerHandle] = []
        while stopped < count and len(self._handles) > floor:
            handle = self._handles.pop()
            try:
                await self._supervisor.stop(handle)
            except SupervisorError as e:
                logger.error(
                    "Failed to stop worker, keeping it tracked",
                    stage=Stage.SCALE_DOWN.value,
                    worker=handle.id,
                    error=e.message,
                )
                still_running.append(handle)
                continue
            stopped += 1
        self._handles.extend(reversed(still_running))
        self._publish_count()
        return stopped

    async def stop_all(self) -> int:
        return await self.stop_workers(len(self._handles), floor=0)

    async def ensure_minimum(self) -> int:
        missing = self._config.min_workers - len(self._handles)
        if missing <= 0:
            return 0
        logger.info("Starting workers to reach minimum", stage=Stage.SCALE_UP.value, missing=missing)
        return await self.start_workers(missing)

    def _on_exit(self, handle: WorkerHandle, exit_code: int | None) -> None:
        if handle not in self._handles:
            return
        self._handles.remove(handle)
        self._publish_count()
        if self._metrics is not None:
            self._metrics.record_worker_exit()
        logger.warning(
            "Worker exited unexpectedly",
            stage=Stage.SCALE_EXIT.value,
            worker=handle.id,
            exit_code=exit_code,
            remaining=len(self._handles),
        )
        if self._exit_listener is not None:
            self._exit_listener()


# =============================================================================
# LAYER 3: PUBLIC API
# =============================================================================


class AutoscalerState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"
    RECONNECTING = "reconnecting"


class QueueAutoscaler:
    """
    Periodic backlog check that scales workers between min and max.

    Usage:
        autoscaler = QueueAutoscaler(queues, supervisor, config)
        await autoscaler.start()
        ...
        await autoscaler.stop()
    """

    def __init__(
        self,
        queues: Sequence[MessageQueue],
        supervisor: WorkerSupervisor,
        config: AutoscalerConfig | None = None,
        leader_lock: DistributedLock | None = None,
        metrics=None,
        sleep: Sleep = asyncio.sleep,
    ):
        self._config = config or AutoscalerConfig()
        self._monitor = DepthMonitor(queues, metrics)
        self._pool = WorkerPool(supervisor, self._config, metrics)
        self._pool.set_exit_listener(self._on_unexpected_exit)
        self._supervisor = supervisor
        self._leader_lock = leader_lock
        self._metrics = metrics
        self._sleep = sleep

        self._state = AutoscalerState.STOPPED
        self._timer: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()

    @property
    def state(self) -> AutoscalerState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is AutoscalerState.RUNNING

    @property
    def current_worker_count(self) -> int:
        return self._pool.count

    @property
    def pool(self) -> WorkerPool:
        return self._pool

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """
        STOPPED -> RUNNING: connect, start the timer, ensure the minimum.

        A failed connection schedules another attempt after the reconnect delay.
        """
        if self._state is AutoscalerState.RUNNING:
            logger.info("Autoscaler already running")
            return

        try:
            await self._monitor.connect()
        except QueueError as e:
            logger.error("Autoscaler could not connect", stage=Stage.SCALE_RECONNECT.value, error=str(e))
            await self._monitor.disconnect()
            self._schedule_reconnect()
            return

        self._state = AutoscalerState.RUNNING
        self._timer = asyncio.create_task(self._run())

        if await self._hold_leadership():
            await self._pool.ensure_minimum()

        logger.info(
            "Autoscaler started",
            stage=Stage.SCALE_TICK.value,
            queues=[queue.name for queue in self._monitor.queues],
            min_workers=self._config.min_workers,
            max_workers=self._config.max_workers,
            check_interval_ms=self._config.check_interval_ms,
        )

    async def stop(self) -> None:
        """RUNNING -> STOPPED: cancel the timer, stop every worker, disconnect."""
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            self._reconnect_task = None

        if self._state is AutoscalerState.STOPPED:
            logger.info("Autoscaler is not running")
            return

        self._state = AutoscalerState.STOPPED
        await self._cancel_timer()
        await self._monitor.disconnect()

        stopped = await self._pool.stop_all()
        if self._leader_lock is not None and self._leader_lock.held:
            try:
                await self._leader_lock.release()
            except CacheError as e:
                logger.warning("Leader lock release failed", error=str(e))

        for task in list(self._background):
            task.cancel()
        await self._supervisor.close()
        logger.info("Autoscaler stopped", stage=Stage.SCALE_DOWN.value, workers_stopped=stopped)

    async def _cancel_timer(self) -> None:
        timer, self._timer = self._timer, None
        if timer is None or timer is asyncio.current_task():
            return
        timer.cancel()
        await asyncio.gather(timer, return_exceptions=True)

    async def _run(self) -> None:
        interval = self._config.check_interval_ms / 1000
        while self._state is AutoscalerState.RUNNING:
            await self._sleep(interval)
            if self._state is not AutoscalerState.RUNNING:
                break
            await self.tick()

    # -------------------------------------------------------------------------
    # Tick
    # -------------------------------------------------------------------------

    async def tick(self) -> ScalingDecision:
        """
        One backlog check.

        Returns:
            The decision that was applied
        """
        if not await self._hold_leadership():
            return ScalingDecision(ScaleDirection.NONE)

        try:
            total = await self._monitor.total_depth()
        except QueueError as e:
            await self._connection_lost(e)
            return ScalingDecision(ScaleDirection.NONE)

        decision = decide_scaling(total, self._pool.count, self._config)
        logger.info(
            "Backlog checked",
            stage=Stage.SCALE_TICK.value,
            total_messages=total,
            workers=self._pool.count,
            decision=decision.direction.value,
            count=decision.count,
        )

        if decision.direction is ScaleDirection.UP:
            applied = await self._pool.start_workers(decision.count)
            self._record_scaling(ScaleDirection.UP, applied)
        elif decision.direction is ScaleDirection.DOWN:
            applied = await self._pool.stop_workers(decision.count)
            self._record_scaling(ScaleDirection.DOWN, applied)

        return decision

    def _record_scaling(self, direction: ScaleDirection, count: int) -> None:
        if count <= 0:
            return
        logger.info(
            f"Scaled {direction.value}",
            stage=(Stage.SCALE_UP if direction is ScaleDirection.UP else Stage.SCALE_DOWN).value,
            count=count,
            workers=self._pool.count,
        )
        if self._metrics is not None:
            self._metrics.record_scaling_event(direction.value, count)

    async def _hold_leadership(self) -> bool:
        """
        With a leader lock configured, only the holder scales. Losing the lock
        stops every worker this instance started.
        """
        if self._leader_lock is None:
            return True

        try:
            if self._leader_lock.held:
                leader = await self._leader_lock.renew()
            else:
                leader = await self._leader_lock.acquire()
                if leader:
                    logger.info("Leadership acquired", stage=Stage.SCALE_TICK.value)
                    await self._pool.ensure_minimum()
        except CacheError as e:
            logger.error("Leader lock unavailable", stage=Stage.SCALE_TICK.value, error=str(e))
            leader = False

        if not leader and self._pool.count:
            logger.warning(
                "Not the leader, stopping workers", stage=Stage.SCALE_DOWN.value, workers=self._pool.count
            )
            await self._pool.stop_all()
        return leader

    # -------------------------------------------------------------------------
    # Connection loss & worker exits
    # -------------------------------------------------------------------------

    async def _connection_lost(self, error: Exception) -> None:
        """
        RUNNING -> RECONNECTING -> RUNNING after the reconnect delay.

        Workers keep running; they hold their own queue connections.
        """
        logger.error(
            "Queue connection lost, reconnecting",
            stage=Stage.SCALE_RECONNECT.value,
            error=str(error),
            delay_seconds=self._config.reconnect_delay_seconds,
        )
        self._state = AutoscalerState.RECONNECTING
        await self._cancel_timer()
        await self._monitor.disconnect()
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        self._state = AutoscalerState.RECONNECTING

        async def _reconnect() -> None:
            await self._sleep(self._config.reconnect_delay_seconds)
            self._reconnect_task = None
            if self._state is AutoscalerState.RECONNECTING:
                self._state = AutoscalerState.STOPPED
                await self.start()

        self._reconnect_task = asyncio.create_task(_reconnect())

    def _on_unexpected_exit(self) -> None:
        if self._state is not AutoscalerState.RUNNING:
            return
        task = asyncio.create_task(self._pool.ensure_minimum())
        self._background.add(task)
        task.add_done_callback(self._background.discard)


# =============================================================================
# FACTORY
# =============================================================================


def build_queue_autoscaler(settings=None, supervisor: WorkerSupervisor | None = None) -> QueueAutoscaler:
    """Wire an autoscaler from settings over the configured queue backend."""
    from src.core.config.settings import get_settings
    from src.core.scaling.worker_supervisor import create_worker_supervisor
    from src.infrastructure.cache.redis_client import get_redis_client
    from src.infrastructure.message_queue.factory import get_message_queue
    from src.infrastructure.monitoring.metrics_collector import get_metrics_collector

    settings = settings or get_settings()
    config = AutoscalerConfig.from_settings(settings)

    leader_lock = None
    if config.leader_lock_enabled:
        leader_lock = DistributedLock(
            get_redis_client(), AUTOSCALER_LEADER_LOCK_NAME, ttl_ms=config.leader_lock_ttl_seconds * 1000
        )

    return QueueAutoscaler(
        queues=[get_message_queue(name) for name in config.monitored_queues],
        supervisor=supervisor or create_worker_supervisor(settings),
        config=config,
        leader_lock=leader_lock,
        metrics=get_metrics_collector(),
    )
