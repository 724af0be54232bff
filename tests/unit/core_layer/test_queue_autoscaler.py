"""
Unit Tests for the Queue Depth Autoscaler

Covers the hysteresis rule, worker pool bookkeeping, the RUNNING /
RECONNECTING / STOPPED state machine, restart after unexpected exits and
leader election.
"""

import asyncio

import pytest

from src.core.config.constants import AUTOSCALER_LEADER_LOCK_NAME
from src.core.exceptions import QueueConnectionError, SupervisorError
from src.core.resilience.distributed_lock import DistributedLock
from src.core.scaling.queue_autoscaler import (
    AutoscalerConfig,
    AutoscalerState,
    QueueAutoscaler,
    ScaleDirection,
    ScalingDecision,
    WorkerPool,
    decide_scaling,
)
from src.core.scaling.worker_supervisor import ComposeWorkerSupervisor, InProcessWorkerSupervisor
from tests.test_fixtures import InMemoryMessageQueue


async def idle_worker(handle_id: str) -> None:
    await asyncio.Event().wait()


class TimerSleep:
    """
    Sleep double: the tick interval blocks forever (ticks are driven by the
    test), any other delay returns after one loop iteration.
    """

    def __init__(self, interval_seconds: float = 10.0):
        self._interval = interval_seconds
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        if seconds == self._interval:
            await asyncio.Event().wait()
        await asyncio.sleep(0)


async def settle(condition, iterations: int = 50) -> None:
    for _ in range(iterations):
        if condition():
            return
        await asyncio.sleep(0)


@pytest.fixture
def monitored_queues():
    return [InMemoryMessageQueue("quote-requested"), InMemoryMessageQueue("booking-requested")]


@pytest.fixture
def supervisor():
    return InProcessWorkerSupervisor(idle_worker)


@pytest.fixture
def make_autoscaler(monitored_queues, supervisor, mock_metrics_collector):
    created = []

    def _make(config=None, leader_lock=None, sup=None):
        autoscaler = QueueAutoscaler(
            monitored_queues,
            sup or supervisor,
            config=config or AutoscalerConfig(),
            leader_lock=leader_lock,
            metrics=mock_metrics_collector,
            sleep=TimerSleep(),
        )
        created.append(autoscaler)
        return autoscaler

    yield _make


@pytest.mark.unit
class TestDecideScaling:
    """The pure hysteresis rule with default thresholds (up 10, down 2, 1..5 workers)."""

    @pytest.mark.parametrize(
        "total,current,expected",
        [
            (25, 1, ScalingDecision(ScaleDirection.UP, 3)),
            (11, 1, ScalingDecision(ScaleDirection.UP, 2)),
            (100, 1, ScalingDecision(ScaleDirection.UP, 4)),
            (100, 5, ScalingDecision(ScaleDirection.NONE)),
            (10, 1, ScalingDecision(ScaleDirection.NONE)),
            (5, 3, ScalingDecision(ScaleDirection.NONE)),
            (2, 3, ScalingDecision(ScaleDirection.NONE)),
            (0, 3, ScalingDecision(ScaleDirection.DOWN, 1)),
            (1, 5, ScalingDecision(ScaleDirection.DOWN, 1)),
            (0, 1, ScalingDecision(ScaleDirection.NONE)),
        ],
    )
    def test_default_thresholds(self, total, current, expected):
        """Test the default scaling thresholds."""
        assert decide_scaling(total, current, AutoscalerConfig()) == expected

    def test_scale_down_is_gradual(self):
        """Test that scale-down removes one worker per tick."""
        config = AutoscalerConfig(min_workers=0, max_workers=10, scale_up_threshold=50, scale_down_threshold=10)

        # An empty backlog still removes one worker per tick
        assert decide_scaling(0, 8, config) == ScalingDecision(ScaleDirection.DOWN, 1)

    def test_scale_down_never_below_minimum(self):
        """Test that scale-down never goes under the minimum."""
        config = AutoscalerConfig(min_workers=2, max_workers=5)

        assert decide_scaling(0, 3, config) == ScalingDecision(ScaleDirection.DOWN, 1)
        assert decide_scaling(0, 2, config).direction is ScaleDirection.NONE


@pytest.mark.unit
class TestAutoscalerConfig:

    def test_min_above_max_rejected(self):
        """Test that a minimum above the maximum is refused."""
        with pytest.raises(ValueError):
            AutoscalerConfig(min_workers=6, max_workers=5)

    def test_negative_min_rejected(self):
        """Test that a negative minimum is refused."""
        with pytest.raises(ValueError):
            AutoscalerConfig(min_workers=-1)

    def test_non_positive_threshold_rejected(self):
        """Test that thresholds must be positive."""
        with pytest.raises(ValueError, match="positive"):
            AutoscalerConfig(scale_up_threshold=0)

    def test_from_settings(self, settings):
        """Test that the config mirrors the autoscaler settings."""
        config = AutoscalerConfig.from_settings(settings)

        assert config.min_workers == 1
        assert config.max_workers == 5
        assert config.check_interval_ms == 10000
        assert config.monitored_queues == ["quote-requested", "booking-requested"]
        assert config.leader_lock_enabled is False


@pytest.mark.unit
class TestWorkerPool:
    """Start/stop bookkeeping independent of the timer."""

    @pytest.mark.asyncio
    async def test_start_capped_at_max(self, supervisor):
        """Test that the pool never grows past the maximum."""
        pool = WorkerPool(supervisor, AutoscalerConfig(max_workers=2))

        started = await pool.start_workers(5)

        assert started == 2
        assert pool.count == 2
        await pool.stop_all()

    @pytest.mark.asyncio
    async def test_stop_is_last_in_first_out(self, supervisor):
        """Test that the newest workers are stopped first."""
        pool = WorkerPool(supervisor, AutoscalerConfig(min_workers=0))
        await pool.start_workers(3)

        await pool.stop_workers(1)

        assert [handle.id for handle in pool.handles] == ["task-worker-1", "task-worker-2"]
        await pool.stop_all()
        assert supervisor.running == 0

    @pytest.mark.asyncio
    async def test_stop_respects_floor(self, supervisor):
        """Test that stopping never goes under the floor."""
        pool = WorkerPool(supervisor, AutoscalerConfig(min_workers=2))
        await pool.start_workers(3)

        stopped = await pool.stop_workers(5)

        assert stopped == 1
        assert pool.count == 2
        await pool.stop_all()

    @pytest.mark.asyncio
    async def test_start_stops_at_first_supervisor_failure(self):
        """Test that a supervisor failure ends the start batch."""
        calls = []

        async def run(argv):
            calls.append(argv)
            return (1, "no such service") if len(calls) == 3 else (0, "")

        pool = WorkerPool(ComposeWorkerSupervisor("worker", run=run), AutoscalerConfig())

        started = await pool.start_workers(4)

        assert started == 2
        assert pool.count == 2
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_deliberate_stop_does_not_report_exit(self, supervisor, mock_metrics_collector):
        """Test that stopped workers are not reported as crashed."""
        exits = []
        pool = WorkerPool(supervisor, AutoscalerConfig(min_workers=0), mock_metrics_collector)
        pool.set_exit_listener(lambda: exits.append(True))
        await pool.start_workers(2)

        await pool.stop_all()

        assert exits == []
        mock_metrics_collector.record_worker_exit.assert_not_called()
        mock_metrics_collector.set_worker_count.assert_called_with(0)

    @pytest.mark.asyncio
    async def test_failed_stop_keeps_worker_tracked(self, mock_metrics_collector):
        """Test that a worker the supervisor could not stop stays in the pool and is not counted."""
        calls = []

        async def run(argv):
            calls.append(argv)
            return (0, "") if len(calls) <= 2 else (1, "daemon not responding")

        pool = WorkerPool(
            ComposeWorkerSupervisor("worker", run=run), AutoscalerConfig(min_workers=0), mock_metrics_collector
        )
        await pool.start_workers(2)

        stopped = await pool.stop_workers(1)

        assert stopped == 0
        assert [handle.id for handle in pool.handles] == ["worker-1", "worker-2"]
        mock_metrics_collector.set_worker_count.assert_called_with(2)

    @pytest.mark.asyncio
    async def test_failed_stop_moves_on_to_next_worker(self, supervisor):
        """Test that a failed stop does not block stopping the other workers."""
        pool = WorkerPool(supervisor, AutoscalerConfig(min_workers=0))
        await pool.start_workers(3)
        stop = supervisor.stop

        async def stop_all_but_newest(handle):
            if handle.id == "task-worker-3":
                raise SupervisorError("worker did not exit")
            await stop(handle)

        supervisor.stop = stop_all_but_newest

        stopped = await pool.stop_workers(1)

        assert stopped == 1
        assert [handle.id for handle in pool.handles] == ["task-worker-1", "task-worker-3"]
        supervisor.stop = stop
        await pool.stop_all()


@pytest.mark.unit
class TestAutoscalerLifecycle:
    """start() / stop() and the minimum worker guarantee."""

    @pytest.mark.asyncio
    async def test_start_ensures_minimum(self, make_autoscaler, supervisor, monitored_queues):
        """Test that start brings the pool to the minimum."""
        autoscaler = make_autoscaler(AutoscalerConfig(min_workers=2))

        await autoscaler.start()

        assert autoscaler.state is AutoscalerState.RUNNING
        assert autoscaler.current_worker_count == 2
        assert supervisor.running == 2
        assert all(queue.initialized for queue in monitored_queues)
        await autoscaler.stop()

    @pytest.mark.asyncio
    async def test_stop_stops_every_worker(self, make_autoscaler, supervisor, monitored_queues):
        """Test that stop removes every managed worker."""
        autoscaler = make_autoscaler()
        await autoscaler.start()
        monitored_queues[0].set_depth(40)
        await autoscaler.tick()

        await autoscaler.stop()

        assert autoscaler.state is AutoscalerState.STOPPED
        assert autoscaler.current_worker_count == 0
        assert supervisor.running == 0
        assert all(queue.closed for queue in monitored_queues)

    @pytest.mark.asyncio
    async def test_start_twice_is_noop(self, make_autoscaler):
        """Test that a second start does nothing."""
        autoscaler = make_autoscaler()
        await autoscaler.start()

        await autoscaler.start()

        assert autoscaler.current_worker_count == 1
        await autoscaler.stop()

    @pytest.mark.asyncio
    async def test_stop_when_stopped_is_noop(self, make_autoscaler):
        """Test that stopping a stopped autoscaler does nothing."""
        autoscaler = make_autoscaler()

        await autoscaler.stop()

        assert autoscaler.state is AutoscalerState.STOPPED

    @pytest.mark.asyncio
    async def test_failed_start_retries_after_delay(self, make_autoscaler, monitored_queues):
        """Test that a failed start is retried after the restart delay."""
        monitored_queues[0].initialize_error = QueueConnectionError("Broker unreachable")
        autoscaler = make_autoscaler()

        await autoscaler.start()

        assert autoscaler.state is AutoscalerState.RECONNECTING
        assert autoscaler.current_worker_count == 0

        monitored_queues[0].initialize_error = None
        await settle(lambda: autoscaler.is_running)

        assert autoscaler.is_running
        assert autoscaler.current_worker_count == 1
        await autoscaler.stop()


@pytest.mark.unit
class TestAutoscalerTick:
    """One backlog check at a time, driven by the test."""

    @pytest.mark.asyncio
    async def test_scale_up_on_backlog(self, make_autoscaler, monitored_queues, mock_metrics_collector):
        """Test that a deep queue adds workers."""
        autoscaler = make_autoscaler()
        await autoscaler.start()
        monitored_queues[0].set_depth(25)

        decision = await autoscaler.tick()

        assert decision == ScalingDecision(ScaleDirection.UP, 3)
        assert autoscaler.current_worker_count == 4
        mock_metrics_collector.record_scaling_event.assert_called_once_with("up", 3)
        await autoscaler.stop()

    @pytest.mark.asyncio
    async def test_depth_summed_across_queues(self, make_autoscaler, monitored_queues, mock_metrics_collector):
        """Test that depth is summed across monitored queues."""
        autoscaler = make_autoscaler()
        await autoscaler.start()
        monitored_queues[0].set_depth(6)
        monitored_queues[1].set_depth(6)

        decision = await autoscaler.tick()

        assert decision.direction is ScaleDirection.UP
        mock_metrics_collector.record_queue_depth.assert_any_call("quote-requested", 6)
        mock_metrics_collector.record_queue_depth.assert_any_call("booking-requested", 6)
        await autoscaler.stop()

    @pytest.mark.asyncio
    async def test_scale_down_removes_newest_worker(self, make_autoscaler, monitored_queues):
        """Test that an idle queue removes the newest worker."""
        autoscaler = make_autoscaler()
        await autoscaler.start()
        monitored_queues[0].set_depth(25)
        await autoscaler.tick()
        monitored_queues[0].set_depth(0)

        decision = await autoscaler.tick()

        assert decision == ScalingDecision(ScaleDirection.DOWN, 1)
        assert [handle.id for handle in autoscaler.pool.handles] == [
            "task-worker-1",
            "task-worker-2",
            "task-worker-3",
        ]
        await autoscaler.stop()

    @pytest.mark.asyncio
    async def test_hysteresis_band_takes_no_action(self, make_autoscaler, monitored_queues, mock_metrics_collector):
        """Test that depths between the thresholds change nothing."""
        autoscaler = make_autoscaler()
        await autoscaler.start()
        monitored_queues[0].set_depth(5)

        decision = await autoscaler.tick()

        assert decision.direction is ScaleDirection.NONE
        assert autoscaler.current_worker_count == 1
        mock_metrics_collector.record_scaling_event.assert_not_called()
        await autoscaler.stop()

    @pytest.mark.asyncio
    async def test_never_exceeds_max(self, make_autoscaler, monitored_queues):
        """Test that scaling up stops at the maximum."""
        autoscaler = make_autoscaler()
        await autoscaler.start()
        monitored_queues[0].set_depth(500)

        await autoscaler.tick()
        await autoscaler.tick()

        assert autoscaler.current_worker_count == 5
        await autoscaler.stop()

    @pytest.mark.asyncio
    async def test_queue_error_keeps_workers_and_reconnects(self, make_autoscaler, monitored_queues, supervisor):
        """Test that a lost queue connection keeps workers and reconnects."""
        autoscaler = make_autoscaler()
        await autoscaler.start()
        monitored_queues[0].set_depth(25)
        await autoscaler.tick()
        monitored_queues[1].depth_error = QueueConnectionError("Broker unreachable")

        decision = await autoscaler.tick()

        assert decision.direction is ScaleDirection.NONE
        assert autoscaler.state is AutoscalerState.RECONNECTING
        assert autoscaler.current_worker_count == 4
        assert supervisor.running == 4

        monitored_queues[1].depth_error = None
        await settle(lambda: autoscaler.is_running)

        assert autoscaler.is_running
        assert autoscaler.current_worker_count == 4
        await autoscaler.stop()


@pytest.mark.unit
class TestUnexpectedExit:

    @pytest.mark.asyncio
    async def test_crashed_worker_is_replaced(self, monitored_queues, mock_metrics_collector):
        """Test that an unexpected worker exit is replaced."""
        crash_signals: dict[str, asyncio.Event] = {}

        async def crashing_worker(handle_id):
            crash_signals[handle_id] = asyncio.Event()
            await crash_signals[handle_id].wait()
            raise RuntimeError("worker crashed")

        supervisor = InProcessWorkerSupervisor(crashing_worker)
        autoscaler = QueueAutoscaler(
            monitored_queues, supervisor, AutoscalerConfig(), metrics=mock_metrics_collector, sleep=TimerSleep()
        )
        await autoscaler.start()
        await settle(lambda: "task-worker-1" in crash_signals)

        crash_signals["task-worker-1"].set()
        await settle(lambda: [h.id for h in autoscaler.pool.handles] == ["task-worker-2"])

        assert [handle.id for handle in autoscaler.pool.handles] == ["task-worker-2"]
        mock_metrics_collector.record_worker_exit.assert_called_once()
        await autoscaler.stop()

    @pytest.mark.asyncio
    async def test_exit_after_stop_is_not_restarted(self, monitored_queues):
        """Test that exits during shutdown are not replaced."""
        supervisor = InProcessWorkerSupervisor(idle_worker)
        autoscaler = QueueAutoscaler(monitored_queues, supervisor, AutoscalerConfig(), sleep=TimerSleep())
        await autoscaler.start()

        await autoscaler.stop()
        await settle(lambda: False, iterations=5)

        assert supervisor.running == 0


@pytest.mark.unit
class TestLeaderElection:
    """With a leader lock, only one autoscaler instance manages workers."""

    @pytest.mark.asyncio
    async def test_only_leader_starts_workers(self, kv_store, monitored_queues):
        """Test that only the lock holder manages workers."""
        first_supervisor = InProcessWorkerSupervisor(idle_worker)
        second_supervisor = InProcessWorkerSupervisor(idle_worker)
        first = QueueAutoscaler(
            monitored_queues,
            first_supervisor,
            leader_lock=DistributedLock(kv_store, AUTOSCALER_LEADER_LOCK_NAME),
            sleep=TimerSleep(),
        )
        second = QueueAutoscaler(
            monitored_queues,
            second_supervisor,
            leader_lock=DistributedLock(kv_store, AUTOSCALER_LEADER_LOCK_NAME),
            sleep=TimerSleep(),
        )

        await first.start()
        await second.start()
        monitored_queues[0].set_depth(25)
        decision = await second.tick()

        assert first.current_worker_count == 1
        assert second.current_worker_count == 0
        assert decision.direction is ScaleDirection.NONE
        await first.stop()
        await second.stop()

    @pytest.mark.asyncio
    async def test_lost_leadership_stops_workers(self, kv_store, monitored_queues):
        """Test that losing the leader lock stops the workers."""
        lock = DistributedLock(kv_store, AUTOSCALER_LEADER_LOCK_NAME)
        autoscaler = QueueAutoscaler(
            monitored_queues, InProcessWorkerSupervisor(idle_worker), leader_lock=lock, sleep=TimerSleep()
        )
        await autoscaler.start()
        assert autoscaler.current_worker_count == 1

        # Lease expired and another instance took over
        await kv_store.set(lock.key, "another-instance")
        await autoscaler.tick()

        assert autoscaler.current_worker_count == 0
        assert lock.held is False
        await autoscaler.stop()

    @pytest.mark.asyncio
    async def test_stop_releases_leader_lock(self, kv_store, monitored_queues):
        """Test that stop hands the leader lock back."""
        lock = DistributedLock(kv_store, AUTOSCALER_LEADER_LOCK_NAME)
        autoscaler = QueueAutoscaler(
            monitored_queues, InProcessWorkerSupervisor(idle_worker), leader_lock=lock, sleep=TimerSleep()
        )
        await autoscaler.start()

        await autoscaler.stop()

        assert await kv_store.get(lock.key) is None
