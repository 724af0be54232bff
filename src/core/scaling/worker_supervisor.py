"""
Worker Supervisors - How the autoscaler starts and stops worker capacity

Architecture:
    WorkerSupervisor (Abstract Interface)
        ├── ProcessWorkerSupervisor  (local subprocesses, asyncio)
        ├── ComposeWorkerSupervisor  (docker compose up --scale)
        └── InProcessWorkerSupervisor (asyncio tasks; tests and single-process dev)

Contract:
    start()                 -> WorkerHandle
    stop(handle)            -> None (graceful, waits for exit)
    on_exit(handle, cb)     -> cb(handle, exit_code) when the worker ends

The supervisor reports every exit; deciding whether an exit was expected is
the autoscaler's job (it forgets a handle before stopping it).

Author: System Architect
Date: 2025-12-13
"""

import asyncio
import itertools
import os
import shlex
import signal
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone

from src.core.config.constants import Stage
from src.core.exceptions import SupervisorError
from src.core.logging.logger import get_logger

logger = get_logger(__name__)


@dataclass(eq=False)
class WorkerHandle:
    """
    Opaque reference to one unit of worker capacity.

    Attributes:
        id: Unique handle ID (e.g. "worker-4242")
        started_at: When the supervisor started it
    """

    id: str
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __hash__(self) -> int:
        return hash(self.id)

    def __eq__(self, other) -> bool:
        return isinstance(other, WorkerHandle) and other.id == self.id


ExitCallback = Callable[[WorkerHandle, int | None], None]


class WorkerSupervisor(ABC):
    """
    Abstract base class for worker supervisors.
    """

    def __init__(self):
        self._exit_callbacks: dict[str, list[ExitCallback]] = {}

    @abstractmethod
    async def start(self) -> WorkerHandle:
        """
        Start one worker.

        Raises:
            SupervisorError: If the worker could not be started
        """

    @abstractmethod
    async def stop(self, handle: WorkerHandle) -> None:
        """
        Stop one worker gracefully.

        Raises:
            SupervisorError: If the worker could not be stopped
        """

    def on_exit(self, handle: WorkerHandle, callback: ExitCallback) -> None:
        """Register ``callback`` to run once when ``handle`` exits."""
        self._exit_callbacks.setdefault(handle.id, []).append(callback)

    def _notify_exit(self, handle: WorkerHandle, exit_code: int | None) -> None:
        for callback in self._exit_callbacks.pop(handle.id, []):
            try:
                callback(handle, exit_code)
            except Exception as e:
                logger.error(
                    "Exit callback failed",
                    stage=Stage.SCALE_EXIT.value,
                    worker=handle.id,
                    error=str(e),
                    error_type=type(e).__name__,
                )

    async def close(self) -> None:
        """Release supervisor resources (does not stop workers)."""
        self._exit_callbacks.clear()


# =============================================================================
# LOCAL SUBPROCESSES
# =============================================================================


class ProcessWorkerSupervisor(WorkerSupervisor):
    """
    Runs each worker as a local subprocess of ``command``.

    Stop sends SIGTERM (the worker drains in-flight jobs) and escalates to
    SIGKILL after ``stop_timeout_seconds``.
    """

    def __init__(self, command: str, stop_timeout_seconds: float = 35.0, env: dict[str, str] | None = None):
        super().__init__()
        self._argv = shlex.split(command)
        if not self._argv:
            raise ValueError("Worker command is empty")
        self._stop_timeout = stop_timeout_seconds
        self._env = env
        self._processes: dict[str, asyncio.subprocess.Process] = {}
        self._watchers: dict[str, asyncio.Task] = {}

    async def start(self) -> WorkerHandle:
        env = {**os.environ, **(self._env or {})}
        try:
            process = await asyncio.create_subprocess_exec(*self._argv, env=env)
        except OSError as e:
            raise SupervisorError.from_exception(
                e, message=f"Could not start worker: {shlex.join(self._argv)}"
            ) from e

        handle = WorkerHandle(id=f"worker-{process.pid}")
        self._processes[handle.id] = process
        self._watchers[handle.id] = asyncio.create_task(self._watch(handle, process))
        logger.info("Worker process started", stage=Stage.SCALE_UP.value, worker=handle.id, pid=process.pid)
        return handle

    async def _watch(self, handle: WorkerHandle, process: asyncio.subprocess.Process) -> None:
        exit_code = await process.wait()
        self._processes.pop(handle.id, None)
        self._watchers.pop(handle.id, None)
        logger.info("Worker process exited", stage=Stage.SCALE_EXIT.value, worker=handle.id, exit_code=exit_code)
        self._notify_exit(handle, exit_code)

    async def stop(self, handle: WorkerHandle) -> None:
        process = self._processes.get(handle.id)
        if process is None or process.returncode is not None:
            return

        try:
            process.send_signal(signal.SIGTERM)
        except ProcessLookupError:
            return

        try:
            await asyncio.wait_for(process.wait(), timeout=self._stop_timeout)
        except asyncio.TimeoutError:
            logger.warning("Worker did not stop in time, killing", stage=Stage.SCALE_DOWN.value, worker=handle.id)
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()

    async def close(self) -> None:
        for watcher in list(self._watchers.values()):
            watcher.cancel()
        self._watchers.clear()
        await super().close()


# =============================================================================
# DOCKER COMPOSE
# =============================================================================


class ComposeWorkerSupervisor(WorkerSupervisor):
    """
    Scales a docker compose service; each handle is one replica.

    Compose restarts crashed containers itself, so exit callbacks registered
    here are never invoked.
    """

    def __init__(
        self,
        service_name: str,
        compose_command: str = "docker compose",
        run: Callable[[list[str]], Awaitable[tuple[int, str]]] | None = None,
    ):
        super().__init__()
        self._service = service_name
        self._compose = shlex.split(compose_command)
        self._run = run or self._run_command
        self._replicas: list[WorkerHandle] = []
        self._ids = itertools.count(1)

    @property
    def replicas(self) -> int:
        return len(self._replicas)

    @staticmethod
    async def _run_command(argv: list[str]) -> tuple[int, str]:
        process = await asyncio.create_subprocess_exec(
            *argv, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.STDOUT
        )
        output, _ = await process.communicate()
        return process.returncode, output.decode("utf-8", errors="replace")

    async def _scale_to(self, replicas: int) -> None:
        argv = [*self._compose, "up", "-d", "--no-recreate", "--scale", f"{self._service}={replicas}", self._service]
        try:
            code, output = await self._run(argv)
        except OSError as e:
            raise SupervisorError.from_exception(e, message="docker compose is not available") from e
        if code != 0:
            raise SupervisorError(
                f"docker compose scale failed with exit code {code}",
                details={"service": self._service, "replicas": replicas, "output": output[-500:]},
            )

    async def start(self) -> WorkerHandle:
        await self._scale_to(len(self._replicas) + 1)
        handle = WorkerHandle(id=f"{self._service}-{next(self._ids)}")
        self._replicas.append(handle)
        logger.info("Compose replica added", stage=Stage.SCALE_UP.value, worker=handle.id, replicas=self.replicas)
        return handle

    async def stop(self, handle: WorkerHandle) -> None:
        if handle not in self._replicas:
            return
        await self._scale_to(len(self._replicas) - 1)
        self._replicas.remove(handle)
        logger.info("Compose replica removed", stage=Stage.SCALE_DOWN.value, worker=handle.id, replicas=self.replicas)


# =============================================================================
# IN-PROCESS TASKS
# =============================================================================


class InProcessWorkerSupervisor(WorkerSupervisor):
    """
    Runs each worker as an asyncio task in this process.

    ``worker_factory(handle_id)`` returns the coroutine to run; cancelling it
    is how a worker is stopped. A task that returns or raises on its own is an
    unexpected exit (exit code 0 or 1).
    """

    def __init__(self, worker_factory: Callable[[str], Awaitable[None]]):
        super().__init__()
        self._factory = worker_factory
        self._tasks: dict[str, asyncio.Task] = {}
        self._ids = itertools.count(1)

    @property
    def running(self) -> int:
        return len(self._tasks)

    async def start(self) -> WorkerHandle:
        handle = WorkerHandle(id=f"task-worker-{next(self._ids)}")
        task = asyncio.create_task(self._factory(handle.id))
        self._tasks[handle.id] = task
        task.add_done_callback(lambda t, h=handle: self._on_done(h, t))
        return handle

    def _on_done(self, handle: WorkerHandle, task: asyncio.Task) -> None:
        self._tasks.pop(handle.id, None)
        if task.cancelled():
            exit_code = None
        elif task.exception() is not None:
            exit_code = 1
        else:
            exit_code = 0
        self._notify_exit(handle, exit_code)

    async def stop(self, handle: WorkerHandle) -> None:
        task = self._tasks.get(handle.id)
        if task is None:
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)


# =============================================================================
# FACTORY
# =============================================================================


def create_worker_supervisor(settings=None) -> WorkerSupervisor:
    """Build the supervisor selected by WORKER_SUPERVISOR."""
    from src.core.config.settings import get_settings

    settings = settings or get_settings()
    section = settings.autoscaler

    if section.WORKER_SUPERVISOR == "compose":
        return ComposeWorkerSupervisor(section.COMPOSE_SERVICE_NAME)
    return ProcessWorkerSupervisor(
        section.WORKER_COMMAND,
        stop_timeout_seconds=settings.worker.WORKER_SHUTDOWN_TIMEOUT_SECONDS + 5,
    )
