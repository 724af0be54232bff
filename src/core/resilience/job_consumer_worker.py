"""
Job Consumer Worker - Exactly-once replies over at-least-once delivery

Consumes quote and booking jobs, calls the partner, persists the outcome and
publishes the reply the HTTP correlator is polling for.

Architecture:
    JobConsumerWorker (Public API)
        ├── ProcessingGate (processing lock + completion marker)
        ├── ReplyPublisher (response:{cid} key + reply queue)
        ├── FailureHandler (transient requeue / permanent dead letter)
        ├── JobProcessor (Per-message algorithm)
        └── ConsumerLoop (One per job queue, shared concurrency budget)

Per-message flow:
    1. Parse the envelope (unparseable -> dead letter, no reply)
    2. SET NX processing:{kind}:{cid} EX 30
       - held by someone else: duplicate, ack and stop
       - completed:{kind}:{cid} exists: replay the stored result, ack, stop
    3. partner.execute(kind, payload)
    4. persist -> completion marker -> reply (only if pending:{cid} exists)
       -> release lock -> ack
    5. On failure: release lock, classify, requeue or dead-letter

Author: Refactored for clarity and maintainability
Date: 2025-12-13
"""

import asyncio
import socket
import time
import uuid
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any

import orjson

from src.core.config.constants import (
    JobKind,
    Stage,
    completed_key,
    pending_key,
    processing_key,
    response_key,
)
from src.core.exceptions import (
    BridgeBaseError,
    CacheError,
    InvalidEnvelopeError,
    QueueError,
    RecordStoreError,
)
from src.core.interfaces.collaborators import PartnerApi, RecordStore, partner_result_view
from src.core.interfaces.key_value import KeyValueStore
from src.core.interfaces.message_queue import MessageQueue, QueueMessage
from src.core.logging.logger import clear_correlation_id, get_logger, set_correlation_id
from src.core.models.jobs import JobEnvelope, ReplyEnvelope
from src.core.resilience.error_classifier import FailureClass, classify_failure

logger = get_logger(__name__)

Sleep = Callable[[float], Awaitable[None]]


# =============================================================================
# CONFIGURATION
# =============================================================================


@dataclass
class WorkerConfig:
    """
    Worker configuration parameters.

    Attributes:
        prefetch: Max in-flight jobs per process, across all queues
        batch_size: Messages fetched per consume call
        block_ms: Blocking read timeout
        error_backoff_seconds: Backoff after consume loop errors
        shutdown_timeout_seconds: Drain budget for in-flight jobs
        max_delivery_attempts: Transient requeues before a job is treated as permanent
        processing_lock_ttl_seconds: TTL of processing:{kind}:{cid}
        reply_retention_ttl_seconds: TTL of response:{cid}
        completion_marker_ttl_seconds: TTL of completed:{kind}:{cid}
    """

    prefetch: int = 5
    batch_size: int = 5
    block_ms: int = 2000
    error_backoff_seconds: float = 5.0
    shutdown_timeout_seconds: float = 30.0
    max_delivery_attempts: int = 5
    processing_lock_ttl_seconds: int = 30
    reply_retention_ttl_seconds: int = 300
    completion_marker_ttl_seconds: int = 86400

    @classmethod
    def from_settings(cls, settings) -> "WorkerConfig":
        section = settings.worker
        return cls(
            prefetch=section.WORKER_PREFETCH,
            batch_size=section.WORKER_BATCH_SIZE,
            block_ms=section.WORKER_BLOCK_MS,
            error_backoff_seconds=section.WORKER_ERROR_BACKOFF_SECONDS,
            shutdown_timeout_seconds=section.WORKER_SHUTDOWN_TIMEOUT_SECONDS,
            max_delivery_attempts=section.WORKER_MAX_DELIVERY_ATTEMPTS,
            processing_lock_ttl_seconds=section.PROCESSING_LOCK_TTL_SECONDS,
            reply_retention_ttl_seconds=section.REPLY_RETENTION_TTL_SECONDS,
            completion_marker_ttl_seconds=section.COMPLETION_MARKER_TTL_SECONDS,
        )


# =============================================================================
# LAYER 1: PROCESSING GATE
# Deduplication through the processing lock and the completion marker
# =============================================================================


class ProcessingGate:
    """
    Owns processing:{kind}:{cid} and completed:{kind}:{cid}.

    The lock is only ever taken with set-if-absent, so at most one worker
    processes a correlation ID at a time; its TTL frees it if that worker
    dies. The completion marker survives the lock and stops a redelivered
    job from calling the partner twice.
    """

    def __init__(self, store: KeyValueStore, consumer_name: str, config: WorkerConfig):
        self._store = store
        self._consumer_name = consumer_name
        self._config = config

    async def acquire(self, envelope: JobEnvelope) -> bool:
        return await self._store.set(
            processing_key(envelope.job_kind, envelope.correlation_id),
            self._consumer_name,
            ttl=self._config.processing_lock_ttl_seconds,
            nx=True,
        )

    async def release(self, envelope: JobEnvelope) -> None:
        """Best-effort; an unreleased lock expires with its TTL."""
        try:
            await self._store.delete(processing_key(envelope.job_kind, envelope.correlation_id))
        except CacheError as e:
            logger.warning(
                "Failed to release processing lock",
                stage=Stage.WORKER_LOCK.value,
                error=str(e),
            )

    async def completed_record_id(self, envelope: JobEnvelope) -> str | None:
        return await self._store.get(completed_key(envelope.job_kind, envelope.correlation_id))

    async def mark_completed(self, envelope: JobEnvelope, record_id: str) -> None:
        await self._store.set(
            completed_key(envelope.job_kind, envelope.correlation_id),
            record_id,
            ttl=self._config.completion_marker_ttl_seconds,
        )


# =============================================================================
# LAYER 2: REPLY PUBLISHING
# =============================================================================


class ReplyPublisher:
    """
    Publishes a reply envelope for a waiting caller.

    The response key is the correlator's channel and is written at most once
    (set-if-absent). The reply queue copy is for other listeners and is
    best-effort: a full or unreachable reply queue never fails the job.
    """

    def __init__(
        self,
        store: KeyValueStore,
        reply_queues: Mapping[JobKind, MessageQueue],
        config: WorkerConfig,
    ):
        self._store = store
        self._reply_queues = dict(reply_queues)
        self._config = config

    async def caller_waiting(self, correlation_id: str) -> bool:
        return bool(await self._store.exists(pending_key(correlation_id)))

    async def publish(self, envelope: JobEnvelope, reply: ReplyEnvelope) -> bool:
        """
        Returns:
            False when the caller has gone and nothing was published
        """
        correlation_id = envelope.correlation_id
        if not await self.caller_waiting(correlation_id):
            logger.info(
                "Caller no longer waiting, reply skipped",
                stage=Stage.WORKER_COMPLETE.value,
                kind=envelope.job_kind.value,
            )
            return False

        written = await self._store.set(
            response_key(correlation_id),
            orjson.dumps(reply.to_dict()).decode("utf-8"),
            ttl=self._config.reply_retention_ttl_seconds,
            nx=True,
        )
        if not written:
            logger.debug("Reply already present", stage=Stage.WORKER_COMPLETE.value)

        reply_queue = self._reply_queues.get(envelope.job_kind)
        if reply_queue is not None:
            try:
                await reply_queue.produce(reply.to_queue_message(correlation_id, envelope.job_kind))
            except QueueError as e:
                logger.warning(
                    "Reply queue publish failed",
                    stage=Stage.WORKER_COMPLETE.value,
                    queue=reply_queue.name,
                    error=str(e),
                )
        return True


# =============================================================================
# LAYER 3: FAILURE HANDLING
# =============================================================================


class FailureHandler:
    """
    Turns a processing failure into an ack/nack decision.

    - transient, attempts left: nack(requeue) with deliveryAttempt + 1
    - otherwise: publish an error reply, nack without requeue (dead letter)
    """

    def __init__(self, publisher: ReplyPublisher, config: WorkerConfig, metrics=None):
        self._publisher = publisher
        self._config = config
        self._metrics = metrics

    async def handle(
        self, queue: MessageQueue, message: QueueMessage, envelope: JobEnvelope, error: Exception
    ) -> FailureClass:
        failure = classify_failure(error)
        exhausted = envelope.delivery_attempt >= self._config.max_delivery_attempts

        if failure is FailureClass.TRANSIENT and not exhausted:
            logger.warning(
                "Transient failure, requeueing",
                stage=Stage.WORKER_FAILURE.value,
                kind=envelope.job_kind.value,
                attempt=envelope.delivery_attempt,
                error=str(error),
                error_type=type(error).__name__,
            )
            await queue.nack(message, requeue=True, payload=envelope.next_attempt().to_dict())
            self._record(envelope, "requeued")
            return FailureClass.TRANSIENT

        logger.error(
            "Permanent failure, dead-lettering",
            stage=Stage.WORKER_FAILURE.value,
            kind=envelope.job_kind.value,
            attempt=envelope.delivery_attempt,
            exhausted=exhausted,
            error=str(error),
            error_type=type(error).__name__,
        )
        try:
            await self._publisher.publish(envelope, ReplyEnvelope.failure(self._reply_message(error)))
        except CacheError as e:
            logger.error("Failed to publish error reply", stage=Stage.WORKER_FAILURE.value, error=str(e))
        await queue.nack(message, requeue=False)
        self._record(envelope, "failed")
        return FailureClass.PERMANENT

    @staticmethod
    def _reply_message(error: Exception) -> str:
        if isinstance(error, BridgeBaseError):
            return error.message
        return str(error) or type(error).__name__

    def _record(self, envelope: JobEnvelope, result: str) -> None:
        if self._metrics is not None:
            self._metrics.record_job(envelope.job_kind.value, result)


# =============================================================================
# LAYER 4: MESSAGE PROCESSING
# =============================================================================


class JobProcessor:
    """
    The per-message algorithm.

    Every store and queue error is handled here; only the ack/nack decision
    leaves this class. An ack or nack that itself fails leaves the message
    pending, and the queue redelivers it later.
    """

    def __init__(
        self,
        gate: ProcessingGate,
        publisher: ReplyPublisher,
        failures: FailureHandler,
        partner: PartnerApi,
        records: RecordStore,
        metrics=None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._gate = gate
        self._publisher = publisher
        self._failures = failures
        self._partner = partner
        self._records = records
        self._metrics = metrics
        self._clock = clock

    def _record(self, kind: str, result: str, duration: float | None = None) -> None:
        if self._metrics is not None:
            self._metrics.record_job(kind, result, duration)

    async def process(self, queue: MessageQueue, message: QueueMessage) -> None:
        try:
            await self._process(queue, message)
        except (CacheError, QueueError) as e:
            logger.error(
                "Could not settle message, it will be redelivered",
                stage=Stage.WORKER_FAILURE.value,
                queue=queue.name,
                message_id=message.id,
                error=str(e),
            )
        finally:
            clear_correlation_id()

    async def _process(self, queue: MessageQueue, message: QueueMessage) -> None:
        # Step 1: parse
        try:
            envelope = JobEnvelope.from_dict(message.payload)
        except InvalidEnvelopeError as e:
            logger.error(
                "Invalid job envelope, dead-lettering",
                stage=Stage.WORKER_PARSE.value,
                queue=queue.name,
                message_id=message.id,
                error=e.message,
            )
            await queue.nack(message, requeue=False)
            self._record("unknown", "invalid")
            return

        set_correlation_id(envelope.correlation_id)
        kind = envelope.job_kind.value

        # Step 2: processing lock
        try:
            acquired = await self._gate.acquire(envelope)
        except CacheError as e:
            await self._failures.handle(queue, message, envelope, e)
            return

        if not acquired:
            logger.info("Duplicate delivery, already being processed", stage=Stage.WORKER_LOCK.value, kind=kind)
            await queue.acknowledge(message.id)
            self._record(kind, "duplicate")
            return

        started = self._clock()
        try:
            record_id = await self._gate.completed_record_id(envelope)
            if record_id is not None:
                await self._replay(envelope, record_id)
                result_label = "replayed"
            else:
                record_id = await self._execute(envelope)
                result_label = "success"
        except Exception as e:
            # Step 5: failure
            await self._gate.release(envelope)
            await self._failures.handle(queue, message, envelope, e)
            return

        await self._gate.release(envelope)
        await queue.acknowledge(message.id)

        logger.info(
            "Job settled",
            stage=Stage.WORKER_COMPLETE.value,
            kind=kind,
            result=result_label,
            record_id=record_id,
        )
        self._record(kind, result_label, self._clock() - started if result_label == "success" else None)

    async def _execute(self, envelope: JobEnvelope) -> str:
        """Steps 3 and 4: partner call, persist, completion marker, reply."""
        logger.info(
            "Calling partner",
            stage=Stage.WORKER_PARTNER.value,
            kind=envelope.job_kind.value,
            attempt=envelope.delivery_attempt,
        )
        result = await self._partner.execute(envelope.job_kind, envelope.payload)

        record = await self._records.save(envelope.job_kind, result, envelope.payload)
        record_id = str(record.get("id"))
        await self._gate.mark_completed(envelope, record_id)
        await self._publisher.publish(envelope, ReplyEnvelope.success(result))
        return record_id

    async def _replay(self, envelope: JobEnvelope, record_id: str) -> None:
        """
        Republish the stored result of an already completed job.

        The partner is never called again. A record that can no longer be
        read is logged and the redelivery is simply acknowledged.
        """
        logger.info(
            "Job already completed, replaying stored result",
            stage=Stage.WORKER_LOCK.value,
            kind=envelope.job_kind.value,
            record_id=record_id,
        )
        try:
            record = await self._records.get(envelope.job_kind, record_id)
        except RecordStoreError as e:
            logger.warning("Stored result unavailable", stage=Stage.WORKER_LOCK.value, error=e.message)
            return
        await self._publisher.publish(envelope, ReplyEnvelope.success(partner_result_view(record)))


# =============================================================================
# LAYER 5: CONSUMER LOOP
# =============================================================================


class ConsumerLoop:
    """
    Consumes one job queue and dispatches messages as tasks.

    All loops of a worker share one semaphore, so ``prefetch`` bounds the
    in-flight jobs of the whole process, not of each queue.
    """

    def __init__(
        self,
        queue: MessageQueue,
        processor: JobProcessor,
        config: WorkerConfig,
        consumer_name: str,
        slots: asyncio.Semaphore,
        active: set[asyncio.Task],
        stop_event: asyncio.Event,
        sleep: Sleep = asyncio.sleep,
        metrics=None,
    ):
        self._queue = queue
        self._processor = processor
        self._config = config
        self._consumer_name = consumer_name
        self._slots = slots
        self._active = active
        self._stop_event = stop_event
        self._sleep = sleep
        self._metrics = metrics

    async def run(self) -> None:
        logger.info(
            "Consumer loop started",
            stage=Stage.WORKER_PARSE.value,
            queue=self._queue.name,
            consumer=self._consumer_name,
        )

        while not self._stop_event.is_set():
            try:
                await self._consume_batch()
            except (QueueError, CacheError) as e:
                logger.error(
                    "Consumer loop error, backing off",
                    stage=Stage.WORKER_FAILURE.value,
                    queue=self._queue.name,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                await self._sleep(self._config.error_backoff_seconds)

        logger.info("Consumer loop stopped", stage=Stage.WORKER_SHUTDOWN.value, queue=self._queue.name)

    async def _consume_batch(self) -> None:
        messages = await self._queue.consume(
            consumer_name=self._consumer_name,
            batch_size=self._config.batch_size,
            block_ms=self._config.block_ms,
        )

        for message in messages:
            # Fetched messages stay un-acked if we stop now and are redelivered
            await self._slots.acquire()
            if self._stop_event.is_set():
                self._slots.release()
                break
            self._dispatch(message)

    def _dispatch(self, message: QueueMessage) -> None:
        if self._metrics is not None:
            self._metrics.job_started()
        task = asyncio.create_task(self._processor.process(self._queue, message))
        self._active.add(task)
        task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task) -> None:
        self._active.discard(task)
        self._slots.release()
        if self._metrics is not None:
            self._metrics.job_finished()


# =============================================================================
# LAYER 6: PUBLIC API
# =============================================================================


class JobConsumerWorker:
    """
    One worker process: consumes every job queue with bounded concurrency.

    Usage:
        worker = JobConsumerWorker(store, job_queues, reply_queues, partner, records)
        await worker.initialize()
        run_task = asyncio.create_task(worker.start())  # blocks until stop()

        # On SIGTERM / SIGINT:
        await worker.shutdown()

    Lifecycle:
        1. initialize(): connect queues
        2. start(): run one ConsumerLoop per job queue
        3. shutdown(): stop accepting messages, drain in-flight jobs up to
           shutdown_timeout_seconds, cancel the rest, close resources
    """

    def __init__(
        self,
        store: KeyValueStore,
        job_queues: Mapping[JobKind, MessageQueue],
        reply_queues: Mapping[JobKind, MessageQueue],
        partner: PartnerApi,
        records: RecordStore,
        config: WorkerConfig | None = None,
        consumer_name: str | None = None,
        metrics=None,
        sleep: Sleep = asyncio.sleep,
    ):
        self._config = config or WorkerConfig()
        # Format: worker-{hostname}-{short uuid}
        self._consumer_name = consumer_name or f"worker-{socket.gethostname()}-{uuid.uuid4().hex[:6]}"
        self._store = store
        self._job_queues = dict(job_queues)
        self._reply_queues = dict(reply_queues)
        self._partner = partner
        self._records = records
        self._metrics = metrics
        self._sleep = sleep

        publisher = ReplyPublisher(store, self._reply_queues, self._config)
        self._processor = JobProcessor(
            gate=ProcessingGate(store, self._consumer_name, self._config),
            publisher=publisher,
            failures=FailureHandler(publisher, self._config, metrics),
            partner=partner,
            records=records,
            metrics=metrics,
        )

        self._slots = asyncio.Semaphore(self._config.prefetch)
        self._active: set[asyncio.Task] = set()
        self._stop_event = asyncio.Event()
        self._loops_task: asyncio.Task | None = None
        self._initialized = False

    @property
    def consumer_name(self) -> str:
        return self._consumer_name

    @property
    def processor(self) -> JobProcessor:
        return self._processor

    @property
    def in_flight(self) -> int:
        return len(self._active)

    async def initialize(self) -> None:
        if self._initialized:
            return

        for queue in [*self._job_queues.values(), *self._reply_queues.values()]:
            await queue.initialize()

        self._initialized = True
        logger.info(
            "Worker initialized",
            stage=Stage.WORKER_PARSE.value,
            consumer=self._consumer_name,
            queues=[queue.name for queue in self._job_queues.values()],
            prefetch=self._config.prefetch,
        )

    async def start(self) -> None:
        """
        Run until stop() / shutdown().

        Raises:
            RuntimeError: If initialize() not called first
        """
        if not self._initialized:
            raise RuntimeError("Worker not initialized. Call initialize() first.")

        self._stop_event.clear()
        loops = [
            ConsumerLoop(
                queue=queue,
                processor=self._processor,
                config=self._config,
                consumer_name=self._consumer_name,
                slots=self._slots,
                active=self._active,
                stop_event=self._stop_event,
                sleep=self._sleep,
                metrics=self._metrics,
            ).run()
            for queue in self._job_queues.values()
        ]
        self._loops_task = asyncio.ensure_future(asyncio.gather(*loops))
        try:
            await self._loops_task
        except asyncio.CancelledError:
            logger.info("Consumer loops cancelled", stage=Stage.WORKER_SHUTDOWN.value)

    def stop(self) -> None:
        """Stop accepting new messages (non-blocking)."""
        self._stop_event.set()
        logger.info("Worker stop requested", stage=Stage.WORKER_SHUTDOWN.value, consumer=self._consumer_name)

    async def shutdown(self) -> None:
        """
        Graceful shutdown.

        STAGE-WORKER.6: stop loops -> drain in-flight jobs -> close resources
        """
        self.stop()

        if self._loops_task is not None:
            # A loop blocked in consume() returns after at most block_ms
            try:
                await asyncio.wait_for(
                    asyncio.shield(self._loops_task), timeout=self._config.block_ms / 1000 + 1
                )
            except asyncio.TimeoutError:
                self._loops_task.cancel()

        await self._drain()
        await self.cleanup()

    async def _drain(self) -> None:
        if not self._active:
            return

        pending = set(self._active)
        logger.info(
            "Waiting for in-flight jobs",
            stage=Stage.WORKER_SHUTDOWN.value,
            in_flight=len(pending),
            timeout_seconds=self._config.shutdown_timeout_seconds,
        )
        _done, still_running = await asyncio.wait(pending, timeout=self._config.shutdown_timeout_seconds)

        if still_running:
            logger.warning(
                "Shutdown timeout, cancelling in-flight jobs",
                stage=Stage.WORKER_SHUTDOWN.value,
                cancelled=len(still_running),
            )
            for task in still_running:
                task.cancel()
            await asyncio.gather(*still_running, return_exceptions=True)

    async def cleanup(self) -> None:
        """Close queues, the partner client and the key-value store."""
        for queue in [*self._job_queues.values(), *self._reply_queues.values()]:
            try:
                await queue.close()
            except QueueError as e:
                logger.error("Error closing queue", queue=queue.name, error=str(e))

        await self._partner.close()

        disconnect = getattr(self._store, "disconnect", None)
        if disconnect is not None:
            try:
                await disconnect()
            except CacheError as e:
                logger.error("Error closing key-value store", error=str(e))

        self._initialized = False
        logger.info("Worker cleanup complete", stage=Stage.WORKER_SHUTDOWN.value, consumer=self._consumer_name)


# =============================================================================
# FACTORY
# =============================================================================


def build_job_consumer_worker(settings=None, **overrides: Any) -> JobConsumerWorker:
    """
    Wire a worker from settings: Redis store, configured queue backend,
    configured partner client and the Redis record store.
    """
    from src.core.config.constants import job_queue_for, reply_queue_for
    from src.core.config.settings import get_settings
    from src.infrastructure.cache.redis_client import get_redis_client
    from src.infrastructure.message_queue.factory import get_message_queue
    from src.infrastructure.monitoring.metrics_collector import get_metrics_collector
    from src.infrastructure.partner.factory import create_partner_api
    from src.infrastructure.storage.redis_record_store import RedisRecordStore

    settings = settings or get_settings()
    redis_client = get_redis_client()

    components: dict[str, Any] = {
        "store": redis_client,
        "job_queues": {kind: get_message_queue(job_queue_for(kind)) for kind in JobKind},
        "reply_queues": {kind: get_message_queue(reply_queue_for(kind)) for kind in JobKind},
        "partner": create_partner_api(settings),
        "records": RedisRecordStore(redis_client),
        "config": WorkerConfig.from_settings(settings),
        "metrics": get_metrics_collector(),
    }
    components.update(overrides)
    return JobConsumerWorker(**components)
