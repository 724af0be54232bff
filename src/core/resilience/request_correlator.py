"""
Request Correlator - Synchronous HTTP over an asynchronous job queue

Turns one HTTP request into a queued job and waits, by polling the shared
key-value store, for the worker's reply.

Architecture:
    RequestCorrelator (Public API)
        ├── PendingMarkerWriter (pending:{cid} lifecycle)
        ├── JobEnqueuer (Queue produce with tenacity retries)
        ├── ReplyPoller (response:{cid} polling)
        └── ReplyTranslator (Reply envelope -> outcome)

Flow:
    1. Generate correlation ID (UUID4)
    2. Write pending:{cid} (TTL 120s) BEFORE enqueueing
    3. Enqueue the job envelope (10 attempts, ~1s apart, 5s pause after the 5th)
       - exhausted: delete the marker, return ImmediateError
    4. Poll response:{cid} every 1s, up to 60 times
       - found: delete marker and reply, translate to Success / Failure
    5. Out of attempts: delete the marker, return Timeout (the job keeps running)

The correlator never raises: every path ends in an outcome.

Author: Refactored for clarity and maintainability
Date: 2025-12-13
"""

import asyncio
import time
import uuid
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

import orjson
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_chain,
    wait_fixed,
)

from src.core.config.constants import (
    DATE_RANGE_VALIDATION_MESSAGE,
    JobKind,
    Stage,
    pending_key,
    response_key,
)
from src.core.exceptions import CacheError, InvalidEnvelopeError, QueueError
from src.core.interfaces.key_value import KeyValueStore
from src.core.interfaces.message_queue import MessageQueue
from src.core.logging.logger import get_logger, set_correlation_id
from src.core.models.jobs import JobEnvelope, PendingMarker, ReplyEnvelope

logger = get_logger(__name__)

Sleep = Callable[[float], Awaitable[None]]


# =============================================================================
# CONFIGURATION & OUTCOMES
# =============================================================================


@dataclass
class CorrelatorConfig:
    """Timing budget of one correlated request."""

    pending_marker_ttl_seconds: int = 120
    poll_interval_seconds: float = 1.0
    poll_max_attempts: int = 60
    enqueue_max_attempts: int = 10
    enqueue_retry_delay_seconds: float = 1.0
    enqueue_reconnect_pause_seconds: float = 5.0
    # Attempt after which the longer reconnect pause is taken
    enqueue_reconnect_after_attempt: int = 5

    @classmethod
    def from_settings(cls, settings) -> "CorrelatorConfig":
        section = settings.correlator
        return cls(
            pending_marker_ttl_seconds=section.PENDING_MARKER_TTL_SECONDS,
            poll_interval_seconds=section.REPLY_POLL_INTERVAL_SECONDS,
            poll_max_attempts=section.REPLY_POLL_MAX_ATTEMPTS,
            enqueue_max_attempts=section.ENQUEUE_MAX_ATTEMPTS,
            enqueue_retry_delay_seconds=section.ENQUEUE_RETRY_DELAY_SECONDS,
            enqueue_reconnect_pause_seconds=section.ENQUEUE_RECONNECT_PAUSE_SECONDS,
        )


@dataclass
class CorrelationOutcome:
    """Base for the four ways a correlated request can end."""

    correlation_id: str
    job_kind: JobKind
    status_code: int = field(init=False, default=500)
    name: str = field(init=False, default="outcome")

    def to_response_body(self) -> dict[str, Any]:
        raise NotImplementedError


@dataclass
class CorrelationSuccess(CorrelationOutcome):
    data: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.status_code = 200
        self.name = "success"

    def to_response_body(self) -> dict[str, Any]:
        return {"status": "success", self.job_kind.value: self.data}


@dataclass
class CorrelationFailure(CorrelationOutcome):
    error: str = ""
    reason: str = "partner_rejected"

    def __post_init__(self):
        self.status_code = 400
        self.name = "error"

    def to_response_body(self) -> dict[str, Any]:
        return {
            "status": "error",
            "error": self.error,
            "reason": self.reason,
            "requestId": self.correlation_id,
        }


@dataclass
class CorrelationTimeout(CorrelationOutcome):
    def __post_init__(self):
        self.status_code = 408
        self.name = "timeout"

    def to_response_body(self) -> dict[str, Any]:
        return {
            "error": "Request timeout",
            "message": (
                f"The {self.job_kind.value} request is taking longer than expected; "
                "processing continues in the background."
            ),
            "requestId": self.correlation_id,
        }


@dataclass
class ImmediateError(CorrelationOutcome):
    error: str = "Service unavailable"

    def __post_init__(self):
        self.status_code = 500
        self.name = "enqueue_failed"

    def to_response_body(self) -> dict[str, Any]:
        return {
            "error": "Internal server error",
            "message": self.error,
            "requestId": self.correlation_id,
        }


# =============================================================================
# LAYER 1: PENDING MARKER
# =============================================================================


class PendingMarkerWriter:
    """
    Owns pending:{cid}: written before enqueue, deleted when the caller stops
    waiting (reply consumed, enqueue failed, or timed out).
    """

    def __init__(self, store: KeyValueStore, ttl_seconds: int):
        self._store = store
        self._ttl = ttl_seconds

    async def write(self, correlation_id: str, marker: PendingMarker) -> None:
        """
        Raises:
            CacheError: If the store is unreachable
        """
        await self._store.set(
            pending_key(correlation_id),
            orjson.dumps(marker.to_dict()).decode("utf-8"),
            ttl=self._ttl,
        )

    async def clear(self, correlation_id: str) -> None:
        """Best-effort delete; a leftover marker expires with its TTL."""
        try:
            await self._store.delete(pending_key(correlation_id))
        except CacheError as e:
            logger.warning(
                "Failed to delete pending marker",
                stage=Stage.CORR_MARKER.value,
                correlation_id=correlation_id,
                error=str(e),
            )


# =============================================================================
# LAYER 2: ENQUEUE WITH RETRY
# =============================================================================


class JobEnqueuer:
    """
    Produces the job envelope with a bounded retry budget.

    Wait schedule (defaults): 1s between attempts, except a 5s pause after
    attempt 5 to give a reconnecting broker time to come back.
    """

    def __init__(self, config: CorrelatorConfig, sleep: Sleep, metrics=None):
        self._config = config
        self._sleep = sleep
        self._metrics = metrics

    def _wait_strategy(self):
        waits = [
            wait_fixed(
                self._config.enqueue_reconnect_pause_seconds
                if attempt == self._config.enqueue_reconnect_after_attempt
                else self._config.enqueue_retry_delay_seconds
            )
            for attempt in range(1, max(2, self._config.enqueue_max_attempts))
        ]
        return wait_chain(*waits)

    def _before_sleep(self, kind: JobKind):
        def _log(retry_state) -> None:
            if self._metrics is not None:
                self._metrics.record_enqueue_retry(kind.value)
            logger.warning(
                "Enqueue failed, retrying",
                stage=Stage.CORR_ENQUEUE.value,
                kind=kind.value,
                attempt=retry_state.attempt_number,
                error=str(retry_state.outcome.exception()),
            )

        return _log

    async def enqueue(self, queue: MessageQueue, envelope: JobEnvelope) -> str:
        """
        Returns:
            Message ID

        Raises:
            RetryError: When every attempt failed
        """
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._config.enqueue_max_attempts),
            wait=self._wait_strategy(),
            retry=retry_if_exception_type(QueueError),
            before_sleep=self._before_sleep(envelope.job_kind),
            sleep=self._sleep,
        ):
            with attempt:
                return await queue.produce(envelope.to_dict())


# =============================================================================
# LAYER 3: REPLY POLLING
# =============================================================================


class ReplyPoller:
    """
    Polls response:{cid} at a fixed interval.

    Store errors while polling count as an empty poll: a brief Redis blip
    must not turn into a failed request.
    """

    def __init__(self, store: KeyValueStore, interval_seconds: float, max_attempts: int, sleep: Sleep):
        self._store = store
        self._interval = interval_seconds
        self._max_attempts = max_attempts
        self._sleep = sleep

    async def _read(self, correlation_id: str, attempt: int) -> str | None:
        try:
            return await self._store.get(response_key(correlation_id))
        except CacheError as e:
            logger.warning(
                "Reply poll failed, treating as empty",
                stage=Stage.CORR_POLL.value,
                correlation_id=correlation_id,
                attempt=attempt,
                error=str(e),
            )
            return None

    async def poll(self, correlation_id: str) -> str | None:
        """
        Returns:
            Raw reply document, or None when the attempts ran out
        """
        for attempt in range(1, self._max_attempts + 1):
            await self._sleep(self._interval)
            raw = await self._read(correlation_id, attempt)
            if raw is not None:
                logger.debug(
                    "Reply found",
                    stage=Stage.CORR_POLL.value,
                    correlation_id=correlation_id,
                    attempt=attempt,
                )
                return raw
        return None

    async def discard(self, correlation_id: str) -> None:
        try:
            await self._store.delete(response_key(correlation_id))
        except CacheError as e:
            logger.warning(
                "Failed to delete reply",
                stage=Stage.CORR_POLL.value,
                correlation_id=correlation_id,
                error=str(e),
            )


# =============================================================================
# LAYER 4: REPLY TRANSLATION
# =============================================================================


class ReplyTranslator:
    """
    Maps a reply envelope onto a client-facing outcome.

    - {error}: Failure(400), reason ``validation`` for the date-range
      rejection, ``partner_rejected`` otherwise
    - {data} for quotes: adds quoteId and totalCost
    - {data} for bookings: adds bookingId
    """

    @staticmethod
    def quote_view(data: dict[str, Any]) -> dict[str, Any]:
        view = dict(data)
        view["quoteId"] = data.get("quoteId") or data.get("id")
        premium = data.get("premium") or 0
        fee = data.get("integrationFeeAmount") or 0
        view["totalCost"] = premium + fee
        return view

    @staticmethod
    def booking_view(data: dict[str, Any]) -> dict[str, Any]:
        view = dict(data)
        view["bookingId"] = data.get("bookingId") or data.get("id")
        return view

    def translate(self, correlation_id: str, kind: JobKind, reply: ReplyEnvelope) -> CorrelationOutcome:
        if reply.is_error:
            reason = "validation" if DATE_RANGE_VALIDATION_MESSAGE in reply.error else "partner_rejected"
            return CorrelationFailure(correlation_id, kind, error=reply.error, reason=reason)

        if kind is JobKind.QUOTE:
            data = self.quote_view(reply.data)
        else:
            data = self.booking_view(reply.data)
        return CorrelationSuccess(correlation_id, kind, data=data)


# =============================================================================
# LAYER 5: PUBLIC API
# =============================================================================


class RequestCorrelator:
    """
    Submits a job and waits for its reply.

    Usage:
        correlator = RequestCorrelator(store, {JobKind.QUOTE: quote_queue, ...})
        outcome = await correlator.submit(JobKind.QUOTE, {"value": 1000})
        return JSONResponse(outcome.to_response_body(), status_code=outcome.status_code)
    """

    def __init__(
        self,
        store: KeyValueStore,
        queues: Mapping[JobKind, MessageQueue],
        config: CorrelatorConfig | None = None,
        instance_id: str | None = None,
        metrics=None,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._config = config or CorrelatorConfig()
        self._queues = dict(queues)
        self._instance_id = instance_id or f"api-{uuid.uuid4().hex[:8]}"
        self._metrics = metrics
        self._clock = clock

        self._markers = PendingMarkerWriter(store, self._config.pending_marker_ttl_seconds)
        self._enqueuer = JobEnqueuer(self._config, sleep, metrics)
        self._poller = ReplyPoller(
            store, self._config.poll_interval_seconds, self._config.poll_max_attempts, sleep
        )
        self._translator = ReplyTranslator()

    @property
    def queues(self) -> dict[JobKind, MessageQueue]:
        return self._queues

    async def initialize(self) -> None:
        """Connect every job queue (consumer groups are created idempotently)."""
        for queue in self._queues.values():
            await queue.initialize()

    async def close(self) -> None:
        for queue in self._queues.values():
            try:
                await queue.close()
            except QueueError as e:
                logger.error("Error closing queue", queue=queue.name, error=str(e))

    def _record(self, outcome: CorrelationOutcome, started: float) -> CorrelationOutcome:
        if self._metrics is not None:
            self._metrics.record_correlation(
                outcome.job_kind.value, outcome.name, self._clock() - started
            )
        return outcome

    async def submit(self, kind: JobKind, payload: dict[str, Any]) -> CorrelationOutcome:
        """
        Run one request through the queue.

        Returns:
            CorrelationSuccess (200), CorrelationFailure (400),
            CorrelationTimeout (408) or ImmediateError (500)
        """
        kind = JobKind(kind)
        correlation_id = str(uuid.uuid4())
        set_correlation_id(correlation_id)
        started = self._clock()

        # Step 1: pending marker first, so a fast worker always sees a waiter
        try:
            await self._markers.write(
                correlation_id, PendingMarker(job_kind=kind, issuing_instance_id=self._instance_id)
            )
        except CacheError as e:
            logger.error(
                "Failed to write pending marker",
                stage=Stage.CORR_MARKER.value,
                kind=kind.value,
                error=str(e),
            )
            outcome = ImmediateError(correlation_id, kind, error="Key-value store unavailable")
            return self._record(outcome, started)

        # Step 2: enqueue
        envelope = JobEnvelope(
            correlation_id=correlation_id,
            job_kind=kind,
            payload=payload,
            issued_at_instance_id=self._instance_id,
        )
        try:
            message_id = await self._enqueuer.enqueue(self._queues[kind], envelope)
        except (RetryError, QueueError) as e:
            await self._markers.clear(correlation_id)
            logger.error(
                "Enqueue failed after retries",
                stage=Stage.CORR_ENQUEUE.value,
                kind=kind.value,
                attempts=self._config.enqueue_max_attempts,
                error=str(e),
            )
            outcome = ImmediateError(correlation_id, kind, error="Job queue unavailable")
            return self._record(outcome, started)

        logger.info(
            "Job enqueued",
            stage=Stage.CORR_ENQUEUE.value,
            kind=kind.value,
            queue=self._queues[kind].name,
            message_id=message_id,
        )

        # Step 3: wait for the reply
        raw = await self._poller.poll(correlation_id)
        await self._markers.clear(correlation_id)

        if raw is None:
            logger.warning(
                "No reply before timeout, processing continues",
                stage=Stage.CORR_TIMEOUT.value,
                kind=kind.value,
                attempts=self._config.poll_max_attempts,
            )
            return self._record(CorrelationTimeout(correlation_id, kind), started)

        await self._poller.discard(correlation_id)

        try:
            reply = ReplyEnvelope.from_dict(orjson.loads(raw))
        except (orjson.JSONDecodeError, InvalidEnvelopeError, AttributeError) as e:
            logger.error("Malformed reply", stage=Stage.CORR_POLL.value, error=str(e))
            return self._record(ImmediateError(correlation_id, kind, error="Malformed reply"), started)

        outcome = self._translator.translate(correlation_id, kind, reply)
        logger.info(
            "Reply received",
            stage=Stage.CORR_POLL.value,
            kind=kind.value,
            outcome=outcome.name,
        )
        return self._record(outcome, started)


# =============================================================================
# GLOBAL INSTANCE MANAGEMENT (Singleton Pattern)
# =============================================================================

_correlator_instance: RequestCorrelator | None = None


def get_request_correlator() -> RequestCorrelator:
    """
    Global correlator over the Redis client and the configured queues.
    """
    global _correlator_instance

    if _correlator_instance is None:
        from src.core.config.constants import job_queue_for
        from src.core.config.settings import get_settings
        from src.infrastructure.cache.redis_client import get_redis_client
        from src.infrastructure.message_queue.factory import get_message_queue
        from src.infrastructure.monitoring.metrics_collector import get_metrics_collector

        settings = get_settings()
        _correlator_instance = RequestCorrelator(
            store=get_redis_client(),
            queues={kind: get_message_queue(job_queue_for(kind)) for kind in JobKind},
            config=CorrelatorConfig.from_settings(settings),
            instance_id=settings.app.INSTANCE_ID,
            metrics=get_metrics_collector(),
        )

    return _correlator_instance


def reset_request_correlator() -> None:
    global _correlator_instance
    _correlator_instance = None
