"""
Redis Streams Message Queue

Architecture:
    RedisQueue (Public API)
        ├── StreamManager (Stream lifecycle, consumer group, claims)
        ├── BackpressureController (Queue depth monitoring and retry logic)
        ├── MessageSerializer (Payload encoding/decoding)
        └── MetricsRecorder (Queue metrics and observability)

Delivery semantics:
    - produce: XADD to ``queue:{name}``
    - consume: XREADGROUP ">" after reclaiming entries idle past the
      visibility timeout (a worker that died mid-job gives its messages back)
    - acknowledge: XACK + XDEL, so XLEN is exactly undelivered + unacked
    - nack(requeue=True): XADD the (replacement) payload, then acknowledge
    - nack(requeue=False): XADD to ``queue:{name}:dead``, then acknowledge

Why Redis Streams?
    - Persistent, ordered log of events
    - Consumer groups for load balancing
    - Acknowledgement mechanism (XACK) for reliability
    - Built-in blocking reads for efficiency

Author: Refactored for clarity and maintainability
Date: 2025-12-13
"""

from collections.abc import Awaitable, Callable
from typing import Any

import orjson
from redis.exceptions import RedisError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter

from src.core.config.settings import get_settings
from src.core.exceptions import CacheError, QueueConnectionError, QueueError, QueueFullError
from src.core.interfaces.message_queue import MessageQueue, QueueMessage
from src.core.logging.logger import get_logger
from src.core.models.jobs import utc_now_iso
from src.infrastructure.cache.redis_client import RedisClient, get_redis_client
from src.infrastructure.monitoring.metrics_collector import get_metrics_collector

logger = get_logger(__name__)


# =============================================================================
# LAYER 1: STREAM MANAGEMENT
# Handles Redis Stream lifecycle and consumer group operations
# =============================================================================


class StreamManager:
    """
    Manages a Redis Stream and its consumer group.

    Consumer Group Pattern:
    - Stream: Ordered log of messages
    - Group: Logical set of consumers (all workers share ``workers``)
    - Consumer: Individual worker instance
    - Pending: Messages delivered but not acknowledged
    """

    def __init__(self, stream_name: str, group_name: str, redis_client: RedisClient):
        self._stream_name = stream_name
        self._group_name = group_name
        self._redis = redis_client
        self._initialized = False

    async def initialize(self) -> None:
        """
        Create the consumer group if it doesn't exist (idempotent).

        STAGE-QUEUE.1: Initialization

        - id="0": Start reading from beginning
        - mkstream=True: Create stream if doesn't exist
        - BUSYGROUP error: Group already exists (expected on restart)
        """
        if self._initialized:
            return

        try:
            await self._redis.client.xgroup_create(
                self._stream_name,
                self._group_name,
                id="0",
                mkstream=True,
            )
            logger.info("Consumer group created", stage="QUEUE.1", group=self._group_name)
        except RedisError as e:
            if "BUSYGROUP" not in str(e):
                logger.error("Failed to create consumer group", stage="QUEUE.ERR", error=str(e))
                raise QueueConnectionError(f"Failed to create consumer group: {e}") from e
            logger.debug("Consumer group already exists", stage="QUEUE.1", group=self._group_name)

        self._initialized = True

    async def get_stream_length(self) -> int:
        return await self._redis.client.xlen(self._stream_name)

    async def add_message(self, message_data: dict[str, str], stream_name: str | None = None) -> str:
        """
        XADD a message.

        No MAXLEN trimming: the stream holds only live messages because
        acknowledged entries are deleted, and trimming would drop jobs.
        """
        message_id = await self._redis.client.xadd(stream_name or self._stream_name, message_data)
        logger.debug("Message produced", stage="QUEUE.PROD", id=message_id)
        return message_id

    async def read_messages(
        self, consumer_name: str, batch_size: int, block_ms: int
    ) -> list[tuple[str, dict[str, str]]]:
        """
        XREADGROUP with ">" (only messages never delivered to the group).

        Returns:
            List of (message_id, message_data) tuples
        """
        streams = {self._stream_name: ">"}

        response = await self._redis.client.xreadgroup(
            self._group_name, consumer_name, streams, count=batch_size, block=block_ms
        )

        messages = []
        if response:
            # response format: [[stream_name, [[id, {data}]]]]
            for _stream, msg_list in response:
                for msg_id, msg_data in msg_list:
                    messages.append((msg_id, msg_data))

        return messages

    async def claim_stale(
        self, consumer_name: str, min_idle_ms: int, batch_size: int
    ) -> list[tuple[str, dict[str, str]]]:
        """
        Take over pending entries whose consumer went silent.

        XAUTOCLAIM transfers ownership of entries idle for at least
        ``min_idle_ms`` to ``consumer_name``, which is how an un-acked job
        from a crashed worker gets redelivered.
        """
        response = await self._redis.client.xautoclaim(
            self._stream_name,
            self._group_name,
            consumer_name,
            min_idle_time=min_idle_ms,
            start_id="0-0",
            count=batch_size,
        )
        # [next_start_id, [[id, {data}], ...], (deleted_ids on Redis 7+)]
        claimed = response[1] if response else []
        # Entries deleted while pending come back with empty data
        return [(msg_id, msg_data) for msg_id, msg_data in claimed if msg_data]

    async def acknowledge_message(self, message_id: str) -> None:
        """
        XACK + XDEL.

        STAGE-QUEUE.ACK: Acknowledge message
        """
        await self._redis.client.xack(self._stream_name, self._group_name, message_id)
        await self._redis.client.xdel(self._stream_name, message_id)

    def get_stream_name(self) -> str:
        return self._stream_name

    def is_initialized(self) -> bool:
        return self._initialized


# =============================================================================
# LAYER 2: BACKPRESSURE CONTROL
# Monitors queue depth and applies backpressure when approaching capacity
# =============================================================================


class BackpressureController:
    """
    Controls backpressure and queue capacity management.

    Strategy:
    1. Monitor queue depth
    2. If approaching capacity (>threshold%), warn
    3. If at capacity, retry with exponential backoff
    4. If still full after retries, reject with QueueFullError
    """

    def __init__(
        self,
        max_depth: int,
        threshold: float,
        max_retries: int,
        base_delay: float,
        max_delay: float,
        stream_name: str,
        on_retry: Callable[[], None] | None = None,
    ):
        self._max_depth = max_depth
        self._threshold = threshold
        self._max_retries = max_retries
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._stream_name = stream_name
        self._on_retry = on_retry

    def check_capacity(self, current_depth: int) -> tuple[bool, bool]:
        """
        Returns:
            (is_full, is_approaching_full) tuple
        """
        threshold_depth = int(self._threshold * self._max_depth)
        is_approaching_full = current_depth >= threshold_depth
        is_full = current_depth >= self._max_depth

        if is_full:
            logger.warning(
                "Queue at capacity, applying backpressure",
                stage="QUEUE.BACKPRESSURE",
                stream=self._stream_name,
                current_length=current_depth,
                max_length=self._max_depth,
            )
        elif is_approaching_full:
            logger.warning(
                "Queue approaching capacity",
                stage="QUEUE.WARNING",
                stream=self._stream_name,
                current_length=current_depth,
                utilization=round(current_depth / self._max_depth * 100, 1),
            )

        return is_full, is_approaching_full

    def create_retry_handler(
        self,
        produce_fn: Callable[[], Awaitable[str]],
        check_depth_fn: Callable[[], Awaitable[int]],
    ):
        """
        Wrap ``produce_fn`` in a tenacity retry that re-checks the depth
        before each attempt.
        """

        def _before_sleep(retry_state) -> None:
            if self._on_retry:
                self._on_retry()
            logger.info(
                "Backpressure retry",
                stage="QUEUE.RETRY",
                attempt=retry_state.attempt_number,
                stream=self._stream_name,
            )

        @retry(
            stop=stop_after_attempt(self._max_retries),
            wait=wait_exponential_jitter(initial=self._base_delay, max=self._max_delay),
            retry=retry_if_exception_type(QueueFullError),
            before_sleep=_before_sleep,
            reraise=True,
        )
        async def _retry_with_backpressure():
            current_depth = await check_depth_fn()

            if current_depth >= self._max_depth:
                raise QueueFullError(
                    f"Queue full: {current_depth}/{self._max_depth} messages in {self._stream_name}",
                    details={"depth": current_depth, "max_depth": self._max_depth},
                )

            return await produce_fn()

        return _retry_with_backpressure


# =============================================================================
# LAYER 3: MESSAGE SERIALIZATION
# =============================================================================


class MessageSerializer:
    """
    Converts payload documents to and from stream entries.

    An entry carries two string fields: ``body`` (the orjson-encoded
    document, so nested structures and types survive intact) and
    ``timestamp``.
    """

    @staticmethod
    def serialize(payload: dict[str, Any]) -> dict[str, str]:
        return {
            "body": orjson.dumps(payload).decode("utf-8"),
            "timestamp": utc_now_iso(),
        }

    @staticmethod
    def deserialize(message_data: dict[str, str]) -> tuple[dict[str, Any], str]:
        """
        Returns:
            (payload, timestamp). A body that is not a JSON object yields
            an empty payload so the consumer can dead-letter it.
        """
        timestamp = message_data.get("timestamp", "")
        try:
            payload = orjson.loads(message_data.get("body", ""))
        except orjson.JSONDecodeError:
            return {}, timestamp
        if not isinstance(payload, dict):
            return {}, timestamp
        return payload, timestamp


# =============================================================================
# LAYER 4: METRICS RECORDING
# =============================================================================


class MetricsRecorder:
    """Records queue metrics for observability."""

    def __init__(self, metrics_collector, queue_name: str, queue_type: str = "redis"):
        self._metrics = metrics_collector
        self._queue_name = queue_name
        self._queue_type = queue_type

    def record_produce_success(self) -> None:
        self._metrics.record_queue_produce(self._queue_type, self._queue_name, "success")

    def record_produce_failure(self, reason: str) -> None:
        self._metrics.record_queue_produce(self._queue_type, self._queue_name, reason)

    def record_queue_depth(self, depth: int) -> None:
        self._metrics.record_queue_depth(self._queue_name, depth)

    def record_backpressure_retry(self) -> None:
        self._metrics.record_queue_backpressure_retry(self._queue_type)

    def record_nack(self, requeue: bool) -> None:
        self._metrics.record_queue_nack(self._queue_name, requeue)


# =============================================================================
# LAYER 5: PUBLIC API
# =============================================================================


class RedisQueue(MessageQueue):
    """
    Redis Streams-based durable queue.

    Usage:
        queue = RedisQueue("quote-requested", "workers")
        await queue.initialize()

        msg_id = await queue.produce({"correlationId": "abc", ...})

        for message in await queue.consume("worker-1", batch_size=5):
            ...
            await queue.acknowledge(message.id)

    STAGE-QUEUE: Queue operations
    """

    def __init__(
        self,
        stream_name: str,
        group_name: str = "workers",
        redis_client: RedisClient | None = None,
    ):
        settings = get_settings()

        self._name = stream_name
        self._stream_name = f"queue:{stream_name}"
        self._dead_letter_stream = f"{self._stream_name}:dead"
        self._group_name = group_name
        self._max_depth = settings.queue.QUEUE_MAX_DEPTH
        self._visibility_timeout_ms = settings.queue.QUEUE_VISIBILITY_TIMEOUT_MS

        self._redis = redis_client
        self._stream_mgr: StreamManager | None = None
        self._serializer = MessageSerializer()
        self._metrics = MetricsRecorder(get_metrics_collector(), stream_name)
        self._backpressure = BackpressureController(
            max_depth=self._max_depth,
            threshold=settings.queue.QUEUE_BACKPRESSURE_THRESHOLD,
            max_retries=settings.queue.QUEUE_BACKPRESSURE_MAX_RETRIES,
            base_delay=settings.queue.QUEUE_BACKPRESSURE_BASE_DELAY,
            max_delay=settings.queue.QUEUE_BACKPRESSURE_MAX_DELAY,
            stream_name=self._stream_name,
            on_retry=self._metrics.record_backpressure_retry,
        )

        logger.debug(
            "Redis Queue created",
            stage="QUEUE.0",
            stream=self._stream_name,
            group=self._group_name,
            max_depth=self._max_depth,
        )

    @property
    def name(self) -> str:
        return self._name

    async def initialize(self) -> None:
        """
        Connect and ensure the consumer group exists.

        STAGE-QUEUE.1: Initialization
        """
        if self._stream_mgr and self._stream_mgr.is_initialized():
            return

        if self._redis is None:
            self._redis = get_redis_client()
        try:
            await self._redis.connect()
        except CacheError as e:
            raise QueueConnectionError(f"Redis unavailable for queue {self._name}: {e.message}") from e

        self._stream_mgr = StreamManager(self._stream_name, self._group_name, self._redis)
        await self._stream_mgr.initialize()

    async def _ensure_initialized(self) -> StreamManager:
        if not self._stream_mgr or not self._stream_mgr.is_initialized():
            await self.initialize()
        return self._stream_mgr

    async def produce(self, payload: dict[str, Any]) -> str:
        """
        Add a message to the queue with backpressure handling.

        STAGE-QUEUE.PROD: Produce message

        Raises:
            QueueFullError: If queue is still full after backpressure retries
            QueueError: If produce fails
        """
        stream_mgr = await self._ensure_initialized()

        try:
            stream_length = await stream_mgr.get_stream_length()
            self._metrics.record_queue_depth(stream_length)

            is_full, _ = self._backpressure.check_capacity(stream_length)
            if is_full:
                retry_handler = self._backpressure.create_retry_handler(
                    produce_fn=lambda: self._produce_message(payload),
                    check_depth_fn=stream_mgr.get_stream_length,
                )
                message_id = await retry_handler()
            else:
                message_id = await self._produce_message(payload)

            self._metrics.record_produce_success()
            return message_id

        except QueueFullError:
            self._metrics.record_produce_failure("queue_full")
            raise
        except RedisError as e:
            self._metrics.record_produce_failure("redis_error")
            logger.error("Failed to produce message", stage="QUEUE.ERR", queue=self._name, error=str(e))
            raise QueueError(f"Failed to produce message: {e}") from e

    async def _produce_message(self, payload: dict[str, Any], stream_name: str | None = None) -> str:
        return await self._stream_mgr.add_message(self._serializer.serialize(payload), stream_name)

    def _to_queue_message(self, msg_id: str, msg_data: dict[str, str]) -> QueueMessage:
        payload, timestamp = self._serializer.deserialize(msg_data)
        return QueueMessage(id=msg_id, payload=payload, timestamp=timestamp)

    async def consume(
        self, consumer_name: str, batch_size: int = 10, block_ms: int = 2000
    ) -> list[QueueMessage]:
        """
        Consume messages: stale claims first, then new deliveries.

        STAGE-QUEUE.CONS: Consume messages
        """
        stream_mgr = await self._ensure_initialized()

        try:
            raw_messages = await stream_mgr.claim_stale(
                consumer_name, self._visibility_timeout_ms, batch_size
            )
            if raw_messages:
                logger.info(
                    "Reclaimed stale messages",
                    stage="QUEUE.CLAIM",
                    queue=self._name,
                    count=len(raw_messages),
                )
            else:
                raw_messages = await stream_mgr.read_messages(consumer_name, batch_size, block_ms)

            return [self._to_queue_message(msg_id, msg_data) for msg_id, msg_data in raw_messages]

        except RedisError as e:
            logger.error("Failed to consume messages", stage="QUEUE.ERR", queue=self._name, error=str(e))
            raise QueueError(f"Failed to consume messages: {e}") from e

    async def acknowledge(self, message_id: str) -> None:
        """
        STAGE-QUEUE.ACK: Acknowledge message
        """
        stream_mgr = await self._ensure_initialized()

        try:
            await stream_mgr.acknowledge_message(message_id)
        except RedisError as e:
            logger.error("Failed to acknowledge message", stage="QUEUE.ERR", error=str(e))
            raise QueueError(f"Failed to acknowledge message: {e}") from e

    async def nack(
        self,
        message: QueueMessage,
        requeue: bool,
        payload: dict[str, Any] | None = None,
    ) -> None:
        """
        STAGE-QUEUE.NACK: Requeue at the tail or dead-letter.

        The copy is written before the original is acknowledged, so a crash
        in between duplicates the job rather than losing it.
        """
        stream_mgr = await self._ensure_initialized()
        body = payload if payload is not None else message.payload
        target = stream_mgr.get_stream_name() if requeue else self._dead_letter_stream

        try:
            await self._produce_message(body, target)
            await stream_mgr.acknowledge_message(message.id)
        except RedisError as e:
            logger.error("Failed to nack message", stage="QUEUE.ERR", id=message.id, error=str(e))
            raise QueueError(f"Failed to nack message: {e}") from e

        self._metrics.record_nack(requeue)
        logger.info(
            "Message requeued" if requeue else "Message dead-lettered",
            stage="QUEUE.NACK",
            queue=self._name,
            id=message.id,
        )

    async def depth(self) -> int:
        """Undelivered plus unacknowledged (acked entries are deleted)."""
        stream_mgr = await self._ensure_initialized()

        try:
            depth = await stream_mgr.get_stream_length()
        except RedisError as e:
            raise QueueError(f"Failed to read queue depth: {e}") from e

        self._metrics.record_queue_depth(depth)
        return depth

    async def close(self) -> None:
        """No-op: the Redis client is shared and closed by its owner."""
        self._stream_mgr = None
