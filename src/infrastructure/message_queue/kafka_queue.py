"""
Kafka Message Queue

Architecture:
    KafkaQueue (Public API)
        ├── ProducerManager (Producer lifecycle)
        ├── ConsumerManager (Subscribed consumer, fetch and commit)
        ├── OffsetTracker (Per-partition commit watermark)
        ├── LagMonitor (Depth = end offsets minus committed offsets)
        └── MetricsRecorder (Queue metrics and observability)

Delivery semantics:
    - Manual commits only (enable_auto_commit=False)
    - Kafka commits are cumulative per partition, so an acknowledged offset
      is committed only once every earlier offset in that partition has been
      acknowledged too. A crash redelivers whatever sits above the watermark.
    - nack(requeue=True) re-produces the payload to the topic then acknowledges
    - nack(requeue=False) produces to ``{topic}.dead`` then acknowledges

Author: Refactored for clarity and maintainability
Date: 2025-12-13
"""

from typing import Any

import orjson
from aiokafka import AIOKafkaConsumer, AIOKafkaProducer, TopicPartition
from aiokafka.errors import KafkaError

from src.core.config.settings import get_settings
from src.core.exceptions import QueueConnectionError, QueueError, QueueFullError
from src.core.interfaces.message_queue import MessageQueue, QueueMessage
from src.core.logging.logger import get_logger
from src.core.models.jobs import utc_now_iso
from src.infrastructure.monitoring.metrics_collector import get_metrics_collector

logger = get_logger(__name__)


def _decode(raw: bytes) -> dict[str, Any]:
    # Anything that is not a JSON object becomes an empty payload (dead-lettered upstream)
    try:
        value = orjson.loads(raw)
    except orjson.JSONDecodeError:
        return {}
    return value if isinstance(value, dict) else {}


# =============================================================================
# LAYER 1: PRODUCER MANAGEMENT
# =============================================================================


class ProducerManager:
    """
    Manages Kafka producer lifecycle.

    acks="all" so a produce returns only once the record is replicated;
    the bridge relies on produce meaning "durably queued".
    """

    def __init__(self, bootstrap_servers: str):
        self._bootstrap_servers = bootstrap_servers
        self._producer: AIOKafkaProducer | None = None

    async def initialize(self) -> None:
        if self._producer:
            return

        try:
            self._producer = AIOKafkaProducer(
                bootstrap_servers=self._bootstrap_servers,
                value_serializer=lambda v: orjson.dumps(v),
                acks="all",
            )
            await self._producer.start()
        except KafkaError as e:
            self._producer = None
            logger.error("Failed to initialize Kafka producer", stage="QUEUE.ERR", error=str(e))
            raise QueueConnectionError(f"Failed to initialize Kafka producer: {e}") from e

        logger.info(
            "Kafka producer initialized",
            stage="QUEUE.PRODUCER.INIT",
            bootstrap_servers=self._bootstrap_servers,
        )

    async def send_message(self, topic: str, payload: dict[str, Any]) -> str:
        """
        Send and wait for the broker acknowledgement.

        Returns:
            Message ID in format "partition-offset"
        """
        if not self._producer:
            raise QueueError("Producer not initialized")

        record_metadata = await self._producer.send_and_wait(topic, payload)
        msg_id = f"{record_metadata.partition}-{record_metadata.offset}"
        logger.debug("Message produced to Kafka", stage="QUEUE.PROD", topic=topic, id=msg_id)
        return msg_id

    async def close(self) -> None:
        if self._producer:
            await self._producer.stop()
            self._producer = None

    def is_initialized(self) -> bool:
        return self._producer is not None


# =============================================================================
# LAYER 2: CONSUMER MANAGEMENT
# =============================================================================


class ConsumerManager:
    """
    Manages the subscribed consumer (one per worker process).

    Consumer Configuration:
    - group_id: shared by all workers, partitions are balanced across them
    - auto_offset_reset: earliest, so jobs queued before the first worker
      started are still processed
    - enable_auto_commit: False (commit only after acknowledgement)
    """

    def __init__(self, topic: str, bootstrap_servers: str, group_id: str):
        self._topic = topic
        self._bootstrap_servers = bootstrap_servers
        self._group_id = group_id
        self._consumer: AIOKafkaConsumer | None = None

    async def initialize(self) -> None:
        if self._consumer:
            return

        try:
            self._consumer = AIOKafkaConsumer(
                self._topic,
                bootstrap_servers=self._bootstrap_servers,
                group_id=self._group_id,
                value_deserializer=_decode,
                auto_offset_reset="earliest",
                enable_auto_commit=False,
            )
            await self._consumer.start()
        except KafkaError as e:
            self._consumer = None
            logger.error("Failed to initialize Kafka consumer", stage="QUEUE.ERR", error=str(e))
            raise QueueConnectionError(f"Failed to initialize Kafka consumer: {e}") from e

        logger.info(
            "Kafka consumer initialized",
            stage="QUEUE.CONSUMER.INIT",
            topic=self._topic,
            group_id=self._group_id,
        )

    async def fetch_messages(self, batch_size: int, timeout_ms: int) -> list[Any]:
        """
        Returns:
            ConsumerRecords from all assigned partitions (not yet committed)
        """
        if not self._consumer:
            raise QueueError("Consumer not initialized")

        results = await self._consumer.getmany(timeout_ms=timeout_ms, max_records=batch_size)
        return [record for records in results.values() for record in records]

    async def commit(self, offsets: dict[TopicPartition, int]) -> None:
        if self._consumer and offsets:
            await self._consumer.commit(offsets)

    async def close(self) -> None:
        if self._consumer:
            await self._consumer.stop()
            self._consumer = None

    def is_initialized(self) -> bool:
        return self._consumer is not None


# =============================================================================
# LAYER 3: OFFSET TRACKING
# =============================================================================


class OffsetTracker:
    """
    Turns out-of-order acknowledgements into safe cumulative commits.

    For every partition it remembers the delivered offsets that are still
    in flight. The committable position is the lowest in-flight offset, or
    one past the highest acknowledged offset once nothing is in flight.
    """

    def __init__(self):
        self._in_flight: dict[TopicPartition, set[int]] = {}
        self._highest_done: dict[TopicPartition, int] = {}
        self._by_id: dict[str, tuple[TopicPartition, int]] = {}

    def track(self, message_id: str, tp: TopicPartition, offset: int) -> None:
        self._in_flight.setdefault(tp, set()).add(offset)
        self._by_id[message_id] = (tp, offset)

    def complete(self, message_id: str) -> dict[TopicPartition, int]:
        """
        Mark a message done.

        Returns:
            ``{tp: offset}`` to commit (empty when the watermark didn't move)
        """
        entry = self._by_id.pop(message_id, None)
        if entry is None:
            return {}

        tp, offset = entry
        pending = self._in_flight.get(tp, set())
        previous = min(pending) if pending else None
        pending.discard(offset)
        self._highest_done[tp] = max(offset, self._highest_done.get(tp, -1))

        if pending:
            watermark = min(pending)
            if watermark == previous:
                return {}
            return {tp: watermark}
        return {tp: self._highest_done[tp] + 1}

    def in_flight(self) -> int:
        return sum(len(offsets) for offsets in self._in_flight.values())


# =============================================================================
# LAYER 4: LAG MONITORING
# =============================================================================


class LagMonitor:
    """
    Computes queue depth as consumer-group lag.

    Uses its own unsubscribed consumer in the worker group so the
    autoscaler can read committed offsets without joining the group's
    partition assignment.
    """

    def __init__(self, topic: str, bootstrap_servers: str, group_id: str):
        self._topic = topic
        self._bootstrap_servers = bootstrap_servers
        self._group_id = group_id
        self._consumer: AIOKafkaConsumer | None = None

    async def _ensure_consumer(self) -> AIOKafkaConsumer:
        if self._consumer is None:
            consumer = AIOKafkaConsumer(
                bootstrap_servers=self._bootstrap_servers,
                group_id=self._group_id,
                enable_auto_commit=False,
            )
            await consumer.start()
            self._consumer = consumer
        return self._consumer

    async def lag(self) -> int:
        consumer = await self._ensure_consumer()

        # Refresh metadata so partitions_for_topic knows the topic
        await consumer.topics()
        partitions = consumer.partitions_for_topic(self._topic) or set()
        if not partitions:
            return 0

        tps = [TopicPartition(self._topic, p) for p in partitions]
        end_offsets = await consumer.end_offsets(tps)

        total = 0
        for tp in tps:
            committed = await consumer.committed(tp)
            total += max(0, end_offsets.get(tp, 0) - (committed or 0))
        return total

    async def close(self) -> None:
        if self._consumer:
            await self._consumer.stop()
            self._consumer = None


# =============================================================================
# LAYER 5: METRICS RECORDING
# =============================================================================


class MetricsRecorder:
    """Records queue metrics for observability."""

    def __init__(self, metrics_collector, queue_name: str, queue_type: str = "kafka"):
        self._metrics = metrics_collector
        self._queue_name = queue_name
        self._queue_type = queue_type

    def record_produce_success(self) -> None:
        self._metrics.record_queue_produce(self._queue_type, self._queue_name, "success")

    def record_produce_failure(self, reason: str) -> None:
        self._metrics.record_queue_produce(self._queue_type, self._queue_name, reason)

    def record_queue_depth(self, depth: int) -> None:
        self._metrics.record_queue_depth(self._queue_name, depth)

    def record_nack(self, requeue: bool) -> None:
        self._metrics.record_queue_nack(self._queue_name, requeue)


# =============================================================================
# LAYER 6: PUBLIC API
# =============================================================================


class KafkaQueue(MessageQueue):
    """
    Kafka-based durable queue.

    Usage:
        queue = KafkaQueue("quote-requested", "workers")
        await queue.initialize()

        msg_id = await queue.produce({"correlationId": "abc", ...})

        for message in await queue.consume("worker-1", batch_size=5):
            ...
            await queue.acknowledge(message.id)

    Kafka vs Redis Streams:
        - Kafka: Higher throughput, horizontal scaling, retention policies
        - Redis: Lower latency, simpler setup, memory-based
    """

    def __init__(self, topic_name: str, group_id: str = "workers"):
        settings = get_settings()
        bootstrap_servers = settings.queue.KAFKA_BOOTSTRAP_SERVERS

        self._topic = topic_name
        self._dead_letter_topic = f"{topic_name}.dead"
        self._group_id = group_id

        self._producer_mgr = ProducerManager(bootstrap_servers)
        self._consumer_mgr = ConsumerManager(topic_name, bootstrap_servers, group_id)
        self._offsets = OffsetTracker()
        self._lag_monitor = LagMonitor(topic_name, bootstrap_servers, group_id)
        self._metrics = MetricsRecorder(get_metrics_collector(), topic_name)

        logger.debug("Kafka Queue created", stage="QUEUE.INIT", topic=topic_name, group_id=group_id)

    @property
    def name(self) -> str:
        return self._topic

    async def initialize(self) -> None:
        """
        Start the producer.

        The consumer starts lazily on the first consume() so producer-only
        processes (the HTTP service) never join the worker group.
        """
        await self._producer_mgr.initialize()

    async def produce(self, payload: dict[str, Any]) -> str:
        return await self._produce_to(self._topic, payload)

    async def _produce_to(self, topic: str, payload: dict[str, Any]) -> str:
        """
        STAGE-QUEUE.PROD: Produce message

        Raises:
            QueueFullError: If the producer buffer is exhausted
            QueueError: If produce fails
        """
        if not self._producer_mgr.is_initialized():
            await self.initialize()

        try:
            msg_id = await self._producer_mgr.send_message(topic, payload)
        except KafkaError as e:
            error_str = str(e).lower()
            if "buffer" in error_str or "memory" in error_str:
                self._metrics.record_produce_failure("buffer_full")
                raise QueueFullError(f"Kafka producer buffer full for topic {topic}: {e}") from e
            self._metrics.record_produce_failure("kafka_error")
            logger.error("Failed to produce to Kafka", stage="QUEUE.ERR", topic=topic, error=str(e))
            raise QueueError(f"Failed to produce to Kafka: {e}") from e

        self._metrics.record_produce_success()
        return msg_id

    async def consume(
        self, consumer_name: str, batch_size: int = 10, block_ms: int = 2000
    ) -> list[QueueMessage]:
        """
        STAGE-QUEUE.CONS: Consume messages

        ``consumer_name`` is informational; Kafka balances by group_id.
        """
        if not self._consumer_mgr.is_initialized():
            await self._consumer_mgr.initialize()

        try:
            records = await self._consumer_mgr.fetch_messages(batch_size, block_ms)
        except KafkaError as e:
            logger.error("Failed to consume from Kafka", stage="QUEUE.ERR", error=str(e))
            raise QueueError(f"Failed to consume from Kafka: {e}") from e

        messages = []
        for record in records:
            msg_id = f"{record.partition}-{record.offset}"
            tp = TopicPartition(record.topic, record.partition)
            self._offsets.track(msg_id, tp, record.offset)
            payload = record.value or {}
            timestamp = payload.get("submittedAt") or utc_now_iso()
            messages.append(QueueMessage(id=msg_id, payload=payload, timestamp=timestamp))
        return messages

    async def acknowledge(self, message_id: str) -> None:
        """
        STAGE-QUEUE.ACK: Commit up to the contiguous acknowledged watermark.
        """
        offsets = self._offsets.complete(message_id)
        try:
            await self._consumer_mgr.commit(offsets)
        except KafkaError as e:
            logger.error("Failed to commit offsets", stage="QUEUE.ERR", error=str(e))
            raise QueueError(f"Failed to commit offsets: {e}") from e

    async def nack(
        self,
        message: QueueMessage,
        requeue: bool,
        payload: dict[str, Any] | None = None,
    ) -> None:
        """
        STAGE-QUEUE.NACK: Requeue by re-producing, or dead-letter.
        """
        body = payload if payload is not None else message.payload
        await self._produce_to(self._topic if requeue else self._dead_letter_topic, body)
        await self.acknowledge(message.id)

        self._metrics.record_nack(requeue)
        logger.info(
            "Message requeued" if requeue else "Message dead-lettered",
            stage="QUEUE.NACK",
            queue=self._topic,
            id=message.id,
        )

    async def depth(self) -> int:
        try:
            depth = await self._lag_monitor.lag()
        except KafkaError as e:
            raise QueueError(f"Failed to read consumer lag: {e}") from e

        self._metrics.record_queue_depth(depth)
        return depth

    async def close(self) -> None:
        await self._producer_mgr.close()
        await self._consumer_mgr.close()
        await self._lag_monitor.close()
