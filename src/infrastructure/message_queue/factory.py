"""
Message Queue Factory

Factory pattern for creating message queue instances based on type.
The QUEUE_TYPE setting selects the backend for every job and reply queue.
"""

from src.core.config.settings import get_settings
from src.core.interfaces.message_queue import MessageQueue
from src.infrastructure.message_queue.kafka_queue import KafkaQueue
from src.infrastructure.message_queue.redis_queue import RedisQueue


class MessageQueueFactory:
    """
    Factory for creating message queue instances.

    Supports:
    - Redis Streams (RedisQueue)
    - Kafka (KafkaQueue)
    """

    def __init__(self):
        self._queue_types = {
            "redis": RedisQueue,
            "kafka": KafkaQueue,
        }

    def get(self, queue_type: str, topic: str, group_name: str = "workers") -> MessageQueue:
        """
        Get a message queue instance.

        Raises:
            ValueError: If queue_type is not supported
        """
        queue_type_lower = queue_type.lower()

        if queue_type_lower not in self._queue_types:
            raise ValueError(
                f"Unknown queue type: {queue_type}. "
                f"Available types: {', '.join(self._queue_types.keys())}"
            )

        # RedisQueue and KafkaQueue have different constructor signatures
        if queue_type_lower == "redis":
            return RedisQueue(stream_name=topic, group_name=group_name)
        return KafkaQueue(topic_name=topic, group_id=group_name)

    def get_available(self) -> list[str]:
        return list(self._queue_types.keys())


# ============================================================================
# Helper Function for Configuration-Based Selection
# ============================================================================


def get_message_queue(topic: str, group_name: str | None = None) -> MessageQueue:
    """
    Build the configured queue backend for ``topic``.

    Example:
        queue = get_message_queue("quote-requested")
        await queue.initialize()
        await queue.produce({"correlationId": "abc"})
    """
    settings = get_settings()
    group = group_name or settings.queue.QUEUE_CONSUMER_GROUP
    return MessageQueueFactory().get(settings.queue.QUEUE_TYPE, topic, group)
