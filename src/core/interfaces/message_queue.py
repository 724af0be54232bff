"""
Message Queue Interface

Abstract base for the durable queue backends (Redis Streams, Kafka).

Delivery contract:
- at-least-once: a message is redelivered until it is acknowledged or nacked
- acknowledge removes the message for good
- nack(requeue=True) puts the message (or a replacement payload) back at the tail
- nack(requeue=False) moves the message to the queue's dead-letter side queue
- depth() counts undelivered plus unacknowledged messages

Author: System Architect
Date: 2025-12-08
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any


@dataclass
class QueueMessage:
    """
    Represents a message in the queue.
    """
    id: str
    payload: dict[str, Any]
    timestamp: str


class MessageQueue(ABC):
    """
    Abstract base class for message queue implementations.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Logical queue name (e.g. ``quote-requested``)."""

    @abstractmethod
    async def initialize(self) -> None:
        """Initialize connection to the queue."""
        pass

    @abstractmethod
    async def produce(self, payload: dict[str, Any]) -> str:
        """
        Persistently publish a message.

        Args:
            payload: JSON-serializable document.

        Returns:
            str: Message ID.
        """
        pass

    @abstractmethod
    async def consume(
        self,
        consumer_name: str,
        batch_size: int = 10,
        block_ms: int = 2000
    ) -> list[QueueMessage]:
        """
        Consume messages from the queue (manual acknowledgement).

        Args:
            consumer_name: Unique consumer name.
            batch_size: Number of messages to fetch.
            block_ms: Time to block waiting for messages.
        """
        pass

    @abstractmethod
    async def acknowledge(self, message_id: str) -> None:
        """
        Acknowledge a processed message.

        Args:
            message_id: ID of the message to acknowledge.
        """
        pass

    @abstractmethod
    async def nack(
        self,
        message: QueueMessage,
        requeue: bool,
        payload: dict[str, Any] | None = None,
    ) -> None:
        """
        Negatively acknowledge a message.

        Args:
            message: The delivered message.
            requeue: Put it back for another attempt instead of dead-lettering it.
            payload: Replacement payload for the requeued copy (defaults to the original).
        """
        pass

    @abstractmethod
    async def depth(self) -> int:
        """Number of undelivered plus unacknowledged messages."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close the connection."""
        pass
