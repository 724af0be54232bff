"""
In-Memory Message Queue

A MessageQueue double with the same delivery contract as the Redis and
Kafka backends: consume hands out undelivered messages, acknowledge and
nack settle them, depth counts undelivered plus unacknowledged.

Every settlement is recorded so tests can assert on ack/nack decisions.
"""

import itertools
from typing import Any

from src.core.exceptions import QueueConnectionError, QueueError
from src.core.interfaces.message_queue import MessageQueue, QueueMessage
from src.core.models.jobs import utc_now_iso


class InMemoryMessageQueue(MessageQueue):
    """
    Process-local queue with failure injection.

    Attributes:
        produce_failures: Number of upcoming produce() calls that raise QueueError
        depth_error: When set, depth() raises it
        initialize_error: When set, initialize() raises it
    """

    def __init__(self, name: str = "test-queue"):
        self._name = name
        self._ids = itertools.count(1)
        self.ready: list[QueueMessage] = []
        self.unacked: dict[str, QueueMessage] = {}
        self.dead_letters: list[QueueMessage] = []
        self.produced: list[dict[str, Any]] = []
        self.acked: list[str] = []
        self.nacked: list[tuple[str, bool]] = []
        self.produce_failures = 0
        self.produce_attempts = 0
        self.depth_error: Exception | None = None
        self.initialize_error: Exception | None = None
        self.initialized = False
        self.closed = False

    @property
    def name(self) -> str:
        return self._name

    async def initialize(self) -> None:
        if self.initialize_error is not None:
            raise self.initialize_error
        self.initialized = True
        self.closed = False

    def _enqueue(self, payload: dict[str, Any]) -> QueueMessage:
        message = QueueMessage(id=f"{self._name}-{next(self._ids)}", payload=payload, timestamp=utc_now_iso())
        self.ready.append(message)
        return message

    async def produce(self, payload: dict[str, Any]) -> str:
        self.produce_attempts += 1
        if self.produce_failures > 0:
            self.produce_failures -= 1
            raise QueueConnectionError(f"Queue {self._name} is not connected")
        self.produced.append(payload)
        return self._enqueue(payload).id

    async def consume(self, consumer_name: str, batch_size: int = 10, block_ms: int = 2000) -> list[QueueMessage]:
        batch, self.ready = self.ready[:batch_size], self.ready[batch_size:]
        for message in batch:
            self.unacked[message.id] = message
        return batch

    async def acknowledge(self, message_id: str) -> None:
        self.unacked.pop(message_id, None)
        self.acked.append(message_id)

    async def nack(self, message: QueueMessage, requeue: bool, payload: dict[str, Any] | None = None) -> None:
        self.unacked.pop(message.id, None)
        self.nacked.append((message.id, requeue))
        body = payload if payload is not None else message.payload
        if requeue:
            self._enqueue(body)
        else:
            self.dead_letters.append(QueueMessage(id=message.id, payload=body, timestamp=message.timestamp))

    async def depth(self) -> int:
        if self.depth_error is not None:
            raise self.depth_error
        return len(self.ready) + len(self.unacked)

    async def close(self) -> None:
        self.closed = True

    def deliver(self, payload: dict[str, Any]) -> QueueMessage:
        """Put ``payload`` on the queue and hand it out as if consumed."""
        message = self._enqueue(payload)
        self.ready.remove(message)
        self.unacked[message.id] = message
        return message

    def set_depth(self, depth: int) -> None:
        """Fill the queue with ``depth`` opaque messages."""
        self.ready = []
        for _ in range(depth):
            self._enqueue({"filler": True})


class FailingQueue(InMemoryMessageQueue):
    """A queue whose every operation fails, as when the broker is down."""

    async def produce(self, payload: dict[str, Any]) -> str:
        self.produce_attempts += 1
        raise QueueConnectionError("Broker unreachable")

    async def consume(self, consumer_name: str, batch_size: int = 10, block_ms: int = 2000) -> list[QueueMessage]:
        raise QueueError("Broker unreachable")

    async def depth(self) -> int:
        raise QueueError("Broker unreachable")
