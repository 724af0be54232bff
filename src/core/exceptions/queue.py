"""
Message Queue Exceptions

All exceptions related to message queue operations (Redis Streams, Kafka).

Author: System Architect
Date: 2025-12-08
"""

from src.core.exceptions.base import BridgeBaseError


class QueueError(BridgeBaseError):
    """Base exception for message queue errors."""
    pass


class QueueConnectionError(QueueError):
    """
    Raised when the queue backend cannot be reached.

    The autoscaler treats this as connection loss and re-enters its
    running state after the reconnect delay.
    """
    pass


class QueueFullError(QueueError):
    """
    Raised when queue is full (backpressure).

    This indicates the system is under heavy load and cannot accept more messages.
    """
    pass


class QueueConsumerError(QueueError):
    """
    Raised when a queue consumer encounters an error.

    Common causes:
    - Message deserialization failure
    - Connection to queue lost
    """
    pass
