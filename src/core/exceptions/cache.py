"""
Key-Value Store Exceptions

All exceptions related to the shared expiring key-value store (Redis).

Author: System Architect
Date: 2025-12-08
"""

from src.core.exceptions.base import BridgeBaseError


class CacheError(BridgeBaseError):
    """Base exception for key-value store errors."""
    pass


class CacheConnectionError(CacheError):
    """
    Raised when unable to connect to Redis.

    Common causes:
    - Redis server is down
    - Network connectivity issues
    - Incorrect host/port configuration
    """
    pass


class CacheKeyError(CacheError):
    """
    Raised when a key operation fails.

    Common causes:
    - Operation timeout
    - Connection dropped mid-command
    - Memory limit exceeded
    """
    pass
