"""
Key-Value Store Protocol

This module defines the expiring key-value store the bridge coordinates
through: pending markers, processing locks, reply envelopes and the
distributed lock all live behind this interface.

Architectural Decision: Protocol-based abstraction
- RedisClient is the production implementation
- InMemoryKeyValueStore backs unit tests and single-process development
- The correlator, worker and lock depend only on this protocol

Author: System Architect
Date: 2025-12-08
"""

import time
from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class KeyValueStore(Protocol):
    """
    Protocol for the shared expiring key-value store.

    Required primitives:
    - set-with-TTL, get, delete
    - atomic set-if-absent-with-TTL (``set(..., nx=True)``)
    - atomic compare-and-delete / compare-and-expire for token-owned keys
    """

    async def ping(self) -> bool:
        """
        Check if the store is reachable.
        """
        ...

    async def get(self, key: str) -> str | None:
        """
        Get value for ``key``.

        Raises:
            CacheKeyError: If operation fails
        """
        ...

    async def set(
        self,
        key: str,
        value: str,
        ttl: int | None = None,
        nx: bool = False,
        xx: bool = False
    ) -> bool:
        """
        Set value.

        Args:
            key: Key
            value: Value to store
            ttl: Time-to-live in seconds (optional)
            nx: Only set if key doesn't exist
            xx: Only set if key exists

        Returns:
            bool: True if the value was written

        Raises:
            CacheKeyError: If operation fails
        """
        ...

    async def delete(self, *keys: str) -> int:
        """
        Delete keys.

        Returns:
            int: Number of keys deleted
        """
        ...

    async def exists(self, *keys: str) -> int:
        """Number of the given keys that exist."""
        ...

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        """Delete ``key`` only if it currently holds ``expected``."""
        ...

    async def compare_and_expire(self, key: str, expected: str, ttl_ms: int) -> bool:
        """Reset the TTL of ``key`` only if it currently holds ``expected``."""
        ...


class InMemoryKeyValueStore:
    """
    In-process implementation of the KeyValueStore protocol.

    Honors TTLs lazily (expired keys vanish on the next access) using an
    injectable clock so tests can move time forward.

    Note: This is NOT shared across processes.
    Use only for tests and single-process development.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._store: dict[str, str] = {}
        self._expires_at: dict[str, float] = {}

    def _purge(self, key: str) -> None:
        deadline = self._expires_at.get(key)
        if deadline is not None and self._clock() >= deadline:
            self._store.pop(key, None)
            self._expires_at.pop(key, None)

    def _alive(self, key: str) -> bool:
        self._purge(key)
        return key in self._store

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> str | None:
        self._purge(key)
        return self._store.get(key)

    async def set(
        self,
        key: str,
        value: str,
        ttl: int | None = None,
        nx: bool = False,
        xx: bool = False
    ) -> bool:
        exists = self._alive(key)
        if nx and exists:
            return False
        if xx and not exists:
            return False

        self._store[key] = value
        if ttl:
            self._expires_at[key] = self._clock() + ttl
        else:
            self._expires_at.pop(key, None)
        return True

    async def set_ms(self, key: str, value: str, ttl_ms: int, nx: bool = False) -> bool:
        """Millisecond-TTL variant used by the distributed lock."""
        if nx and self._alive(key):
            return False
        self._store[key] = value
        self._expires_at[key] = self._clock() + ttl_ms / 1000
        return True

    async def delete(self, *keys: str) -> int:
        count = 0
        for key in keys:
            if self._alive(key):
                del self._store[key]
                self._expires_at.pop(key, None)
                count += 1
        return count

    async def exists(self, *keys: str) -> int:
        return sum(1 for key in keys if self._alive(key))

    async def ttl(self, key: str) -> int:
        """Remaining TTL in whole seconds, -1 if no TTL, -2 if missing."""
        if not self._alive(key):
            return -2
        deadline = self._expires_at.get(key)
        if deadline is None:
            return -1
        return max(0, int(round(deadline - self._clock())))

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        if self._alive(key) and self._store[key] == expected:
            del self._store[key]
            self._expires_at.pop(key, None)
            return True
        return False

    async def compare_and_expire(self, key: str, expected: str, ttl_ms: int) -> bool:
        if self._alive(key) and self._store[key] == expected:
            self._expires_at[key] = self._clock() + ttl_ms / 1000
            return True
        return False

    def keys(self) -> list[str]:
        """Live keys (test helper)."""
        return [key for key in list(self._store) if self._alive(key)]

    async def health_check(self) -> dict[str, Any]:
        return {"status": "healthy", "connected": True, "keys_count": len(self.keys())}
