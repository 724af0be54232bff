"""
Distributed Lock - Token-owned mutual exclusion over the key-value store

Architecture:
    DistributedLock
        ├── acquire()  SET lock:{name} <token> NX PX <ttl>
        ├── renew()    compare-and-expire (Lua): only the holder can extend
        └── release()  compare-and-delete (Lua): only the holder can delete

The token is random per lock instance, so a holder whose lease expired and
was taken over can never extend or delete the new holder's lock.

Usage:
    lock = DistributedLock(redis_client, "autoscaler-leader", ttl_ms=30000)

    async with lock:
        ...  # critical section

    # Or, for long-held leadership:
    if await lock.acquire():
        while await lock.renew():
            ...

Author: System Architect
Date: 2025-12-13
"""

import asyncio
import uuid
from collections.abc import Awaitable, Callable

from src.core.config.constants import LOCK_KEY_PREFIX
from src.core.exceptions import CacheError, LockError
from src.core.interfaces.key_value import KeyValueStore
from src.core.logging.logger import get_logger

logger = get_logger(__name__)


def lock_key(name: str) -> str:
    return f"{LOCK_KEY_PREFIX}:{name}"


class DistributedLock:
    """
    A lease-based lock identified by ``name``.

    Attributes:
        name: Logical lock name (stored under lock:{name})
        ttl_ms: Lease length; the lock frees itself if the holder dies
        token: Ownership token written as the key's value
    """

    def __init__(
        self,
        store: KeyValueStore,
        name: str,
        ttl_ms: int = 30000,
        token: str | None = None,
        retry_interval_seconds: float = 0.1,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if ttl_ms <= 0:
            raise ValueError("ttl_ms must be positive")
        self._store = store
        self.name = name
        self.key = lock_key(name)
        self.ttl_ms = ttl_ms
        self.token = token or uuid.uuid4().hex
        self._retry_interval = retry_interval_seconds
        self._sleep = sleep
        self._held = False

    @property
    def held(self) -> bool:
        """Whether this instance believes it holds the lock."""
        return self._held

    async def acquire(self, timeout_seconds: float | None = None) -> bool:
        """
        Try to take the lock.

        Args:
            timeout_seconds: None tries once; otherwise keep retrying until
                the timeout elapses

        Returns:
            True if the lock is now held by this instance
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout_seconds is None else loop.time() + timeout_seconds

        while True:
            acquired = await self._store.set_ms(self.key, self.token, self.ttl_ms, nx=True)
            if acquired:
                self._held = True
                logger.debug("Lock acquired", lock=self.name, ttl_ms=self.ttl_ms)
                return True
            if deadline is None or loop.time() >= deadline:
                return False
            await self._sleep(self._retry_interval)

    async def renew(self) -> bool:
        """
        Extend the lease if this instance still owns it.

        Returns:
            False if the lock was lost (expired and possibly taken over)
        """
        renewed = await self._store.compare_and_expire(self.key, self.token, self.ttl_ms)
        if not renewed and self._held:
            logger.warning("Lock lost", lock=self.name)
        self._held = renewed
        return renewed

    async def release(self) -> bool:
        """
        Delete the lock if this instance still owns it.

        Returns:
            True if the lock was deleted by this call
        """
        released = await self._store.compare_and_delete(self.key, self.token)
        self._held = False
        if released:
            logger.debug("Lock released", lock=self.name)
        return released

    async def __aenter__(self) -> "DistributedLock":
        try:
            acquired = await self.acquire(timeout_seconds=self.ttl_ms / 1000)
        except CacheError as e:
            raise LockError.from_exception(e, message=f"Could not acquire lock {self.name}", lock=self.name) from e
        if not acquired:
            raise LockError(f"Lock {self.name} is held by another owner", details={"lock": self.name})
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            await self.release()
        except CacheError as e:
            # The lease expires on its own
            logger.warning("Lock release failed", lock=self.name, error=str(e))
