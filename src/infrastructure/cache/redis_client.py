"""
Redis Client with Connection Pooling

Architecture:
    RedisClient (Public API, implements KeyValueStore)
        ├── ConnectionManager (Connection lifecycle)
        ├── OperationExecutor (Command execution with error handling)
        └── HealthMonitor (Health checks and pool metrics)

Redis is the bridge's shared expiring key-value store. Every key the
correlator and the workers coordinate through is written here with an
explicit TTL:

    pending:{cid}              120s   correlator writes, correlator deletes
    processing:{kind}:{cid}     30s   worker acquires (SET NX), worker releases
    response:{cid}             300s   worker writes (SET NX), correlator deletes
    completed:{kind}:{cid}     24h    worker writes, expires
    lock:{name}            configured token owned (compare-and-delete)

Author: Refactored for clarity and maintainability
Date: 2025-12-13
"""

import time
from typing import Any

import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool
from redis.exceptions import ConnectionError, RedisError, TimeoutError

from src.core.config.settings import get_settings
from src.core.exceptions import CacheConnectionError, CacheKeyError
from src.core.logging.logger import get_logger

logger = get_logger(__name__)


# Delete the key only while it still holds the caller's token
COMPARE_AND_DELETE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""

# Extend the key's TTL only while it still holds the caller's token
COMPARE_AND_EXPIRE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('pexpire', KEYS[1], ARGV[2])
end
return 0
"""


# =============================================================================
# LAYER 1: CONNECTION MANAGEMENT
# Handles connection lifecycle, pooling, and reconnection
# =============================================================================


class ConnectionManager:
    """
    Manages Redis connection lifecycle and pooling.

    Responsibility: Connection establishment, pooling, and cleanup.

    Pool Configuration:
    - Max connections: 100 (configurable)
    - Socket timeout: 5s
    - Health check interval: 30s
    - Retry on timeout: Enabled
    """

    def __init__(self, settings):
        self._settings = settings
        self._pool: ConnectionPool | None = None
        self._client: redis.Redis | None = None
        self._is_connected = False

    async def connect(self) -> redis.Redis:
        """
        Establish connection to Redis with connection pooling.

        STAGE-REDIS.2: Connection establishment

        Returns:
            redis.Redis: Connected Redis client

        Raises:
            CacheConnectionError: If connection fails
        """
        if self._is_connected and self._client:
            return self._client

        try:
            self._pool = ConnectionPool(
                host=self._settings.redis.REDIS_HOST,
                port=self._settings.redis.REDIS_PORT,
                db=self._settings.redis.REDIS_DB,
                password=self._settings.redis.REDIS_PASSWORD,
                max_connections=self._settings.redis.REDIS_MAX_CONNECTIONS,
                socket_connect_timeout=self._settings.redis.REDIS_SOCKET_CONNECT_TIMEOUT,
                socket_timeout=self._settings.redis.REDIS_SOCKET_TIMEOUT,
                retry_on_timeout=True,
                health_check_interval=self._settings.redis.REDIS_HEALTH_CHECK_INTERVAL,
                decode_responses=True,  # Return strings instead of bytes
            )

            self._client = redis.Redis(connection_pool=self._pool)

            # Verify the pool actually reaches a server
            await self._client.ping()

            self._is_connected = True

            logger.info(
                "Redis connected successfully",
                stage="REDIS.2",
                host=self._settings.redis.REDIS_HOST,
                port=self._settings.redis.REDIS_PORT,
                max_connections=self._settings.redis.REDIS_MAX_CONNECTIONS,
            )

            return self._client

        except (ConnectionError, TimeoutError) as e:
            logger.error("Failed to connect to Redis", stage="REDIS.2", error=str(e))
            raise CacheConnectionError(
                message=f"Failed to connect to Redis: {e}",
                details={
                    "host": self._settings.redis.REDIS_HOST,
                    "port": self._settings.redis.REDIS_PORT,
                },
            ) from e

    async def disconnect(self) -> None:
        """
        Close Redis connection and pool.

        STAGE-REDIS.3: Connection cleanup
        """
        if self._client:
            await self._client.aclose()

        if self._pool:
            await self._pool.disconnect()

        self._client = None
        self._pool = None
        self._is_connected = False

        logger.info("Redis disconnected", stage="REDIS.3")

    async def ping(self) -> bool:
        try:
            if self._client and self._is_connected:
                await self._client.ping()
                return True
        except (ConnectionError, TimeoutError):
            return False
        return False

    def get_client(self) -> redis.Redis | None:
        return self._client

    def get_pool(self) -> ConnectionPool | None:
        return self._pool

    def is_connected(self) -> bool:
        return self._is_connected


# =============================================================================
# LAYER 2: OPERATION EXECUTOR
# Executes Redis commands with error handling and logging
# =============================================================================


class OperationExecutor:
    """
    Executes Redis operations with consistent error handling.

    Error Handling Strategy:
    - Catch RedisError exceptions
    - Log error with context (stage, key)
    - Raise CacheKeyError chained to the original error
    """

    def __init__(self, redis_client: redis.Redis):
        self._redis = redis_client
        self._compare_and_delete = redis_client.register_script(COMPARE_AND_DELETE_SCRIPT)
        self._compare_and_expire = redis_client.register_script(COMPARE_AND_EXPIRE_SCRIPT)

    def _fail(self, op: str, key: str, error: RedisError) -> CacheKeyError:
        logger.error(f"Redis {op} failed", stage=f"REDIS.{op}", key=key, error=str(error))
        return CacheKeyError(message=f"Redis {op} failed: {error}", details={"key": key})

    # -------------------------------------------------------------------------
    # Basic Operations
    # -------------------------------------------------------------------------

    async def get(self, key: str) -> str | None:
        try:
            return await self._redis.get(key)
        except RedisError as e:
            raise self._fail("GET", key, e) from e

    async def set(
        self, key: str, value: str, ttl: int | None = None, nx: bool = False, xx: bool = False
    ) -> bool:
        """
        Set value in Redis.

        STAGE-REDIS.SET: Redis SET operation

        With ``nx=True`` this is the atomic set-if-absent primitive: the
        return value is False when another writer got there first.
        """
        try:
            result = await self._redis.set(key, value, ex=ttl, nx=nx, xx=xx)
            return bool(result)
        except RedisError as e:
            raise self._fail("SET", key, e) from e

    async def set_ms(self, key: str, value: str, ttl_ms: int, nx: bool = False) -> bool:
        try:
            result = await self._redis.set(key, value, px=ttl_ms, nx=nx)
            return bool(result)
        except RedisError as e:
            raise self._fail("SET", key, e) from e

    async def delete(self, *keys: str) -> int:
        try:
            return await self._redis.delete(*keys)
        except RedisError as e:
            raise self._fail("DEL", ",".join(keys), e) from e

    async def exists(self, *keys: str) -> int:
        try:
            return await self._redis.exists(*keys)
        except RedisError as e:
            raise self._fail("EXISTS", ",".join(keys), e) from e

    async def ttl(self, key: str) -> int:
        try:
            return await self._redis.ttl(key)
        except RedisError as e:
            raise self._fail("TTL", key, e) from e

    # -------------------------------------------------------------------------
    # Token-owned keys (distributed lock)
    # -------------------------------------------------------------------------

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        try:
            return bool(await self._compare_and_delete(keys=[key], args=[expected]))
        except RedisError as e:
            raise self._fail("CAD", key, e) from e

    async def compare_and_expire(self, key: str, expected: str, ttl_ms: int) -> bool:
        try:
            return bool(await self._compare_and_expire(keys=[key], args=[expected, ttl_ms]))
        except RedisError as e:
            raise self._fail("CAE", key, e) from e

    # -------------------------------------------------------------------------
    # Sorted sets (record indexes)
    # -------------------------------------------------------------------------

    async def zadd(self, name: str, mapping: dict[str, float]) -> int:
        try:
            return await self._redis.zadd(name, mapping)
        except RedisError as e:
            raise self._fail("ZADD", name, e) from e

    async def zrevrange(self, name: str, start: int, end: int) -> list[str]:
        try:
            return await self._redis.zrevrange(name, start, end)
        except RedisError as e:
            raise self._fail("ZREVRANGE", name, e) from e

    async def zcard(self, name: str) -> int:
        try:
            return await self._redis.zcard(name)
        except RedisError as e:
            raise self._fail("ZCARD", name, e) from e


# =============================================================================
# LAYER 3: HEALTH MONITORING
# =============================================================================


class HealthMonitor:
    """
    Monitors Redis health and connection pool metrics.

    Metrics Tracked:
    - Connection status
    - Ping latency
    - Pool size
    """

    def __init__(self, connection_manager: ConnectionManager, settings):
        self._conn_mgr = connection_manager
        self._settings = settings

    async def health_check(self) -> dict[str, Any]:
        """
        Perform health check on Redis connection.

        STAGE-REDIS.HEALTH: Redis health check
        """
        health = {
            "status": "healthy",
            "connected": self._conn_mgr.is_connected(),
            "host": self._settings.redis.REDIS_HOST,
            "port": self._settings.redis.REDIS_PORT,
            "pool_size": 0,
            "ping_latency_ms": None,
        }

        client = self._conn_mgr.get_client()
        if not client:
            health["status"] = "unhealthy"
            health["error"] = "Client not initialized"
            return health

        try:
            start = time.perf_counter()
            await client.ping()
            health["ping_latency_ms"] = round((time.perf_counter() - start) * 1000, 2)
        except RedisError as e:
            health["status"] = "unhealthy"
            health["error"] = str(e)
            return health

        pool = self._conn_mgr.get_pool()
        if pool:
            health["pool_size"] = pool.max_connections

        return health


# =============================================================================
# LAYER 4: PUBLIC API
# Clean interface that coordinates all layers
# =============================================================================


class RedisClient:
    """
    Async Redis client with connection pooling and health checks.

    Implements the KeyValueStore protocol; the queue backend reaches the raw
    client through ``client`` for stream commands.

    Usage:
        client = RedisClient()
        await client.connect()

        acquired = await client.set("processing:quote:abc", "worker-1", ttl=30, nx=True)
        value = await client.get("response:abc")

        await client.disconnect()
    """

    def __init__(self):
        """
        Initialize Redis client.

        STAGE-REDIS.1: Client initialization
        """
        self._settings = get_settings()

        self._conn_mgr = ConnectionManager(self._settings)
        self._executor: OperationExecutor | None = None
        self._health_monitor = HealthMonitor(self._conn_mgr, self._settings)

        logger.info(
            "Redis client initialized",
            stage="REDIS.1",
            host=self._settings.redis.REDIS_HOST,
            port=self._settings.redis.REDIS_PORT,
        )

    async def connect(self) -> None:
        """
        Establish connection to Redis with connection pooling.

        Raises:
            CacheConnectionError: If connection fails
        """
        client = await self._conn_mgr.connect()
        if self._executor is None:
            self._executor = OperationExecutor(client)

    async def disconnect(self) -> None:
        await self._conn_mgr.disconnect()
        self._executor = None

    async def ping(self) -> bool:
        return await self._conn_mgr.ping()

    @property
    def client(self) -> redis.Redis:
        """Raw redis-py client (stream commands)."""
        client = self._conn_mgr.get_client()
        if client is None:
            raise CacheConnectionError("Redis client used before connect()")
        return client

    def _ops(self) -> OperationExecutor:
        if self._executor is None:
            raise CacheConnectionError("Redis client used before connect()")
        return self._executor

    # -------------------------------------------------------------------------
    # Delegate to OperationExecutor
    # -------------------------------------------------------------------------

    async def get(self, key: str) -> str | None:
        return await self._ops().get(key)

    async def set(
        self, key: str, value: str, ttl: int | None = None, nx: bool = False, xx: bool = False
    ) -> bool:
        return await self._ops().set(key, value, ttl, nx, xx)

    async def set_ms(self, key: str, value: str, ttl_ms: int, nx: bool = False) -> bool:
        return await self._ops().set_ms(key, value, ttl_ms, nx)

    async def delete(self, *keys: str) -> int:
        return await self._ops().delete(*keys)

    async def exists(self, *keys: str) -> int:
        return await self._ops().exists(*keys)

    async def ttl(self, key: str) -> int:
        return await self._ops().ttl(key)

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        return await self._ops().compare_and_delete(key, expected)

    async def compare_and_expire(self, key: str, expected: str, ttl_ms: int) -> bool:
        return await self._ops().compare_and_expire(key, expected, ttl_ms)

    async def zadd(self, name: str, mapping: dict[str, float]) -> int:
        return await self._ops().zadd(name, mapping)

    async def zrevrange(self, name: str, start: int, end: int) -> list[str]:
        return await self._ops().zrevrange(name, start, end)

    async def zcard(self, name: str) -> int:
        return await self._ops().zcard(name)

    async def health_check(self) -> dict[str, Any]:
        return await self._health_monitor.health_check()


# =============================================================================
# GLOBAL INSTANCE (SINGLETON PATTERN)
# =============================================================================

_redis_client: RedisClient | None = None


def get_redis_client() -> RedisClient:
    """
    Get the global Redis client instance (singleton).
    """
    global _redis_client

    if _redis_client is None:
        _redis_client = RedisClient()

    return _redis_client


async def init_redis() -> RedisClient:
    """
    Initialize and connect the global Redis client.
    """
    client = get_redis_client()
    await client.connect()
    return client


async def close_redis() -> None:
    """Close the global Redis client."""
    global _redis_client

    if _redis_client:
        await _redis_client.disconnect()
        _redis_client = None
