"""
Cache Module

Redis-backed expiring key-value store shared by the correlator and workers.
"""

from .redis_client import (
    RedisClient,
    close_redis,
    get_redis_client,
    init_redis,
)

__all__ = [
    "RedisClient",
    "get_redis_client",
    "init_redis",
    "close_redis",
]
