"""
Integration Tests against a Real Redis

Skipped unless USE_REAL_REDIS=1. Each test uses its own stream and key
names and removes them afterwards.
"""

import uuid

import pytest

from src.core.config.constants import JobKind
from src.core.resilience.distributed_lock import DistributedLock
from src.infrastructure.cache.redis_client import RedisClient
from src.infrastructure.message_queue.redis_queue import RedisQueue
from src.infrastructure.storage import RedisRecordStore
from tests.test_fixtures import PartnerResultFactory


@pytest.fixture
async def redis_client(use_real_redis):
    if not use_real_redis:
        pytest.skip("Set USE_REAL_REDIS=1 to run against Redis")
    client = RedisClient()
    await client.connect()
    yield client
    await client.disconnect()


@pytest.fixture
async def stream_queue(redis_client):
    name = f"it-{uuid.uuid4().hex[:8]}"
    queue = RedisQueue(name, "workers-it", redis_client=redis_client)
    await queue.initialize()
    yield queue
    await redis_client.client.delete(f"queue:{name}", f"queue:{name}:dead")


@pytest.mark.integration
class TestRedisStreamQueue:
    """Test RedisQueue against Redis Streams."""

    @pytest.mark.asyncio
    async def test_produce_consume_acknowledge(self, stream_queue):
        """Test that an acknowledged message leaves the stream."""
        await stream_queue.produce({"correlationId": "cid-1", "payload": {"value": 1000}})
        assert await stream_queue.depth() == 1

        [message] = await stream_queue.consume("worker-1", block_ms=100)
        assert message.payload["payload"] == {"value": 1000}
        assert await stream_queue.depth() == 1

        await stream_queue.acknowledge(message.id)
        assert await stream_queue.depth() == 0

    @pytest.mark.asyncio
    async def test_nack_requeue_and_dead_letter(self, stream_queue, redis_client):
        """Test that requeued messages come back and rejected ones go to the dead stream."""
        await stream_queue.produce({"deliveryAttempt": 1})
        [first] = await stream_queue.consume("worker-1", block_ms=100)

        await stream_queue.nack(first, requeue=True, payload={"deliveryAttempt": 2})
        [second] = await stream_queue.consume("worker-1", block_ms=100)
        assert second.payload == {"deliveryAttempt": 2}

        await stream_queue.nack(second, requeue=False)

        assert await stream_queue.depth() == 0
        assert await redis_client.client.xlen(f"queue:{stream_queue.name}:dead") == 1

    @pytest.mark.asyncio
    async def test_one_delivery_per_group(self, stream_queue):
        """Test that two consumers in a group never receive the same message."""
        await stream_queue.produce({"correlationId": "cid-1"})

        first = await stream_queue.consume("worker-1", block_ms=100)
        second = await stream_queue.consume("worker-2", block_ms=100)

        assert len(first) == 1
        assert second == []


@pytest.mark.integration
class TestRedisLocksAndRecords:
    """Test the lock and the record store on Redis."""

    @pytest.mark.asyncio
    async def test_distributed_lock_single_holder(self, redis_client):
        """Test that only one holder gets the lock and only it can release it."""
        name = f"it-{uuid.uuid4().hex[:8]}"
        first = DistributedLock(redis_client, name, ttl_ms=5000)
        second = DistributedLock(redis_client, name, ttl_ms=5000)

        assert await first.acquire() is True
        assert await second.acquire() is False
        assert await second.release() is False
        assert await first.release() is True
        assert await second.acquire() is True
        await second.release()

    @pytest.mark.asyncio
    async def test_record_store_round_trip(self, redis_client):
        """Test that saved records can be fetched and listed."""
        store = RedisRecordStore(redis_client)
        quote_id = f"it-{uuid.uuid4().hex[:8]}"

        saved = await store.save(JobKind.QUOTE, PartnerResultFactory.quote(quote_id), {"value": 1000})

        try:
            assert await store.get(JobKind.QUOTE, quote_id) == saved
            quotes, total = await store.list(JobKind.QUOTE, limit=1)
            assert total >= 1
            assert quotes[0]["id"] == quote_id
        finally:
            await redis_client.client.delete(f"record:quote:{quote_id}")
            await redis_client.client.zrem("record:quote:index", quote_id)
