"""
Unit Tests for the Record Stores

Tests record construction (quote status, booking enrichment), the Redis key
layout and the in-memory store's newest-first listing.
"""

import orjson
import pytest

from src.core.config.constants import JobKind
from src.core.exceptions import CacheConnectionError, RecordNotFoundError, RecordStoreError
from src.infrastructure.storage import RedisRecordStore, build_record
from tests.test_fixtures import PartnerResultFactory


@pytest.mark.unit
class TestBuildRecord:
    """Test record construction from partner results."""

    def test_record_keeps_result_and_request(self):
        """Test that the record is the result plus bookkeeping fields."""
        record = build_record(JobKind.QUOTE, PartnerResultFactory.quote("Q1", premium=50), {"value": 5000})

        assert record["id"] == "Q1"
        assert record["premium"] == 50
        assert record["kind"] == "quote"
        assert record["request"] == {"value": 5000}
        assert record["createdAt"].endswith("Z")

    def test_result_without_id_gets_generated_id(self):
        """Test that a record is always addressable."""
        record = build_record(JobKind.BOOKING, {"quoteId": "Q1"}, {"quoteId": "Q1"})

        assert len(record["id"]) == 32

    @pytest.mark.parametrize(
        "expires_at,status",
        [("2099-01-01T00:00:00Z", "active"), ("2020-01-01T00:00:00Z", "expired")],
    )
    def test_quote_status_from_expiry(self, expires_at, status):
        """Test that quotes are stamped active or expired when saved."""
        record = build_record(JobKind.QUOTE, PartnerResultFactory.quote("Q1", expiresAt=expires_at), {})

        assert record["status"] == status

    def test_booking_takes_premium_and_coverage_from_quote(self):
        """Test that a booking carries the purchased quote's premium and coverage."""
        quote = {"id": "Q1", "premium": 12.5, "coverageAmount": 1250}

        record = build_record(JobKind.BOOKING, PartnerResultFactory.booking("B1", "Q1"), {"quoteId": "Q1"}, quote)

        assert record["status"] == "active"
        assert record["premium"] == 12.5
        assert record["coverageAmount"] == 1250

    def test_booking_without_quote_has_empty_premium(self):
        """Test that a booking for an unknown quote is still recorded."""
        record = build_record(JobKind.BOOKING, PartnerResultFactory.booking("B1", "Q404"), {"quoteId": "Q404"})

        assert record["premium"] is None
        assert record["coverageAmount"] is None


@pytest.mark.unit
class TestRedisRecordStore:
    """Test RedisRecordStore against a mocked RedisClient."""

    @pytest.mark.asyncio
    async def test_save_writes_record_and_index(self, mock_redis_client):
        """Test that save stores the JSON record and indexes it by time."""
        store = RedisRecordStore(mock_redis_client)

        record = await store.save(JobKind.QUOTE, PartnerResultFactory.quote("Q1"), {"value": 1000})

        key, raw = mock_redis_client.set.await_args.args
        assert key == "record:quote:Q1"
        assert orjson.loads(raw) == record
        index, members = mock_redis_client.zadd.await_args.args
        assert index == "record:quote:index"
        assert list(members) == ["Q1"]

    @pytest.mark.asyncio
    async def test_save_booking_reads_purchased_quote(self, mock_redis_client):
        """Test that saving a booking looks up the quote it purchased."""
        mock_redis_client.get.return_value = orjson.dumps({"id": "Q1", "premium": 50, "coverageAmount": 5000}).decode()
        store = RedisRecordStore(mock_redis_client)

        record = await store.save(JobKind.BOOKING, PartnerResultFactory.booking("B1", "Q1"), {"quoteId": "Q1"})

        mock_redis_client.get.assert_awaited_once_with("record:quote:Q1")
        assert record["premium"] == 50
        assert record["coverageAmount"] == 5000
        key, _raw = mock_redis_client.set.await_args.args
        assert key == "record:booking:B1"

    @pytest.mark.asyncio
    async def test_save_failure_is_record_store_error(self, mock_redis_client):
        """Test that Redis failures surface as RecordStoreError."""
        mock_redis_client.set.side_effect = CacheConnectionError("Redis unavailable")
        store = RedisRecordStore(mock_redis_client)

        with pytest.raises(RecordStoreError) as exc_info:
            await store.save(JobKind.BOOKING, PartnerResultFactory.booking("B1"), {"quoteId": "Q1"})

        assert exc_info.value.details["record_id"] == "B1"
        assert not isinstance(exc_info.value, RecordNotFoundError)

    @pytest.mark.asyncio
    async def test_get_decodes_record(self, mock_redis_client):
        """Test that get returns the stored document."""
        mock_redis_client.get.return_value = orjson.dumps({"id": "Q1", "premium": 50}).decode()
        store = RedisRecordStore(mock_redis_client)

        assert await store.get(JobKind.QUOTE, "Q1") == {"id": "Q1", "premium": 50}
        mock_redis_client.get.assert_awaited_once_with("record:quote:Q1")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kind,message", [(JobKind.QUOTE, "Quote not found"), (JobKind.BOOKING, "Booking not found")])
    async def test_get_missing_record(self, mock_redis_client, kind, message):
        """Test that a missing record raises RecordNotFoundError."""
        store = RedisRecordStore(mock_redis_client)

        with pytest.raises(RecordNotFoundError) as exc_info:
            await store.get(kind, "missing")

        assert exc_info.value.message == message

    @pytest.mark.asyncio
    async def test_list_pages_through_index(self, mock_redis_client):
        """Test that list reads the requested page newest first."""
        records = {
            "record:quote:Q2": orjson.dumps({"id": "Q2"}).decode(),
            "record:quote:Q1": orjson.dumps({"id": "Q1"}).decode(),
        }
        mock_redis_client.zcard.return_value = 5
        mock_redis_client.zrevrange.return_value = ["Q2", "Q1", "Q0"]
        mock_redis_client.get.side_effect = lambda key: records.get(key)
        store = RedisRecordStore(mock_redis_client)

        page, total = await store.list(JobKind.QUOTE, limit=3, offset=2)

        assert total == 5
        assert page == [{"id": "Q2"}, {"id": "Q1"}]
        mock_redis_client.zrevrange.assert_awaited_once_with("record:quote:index", 2, 4)

    @pytest.mark.asyncio
    async def test_list_failure_is_record_store_error(self, mock_redis_client):
        """Test that list failures surface as RecordStoreError."""
        mock_redis_client.zcard.side_effect = CacheConnectionError("Redis unavailable")

        with pytest.raises(RecordStoreError):
            await RedisRecordStore(mock_redis_client).list(JobKind.QUOTE)


@pytest.mark.unit
class TestInMemoryRecordStore:
    """Test the process-local record store."""

    @pytest.mark.asyncio
    async def test_save_and_get(self, record_store):
        """Test that saved records can be read back by ID."""
        saved = await record_store.save(JobKind.QUOTE, PartnerResultFactory.quote("Q1"), {"value": 1})

        assert await record_store.get(JobKind.QUOTE, "Q1") == saved
        assert record_store.count(JobKind.QUOTE) == 1
        assert record_store.count(JobKind.BOOKING) == 0

    @pytest.mark.asyncio
    async def test_booking_enriched_from_stored_quote(self, record_store):
        """Test that a saved booking carries the stored quote's premium."""
        await record_store.save(JobKind.QUOTE, PartnerResultFactory.quote("Q1", premium=20, coverageAmount=2000), {})

        booking = await record_store.save(JobKind.BOOKING, PartnerResultFactory.booking("B1", "Q1"), {"quoteId": "Q1"})

        assert booking["premium"] == 20
        assert booking["coverageAmount"] == 2000
        assert (await record_store.get(JobKind.BOOKING, "B1"))["premium"] == 20

    @pytest.mark.asyncio
    async def test_kinds_are_separate(self, record_store):
        """Test that a quote ID does not resolve as a booking."""
        await record_store.save(JobKind.QUOTE, PartnerResultFactory.quote("X"), {})

        with pytest.raises(RecordNotFoundError, match="Booking not found"):
            await record_store.get(JobKind.BOOKING, "X")

    @pytest.mark.asyncio
    async def test_list_newest_first_with_total(self, record_store):
        """Test that listing is newest first and reports the total."""
        for quote_id in ("Q1", "Q2", "Q3"):
            await record_store.save(JobKind.QUOTE, PartnerResultFactory.quote(quote_id), {})

        page, total = await record_store.list(JobKind.QUOTE, limit=2, offset=0)

        assert [record["id"] for record in page] == ["Q3", "Q2"]
        assert total == 3

    @pytest.mark.asyncio
    async def test_resave_overwrites_and_moves_to_front(self, record_store):
        """Test that saving an existing ID keeps one record, now newest."""
        await record_store.save(JobKind.QUOTE, PartnerResultFactory.quote("Q1", premium=10), {})
        await record_store.save(JobKind.QUOTE, PartnerResultFactory.quote("Q2"), {})
        await record_store.save(JobKind.QUOTE, PartnerResultFactory.quote("Q1", premium=20), {})

        page, total = await record_store.list(JobKind.QUOTE)

        assert total == 2
        assert page[0]["id"] == "Q1"
        assert page[0]["premium"] == 20
