"""
Record Store - Quotes and bookings keyed by business ID

Layout:
    record:{kind}:{id}      JSON record (no TTL)
    record:{kind}:index     sorted set, score = creation time (epoch seconds)

A record is the partner result plus bookkeeping:
    {**result, "id", "kind", "request", "createdAt", "status"}

Quotes are stamped "active" or "expired" from ``expiresAt`` when saved.
Bookings are "active" and carry the premium and coverage amount of the
quote they purchased, when that quote is on record.

Saving the same ID twice overwrites the record; the index keeps one entry.
"""

import time
import uuid
from datetime import datetime, timezone
from typing import Any

import orjson

from src.core.config.constants import RECORD_KEY_PREFIX, JobKind
from src.core.exceptions import CacheError, RecordNotFoundError, RecordStoreError
from src.core.logging.logger import get_logger
from src.core.models.jobs import utc_now_iso

logger = get_logger(__name__)


def record_key(kind: JobKind, record_id: str) -> str:
    return f"{RECORD_KEY_PREFIX}:{JobKind(kind).value}:{record_id}"


def index_key(kind: JobKind) -> str:
    return f"{RECORD_KEY_PREFIX}:{JobKind(kind).value}:index"


def quote_is_expired(quote: dict[str, Any], now: datetime | None = None) -> bool:
    """A quote is expired when marked so, or when its ``expiresAt`` has passed."""
    if quote.get("status") == "expired":
        return True
    expires_at = quote.get("expiresAt")
    if not expires_at:
        return False
    try:
        deadline = datetime.fromisoformat(str(expires_at).replace("Z", "+00:00"))
    except ValueError:
        return False
    if deadline.tzinfo is None:
        deadline = deadline.replace(tzinfo=timezone.utc)
    return deadline < (now or datetime.now(timezone.utc))


def build_record(
    kind: JobKind,
    result: dict[str, Any],
    original_payload: dict[str, Any],
    quote: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """
    Record for a partner result.

    ``quote`` is the stored quote a booking purchased; its premium and
    coverage amount are copied onto the booking.
    """
    kind = JobKind(kind)
    record_id = str(result.get("id") or uuid.uuid4().hex)
    record = {
        **result,
        "id": record_id,
        "kind": kind.value,
        "request": original_payload,
        "createdAt": utc_now_iso(),
    }
    if kind is JobKind.QUOTE:
        record["status"] = "expired" if quote_is_expired(result) else "active"
    else:
        record["status"] = "active"
        source = quote or {}
        record["premium"] = source.get("premium", result.get("premium"))
        record["coverageAmount"] = source.get("coverageAmount", result.get("coverageAmount"))
    return record


async def purchased_quote(store, kind: JobKind, result: dict[str, Any]) -> dict[str, Any] | None:
    """The stored quote behind a booking result, or None."""
    if JobKind(kind) is not JobKind.BOOKING or not result.get("quoteId"):
        return None
    try:
        return await store.get(JobKind.QUOTE, str(result["quoteId"]))
    except RecordNotFoundError:
        logger.warning("Booked quote is not on record", quote_id=result["quoteId"], booking_id=result.get("id"))
        return None


class RedisRecordStore:
    """
    Redis-backed RecordStore.

    Every store failure surfaces as RecordStoreError, which the worker
    treats as transient.
    """

    def __init__(self, redis_client):
        self._redis = redis_client

    async def save(
        self, kind: JobKind, result: dict[str, Any], original_payload: dict[str, Any]
    ) -> dict[str, Any]:
        quote = await purchased_quote(self, kind, result)
        record = build_record(kind, result, original_payload, quote)
        try:
            await self._redis.set(record_key(kind, record["id"]), orjson.dumps(record).decode("utf-8"))
            await self._redis.zadd(index_key(kind), {record["id"]: time.time()})
        except CacheError as e:
            raise RecordStoreError.from_exception(
                e, message=f"Failed to save {JobKind(kind).value} record", record_id=record["id"]
            ) from e

        logger.debug("Record saved", kind=JobKind(kind).value, record_id=record["id"])
        return record

    async def get(self, kind: JobKind, record_id: str) -> dict[str, Any]:
        try:
            raw = await self._redis.get(record_key(kind, record_id))
        except CacheError as e:
            raise RecordStoreError.from_exception(e, record_id=record_id) from e

        if raw is None:
            raise RecordNotFoundError(
                f"{JobKind(kind).value.capitalize()} not found", details={"id": record_id}
            )
        return orjson.loads(raw)

    async def list(self, kind: JobKind, limit: int = 20, offset: int = 0) -> tuple[list[dict[str, Any]], int]:
        try:
            total = await self._redis.zcard(index_key(kind))
            ids = await self._redis.zrevrange(index_key(kind), offset, offset + limit - 1) if limit > 0 else []
            records = []
            for record_id in ids:
                raw = await self._redis.get(record_key(kind, record_id))
                if raw is not None:
                    records.append(orjson.loads(raw))
        except CacheError as e:
            raise RecordStoreError.from_exception(e, message=f"Failed to list {JobKind(kind).value} records") from e
        return records, total


class InMemoryRecordStore:
    """Process-local RecordStore for tests and single-process development."""

    def __init__(self):
        self._records: dict[str, dict[str, dict[str, Any]]] = {kind.value: {} for kind in JobKind}

    async def save(
        self, kind: JobKind, result: dict[str, Any], original_payload: dict[str, Any]
    ) -> dict[str, Any]:
        quote = await purchased_quote(self, kind, result)
        record = build_record(kind, result, original_payload, quote)
        bucket = self._records[JobKind(kind).value]
        bucket.pop(record["id"], None)
        bucket[record["id"]] = record
        return record

    async def get(self, kind: JobKind, record_id: str) -> dict[str, Any]:
        try:
            return self._records[JobKind(kind).value][record_id]
        except KeyError:
            raise RecordNotFoundError(
                f"{JobKind(kind).value.capitalize()} not found", details={"id": record_id}
            ) from None

    async def list(self, kind: JobKind, limit: int = 20, offset: int = 0) -> tuple[list[dict[str, Any]], int]:
        newest_first = list(reversed(self._records[JobKind(kind).value].values()))
        return newest_first[offset:offset + limit], len(newest_first)

    def count(self, kind: JobKind) -> int:
        return len(self._records[JobKind(kind).value])
