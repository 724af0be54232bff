from .redis_record_store import InMemoryRecordStore, RedisRecordStore, build_record, quote_is_expired

__all__ = ["InMemoryRecordStore", "RedisRecordStore", "build_record", "quote_is_expired"]
