"""
Core Interfaces Module

This module provides abstract interfaces and protocols for core components,
enabling dependency injection, testability, and loose coupling.

Components:
-----------
- **key_value.py**: KeyValueStore protocol (+ in-memory implementation)
- **message_queue.py**: MessageQueue interface for queue backends
- **collaborators.py**: PartnerApi and RecordStore protocols

Usage:
------
```python
from src.core.interfaces import KeyValueStore, MessageQueue

async def submit(store: KeyValueStore, queue: MessageQueue):
    await store.set("pending:abc", "{}", ttl=120)
    await queue.produce({"correlationId": "abc"})
```

Author: System Architect
Date: 2025-12-08
"""

from src.core.interfaces.collaborators import PartnerApi, RecordStore, partner_result_view
from src.core.interfaces.key_value import InMemoryKeyValueStore, KeyValueStore
from src.core.interfaces.message_queue import MessageQueue, QueueMessage

__all__ = [
    "InMemoryKeyValueStore",
    "KeyValueStore",
    "MessageQueue",
    "PartnerApi",
    "QueueMessage",
    "RecordStore",
    "partner_result_view",
]
