"""
Exception Module

Structured exception hierarchy for the partner bridge.
All exceptions are organized by theme for better maintainability and debuggability.

Module Structure:
-----------------
- **base.py**: BridgeBaseError base class + ConfigurationError
- **cache.py**: Key-value store exceptions (Redis)
- **queue.py**: Message queue exceptions
- **partner.py**: Partner API exceptions (transient vs rejected)
- **storage.py**: Record store exceptions
- **correlation.py**: Request correlator exceptions
- **scaling.py**: Autoscaler, supervisor and lock exceptions

Usage:
------
```python
from src.core.exceptions import CacheConnectionError, PartnerTransientError
from src.core.exceptions.queue import QueueError
```

Author: System Architect
Date: 2025-12-08
"""

from src.core.exceptions.base import BridgeBaseError, ConfigurationError
from src.core.exceptions.cache import CacheConnectionError, CacheError, CacheKeyError
from src.core.exceptions.correlation import (
    CorrelationError,
    InvalidEnvelopeError,
    SubmissionError,
)
from src.core.exceptions.partner import (
    PartnerError,
    PartnerRejectedError,
    PartnerTimeoutError,
    PartnerTransientError,
)
from src.core.exceptions.queue import (
    QueueConnectionError,
    QueueConsumerError,
    QueueError,
    QueueFullError,
)
from src.core.exceptions.scaling import LockError, ScalingError, SupervisorError
from src.core.exceptions.storage import RecordNotFoundError, RecordStoreError

__all__ = [
    "BridgeBaseError",
    "ConfigurationError",
    # Cache
    "CacheError",
    "CacheConnectionError",
    "CacheKeyError",
    # Correlation
    "CorrelationError",
    "InvalidEnvelopeError",
    "SubmissionError",
    # Partner
    "PartnerError",
    "PartnerRejectedError",
    "PartnerTimeoutError",
    "PartnerTransientError",
    # Queue
    "QueueError",
    "QueueConnectionError",
    "QueueConsumerError",
    "QueueFullError",
    # Scaling
    "LockError",
    "ScalingError",
    "SupervisorError",
    # Storage
    "RecordNotFoundError",
    "RecordStoreError",
]
