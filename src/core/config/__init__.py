"""
Configuration Module

This module provides centralized, type-safe configuration management
for the insurance partner bridge.

Components:
-----------
- **settings.py**: Pydantic-based configuration with environment variable loading
- **constants.py**: Job kinds, queue names, key namespaces and log stages

Usage:
------
```python
from src.core.config import get_settings
from src.core.config.constants import JobKind, job_queue_for

settings = get_settings()

ttl = settings.correlator.PENDING_MARKER_TTL_SECONDS
queue = job_queue_for(JobKind.QUOTE)  # "quote-requested"
```

Environment Variables:
---------------------
Configuration is loaded from environment variables or `.env` file:

```bash
REDIS_HOST=localhost
QUEUE_TYPE=redis
MIN_WORKERS=1
MAX_WORKERS=5
SCALE_UP_THRESHOLD=10
SCALE_DOWN_THRESHOLD=2
MONITORED_QUEUES=quote-requested,booking-requested
PARTNER_MODE=http
PARTNER_API_KEY=...
LOG_LEVEL=INFO
```

Testing:
-------
```python
import os
from src.core.config import reload_settings

os.environ["MAX_WORKERS"] = "3"
settings = reload_settings()
assert settings.autoscaler.MAX_WORKERS == 3
```

Author: System Architect
Date: 2025-12-05
"""

from src.core.config.constants import (
    DATE_RANGE_VALIDATION_MESSAGE,
    JobKind,
    ReplyStatus,
    Stage,
    job_queue_for,
    reply_queue_for,
)
from src.core.config.settings import get_settings, reload_settings

__all__ = [
    # Settings
    "get_settings",
    "reload_settings",
    # Enums
    "JobKind",
    "ReplyStatus",
    "Stage",
    # Queues
    "job_queue_for",
    "reply_queue_for",
    "DATE_RANGE_VALIDATION_MESSAGE",
]
