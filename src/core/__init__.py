"""
Core Module

Foundational components: logging, exceptions, job models and the
request/response bridge.
"""

from .exceptions import (
    BridgeBaseError,
    CacheConnectionError,
    CacheError,
    CacheKeyError,
    ConfigurationError,
    PartnerError,
    PartnerRejectedError,
    PartnerTimeoutError,
    PartnerTransientError,
    QueueError,
    QueueFullError,
    RecordNotFoundError,
    RecordStoreError,
)
from .logging import (
    clear_correlation_id,
    get_correlation_id,
    get_logger,
    log_stage,
    set_correlation_id,
    setup_logging,
)

__all__ = [
    "setup_logging",
    "get_logger",
    "set_correlation_id",
    "get_correlation_id",
    "clear_correlation_id",
    "log_stage",
    "BridgeBaseError",
    "ConfigurationError",
    "CacheError",
    "CacheConnectionError",
    "CacheKeyError",
    "QueueError",
    "QueueFullError",
    "PartnerError",
    "PartnerRejectedError",
    "PartnerTimeoutError",
    "PartnerTransientError",
    "RecordNotFoundError",
    "RecordStoreError",
]
