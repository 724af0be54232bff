"""
Failure Classification

Decides whether a failed job is worth another attempt.

    TRANSIENT  -> nack with requeue (bounded by the delivery-attempt cap)
    PERMANENT  -> error reply + dead letter

Typed errors are classified by class first; anything untyped falls back to
matching well-known markers in its message (connection refused, timeouts,
upstream 5xx, open circuits).
"""

import asyncio
import re
from enum import Enum

from src.core.exceptions import (
    CacheError,
    InvalidEnvelopeError,
    PartnerRejectedError,
    PartnerTransientError,
    QueueError,
    RecordNotFoundError,
    RecordStoreError,
)


class FailureClass(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"


# Status codes only count as whole numbers: "cargo value above 5000" is not a 500
TRANSIENT_PATTERN = re.compile(
    r"econnrefused|connection refused|connection reset|timeout|timed out|\b50[0-4]\b|\bcircuit\b",
    re.IGNORECASE,
)

_PERMANENT_TYPES = (PartnerRejectedError, InvalidEnvelopeError, RecordNotFoundError)
_TRANSIENT_TYPES = (
    PartnerTransientError,
    CacheError,
    QueueError,
    RecordStoreError,
    ConnectionError,
    asyncio.TimeoutError,
    TimeoutError,
)


def classify_failure(error: BaseException) -> FailureClass:
    """
    Classify ``error``.

    Example:
        >>> classify_failure(PartnerTransientError("connect ECONNREFUSED"))
        <FailureClass.TRANSIENT: 'transient'>
        >>> classify_failure(PartnerRejectedError("Pickup date must be ..."))
        <FailureClass.PERMANENT: 'permanent'>
    """
    if isinstance(error, _PERMANENT_TYPES):
        return FailureClass.PERMANENT
    if isinstance(error, _TRANSIENT_TYPES):
        return FailureClass.TRANSIENT

    if TRANSIENT_PATTERN.search(str(error)):
        return FailureClass.TRANSIENT
    return FailureClass.PERMANENT


def is_transient(error: BaseException) -> bool:
    return classify_failure(error) is FailureClass.TRANSIENT
