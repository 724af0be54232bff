"""
Partner API Exceptions

Errors raised by the partner (insurance provider) client. The worker uses the
class to decide between requeue and dead-lettering.

Author: System Architect
Date: 2025-12-08
"""

from src.core.exceptions.base import BridgeBaseError


class PartnerError(BridgeBaseError):
    """Base exception for partner API errors."""
    pass


class PartnerTransientError(PartnerError):
    """
    Retryable partner failure.

    Raised for:
    - Connection refused / DNS failure
    - Upstream 5xx responses
    """
    pass


class PartnerTimeoutError(PartnerTransientError):
    """Raised when the partner does not answer within the configured timeout."""
    pass


class PartnerRejectedError(PartnerError):
    """
    Permanent partner failure (4xx or validation errors in the response body).

    Not retried: the same payload would be rejected again.
    """
    pass
