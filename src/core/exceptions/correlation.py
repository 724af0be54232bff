"""
Request Correlation Exceptions

Author: System Architect
Date: 2025-12-08
"""

from src.core.exceptions.base import BridgeBaseError


class CorrelationError(BridgeBaseError):
    """Base exception for request correlation errors."""
    pass


class SubmissionError(CorrelationError):
    """
    Raised when a job could not be enqueued after the retry budget.

    The pending marker has already been removed when this is raised.
    """
    pass


class InvalidEnvelopeError(CorrelationError):
    """Raised when a queued job cannot be parsed into an envelope."""
    pass
