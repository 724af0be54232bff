"""
Record Store Exceptions

Author: System Architect
Date: 2025-12-08
"""

from src.core.exceptions.base import BridgeBaseError


class RecordStoreError(BridgeBaseError):
    """Base exception for record store errors."""
    pass


class RecordNotFoundError(RecordStoreError):
    """Raised when a quote or booking does not exist."""
    pass
