"""
Autoscaling Exceptions

Author: System Architect
Date: 2025-12-08
"""

from src.core.exceptions.base import BridgeBaseError


class ScalingError(BridgeBaseError):
    """Base exception for autoscaler errors."""
    pass


class SupervisorError(ScalingError):
    """Raised when a worker cannot be started or stopped."""
    pass


class LockError(BridgeBaseError):
    """Raised when a distributed lock cannot be acquired, renewed or released."""
    pass
