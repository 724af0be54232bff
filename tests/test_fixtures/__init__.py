"""
Test Fixtures Package

Shared test utilities and helpers for consistent testing across all modules.
"""

from .job_factory import JobFactory, PartnerResultFactory
from .queue_factory import FailingQueue, InMemoryMessageQueue

__all__ = ["JobFactory", "PartnerResultFactory", "InMemoryMessageQueue", "FailingQueue"]
