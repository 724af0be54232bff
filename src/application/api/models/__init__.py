"""
API Models Package
==================

Pydantic models for the /api/insurance request and response bodies.
"""

from src.application.api.models.insurance import (
    BookingRequest,
    Pagination,
    QuoteListResponse,
    QuoteRequest,
    SimpleQuoteRequest,
    ValidationErrorResponse,
)

__all__ = [
    "BookingRequest",
    "Pagination",
    "QuoteListResponse",
    "QuoteRequest",
    "SimpleQuoteRequest",
    "ValidationErrorResponse",
]
