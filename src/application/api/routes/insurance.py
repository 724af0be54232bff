"""
Insurance Routes
================

Synchronous-looking HTTP surface over the asynchronous worker pipeline.

    POST /api/insurance/quotes              correlator (quote)
    POST /api/insurance/quotes/simple       correlator (quote, flat primitives)
    POST /api/insurance/bookings            correlator (booking)
    GET  /api/insurance/quotes              record store listing
    GET  /api/insurance/quotes/{quote_id}   record store lookup
    GET  /api/insurance/bookings/{id}       record store lookup

Correlator outcomes carry their own status code:
    success 200 | error 400 | timeout 408 | immediate error 500

A 408 does not cancel anything; the worker keeps processing and the
record shows up in the lookups once it completes.
"""

import uuid

from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse

from src.application.api.dependencies import CorrelatorDep, RecordStoreDep
from src.application.api.models.insurance import (
    MISSING_FIELDS_MESSAGE,
    MISSING_QUOTE_ID_MESSAGE,
    MISSING_VALUE_MESSAGE,
    QUOTE_EXPIRED_MESSAGE,
    QUOTE_NOT_FOUND_MESSAGE,
    BookingRequest,
    Pagination,
    QuoteListResponse,
    QuoteRequest,
    SimpleQuoteRequest,
)
from src.core.config.constants import API_PREFIX, JobKind
from src.core.exceptions import RecordNotFoundError
from src.core.logging.logger import get_logger
from src.core.resilience.request_correlator import CorrelationOutcome
from src.infrastructure.storage import quote_is_expired

logger = get_logger(__name__)

router = APIRouter(prefix=API_PREFIX, tags=["Insurance"])


def _outcome_response(outcome: CorrelationOutcome) -> JSONResponse:
    return JSONResponse(status_code=outcome.status_code, content=outcome.to_response_body())


def _bad_request(message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": message, **extra, "requestId": str(uuid.uuid4())})


# ============================================================================
# QUOTES
# ============================================================================


@router.post("/quotes")
async def create_quote(body: QuoteRequest, correlator: CorrelatorDep):
    """
    Request a quote for a shipment.

    The cargo value is read from ``shipment.cargo.cargoValue.value`` or
    from the legacy top-level ``value``.
    """
    if body.cargo_value() is None:
        logger.warning("Quote request rejected", reason="missing_value")
        return _bad_request(MISSING_VALUE_MESSAGE)

    outcome = await correlator.submit(JobKind.QUOTE, body.payload())
    return _outcome_response(outcome)


@router.post("/quotes/simple")
async def create_simple_quote(body: SimpleQuoteRequest, correlator: CorrelatorDep):
    """
    Request a quote from flat primitives.

    Every missing required field is listed in the 400 response.
    """
    missing = body.missing_fields()
    if missing:
        logger.warning("Simple quote request rejected", reason="missing_fields", fields=missing)
        return _bad_request(f"{MISSING_FIELDS_MESSAGE}: {', '.join(missing)}", missingFields=missing)

    outcome = await correlator.submit(JobKind.QUOTE, body.freight_details())
    return _outcome_response(outcome)


@router.get("/quotes", response_model=QuoteListResponse)
async def list_quotes(
    records: RecordStoreDep,
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
):
    quotes, total = await records.list(JobKind.QUOTE, limit=limit, offset=offset)
    return QuoteListResponse(quotes=quotes, pagination=Pagination(total=total, limit=limit, offset=offset))


@router.get("/quotes/{quote_id}")
async def get_quote(quote_id: str, records: RecordStoreDep):
    # RecordNotFoundError maps to 404 through the exception handler
    return {"status": "success", "quote": await records.get(JobKind.QUOTE, quote_id)}


# ============================================================================
# BOOKINGS
# ============================================================================


@router.post("/bookings")
async def create_booking(body: BookingRequest, correlator: CorrelatorDep, records: RecordStoreDep):
    """
    Purchase a previously issued quote.

    Rejected before anything is enqueued when the quote is unknown (404)
    or expired (400).
    """
    if not body.quoteId:
        return _bad_request(MISSING_QUOTE_ID_MESSAGE)

    try:
        quote = await records.get(JobKind.QUOTE, body.quoteId)
    except RecordNotFoundError:
        return JSONResponse(status_code=404, content={"error": QUOTE_NOT_FOUND_MESSAGE, "quoteId": body.quoteId})

    if quote_is_expired(quote):
        logger.info("Booking rejected for expired quote", quote_id=body.quoteId)
        return _bad_request(QUOTE_EXPIRED_MESSAGE)

    outcome = await correlator.submit(JobKind.BOOKING, body.payload())
    return _outcome_response(outcome)


@router.get("/bookings/{booking_id}")
async def get_booking(booking_id: str, records: RecordStoreDep):
    return {"status": "success", "booking": await records.get(JobKind.BOOKING, booking_id)}
