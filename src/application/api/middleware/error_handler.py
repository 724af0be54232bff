"""
Error Handling - Educational Documentation
==========================================

TWO LAYERS:
-----------
1. Exception handlers (register_exception_handlers)
   Map the BridgeBaseError hierarchy onto JSON error bodies with a
   meaningful status code. Routes raise; they never build error bodies for
   infrastructure failures themselves.

2. ErrorHandlingMiddleware
   The last line of defense for anything else. Logs with full context,
   records an error metric and returns a generic 500 body.

STATUS MAPPING:
---------------
    RequestValidationError (malformed body/query) -> 400
    RecordNotFoundError                          -> 404
    PartnerRejectedError, InvalidEnvelopeError   -> 400
    CacheError, QueueError, RecordStoreError     -> 503 (dependency unavailable)
    any other BridgeBaseError                    -> 500

SECURITY CONSIDERATION:
-----------------------
Tracebacks are only included in development.
"""

import traceback
import uuid
from collections.abc import Callable

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from src.core.exceptions import (
    BridgeBaseError,
    CacheError,
    InvalidEnvelopeError,
    PartnerRejectedError,
    QueueError,
    RecordNotFoundError,
    RecordStoreError,
)
from src.core.logging.logger import get_correlation_id, get_logger
from src.infrastructure.monitoring.metrics_collector import get_metrics_collector

logger = get_logger(__name__)

_STATUS_BY_ERROR: list[tuple[type[BridgeBaseError], int]] = [
    (RecordNotFoundError, 404),
    (PartnerRejectedError, 400),
    (InvalidEnvelopeError, 400),
    (CacheError, 503),
    (QueueError, 503),
    (RecordStoreError, 503),
]


def status_for(exc: BridgeBaseError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 500


async def bridge_exception_handler(request: Request, exc: BridgeBaseError) -> JSONResponse:
    """Turn a BridgeBaseError into a JSON error body."""
    status_code = status_for(exc)
    log = logger.warning if status_code < 500 else logger.error
    log(
        f"Request failed: {exc.message}",
        method=request.method,
        path=request.url.path,
        error_type=type(exc).__name__,
        status_code=status_code,
    )
    get_metrics_collector().record_error(type(exc).__name__, "http")

    body = {
        "error": exc.message,
        "error_type": type(exc).__name__,
        "requestId": exc.correlation_id or get_correlation_id(),
    }
    return JSONResponse(status_code=status_code, content=body)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Report malformed requests as 400 instead of FastAPI's default 422."""
    details = [
        {"field": ".".join(str(part) for part in error.get("loc", ())), "message": error.get("msg", "")}
        for error in exc.errors()
    ]
    logger.warning(
        "Request validation failed",
        method=request.method,
        path=request.url.path,
        fields=[detail["field"] for detail in details],
    )
    get_metrics_collector().record_error("RequestValidationError", "http")

    body = {
        "error": "Invalid request",
        "details": details,
        "requestId": get_correlation_id() or str(uuid.uuid4()),
    }
    return JSONResponse(status_code=400, content=body)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(BridgeBaseError, bridge_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """
    Catch-all for exceptions no handler dealt with.

    Clients get a generic message; the full error is logged server-side.
    """

    def __init__(self, app, include_traceback: bool = False):
        super().__init__(app)
        self.include_traceback = include_traceback

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)

        except Exception as e:
            error_type = type(e).__name__
            logger.error(
                f"Unhandled exception in request: {request.method} {request.url.path}",
                method=request.method,
                path=request.url.path,
                error_type=error_type,
                error_message=str(e),
                exc_info=True,
            )
            get_metrics_collector().record_error(error_type, "unhandled_exception")

            error_response = {
                "error": "internal_server_error",
                "message": "An unexpected error occurred while processing your request",
                "error_type": error_type,
            }
            if self.include_traceback:
                error_response["traceback"] = traceback.format_exc()
                error_response["detail"] = str(e)

            return JSONResponse(status_code=500, content=error_response)
