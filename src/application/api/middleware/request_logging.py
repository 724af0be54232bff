"""
Request Logging Middleware - Educational Documentation
=======================================================

MIDDLEWARE EXECUTION ORDER:
---------------------------
Request Flow:
    Client → Middleware 1 (before) → Middleware 2 (before) → Route Handler

Response Flow:
    Route Handler → Middleware 2 (after) → Middleware 1 (after) → Client

WHAT THIS MIDDLEWARE DOES:
--------------------------
1. Binds a request ID (client-supplied X-Request-ID or a fresh UUID) to the
   logging context, so every log line emitted while serving the request
   carries it, and echoes it back in the response header
2. Logs the request and its completion with duration
3. Records HTTP metrics (method, route template, status, duration)

Bodies are never logged: freight details contain names, emails and phone
numbers.
"""

import time
import uuid
from collections.abc import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from src.core.config.constants import HEADER_REQUEST_ID
from src.core.logging.logger import clear_correlation_id, get_logger, set_correlation_id
from src.infrastructure.monitoring.metrics_collector import get_metrics_collector

logger = get_logger(__name__)

# Headers that should never be logged
SENSITIVE_HEADERS = {
    "authorization",
    "cookie",
    "x-api-key",
    "x-auth-token",
}

# Probe and scrape traffic is logged at DEBUG
QUIET_PATHS = {"/health", "/health/ready", "/metrics"}


def sanitize_headers(headers: dict) -> dict:
    return {key: "***REDACTED***" if key.lower() in SENSITIVE_HEADERS else value for key, value in headers.items()}


def route_template(request: Request) -> str:
    """Matched route path (``/quotes/{quote_id}``), so metrics keep low cardinality."""
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Logs every request with its request ID and duration.

    Usage:
        app.add_middleware(RequestLoggingMiddleware)
    """

    def __init__(self, app, metrics=None):
        super().__init__(app)
        self._metrics = metrics

    @property
    def metrics(self):
        if self._metrics is None:
            self._metrics = get_metrics_collector()
        return self._metrics

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(HEADER_REQUEST_ID) or str(uuid.uuid4())
        set_correlation_id(request_id)

        method = request.method
        path = request.url.path
        log = logger.debug if path in QUIET_PATHS else logger.info
        start_time = time.perf_counter()

        log(
            f"Incoming request: {method} {path}",
            method=method,
            path=path,
            query_params=str(request.query_params) if request.query_params else None,
            headers=sanitize_headers(dict(request.headers)),
            client_host=request.client.host if request.client else None,
        )

        try:
            response = await call_next(request)
        except Exception as e:
            duration = time.perf_counter() - start_time
            logger.error(
                f"Request failed: {method} {path}",
                method=method,
                path=path,
                error=str(e),
                error_type=type(e).__name__,
                duration_seconds=round(duration, 4),
            )
            self.metrics.record_http_request(method, route_template(request), 500, duration)
            raise
        finally:
            clear_correlation_id()

        duration = time.perf_counter() - start_time
        log(
            f"Request completed: {method} {path}",
            method=method,
            path=path,
            status_code=response.status_code,
            duration_seconds=round(duration, 4),
        )
        self.metrics.record_http_request(method, route_template(request), response.status_code, duration)

        response.headers[HEADER_REQUEST_ID] = request_id
        return response
