"""
Middleware Package - Educational Documentation
===============================================

AVAILABLE MIDDLEWARE:
---------------------
1. error_handler: Catch-all for unhandled exceptions, plus the exception
   handlers that map BridgeBaseError subclasses to status codes
2. request_logging: Request ID binding, request/response logs, HTTP metrics

MIDDLEWARE ORDERING:
--------------------
Starlette wraps the app in reverse registration order: the LAST middleware
added is the OUTERMOST.

Request flow:  Client → CORS → RequestLogging → ErrorHandling → Handler
Response flow: Handler → ErrorHandling → RequestLogging → CORS → Client

ErrorHandling sits inside RequestLogging so a crash still produces a logged
500 that carries the request ID.

USAGE EXAMPLE:
--------------
    from fastapi import FastAPI
    from src.application.api.middleware import setup_middleware

    app = FastAPI()
    setup_middleware(app)
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.core.config.constants import HEADER_REQUEST_ID
from src.core.config.settings import get_settings
from src.core.logging.logger import get_logger

from .error_handler import ErrorHandlingMiddleware, register_exception_handlers
from .request_logging import RequestLoggingMiddleware

logger = get_logger(__name__)


def setup_middleware(app: FastAPI) -> None:
    """
    Register middleware and exception handlers in the correct order.

    Args:
        app: FastAPI application instance
    """
    settings = get_settings()

    register_exception_handlers(app)

    # Innermost: turns anything unhandled into a JSON 500
    app.add_middleware(
        ErrorHandlingMiddleware, include_traceback=(settings.app.ENVIRONMENT == "development")
    )

    app.add_middleware(RequestLoggingMiddleware)

    # Outermost: preflight requests never reach logging
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.app.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[HEADER_REQUEST_ID],
    )

    logger.info("Middleware registered", middleware=["ErrorHandling", "RequestLogging", "CORS"])


__all__ = [
    "setup_middleware",
    "register_exception_handlers",
    "ErrorHandlingMiddleware",
    "RequestLoggingMiddleware",
]
