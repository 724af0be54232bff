"""
FastAPI Application Entry Point

This is the HTTP side of the insurance partner bridge. Each request is
handed to the RequestCorrelator, which enqueues a job and waits for the
worker's reply; lookups are served straight from the record store.

Author: Senior Solution Architect
Date: 2025-12-05
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI

from src.application.api.middleware import setup_middleware
from src.application.api.routes.health import metrics_router
from src.application.api.routes.health import router as health_router
from src.application.api.routes.insurance import router as insurance_router
from src.core.config.settings import get_settings
from src.core.logging.logger import get_logger, setup_logging
from src.core.resilience.request_correlator import get_request_correlator, reset_request_correlator
from src.infrastructure.cache.redis_client import close_redis, init_redis
from src.infrastructure.monitoring.health_checker import get_health_checker
from src.infrastructure.storage import RedisRecordStore

logger = get_logger(__name__)


# ============================================================================
# Application Lifecycle
# ============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application lifecycle (startup and shutdown).

    Startup order: Redis, job queues (via the correlator), record store,
    health checker. Everything built here lives on ``app.state``.
    """
    settings = get_settings()

    setup_logging(log_level=settings.logging.LOG_LEVEL, log_format=settings.logging.LOG_FORMAT)

    logger.info(
        "Starting Insurance Partner Bridge API",
        environment=settings.app.ENVIRONMENT,
        version=settings.app.APP_VERSION,
        queue_type=settings.queue.QUEUE_TYPE,
    )

    correlator = None
    try:
        redis_client = await init_redis()
        logger.info("Redis connected")

        correlator = get_request_correlator()
        await correlator.initialize()
        app.state.correlator = correlator
        logger.info("Request correlator ready", queues=[q.name for q in correlator.queues.values()])

        app.state.record_store = RedisRecordStore(redis_client)

        health_checker = get_health_checker()
        await health_checker.initialize(redis_client=redis_client, queues=correlator.queues)
        logger.info("Health checker ready")

        logger.info("Application startup complete")

        yield

    finally:
        logger.info("Shutting down application")

        if correlator is not None:
            await correlator.close()
            reset_request_correlator()
        await close_redis()

        logger.info("Application shutdown complete")


# ============================================================================
# Application Factory
# ============================================================================


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        FastAPI: Configured application instance
    """
    settings = get_settings()

    app = FastAPI(
        title=settings.app.APP_NAME,
        version=settings.app.APP_VERSION,
        description="Queue-backed bridge between insurance clients and the partner API",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    setup_middleware(app)

    app.include_router(health_router)
    app.include_router(metrics_router)
    app.include_router(insurance_router)

    @app.get("/", tags=["Root"])
    async def root():
        """Root endpoint with API information."""
        return {
            "name": settings.app.APP_NAME,
            "version": settings.app.APP_VERSION,
            "environment": settings.app.ENVIRONMENT,
            "docs": "/docs",
            "health": "/health",
        }

    return app


app = create_app()


def main() -> None:
    import uvicorn

    settings = get_settings()

    uvicorn.run(
        "src.application.app:app",
        host=settings.app.API_HOST,
        port=settings.app.API_PORT,
        reload=settings.app.ENVIRONMENT == "development",
        log_level=settings.logging.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
