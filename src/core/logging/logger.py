#!/usr/bin/env python3
"""
Structured Logging Module using structlog

This module provides production-grade structured logging with:
- Correlation ID propagation so HTTP, worker and reply logs line up
- Stage identifiers for execution flow (CORR.*, WORKER.*, SCALE.*)
- JSON formatting for log aggregation
- Redaction of emails and partner API keys

Architectural Decision: structlog for production logging
- Context-aware logging with automatic field injection
- JSON output for log aggregation (ELK, Loki, etc.)

Author: System Architect
Date: 2025-12-05
"""

import logging
import re
import sys
from contextvars import ContextVar
from datetime import datetime, timezone

import structlog
from structlog.types import EventDict, WrappedLogger

from src.core.config.settings import get_settings

# Correlation ID of the job or HTTP request currently being handled
correlation_id_ctx: ContextVar[str | None] = ContextVar("correlation_id", default=None)

_EMAIL_PATTERN = re.compile(r"\b[\w.-]+@[\w.-]+\.\w+\b")
_BEARER_PATTERN = re.compile(r"\bBearer\s+[A-Za-z0-9._-]+")


def add_correlation_id(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Add the correlation ID from context to the log event.

    STAGE-L.1: Correlation ID injection
    """
    correlation_id = correlation_id_ctx.get()
    if correlation_id and "correlation_id" not in event_dict:
        event_dict["correlation_id"] = correlation_id
    return event_dict


def add_timestamp(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Add ISO timestamp to log event.

    STAGE-L.2: Timestamp injection
    """
    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
    return event_dict


def redact_pii(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Redact PII and credentials from log messages.

    STAGE-L.3: Redaction

    Patterns redacted:
    - Email addresses -> [EMAIL]
    - Bearer tokens (partner API key) -> Bearer [REDACTED]
    """
    message = event_dict.get("event", "")

    if isinstance(message, str):
        message = _EMAIL_PATTERN.sub("[EMAIL]", message)
        message = _BEARER_PATTERN.sub("Bearer [REDACTED]", message)
        event_dict["event"] = message

    return event_dict


def add_log_level_name(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Uppercase the level field.

    STAGE-L.4: Log level injection
    """
    if "level" in event_dict:
        event_dict["level"] = event_dict["level"].upper()
    return event_dict


def setup_logging(log_level: str | None = None, log_format: str | None = None) -> None:
    """
    Setup structured logging with structlog.

    STAGE-L: Logging initialization

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Log format ('json' or 'console')
    """
    settings = get_settings()

    log_level = log_level or settings.logging.LOG_LEVEL
    log_format = log_format or settings.logging.LOG_FORMAT

    logging.basicConfig(
        format="%(message)s", stream=sys.stdout, level=getattr(logging, log_level.upper())
    )

    if log_format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            add_correlation_id,
            add_timestamp,
            structlog.stdlib.add_log_level,
            add_log_level_name,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            redact_pii,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Usage:
        logger = get_logger(__name__)
        logger.info("message", key="value", stage="CORR.3")
    """
    return structlog.get_logger(name)


def set_correlation_id(correlation_id: str | None) -> None:
    """Bind a correlation ID to the current task's log context."""
    correlation_id_ctx.set(correlation_id)


def get_correlation_id() -> str | None:
    return correlation_id_ctx.get()


def clear_correlation_id() -> None:
    correlation_id_ctx.set(None)


def log_stage(
    logger: structlog.stdlib.BoundLogger, stage: str, message: str, level: str = "info", **kwargs
) -> None:
    """
    Log a message with stage information.

    Usage:
        log_stage(logger, "WORKER.2", "Processing lock acquired", kind="quote")
    """
    log_func = getattr(logger, level.lower())
    log_func(message, stage=stage, **kwargs)
