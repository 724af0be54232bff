"""
System Constants and Enumerations

This module defines system-wide constants and enumerations used across
the partner bridge: job kinds, queue names, key-value namespaces and the
stage identifiers that appear in structured logs.

Architectural Decision: Centralized constants for maintainability
- Single source of truth for magic numbers
- Type-safe enums for state management
- Easy to update and track changes

Author: System Architect
Date: 2025-12-05
"""

from enum import Enum

# ============================================================================
# Stage Identifiers (for structured logging)
# ============================================================================


class Stage(str, Enum):
    """
    Processing stages used as the ``stage=`` field of log entries.

    Format: {COMPONENT}.{STEP}_{DESCRIPTIVE_NAME}
    """

    # Request Correlator (HTTP side)
    CORR_MARKER = "CORR.2_PENDING_MARKER"
    CORR_ENQUEUE = "CORR.3_ENQUEUE"
    CORR_POLL = "CORR.4_REPLY_POLL"
    CORR_TIMEOUT = "CORR.5_TIMEOUT"

    # Job Consumer (worker side)
    WORKER_PARSE = "WORKER.1_PARSE_ENVELOPE"
    WORKER_LOCK = "WORKER.2_PROCESSING_LOCK"
    WORKER_PARTNER = "WORKER.3_PARTNER_CALL"
    WORKER_COMPLETE = "WORKER.4_COMPLETE"
    WORKER_FAILURE = "WORKER.5_FAILURE"
    WORKER_SHUTDOWN = "WORKER.6_SHUTDOWN"

    # Autoscaler
    SCALE_TICK = "SCALE.1_TICK"
    SCALE_UP = "SCALE.2_UP"
    SCALE_DOWN = "SCALE.3_DOWN"
    SCALE_EXIT = "SCALE.4_WORKER_EXIT"
    SCALE_RECONNECT = "SCALE.5_RECONNECT"


# ============================================================================
# Job Kinds and Queues
# ============================================================================


class JobKind(str, Enum):
    """Kinds of work the bridge forwards to the partner."""

    QUOTE = "quote"
    BOOKING = "booking"


QUEUE_QUOTE_REQUESTED = "quote-requested"
QUEUE_QUOTE_RECEIVED = "quote-received"
QUEUE_BOOKING_REQUESTED = "booking-requested"
QUEUE_BOOKING_CONFIRMED = "booking-confirmed"

# kind -> (job queue, reply queue)
JOB_QUEUES: dict[JobKind, tuple[str, str]] = {
    JobKind.QUOTE: (QUEUE_QUOTE_REQUESTED, QUEUE_QUOTE_RECEIVED),
    JobKind.BOOKING: (QUEUE_BOOKING_REQUESTED, QUEUE_BOOKING_CONFIRMED),
}


def job_queue_for(kind: JobKind) -> str:
    """Name of the queue that carries jobs of ``kind``."""
    return JOB_QUEUES[JobKind(kind)][0]


def reply_queue_for(kind: JobKind) -> str:
    """Name of the queue that carries replies for ``kind``."""
    return JOB_QUEUES[JobKind(kind)][1]


# ============================================================================
# Key-Value Store Namespaces
# ============================================================================

PENDING_KEY_PREFIX = "pending"
PROCESSING_KEY_PREFIX = "processing"
RESPONSE_KEY_PREFIX = "response"
COMPLETED_KEY_PREFIX = "completed"
RECORD_KEY_PREFIX = "record"
LOCK_KEY_PREFIX = "lock"


def pending_key(correlation_id: str) -> str:
    return f"{PENDING_KEY_PREFIX}:{correlation_id}"


def processing_key(kind: JobKind, correlation_id: str) -> str:
    return f"{PROCESSING_KEY_PREFIX}:{JobKind(kind).value}:{correlation_id}"


def response_key(correlation_id: str) -> str:
    return f"{RESPONSE_KEY_PREFIX}:{correlation_id}"


def completed_key(kind: JobKind, correlation_id: str) -> str:
    return f"{COMPLETED_KEY_PREFIX}:{JobKind(kind).value}:{correlation_id}"


# ============================================================================
# Reply Status
# ============================================================================


class ReplyStatus(str, Enum):
    """Status carried on reply-queue messages."""

    SUCCESS = "success"
    FAILED = "failed"


# Partner rejection surfaced to clients as a structured validation failure
DATE_RANGE_VALIDATION_MESSAGE = "Pickup date must be before or equal to delivery date"

AUTOSCALER_LEADER_LOCK_NAME = "autoscaler-leader"

# ============================================================================
# HTTP
# ============================================================================

API_PREFIX = "/api/insurance"
HEADER_REQUEST_ID = "X-Request-ID"
