"""
Resilience Module - Request/Response Bridge Components

ARCHITECTURE:
=============
HTTP side: Request Correlator
    - Writes the pending marker, enqueues the job (tenacity retries)
    - Polls response:{cid} and maps the reply to an HTTP outcome

Worker side: Job Consumer Worker
    - Bounded-concurrency consumption of every job queue
    - Processing lock + completion marker deduplication
    - Transient requeue / permanent dead letter (error classifier)

Shared: Distributed Lock
    - Token-owned SET NX PX lock with Lua release and renewal

Author: Senior Solution Architect
Date: 2025-12-09
"""

from .distributed_lock import DistributedLock, lock_key
from .error_classifier import FailureClass, classify_failure, is_transient
from .job_consumer_worker import (
    JobConsumerWorker,
    WorkerConfig,
    build_job_consumer_worker,
)
from .request_correlator import (
    CorrelationFailure,
    CorrelationOutcome,
    CorrelationSuccess,
    CorrelationTimeout,
    CorrelatorConfig,
    ImmediateError,
    RequestCorrelator,
    get_request_correlator,
    reset_request_correlator,
)

__all__ = [
    # HTTP side
    "RequestCorrelator",
    "CorrelatorConfig",
    "CorrelationOutcome",
    "CorrelationSuccess",
    "CorrelationFailure",
    "CorrelationTimeout",
    "ImmediateError",
    "get_request_correlator",
    "reset_request_correlator",
    # Worker side
    "JobConsumerWorker",
    "WorkerConfig",
    "build_job_consumer_worker",
    "FailureClass",
    "classify_failure",
    "is_transient",
    # Locking
    "DistributedLock",
    "lock_key",
]
