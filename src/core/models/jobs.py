"""
Job Data Structures

The records that travel between the HTTP correlator and the workers:

    JobEnvelope    -> job queue (quote-requested / booking-requested)
    PendingMarker  -> pending:{correlationId}
    ReplyEnvelope  -> response:{correlationId} and the reply queue

Wire format is camelCase JSON so that every process, whatever it is written
in, can read the queues and keys.

Author: System Architect
Date: 2025-12-13
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from src.core.config.constants import JobKind, ReplyStatus
from src.core.exceptions import InvalidEnvelopeError


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class JobEnvelope:
    """
    A unit of work placed on a job queue.

    Immutable once enqueued. Requeued copies are new envelopes with a higher
    ``delivery_attempt``.
    """

    correlation_id: str
    job_kind: JobKind
    payload: dict[str, Any]
    issued_at_instance_id: str
    submitted_at: str = field(default_factory=utc_now_iso)
    delivery_attempt: int = 1

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the wire format."""
        return {
            "correlationId": self.correlation_id,
            "jobKind": self.job_kind.value,
            "payload": self.payload,
            "issuedAtInstanceId": self.issued_at_instance_id,
            "submittedAt": self.submitted_at,
            "deliveryAttempt": self.delivery_attempt,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "JobEnvelope":
        """
        Deserialize from the wire format.

        Raises:
            InvalidEnvelopeError: If the envelope is not an object, the correlation ID
                or job kind is missing or unknown, or a field has the wrong type
        """
        if not isinstance(data, dict):
            raise InvalidEnvelopeError("Job envelope must be an object", details={"type": type(data).__name__})
        correlation_id = data.get("correlationId")
        if not correlation_id:
            raise InvalidEnvelopeError("Job envelope has no correlationId", details={"keys": sorted(data)})
        try:
            kind = JobKind(data.get("jobKind"))
        except ValueError as e:
            raise InvalidEnvelopeError(
                f"Unknown job kind: {data.get('jobKind')!r}", correlation_id=correlation_id
            ) from e
        payload = data.get("payload")
        if not isinstance(payload, dict):
            raise InvalidEnvelopeError("Job payload must be an object", correlation_id=correlation_id)
        try:
            delivery_attempt = int(data.get("deliveryAttempt", 1))
        except (TypeError, ValueError) as e:
            raise InvalidEnvelopeError(
                f"Invalid deliveryAttempt: {data.get('deliveryAttempt')!r}", correlation_id=correlation_id
            ) from e
        return cls(
            correlation_id=correlation_id,
            job_kind=kind,
            payload=payload,
            issued_at_instance_id=data.get("issuedAtInstanceId", "unknown"),
            submitted_at=data.get("submittedAt") or utc_now_iso(),
            delivery_attempt=delivery_attempt,
        )

    def next_attempt(self) -> "JobEnvelope":
        """Copy of this envelope for a requeue."""
        return JobEnvelope(
            correlation_id=self.correlation_id,
            job_kind=self.job_kind,
            payload=self.payload,
            issued_at_instance_id=self.issued_at_instance_id,
            submitted_at=self.submitted_at,
            delivery_attempt=self.delivery_attempt + 1,
        )


@dataclass(frozen=True)
class PendingMarker:
    """Written by the correlator while an HTTP caller is waiting."""

    job_kind: JobKind
    issuing_instance_id: str
    submitted_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "submittedAt": self.submitted_at,
            "issuingInstanceId": self.issuing_instance_id,
            "jobKind": self.job_kind.value,
        }


@dataclass(frozen=True)
class ReplyEnvelope:
    """
    Outcome of a job: exactly one of ``data`` or ``error`` is set.
    """

    data: dict[str, Any] | None = None
    error: str | None = None

    def __post_init__(self):
        if (self.data is None) == (self.error is None):
            raise ValueError("ReplyEnvelope needs exactly one of data or error")

    @property
    def is_error(self) -> bool:
        return self.error is not None

    @classmethod
    def success(cls, data: dict[str, Any]) -> "ReplyEnvelope":
        return cls(data=data)

    @classmethod
    def failure(cls, error: str) -> "ReplyEnvelope":
        return cls(error=error)

    def to_dict(self) -> dict[str, Any]:
        """Form stored under response:{correlationId}."""
        if self.is_error:
            return {"error": self.error}
        return {"data": self.data}

    def to_queue_message(self, correlation_id: str, kind: JobKind) -> dict[str, Any]:
        """Form published on the reply queue."""
        status = ReplyStatus.FAILED if self.is_error else ReplyStatus.SUCCESS
        return {
            "correlationId": correlation_id,
            "jobKind": JobKind(kind).value,
            "status": status.value,
            **self.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ReplyEnvelope":
        if data.get("error") is not None:
            return cls(error=str(data["error"]))
        if isinstance(data.get("data"), dict):
            return cls(data=data["data"])
        raise InvalidEnvelopeError("Reply envelope has neither data nor error")
