"""
Collaborator Protocols

Narrow interfaces the bridge consumes without owning their internals:
the partner API and the record store. Protocols keep the worker and the
HTTP routes testable with fakes.

Author: System Architect
Date: 2025-12-08
"""

from typing import Any, Protocol, runtime_checkable

from src.core.config.constants import JobKind


@runtime_checkable
class PartnerApi(Protocol):
    """
    The third-party insurance API.

    Implementations:
    - PartnerHttpClient: real partner over HTTPS (httpx)
    - FakePartnerApi: in-process simulation for development and tests
    """

    async def execute(self, kind: JobKind, payload: dict[str, Any]) -> dict[str, Any]:
        """
        Perform the partner operation for ``kind``.

        Raises:
            PartnerTransientError: Retryable failure (connection, timeout, 5xx)
            PartnerRejectedError: Permanent failure (4xx, validation)
        """
        ...

    async def close(self) -> None:
        ...


@runtime_checkable
class RecordStore(Protocol):
    """
    Persistence for quotes and bookings, keyed by business ID.
    """

    async def save(
        self, kind: JobKind, result: dict[str, Any], original_payload: dict[str, Any]
    ) -> dict[str, Any]:
        """Persist a partner result and return the stored record."""
        ...

    async def get(self, kind: JobKind, record_id: str) -> dict[str, Any]:
        """
        Raises:
            RecordNotFoundError: If no record exists for ``record_id``
        """
        ...

    async def list(self, kind: JobKind, limit: int = 20, offset: int = 0) -> tuple[list[dict[str, Any]], int]:
        """Most recent first. Returns (records, total)."""
        ...


# Bookkeeping fields a record store adds on top of the partner result
RECORD_META_FIELDS = ("kind", "request", "createdAt", "status")


def partner_result_view(record: dict[str, Any]) -> dict[str, Any]:
    """The partner result a record was built from (bookkeeping stripped)."""
    return {key: value for key, value in record.items() if key not in RECORD_META_FIELDS}
