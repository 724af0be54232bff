import asyncio
import random
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Any

from src.core.config.constants import DATE_RANGE_VALIDATION_MESSAGE, JobKind
from src.core.exceptions import PartnerRejectedError, PartnerTransientError
from src.core.logging import get_logger
from src.infrastructure.partner.partner_client import cargo_value, integration_fee_amount

logger = get_logger(__name__)

PREMIUM_RATE = 0.01
QUOTE_VALIDITY = timedelta(hours=24)


def _parse_date(value: Any) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


class FakePartnerApi:
    """
    An in-process partner for development and tests.
    Prices a quote at 1% of cargo value, books any quote token, and rejects
    shipments whose pickup date is after their delivery date.
    """

    def __init__(self, latency_seconds: float = 0.5, failure_rate: float = 0.0, metrics=None):
        self.latency_seconds = latency_seconds
        self.failure_rate = failure_rate  # Simulated transient failure rate (0.0 to 1.0)
        self._metrics = metrics
        self.calls: list[tuple[JobKind, dict[str, Any]]] = []

    async def execute(self, kind: JobKind, payload: dict[str, Any]) -> dict[str, Any]:
        kind = JobKind(kind)
        self.calls.append((kind, payload))

        if self.latency_seconds > 0:
            await asyncio.sleep(random.uniform(self.latency_seconds / 2, self.latency_seconds))

        if self.failure_rate > 0 and random.random() < self.failure_rate:
            raise PartnerTransientError("Simulated partner failure: 503 Service Unavailable")

        if kind is JobKind.QUOTE:
            result = self._quote(payload)
        else:
            result = self._book(payload)

        logger.debug("Fake partner answered", kind=kind.value, id=result["id"])
        return result

    def _quote(self, freight_details: dict[str, Any]) -> dict[str, Any]:
        shipment = freight_details.get("shipment") or {}
        pickup = _parse_date(shipment.get("pickupDate") or freight_details.get("pickupDate"))
        delivery = _parse_date(shipment.get("deliveryDate") or freight_details.get("deliveryDate"))
        if pickup and delivery and pickup > delivery:
            raise PartnerRejectedError(DATE_RANGE_VALIDATION_MESSAGE, details={"field": "pickupDate"})

        value = cargo_value(freight_details)
        if value is None or value <= 0:
            raise PartnerRejectedError("Cargo value must be a positive number")

        premium = round(value * PREMIUM_RATE, 2)
        fee_type = freight_details.get("integrationFeeType") or shipment.get("integrationFeeType")
        fee_value = freight_details.get("integrationFeeValue") or shipment.get("integrationFeeValue")
        expires_at = datetime.now(timezone.utc) + QUOTE_VALIDITY

        return {
            "id": f"quote-{uuid.uuid4().hex[:12]}",
            "premium": premium,
            "currency": freight_details.get("currency") or "USD",
            "coverageAmount": value,
            "deductible": 0,
            "terms": "Simulated all-risk cargo cover",
            "expiresAt": expires_at.isoformat().replace("+00:00", "Z"),
            "integrationFeeType": fee_type,
            "integrationFeeValue": fee_value,
            "integrationFeeAmount": integration_fee_amount(premium, fee_type, fee_value),
        }

    def _book(self, payload: dict[str, Any]) -> dict[str, Any]:
        quote_id = payload.get("quoteId")
        if not quote_id:
            raise PartnerRejectedError("Booking payload has no quoteId")
        policy = uuid.uuid4().hex[:10].upper()
        return {
            "id": uuid.uuid4().hex,
            "quoteId": quote_id,
            "certificateUrl": f"https://certificates.example.com/{policy}.pdf",
            "policyNumber": policy,
        }

    async def health_check(self) -> dict[str, Any]:
        return {"status": "healthy", "partner": "fake"}

    async def close(self) -> None:
        pass
