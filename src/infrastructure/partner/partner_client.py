"""
Partner HTTP Client - Freight insurance partner over HTTPS

Architecture:
    PartnerHttpClient
        ├── QuoteRequestBuilder (legacy freight details -> shipment document)
        ├── ResponseMapper (partner document -> internal result)
        └── _post() (httpx + tenacity retries on connect/timeout errors)

Endpoints:
    quote   -> POST {base}/api/insureLoad/quote
    booking -> POST {base}/api/insureLoad/purchaseQuote

Error mapping:
    connect error / 5xx         -> PartnerTransientError (requeued by the worker)
    timeout                     -> PartnerTimeoutError   (requeued by the worker)
    4xx / "errors" in the body  -> PartnerRejectedError  (error reply, dead letter)

Author: System Architect
Date: 2025-12-13
"""

import time
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Any

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter

from src.core.config.constants import JobKind
from src.core.exceptions import (
    PartnerRejectedError,
    PartnerTimeoutError,
    PartnerTransientError,
)
from src.core.logging.logger import get_logger

logger = get_logger(__name__)

QUOTE_PATH = "api/insureLoad/quote"
PURCHASE_PATH = "api/insureLoad/purchaseQuote"


def integration_fee_amount(premium: float, fee_type: str | None, fee_value: float | None) -> float:
    """
    Fee charged on top of the premium.

    ``percentage`` is a percent of the premium; anything else is a fixed amount.
    """
    if fee_value is None:
        return 0.0
    if fee_type == "percentage":
        return round(premium * float(fee_value) / 100, 2)
    return float(fee_value)


def format_errors(errors: list[Any]) -> str:
    """Partner error entries (dicts with ``message`` or plain strings) as one line."""
    return "; ".join(str(e.get("message", e)) if isinstance(e, dict) else str(e) for e in errors)


def cargo_value(freight_details: dict[str, Any]) -> float | None:
    """Cargo value from a shipment document or the legacy ``value`` field."""
    try:
        return float(freight_details["shipment"]["cargo"]["cargoValue"]["value"])
    except (KeyError, TypeError, ValueError):
        pass
    value = freight_details.get("value")
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


class QuoteRequestBuilder:
    """
    Builds the partner's shipment document.

    A payload that already has a ``shipment`` is forwarded as is; the legacy
    flat form is mapped onto the minimal shipment the partner accepts.
    """

    @staticmethod
    def build(freight_details: dict[str, Any]) -> dict[str, Any]:
        if "shipment" in freight_details:
            return freight_details

        today = date.today()
        origin = [part.strip() for part in str(freight_details.get("origin") or "Unknown, Unknown").split(",")]
        destination = [
            part.strip() for part in str(freight_details.get("destination") or "Unknown, Unknown").split(",")
        ]

        return {
            "shipment": {
                "version": "2",
                "freightId": freight_details.get("freightId") or uuid.uuid4().hex[:12],
                "cargo": {
                    "cargoValue": {
                        "currency": freight_details.get("currency", "USD"),
                        "value": cargo_value(freight_details),
                    },
                    "fullDescriptionOfCargo": freight_details.get("description", ""),
                    "freightClass": freight_details.get("class"),
                    "commodity": [c for c in [freight_details.get("commodityId")] if c],
                },
                "pickupDate": freight_details.get("pickupDate") or today.isoformat(),
                "deliveryDate": freight_details.get("deliveryDate") or (today + timedelta(days=7)).isoformat(),
                "stops": [
                    {"stopType": "PICKUP", "stopNumber": 1, "address": {"city": origin[0], "state": origin[-1]}},
                    {
                        "stopType": "DELIVERY",
                        "stopNumber": 2,
                        "address": {"city": destination[0], "state": destination[-1]},
                    },
                ],
            },
            "user": freight_details.get("user"),
            "assured": freight_details.get("assured"),
        }


class ResponseMapper:
    """Maps partner documents onto the internal result shape (``id`` first)."""

    @staticmethod
    def quote(data: dict[str, Any], freight_details: dict[str, Any]) -> dict[str, Any]:
        product = data.get("insuranceProduct") or {}
        premium = float(product.get("premium", 0))
        fee_type = freight_details.get("integrationFeeType") or (freight_details.get("shipment") or {}).get(
            "integrationFeeType"
        )
        fee_value = freight_details.get("integrationFeeValue") or (freight_details.get("shipment") or {}).get(
            "integrationFeeValue"
        )
        expires_in = int(data.get("expiresIn", 0) or 0)
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=expires_in)
        return {
            "id": data.get("quoteToken"),
            "premium": premium,
            "currency": product.get("currency"),
            "coverageAmount": product.get("limit"),
            "deductible": product.get("deductible"),
            "terms": product.get("description"),
            "expiresAt": expires_at.isoformat().replace("+00:00", "Z"),
            "integrationFeeType": fee_type,
            "integrationFeeValue": fee_value,
            "integrationFeeAmount": integration_fee_amount(premium, fee_type, fee_value),
        }

    @staticmethod
    def booking(data: dict[str, Any], quote_id: str) -> dict[str, Any]:
        return {
            "id": uuid.uuid4().hex,
            "quoteId": quote_id,
            "certificateUrl": data.get("certificateLink"),
            "policyNumber": data.get("certificateNumber"),
        }


class PartnerHttpClient:
    """
    The real partner API.

    Usage:
        client = PartnerHttpClient(base_url, api_key)
        result = await client.execute(JobKind.QUOTE, freight_details)
        await client.close()
    """

    def __init__(
        self,
        base_url: str,
        api_key: str | None,
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_base_delay: float = 0.5,
        retry_max_delay: float = 4.0,
        metrics=None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._base_url = base_url.rstrip("/") + "/"
        self._timeout = timeout
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay
        self._retry_max_delay = retry_max_delay
        self._metrics = metrics

        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers=headers,
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    async def execute(self, kind: JobKind, payload: dict[str, Any]) -> dict[str, Any]:
        kind = JobKind(kind)
        started = time.monotonic()
        status = "success"
        try:
            if kind is JobKind.QUOTE:
                return await self.get_quote(payload)
            return await self.purchase_quote(payload)
        except PartnerTimeoutError:
            status = "timeout"
            raise
        except PartnerTransientError:
            status = "transient"
            raise
        except PartnerRejectedError:
            status = "rejected"
            raise
        finally:
            if self._metrics is not None:
                self._metrics.record_partner_request(kind.value, status, time.monotonic() - started)

    async def get_quote(self, freight_details: dict[str, Any]) -> dict[str, Any]:
        document = QuoteRequestBuilder.build(freight_details)
        data = await self._post(QUOTE_PATH, document)
        if data.get("errors"):
            raise PartnerRejectedError(
                f"Partner quote validation errors: {format_errors(data['errors'])}",
                details={"errors": data["errors"]},
            )
        return ResponseMapper.quote(data, freight_details)

    async def purchase_quote(self, payload: dict[str, Any]) -> dict[str, Any]:
        quote_id = payload.get("quoteId")
        if not quote_id:
            raise PartnerRejectedError("Booking payload has no quoteId")
        data = await self._post(PURCHASE_PATH, {"quoteToken": quote_id, "sendEmailsTo": ["USER", "ASSURED"]})
        if data.get("errors"):
            raise PartnerRejectedError(
                f"Partner purchase validation errors: {format_errors(data['errors'])}",
                details={"errors": data["errors"]},
            )
        return ResponseMapper.booking(data, quote_id)

    async def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        """
        POST with retries on connect/timeout errors.

        NOT RETRIED here (the worker requeues instead):
        - 5xx responses
        - 4xx responses (would fail again)
        """

        @retry(
            stop=stop_after_attempt(self._max_retries),
            wait=wait_exponential_jitter(initial=self._retry_base_delay, max=self._retry_max_delay),
            retry=retry_if_exception_type((httpx.ConnectError, httpx.TimeoutException)),
            reraise=True,
        )
        async def _do_request() -> httpx.Response:
            return await self._client.post(path, json=body)

        try:
            response = await _do_request()
        except httpx.TimeoutException as e:
            raise PartnerTimeoutError(
                f"Partner request timed out after {self._timeout}s", details={"path": path}
            ) from e
        except httpx.TransportError as e:
            raise PartnerTransientError.from_exception(
                e, message=f"Cannot reach partner: connection refused ({e})", path=path
            ) from e

        if response.status_code >= 500:
            raise PartnerTransientError(
                f"Partner returned HTTP {response.status_code}",
                details={"path": path, "status_code": response.status_code, "body": response.text[:500]},
            )
        if response.status_code >= 400:
            raise PartnerRejectedError(
                self._rejection_message(response),
                details={"path": path, "status_code": response.status_code},
            )

        try:
            return response.json()
        except ValueError as e:
            raise PartnerTransientError("Partner returned a non-JSON body", details={"path": path}) from e

    @staticmethod
    def _rejection_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return f"Partner returned HTTP {response.status_code}"
        if isinstance(body, dict):
            errors = body.get("errors")
            if isinstance(errors, list) and errors:
                return format_errors(errors)
            if body.get("message"):
                return str(body["message"])
        return f"Partner returned HTTP {response.status_code}"

    async def close(self) -> None:
        await self._client.aclose()
        logger.debug("Partner HTTP client closed")
