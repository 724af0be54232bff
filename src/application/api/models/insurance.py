"""
Insurance API Models
====================

Request and response shapes for the /api/insurance routes.

FREIGHT DETAILS ARE OPEN-ENDED:
-------------------------------
The quote body is forwarded to the partner, so the model accepts unknown
fields (``extra="allow"``) instead of rejecting them. Only the cargo value
is required, and it may arrive in two forms:

    {"shipment": {"cargo": {"cargoValue": {"value": 1000}}}}   # shipment document
    {"value": 1000, "description": "...", ...}                  # legacy flat form

Missing values are reported by the route as a 400 with the exact message
clients already depend on, not as FastAPI's default 422.

The simple quote route takes flat primitives instead (city and state as
separate fields) and maps them onto the legacy flat form.
"""

from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field

from src.infrastructure.partner.partner_client import cargo_value

MISSING_VALUE_MESSAGE = "Missing required field: value"
MISSING_QUOTE_ID_MESSAGE = "Missing required field: quoteId"
QUOTE_NOT_FOUND_MESSAGE = "Quote not found"
QUOTE_EXPIRED_MESSAGE = "Quote has expired"
MISSING_FIELDS_MESSAGE = "Missing required fields"


# ============================================================================
# REQUEST MODELS
# ============================================================================


class QuoteRequest(BaseModel):
    """Freight details for a quote."""

    model_config = ConfigDict(extra="allow")

    shipment: dict[str, Any] | None = Field(default=None, description="Partner shipment document")
    value: float | str | None = Field(default=None, description="Legacy primitive cargo value")

    def cargo_value(self) -> float | None:
        return cargo_value(self.payload())

    def payload(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class SimpleQuoteRequest(BaseModel):
    """
    Freight details as primitives.

    Optional primitives (dimensions, weight, carrier, commodity, load and
    equipment types, integration fee) are forwarded unchanged.
    """

    model_config = ConfigDict(extra="allow")

    REQUIRED_FIELDS: ClassVar[tuple[str, ...]] = (
        "description",
        "freightClass",
        "value",
        "originCity",
        "originState",
        "destinationCity",
        "destinationState",
    )

    description: str | None = None
    freightClass: str | int | float | None = None
    value: float | str | None = None
    originCity: str | None = None
    originState: str | None = None
    destinationCity: str | None = None
    destinationState: str | None = None
    currency: str | None = None
    pickupDate: str | None = None
    deliveryDate: str | None = None
    userName: str | None = None
    userEmail: str | None = None
    assuredName: str | None = None
    assuredEmail: str | None = None

    def missing_fields(self) -> list[str]:
        return [name for name in self.REQUIRED_FIELDS if getattr(self, name) in (None, "")]

    def freight_details(self) -> dict[str, Any]:
        """The legacy flat form the partner client and fake partner accept."""
        fields = self.model_dump(exclude_none=True)
        for name in ("originCity", "originState", "destinationCity", "destinationState", "freightClass"):
            fields.pop(name, None)
        for name in ("userName", "userEmail", "assuredName", "assuredEmail"):
            fields.pop(name, None)

        details = {
            **fields,
            "origin": f"{self.originCity}, {self.originState}",
            "destination": f"{self.destinationCity}, {self.destinationState}",
            "class": str(self.freightClass),
        }
        user = _contact(self.userName, self.userEmail)
        if user:
            details["user"] = user
        assured = _contact(self.assuredName, self.assuredEmail)
        if assured:
            details["assured"] = assured
        return details


def _contact(name: str | None, email: str | None) -> dict[str, str] | None:
    contact = {key: value for key, value in (("name", name), ("email", email)) if value}
    return contact or None


class BookingRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    quoteId: str | None = Field(default=None, description="ID of the quote to purchase")

    def payload(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


# ============================================================================
# RESPONSE MODELS
# ============================================================================


class Pagination(BaseModel):
    total: int
    limit: int
    offset: int


class QuoteListResponse(BaseModel):
    status: str = "success"
    quotes: list[dict[str, Any]]
    pagination: Pagination


class ValidationErrorResponse(BaseModel):
    error: str
    requestId: str | None = None
