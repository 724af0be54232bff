"""
Unit Tests for the In-Process Partner
"""

import pytest

from src.core.config.constants import DATE_RANGE_VALIDATION_MESSAGE, JobKind
from src.core.exceptions import PartnerRejectedError, PartnerTransientError
from src.infrastructure.partner import FakePartnerApi
from tests.test_fixtures import JobFactory


@pytest.mark.unit
class TestFakePartnerQuotes:
    """Test simulated quoting."""

    @pytest.mark.asyncio
    async def test_premium_is_one_percent_of_value(self, fake_partner):
        """Test that the premium is 1% of the cargo value."""
        result = await fake_partner.execute(JobKind.QUOTE, JobFactory.freight_details(value=1000))

        assert result["id"].startswith("quote-")
        assert result["premium"] == 10.0
        assert result["coverageAmount"] == 1000.0
        assert result["integrationFeeAmount"] == 0.0

    @pytest.mark.asyncio
    async def test_shipment_document_with_fixed_fee(self, fake_partner):
        """Test that shipment-level integration fees are applied."""
        document = JobFactory.shipment_document(value=5000)
        document["shipment"]["integrationFeeType"] = "fixed"
        document["shipment"]["integrationFeeValue"] = 3

        result = await fake_partner.execute("quote", document)

        assert result["premium"] == 50.0
        assert result["integrationFeeAmount"] == 3.0

    @pytest.mark.asyncio
    async def test_pickup_after_delivery_is_rejected(self, fake_partner):
        """Test that an inverted date range is a permanent rejection."""
        document = JobFactory.shipment_document(pickup="2026-01-10", delivery="2026-01-05")

        with pytest.raises(PartnerRejectedError) as exc_info:
            await fake_partner.execute(JobKind.QUOTE, document)

        assert exc_info.value.message == DATE_RANGE_VALIDATION_MESSAGE

    @pytest.mark.asyncio
    @pytest.mark.parametrize("value", [0, -5])
    async def test_non_positive_value_is_rejected(self, fake_partner, value):
        """Test that cargo without value cannot be insured."""
        with pytest.raises(PartnerRejectedError):
            await fake_partner.execute(JobKind.QUOTE, JobFactory.freight_details(value=value))


@pytest.mark.unit
class TestFakePartnerBookings:
    """Test simulated booking."""

    @pytest.mark.asyncio
    async def test_booking_echoes_quote(self, fake_partner):
        """Test that a booking references the purchased quote."""
        result = await fake_partner.execute(JobKind.BOOKING, {"quoteId": "quote-abc"})

        assert result["quoteId"] == "quote-abc"
        assert result["certificateUrl"].endswith(f"{result['policyNumber']}.pdf")

    @pytest.mark.asyncio
    async def test_booking_without_quote_is_rejected(self, fake_partner):
        """Test that a booking payload must name its quote."""
        with pytest.raises(PartnerRejectedError):
            await fake_partner.execute(JobKind.BOOKING, {})


@pytest.mark.unit
class TestFakePartnerBehaviour:
    """Test call recording and failure simulation."""

    @pytest.mark.asyncio
    async def test_calls_are_recorded(self, fake_partner):
        """Test that every call is kept for assertions."""
        await fake_partner.execute(JobKind.BOOKING, {"quoteId": "q"})

        assert fake_partner.calls == [(JobKind.BOOKING, {"quoteId": "q"})]

    @pytest.mark.asyncio
    async def test_failure_rate_simulates_outage(self):
        """Test that a failure rate of 1 always fails transiently."""
        partner = FakePartnerApi(latency_seconds=0, failure_rate=1.0)

        with pytest.raises(PartnerTransientError):
            await partner.execute(JobKind.QUOTE, JobFactory.freight_details())

    @pytest.mark.asyncio
    async def test_health_check(self, fake_partner):
        """Test that the fake partner always reports healthy."""
        assert await fake_partner.health_check() == {"status": "healthy", "partner": "fake"}
