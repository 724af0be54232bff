"""
Integration Tests for the Request / Worker Round Trip

Wires a RequestCorrelator and a JobConsumerWorker to the same in-memory
store, queues and record store. The correlator's poll sleep drives the
worker, so each test runs the whole pipeline deterministically: pending
marker, enqueue, processing lock, partner call, record, reply.
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from src.application.api.dependencies import get_correlator, get_record_store
from src.application.app import create_app
from src.core.config.constants import DATE_RANGE_VALIDATION_MESSAGE, JobKind
from src.core.resilience.job_consumer_worker import JobConsumerWorker, WorkerConfig
from src.core.resilience.request_correlator import (
    CorrelationFailure,
    CorrelationSuccess,
    CorrelationTimeout,
    CorrelatorConfig,
    RequestCorrelator,
)
from tests.test_fixtures import JobFactory


class WorkerDrivenSleep:
    """Poll sleep that lets the worker drain the job queues before time moves on."""

    def __init__(self, clock, worker, job_queues, enabled=True):
        self._clock = clock
        self._worker = worker
        self._job_queues = job_queues
        self.enabled = enabled

    async def __call__(self, seconds):
        self._clock.advance(seconds)
        if not self.enabled:
            return
        for queue in self._job_queues.values():
            for message in await queue.consume(self._worker.consumer_name):
                await self._worker.processor.process(queue, message)


@pytest.fixture
def worker(kv_store, job_queues, reply_queues, record_store, fake_partner, mock_metrics_collector):
    return JobConsumerWorker(
        store=kv_store,
        job_queues=job_queues,
        reply_queues=reply_queues,
        partner=fake_partner,
        records=record_store,
        config=WorkerConfig(),
        consumer_name="worker-it",
        metrics=mock_metrics_collector,
    )


@pytest.fixture
def driven_sleep(clock, worker, job_queues):
    return WorkerDrivenSleep(clock, worker, job_queues)


@pytest.fixture
def correlator(kv_store, job_queues, clock, driven_sleep, mock_metrics_collector):
    return RequestCorrelator(
        store=kv_store,
        queues=job_queues,
        config=CorrelatorConfig(),
        instance_id="api-it",
        metrics=mock_metrics_collector,
        sleep=driven_sleep,
        clock=clock,
    )


@pytest.mark.integration
class TestQuoteAndBooking:
    """Test the full quote then booking journey."""

    @pytest.mark.asyncio
    async def test_quote_then_booking(self, correlator, record_store, kv_store):
        """Test that a quote is priced, stored and then booked."""
        quote = await correlator.submit(JobKind.QUOTE, JobFactory.freight_details(value=2000))

        assert isinstance(quote, CorrelationSuccess)
        quote_id = quote.data["quoteId"]
        assert quote.data["premium"] == 20.0
        assert quote.data["totalCost"] == 20.0
        assert (await record_store.get(JobKind.QUOTE, quote_id))["request"]["value"] == 2000

        booking = await correlator.submit(JobKind.BOOKING, {"quoteId": quote_id})

        assert isinstance(booking, CorrelationSuccess)
        assert booking.data["quoteId"] == quote_id
        stored = await record_store.get(JobKind.BOOKING, booking.data["bookingId"])
        assert stored["policyNumber"] == booking.data["policyNumber"]
        assert stored["premium"] == 20.0
        assert stored["coverageAmount"] == 2000
        assert (await record_store.get(JobKind.QUOTE, quote_id))["status"] == "active"

        # Only the completion markers outlive the round trips
        assert all(key.startswith("completed:") for key in kv_store.keys())

    @pytest.mark.asyncio
    async def test_jobs_are_acknowledged(self, correlator, job_queues):
        """Test that a processed job leaves nothing unacknowledged."""
        await correlator.submit(JobKind.QUOTE, JobFactory.freight_details())

        queue = job_queues[JobKind.QUOTE]
        assert len(queue.acked) == 1
        assert queue.unacked == {}
        assert await queue.depth() == 0

    @pytest.mark.asyncio
    async def test_reply_copy_published(self, correlator, reply_queues):
        """Test that the reply is also published to the reply queue."""
        outcome = await correlator.submit(JobKind.QUOTE, JobFactory.freight_details())

        [published] = reply_queues[JobKind.QUOTE].produced
        assert published["correlationId"] == outcome.correlation_id


@pytest.mark.integration
class TestFailurePaths:
    """Test rejections and timeouts end to end."""

    @pytest.mark.asyncio
    async def test_partner_rejection_reaches_caller(self, correlator, job_queues, record_store):
        """Test that a date-range rejection becomes a validation failure and a dead letter."""
        payload = JobFactory.shipment_document(pickup="2026-02-10", delivery="2026-02-01")

        outcome = await correlator.submit(JobKind.QUOTE, payload)

        assert isinstance(outcome, CorrelationFailure)
        assert outcome.reason == "validation"
        assert outcome.error == DATE_RANGE_VALIDATION_MESSAGE
        assert len(job_queues[JobKind.QUOTE].dead_letters) == 1
        assert record_store.count(JobKind.QUOTE) == 0

    @pytest.mark.asyncio
    async def test_timeout_then_background_completion(self, correlator, driven_sleep, worker, job_queues, record_store):
        """Test that a timed-out request still completes and is stored, without a reply."""
        driven_sleep.enabled = False

        outcome = await correlator.submit(JobKind.QUOTE, JobFactory.freight_details())

        assert isinstance(outcome, CorrelationTimeout)
        assert outcome.to_response_body()["requestId"] == outcome.correlation_id

        queue = job_queues[JobKind.QUOTE]
        for message in await queue.consume(worker.consumer_name):
            await worker.processor.process(queue, message)

        assert record_store.count(JobKind.QUOTE) == 1
        assert queue.unacked == {}

    @pytest.mark.asyncio
    async def test_redelivery_after_completion_does_not_call_partner(
        self, correlator, job_queues, fake_partner, record_store, worker
    ):
        """Test that a redelivered job is replayed from the record store."""
        await correlator.submit(JobKind.QUOTE, JobFactory.freight_details())
        queue = job_queues[JobKind.QUOTE]
        [original] = queue.produced

        redelivered = queue.deliver(original)
        await worker.processor.process(queue, redelivered)

        assert len(fake_partner.calls) == 1
        assert record_store.count(JobKind.QUOTE) == 1
        assert redelivered.id in queue.acked


@pytest.mark.integration
class TestHttpRoundTrip:
    """Test the HTTP surface over the in-memory pipeline."""

    def test_quote_booking_and_lookup_over_http(self, correlator, record_store):
        """Test that quotes and bookings made over HTTP can be looked up."""
        app = create_app()
        app.dependency_overrides[get_correlator] = lambda: correlator
        app.dependency_overrides[get_record_store] = lambda: record_store
        client = TestClient(app)

        quote = client.post("/api/insurance/quotes", json=JobFactory.freight_details(value=500))
        assert quote.status_code == 200
        quote_id = quote.json()["quote"]["quoteId"]

        booking = client.post("/api/insurance/bookings", json={"quoteId": quote_id})
        assert booking.status_code == 200
        booking_id = booking.json()["booking"]["bookingId"]

        assert client.get(f"/api/insurance/quotes/{quote_id}").json()["quote"]["premium"] == 5.0
        assert client.get(f"/api/insurance/bookings/{booking_id}").json()["booking"]["quoteId"] == quote_id
        assert client.get("/api/insurance/quotes").json()["pagination"]["total"] == 1

    def test_concurrent_quotes_are_isolated(self, correlator):
        """Test that concurrent requests each receive their own reply."""

        async def run():
            return await asyncio.gather(
                *(correlator.submit(JobKind.QUOTE, JobFactory.freight_details(value=value)) for value in (100, 200, 300))
            )

        outcomes = asyncio.run(run())

        assert [outcome.data["premium"] for outcome in outcomes] == [1.0, 2.0, 3.0]
        assert len({outcome.correlation_id for outcome in outcomes}) == 3
