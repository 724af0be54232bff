"""
Unit Tests for Logging Module

Tests logger creation, correlation ID context, the structlog processors and
logging utilities.
"""

import asyncio
from unittest.mock import MagicMock

import pytest

from src.core.config.constants import Stage
from src.core.logging.logger import (
    add_correlation_id,
    add_log_level_name,
    add_timestamp,
    clear_correlation_id,
    get_correlation_id,
    get_logger,
    log_stage,
    redact_pii,
    set_correlation_id,
    setup_logging,
)


@pytest.fixture(autouse=True)
def _reset_correlation_id():
    clear_correlation_id()
    yield
    clear_correlation_id()


@pytest.mark.unit
class TestLoggerCreation:
    """Test logger creation and configuration."""

    def test_get_logger_returns_logger_instance(self):
        """Test that get_logger returns a logger with the usual methods."""
        logger = get_logger(__name__)

        for method in ("debug", "info", "warning", "error"):
            assert hasattr(logger, method)

    @pytest.mark.parametrize("log_format", ["json", "console"])
    def test_setup_logging_accepts_both_formats(self, log_format):
        """Test that both renderers can be configured."""
        setup_logging(log_level="DEBUG", log_format=log_format)

        get_logger("test").info("configured", stage=Stage.SCALE_TICK.value)


@pytest.mark.unit
class TestCorrelationContext:
    """Test correlation ID context management."""

    def test_set_and_clear(self):
        """Test that the correlation ID can be bound and cleared."""
        set_correlation_id("cid-1")
        assert get_correlation_id() == "cid-1"

        clear_correlation_id()
        assert get_correlation_id() is None

    @pytest.mark.asyncio
    async def test_context_is_isolated_per_task(self):
        """Test that concurrent jobs do not see each other's correlation ID."""

        async def job(correlation_id):
            set_correlation_id(correlation_id)
            await asyncio.sleep(0)
            return get_correlation_id()

        results = await asyncio.gather(job("cid-a"), job("cid-b"))

        assert results == ["cid-a", "cid-b"]


@pytest.mark.unit
class TestProcessors:
    """Test the custom structlog processors."""

    def test_add_correlation_id_from_context(self):
        """Test that the bound correlation ID is injected."""
        set_correlation_id("cid-1")

        event = add_correlation_id(None, "info", {"event": "Job enqueued"})

        assert event["correlation_id"] == "cid-1"

    def test_add_correlation_id_keeps_explicit_value(self):
        """Test that an explicit correlation_id field is not overwritten."""
        set_correlation_id("cid-1")

        event = add_correlation_id(None, "info", {"event": "x", "correlation_id": "cid-2"})

        assert event["correlation_id"] == "cid-2"

    def test_add_correlation_id_without_context(self):
        """Test that nothing is added outside a job."""
        assert "correlation_id" not in add_correlation_id(None, "info", {"event": "x"})

    def test_add_timestamp(self):
        """Test that timestamps are UTC ISO strings."""
        event = add_timestamp(None, "info", {"event": "x"})

        assert event["timestamp"].endswith("Z")

    def test_log_level_uppercased(self):
        """Test that the level field is uppercased."""
        assert add_log_level_name(None, "info", {"level": "warning"})["level"] == "WARNING"

    def test_redact_email(self):
        """Test that email addresses are redacted from messages."""
        event = redact_pii(None, "info", {"event": "Booking for jane.doe@example.com confirmed"})

        assert event["event"] == "Booking for [EMAIL] confirmed"

    def test_redact_bearer_token(self):
        """Test that partner API keys in Authorization values are redacted."""
        event = redact_pii(None, "info", {"event": "Header Authorization: Bearer sk_live.abc-123"})

        assert "sk_live" not in event["event"]
        assert "Bearer [REDACTED]" in event["event"]

    def test_redact_preserves_other_fields(self):
        """Test that redaction only touches the event message."""
        event = redact_pii(None, "info", {"event": "a@b.com", "kind": "quote"})

        assert event["kind"] == "quote"

    def test_redact_non_string_event(self):
        """Test that non-string events pass through unchanged."""
        assert redact_pii(None, "info", {"event": {"id": 1}})["event"] == {"id": 1}


@pytest.mark.unit
class TestLogStage:
    """Test the log_stage helper."""

    def test_log_stage_calls_logger(self):
        """Test that log_stage logs the message with its stage."""
        mock_logger = MagicMock()

        log_stage(mock_logger, Stage.WORKER_LOCK.value, "Processing lock acquired", kind="quote")

        mock_logger.info.assert_called_once_with(
            "Processing lock acquired", stage="WORKER.2_PROCESSING_LOCK", kind="quote"
        )

    @pytest.mark.parametrize("level", ["debug", "info", "warning", "error", "WARNING"])
    def test_log_stage_with_different_levels(self, level):
        """Test that log_stage dispatches to the requested level."""
        mock_logger = MagicMock()

        log_stage(mock_logger, "SCALE.2", "Scaled up", level=level)

        getattr(mock_logger, level.lower()).assert_called_once()

