"""
Tests for logging processors.
"""
import pytest

from payment_orchestrator.config import Settings
from payment_orchestrator.monitoring.logging import app_context, redact_secrets


class TestLoggingProcessors:
    """Test suite for the structlog processors."""

    @pytest.mark.unit
    def test_gateway_credentials_are_masked(self) -> None:
        event = {
            "event": "gateway_request",
            "merchant_id": "00000000-0000-0000-0000-000000000000",
            "headers": {"X-API-KEY": "secret", "Content-Type": "application/json"},
            "raw": {"data": [{"access_token": "token", "code": 100}]},
        }

        redacted = redact_secrets(None, "info", event)

        assert redacted["merchant_id"] == "***"
        assert redacted["headers"] == {"X-API-KEY": "***", "Content-Type": "application/json"}
        assert redacted["raw"]["data"][0] == {"access_token": "***", "code": 100}
        assert redacted["event"] == "gateway_request"

    @pytest.mark.unit
    def test_app_context_names_the_service(self, test_settings: Settings) -> None:
        processor = app_context(test_settings, "sweeper")

        event = processor(None, "info", {"event": "sweep_completed"})

        assert event["service"] == "sweeper"
        assert event["app_name"] == "payment-orchestrator-test"
        assert event["app_env"] == "test"
