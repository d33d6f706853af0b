"""Tests for OpenTelemetry wiring."""

from unittest.mock import patch

import pytest

from shipyard import telemetry
from shipyard.config import DaemonConfig


@pytest.fixture
def installed():
    """Capture the providers setup_telemetry installs instead of making them global."""
    with (
        patch("shipyard.telemetry.trace.set_tracer_provider") as set_tracer,
        patch("shipyard.telemetry.metrics.set_meter_provider") as set_meter,
    ):
        yield set_tracer, set_meter


class TestSetupTelemetry:
    """Tests for setup_telemetry()."""

    def test_providers_carry_service_name(self, installed, monkeypatch) -> None:
        monkeypatch.delenv("OTLP_ENABLED", raising=False)
        set_tracer, set_meter = installed

        telemetry.setup_telemetry(DaemonConfig(service_name="shipyard-test"))

        tracer_provider = set_tracer.call_args[0][0]
        assert tracer_provider.resource.attributes["service.name"] == "shipyard-test"
        set_meter.assert_called_once()

    def test_instruments_are_rebound(self, installed, monkeypatch) -> None:
        monkeypatch.delenv("OTLP_ENABLED", raising=False)

        with patch("shipyard.telemetry.create_metrics") as create_metrics:
            telemetry.setup_telemetry(DaemonConfig())

        create_metrics.assert_called_once()

    def test_no_exporters_without_endpoint(self, installed, monkeypatch) -> None:
        monkeypatch.setenv("OTLP_ENABLED", "true")

        with patch("shipyard.telemetry.TracerProvider") as provider_class:
            telemetry.setup_telemetry(DaemonConfig(otlp_endpoint=""))

        provider_class.return_value.add_span_processor.assert_not_called()

    @pytest.mark.parametrize("value,expected", [("true", True), ("TRUE", True), ("1", False)])
    def test_otlp_enabled(self, monkeypatch, value: str, expected: bool) -> None:
        monkeypatch.setenv("OTLP_ENABLED", value)
        assert telemetry.otlp_enabled() is expected
