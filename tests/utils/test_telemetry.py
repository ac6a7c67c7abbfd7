"""Tests for OpenTelemetry tracing helpers."""

from __future__ import annotations

from unittest.mock import patch

import pytest
from opentelemetry import trace

from toolbridge.utils.telemetry import (
    ATTR_CALLER_ID,
    ATTR_METHOD,
    ATTR_TOOL_NAME,
    configure_telemetry,
    get_tracer,
)


class TestGetTracer:
    def test_returns_tracer(self) -> None:
        assert isinstance(get_tracer("test.module"), trace.Tracer)

    def test_default_name(self) -> None:
        assert isinstance(get_tracer(), trace.Tracer)

    def test_noop_span(self) -> None:
        """Without SDK configured, spans should be no-ops."""
        tracer = get_tracer("test.noop")
        with tracer.start_as_current_span("test") as span:
            span.set_attribute(ATTR_TOOL_NAME, "echo")


class TestConfigureTelemetry:
    def test_raises_without_sdk(self) -> None:
        with patch.dict("sys.modules", {"opentelemetry.sdk.resources": None}):
            with pytest.raises(ImportError, match="opentelemetry-sdk"):
                configure_telemetry()

    def test_configures_with_console(self) -> None:
        try:
            from opentelemetry.sdk.trace import TracerProvider
        except ImportError:
            pytest.skip("opentelemetry-sdk not installed")

        original = trace.get_tracer_provider()
        try:
            configure_telemetry(service_name="test-svc", export_to_console=True)
            provider = trace.get_tracer_provider()
            assert provider is not original or isinstance(provider, TracerProvider)
        finally:
            trace.set_tracer_provider(original)

    def test_otlp_raises_without_exporter(self) -> None:
        try:
            import opentelemetry.sdk.trace  # noqa: F401
        except ImportError:
            pytest.skip("opentelemetry-sdk not installed")

        with patch.dict(
            "sys.modules",
            {"opentelemetry.exporter.otlp.proto.grpc.trace_exporter": None},
        ):
            with pytest.raises(ImportError, match="opentelemetry-exporter-otlp"):
                configure_telemetry(otlp_endpoint="http://localhost:4317")


class TestAttributeConstants:
    def test_constants_are_namespaced(self) -> None:
        for attr in (ATTR_TOOL_NAME, ATTR_CALLER_ID, ATTR_METHOD):
            assert attr.startswith("toolbridge.")
