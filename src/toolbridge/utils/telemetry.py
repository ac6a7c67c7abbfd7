"""Tracing for toolbridge: span attribute keys and optional SDK setup.

Modules take a tracer from :func:`get_tracer` and open spans around tool
invocations and inbound requests.  The API alone yields no-op spans; a real
pipeline exists only after :func:`configure_telemetry` (``toolbridge[otel]``).
"""

from __future__ import annotations

import sys
from typing import Any

from opentelemetry import trace

ATTR_TOOL_NAME = "toolbridge.tool.name"
ATTR_CALLER_ID = "toolbridge.caller.id"
ATTR_OUTCOME = "toolbridge.outcome"
ATTR_METHOD = "toolbridge.rpc.method"
ATTR_REQUEST_ID = "toolbridge.rpc.request_id"
ATTR_SESSION_ID = "toolbridge.session.id"

_INSTRUMENTATION_NAME = "toolbridge"
_INSTALL_HINT = "Install it with: pip install toolbridge[otel]"


def get_tracer(name: str | None = None) -> trace.Tracer:
    return trace.get_tracer(name or _INSTRUMENTATION_NAME)


def configure_telemetry(
    *,
    service_name: str = "toolbridge",
    export_to_console: bool = False,
    otlp_endpoint: str | None = None,
) -> None:
    """Install a global tracer provider for *service_name*.

    Console spans go to stderr, never stdout, since ``toolbridge serve``
    speaks the protocol on stdout.  OTLP export uses gRPC to *otlp_endpoint*.

    Raises:
        ImportError: If the SDK, or the OTLP exporter when an endpoint is
            given, is not installed.
    """
    try:
        from opentelemetry.sdk.resources import Resource  # pyright: ignore[reportMissingImports]
        from opentelemetry.sdk.trace import TracerProvider  # pyright: ignore[reportMissingImports]
    except ImportError as exc:
        msg = f"opentelemetry-sdk is required for configure_telemetry(). {_INSTALL_HINT}"
        raise ImportError(msg) from exc

    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    for processor in _span_processors(export_to_console, otlp_endpoint):
        provider.add_span_processor(processor)
    trace.set_tracer_provider(provider)


def _span_processors(export_to_console: bool, otlp_endpoint: str | None) -> list[Any]:
    from opentelemetry.sdk.trace.export import (  # pyright: ignore[reportMissingImports]
        BatchSpanProcessor,
        ConsoleSpanExporter,
        SimpleSpanProcessor,
    )

    processors: list[Any] = []
    if export_to_console:
        processors.append(SimpleSpanProcessor(ConsoleSpanExporter(out=sys.stderr)))
    if otlp_endpoint:
        try:
            from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (  # pyright: ignore[reportMissingImports]
                OTLPSpanExporter,
            )
        except ImportError as exc:
            msg = f"opentelemetry-exporter-otlp is required for OTLP export. {_INSTALL_HINT}"
            raise ImportError(msg) from exc
        processors.append(BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint)))
    return processors
