"""Telemetry module with OTEL scaffolding."""

from zk_ultralight.telemetry.otel import (
    NoOpSpan,
    NoOpTracer,
    NoOpTracerProvider,
    add_otel_context,
    configure_telemetry,
    get_tracer,
    shutdown_telemetry,
)

__all__ = [
    "NoOpSpan",
    "NoOpTracer",
    "NoOpTracerProvider",
    "add_otel_context",
    "configure_telemetry",
    "get_tracer",
    "shutdown_telemetry",
]
