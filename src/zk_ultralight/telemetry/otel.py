"""OpenTelemetry tracing for lock operations.

Tracing is off until configure_telemetry() runs: get_tracer() hands out a
no-op tracer whose spans accept attributes and discard them, so the lock
engine can open ``zk.lock`` / ``zk.unlock`` spans unconditionally.

When enabled, spans are sampled with TraceIdRatioBased and exported over
OTLP (``otlp`` extra) or printed to the console when no endpoint is set.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog
from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SpanExporter,
)
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased

if TYPE_CHECKING:
    from zk_ultralight.config import UltralightConfig

logger = structlog.get_logger(__name__)


class NoOpSpan:
    """Span stand-in used while tracing is disabled."""

    def __enter__(self) -> NoOpSpan:
        return self

    def __exit__(self, *args: Any) -> None:
        pass

    def set_attribute(self, key: str, value: Any) -> None:
        pass


class NoOpTracer:
    """Tracer stand-in used while tracing is disabled."""

    def start_as_current_span(self, name: str, **kwargs: Any) -> NoOpSpan:
        return NoOpSpan()


class NoOpTracerProvider:
    def get_tracer(self, name: str) -> NoOpTracer:
        return NoOpTracer()


_tracer_provider: TracerProvider | NoOpTracerProvider = NoOpTracerProvider()


def get_tracer(name: str) -> trace.Tracer | NoOpTracer:
    """Tracer for ``name`` from the active provider (no-op when disabled)."""
    return _tracer_provider.get_tracer(name)


def _exporter(endpoint: str | None) -> SpanExporter:
    if not endpoint:
        return ConsoleSpanExporter()
    try:
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    except ImportError as e:
        logger.warning("otlp_exporter_unavailable", error=str(e), fallback="console")
        return ConsoleSpanExporter()
    return OTLPSpanExporter(endpoint=endpoint)


def configure_telemetry(config: UltralightConfig) -> None:
    """Install an SDK tracer provider when ``config.otel_enabled`` is set.

    Args:
        config: Settings carrying otel_enabled, otel_endpoint,
            otel_service_name and otel_sample_ratio
    """
    global _tracer_provider

    if not config.otel_enabled:
        logger.debug("telemetry_disabled")
        return

    provider = TracerProvider(
        sampler=TraceIdRatioBased(rate=config.otel_sample_ratio),
        resource=Resource.create({"service.name": config.otel_service_name}),
    )
    provider.add_span_processor(BatchSpanProcessor(_exporter(config.otel_endpoint)))
    trace.set_tracer_provider(provider)
    _tracer_provider = provider

    logger.info(
        "telemetry_configured",
        endpoint=config.otel_endpoint or "console",
        service_name=config.otel_service_name,
        sample_ratio=config.otel_sample_ratio,
    )


def shutdown_telemetry() -> None:
    """Flush pending spans and fall back to the no-op provider."""
    global _tracer_provider

    if isinstance(_tracer_provider, TracerProvider):
        _tracer_provider.shutdown()
        logger.debug("telemetry_shutdown")
    _tracer_provider = NoOpTracerProvider()


def add_otel_context(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Structlog processor adding the current trace_id / span_id, if any."""
    context = trace.get_current_span().get_span_context()
    if context.is_valid:
        event_dict["trace_id"] = format(context.trace_id, "032x")
        event_dict["span_id"] = format(context.span_id, "016x")
    return event_dict
