from __future__ import annotations

from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import SpanProcessor, TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from estatecrm.core.config import Settings, get_settings


class _Tracing:
    """Process-wide tracer provider; exporters are attached at most once."""

    def __init__(self) -> None:
        self.provider: TracerProvider | None = None
        self.exporters_attached = False

    def ensure_provider(self, settings: Settings) -> TracerProvider:
        if self.provider is None:
            resource = Resource.create(
                {
                    "service.name": settings.otel_service_name,
                    "service.version": settings.app_version,
                    "deployment.environment": settings.app_env,
                }
            )
            self.provider = TracerProvider(resource=resource)
            trace.set_tracer_provider(self.provider)
        return self.provider


_tracing = _Tracing()


def _export_processors(settings: Settings) -> list[SpanProcessor]:
    processors: list[SpanProcessor] = []
    if settings.otel_exporter_otlp_endpoint:
        processors.append(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)))
    if settings.otel_console_exporter:
        processors.append(SimpleSpanProcessor(ConsoleSpanExporter()))
    return processors


def configure_tracing(settings: Settings | None = None) -> TracerProvider | None:
    settings = settings or get_settings()
    if not settings.otel_enabled:
        return None

    provider = _tracing.ensure_provider(settings)
    if not _tracing.exporters_attached:
        for processor in _export_processors(settings):
            provider.add_span_processor(processor)
        _tracing.exporters_attached = True
    return provider


def setup_inmemory_otel() -> InMemorySpanExporter:
    """Attach an in-memory exporter so tests can read finished spans."""
    provider = _tracing.ensure_provider(get_settings())
    exporter = InMemorySpanExporter()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def server_request_hook(span: Any, scope: dict[str, Any]) -> None:
    if span is None or not span.is_recording():
        return
    for name, value in scope.get("headers", []):
        if name == b"x-correlation-id":
            span.set_attribute("correlation_id", value.decode("latin-1"))
            break
