from __future__ import annotations

import threading
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
)
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from app.core.config import get_settings
from app.middleware.correlation_id import HEADER as CORRELATION_HEADER, is_safe_correlation_id
from app.middleware.rate_limit import endpoint_group


_lock = threading.Lock()
_provider: TracerProvider | None = None
_exporters_attached = False


def _tracer_provider(service_name: str) -> TracerProvider:
    """The process-wide provider. OpenTelemetry only accepts the first global provider."""
    global _provider

    with _lock:
        if _provider is None:
            settings = get_settings()
            _provider = TracerProvider(
                resource=Resource.create(
                    {
                        "service.name": service_name,
                        "service.version": "0.1.0",
                        "deployment.environment": settings.app_env,
                    }
                )
            )
            trace.set_tracer_provider(_provider)
        return _provider


def setup_otel(service_name: str, enable: bool) -> TracerProvider | None:
    global _exporters_attached

    if not enable:
        return None

    provider = _tracer_provider(service_name)
    settings = get_settings()
    with _lock:
        if not _exporters_attached:
            if settings.otel_exporter_otlp_endpoint:
                provider.add_span_processor(
                    BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint))
                )
            if settings.otel_console_exporter:
                provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
            _exporters_attached = True
    return provider


def setup_inmemory_otel(service_name: str = "api") -> InMemorySpanExporter:
    exporter = InMemorySpanExporter()
    _tracer_provider(service_name).add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def get_fastapi_server_request_hook():
    def server_request_hook(span, scope: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
        if span is None or not span.is_recording():
            return
        span.set_attribute("app.endpoint_group", endpoint_group(scope.get("path", "")))
        raw = dict(scope.get("headers", [])).get(CORRELATION_HEADER.encode("latin-1"))
        if raw:
            value = raw.decode("latin-1")
            # Unsafe ids are replaced downstream and tagged there.
            if is_safe_correlation_id(value):
                span.set_attribute("correlation_id", value)

    return server_request_hook
