from collections.abc import Iterator
from contextlib import contextmanager

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from upload_service.config import settings

_tracing_initialized = False
tracer = trace.get_tracer("upload_service")

# Probes and scrapes would drown out the upload spans.
UNTRACED_URLS = "/health,/metrics,/version"


def setup_tracing(app) -> None:
    global _tracing_initialized
    if _tracing_initialized or not settings.tracing_enabled:
        return

    resource = Resource.create(
        {SERVICE_NAME: settings.tracing_service_name, SERVICE_VERSION: settings.app_version}
    )
    provider = TracerProvider(resource=resource)
    exporter = OTLPSpanExporter(endpoint=settings.otlp_endpoint, insecure=settings.otlp_insecure)
    provider.add_span_processor(BatchSpanProcessor(exporter))

    trace.set_tracer_provider(provider)
    FastAPIInstrumentor.instrument_app(app, tracer_provider=provider, excluded_urls=UNTRACED_URLS)
    _tracing_initialized = True


@contextmanager
def session_span(name: str, session_id: str | None = None, **attributes) -> Iterator[trace.Span]:
    with tracer.start_as_current_span(name) as span:
        if session_id is not None:
            span.set_attribute("upload.session_id", session_id)
        for key, value in attributes.items():
            span.set_attribute(f"upload.{key}", value)
        yield span
