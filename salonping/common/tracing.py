"""OpenTelemetry setup helpers for the messaging service."""

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from salonping.common.config import CommonSettings


tracer = trace.get_tracer("salonping")


def setup_tracing(config: CommonSettings) -> None:
    """Register a tracer provider with OTLP HTTP exporter when tracing is on.

    With tracing off the global no-op provider stays in place, so spans opened
    through `tracer` cost nothing.
    """

    if not config.otel_enabled:
        return
    resource = Resource.create({"service.name": config.service_name, "service.instance.id": config.worker_id})
    provider = TracerProvider(resource=resource)
    exporter = OTLPSpanExporter(endpoint=config.otel_exporter_otlp_endpoint)
    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)


def instrument_app(app: FastAPI, config: CommonSettings) -> None:
    """Attach FastAPI auto-instrumentation for request spans."""

    if config.otel_enabled:
        FastAPIInstrumentor.instrument_app(app, excluded_urls="health,metrics")
