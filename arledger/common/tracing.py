"""OpenTelemetry wiring for the arledger HTTP API.

Enabled by `TRACING_ENABLED`; spans cover the AR command and alert routes
served by `arledger.services.api.main`. The in-process sweep and delivery
workers are not traced.
"""

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

# Polled by the orchestrator and Prometheus.
EXCLUDED_URLS = "health,metrics"


def setup_tracing(service_name: str, endpoint: str) -> None:
    """Register a tracer provider exporting to the OTLP/HTTP collector at `endpoint`."""

    resource = Resource.create({"service.name": service_name, "service.namespace": "arledger"})
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(provider)


def instrument_app(app: FastAPI) -> None:
    """Trace every API request except health checks and metric scrapes."""

    FastAPIInstrumentor.instrument_app(app, excluded_urls=EXCLUDED_URLS)
