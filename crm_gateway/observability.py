"""
Prometheus metrics + OpenTelemetry tracing (exporter is optional).
Docs: Prometheus client (0.22.x), OTEL Python SDK (1.27.0).
"""

from fastapi import FastAPI
from starlette.responses import Response
from prometheus_client import (
    Counter,
    Histogram,
    generate_latest,
    CONTENT_TYPE_LATEST,
)
from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.trace import TracerProvider

from crm_gateway.config import settings

# Tiny FastAPI app ONLY for /metrics, mounted under the main app at /metrics.
metrics_app = FastAPI()


@metrics_app.get("/")  # must be "/" so mounting at "/metrics" works
def metrics_root():
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)


# Inbound gateway traffic (endpoint = route template, not the raw path)
REQUEST_COUNT = Counter(
    "http_requests_total", "Total HTTP requests", labelnames=("endpoint", "method", "status")
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds", "Request latency", labelnames=("endpoint", "method")
)

# Outbound CRM traffic
CRM_REQUESTS = Counter(
    "crm_requests_total", "CRM calls by method and outcome", labelnames=("method", "status")
)
TOKEN_EXCHANGES = Counter(
    "crm_token_exchanges_total", "OAuth2 token exchanges", labelnames=("grant_type", "outcome")
)

_tracer_configured = False


def configure_tracer() -> None:
    """
    Optional: if an OTLP exporter endpoint is set, wire up OpenTelemetry.
    """
    global _tracer_configured
    if _tracer_configured or not settings.OTEL_EXPORTER_OTLP_ENDPOINT:
        return
    resource = Resource.create({"service.name": settings.SERVICE_NAME})
    provider = TracerProvider(resource=resource)
    processor = BatchSpanProcessor(
        OTLPSpanExporter(endpoint=settings.OTEL_EXPORTER_OTLP_ENDPOINT)
    )
    provider.add_span_processor(processor)
    trace.set_tracer_provider(provider)
    _tracer_configured = True


def get_tracer():
    return trace.get_tracer(settings.SERVICE_NAME)
