from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SpanExporter
from opentelemetry.sdk.trace.sampling import ALWAYS_ON

from identity_chain.telemetry.config import signal_endpoint
from identity_chain.telemetry.types import TelemetryConfig

EXPORTER_TIMEOUT_SECONDS = 5


def create_span_exporter(config: TelemetryConfig) -> SpanExporter:
    """Create the OTLP/HTTP span exporter for the configured collector"""
    return OTLPSpanExporter(
        endpoint=signal_endpoint(config.otlp_endpoint, "traces"),
        timeout=EXPORTER_TIMEOUT_SECONDS,
    )


def new_trace_provider(resource: Resource, exporter: SpanExporter) -> TracerProvider:
    provider = TracerProvider(sampler=ALWAYS_ON, resource=resource)
    provider.add_span_processor(BatchSpanProcessor(exporter))
    return provider
