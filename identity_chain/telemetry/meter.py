from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import MetricExporter, PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource

from identity_chain.telemetry.config import signal_endpoint
from identity_chain.telemetry.tracer import EXPORTER_TIMEOUT_SECONDS
from identity_chain.telemetry.types import TelemetryConfig

# SDK default is 60 000 ms; kept short so a demo chain shows metrics quickly.
EXPORT_INTERVAL_MILLIS = 5000


def create_metric_exporter(config: TelemetryConfig) -> MetricExporter:
    """Create metric exporter matching tracer.create_span_exporter() logic."""
    return OTLPMetricExporter(
        endpoint=signal_endpoint(config.otlp_endpoint, "metrics"),
        timeout=EXPORTER_TIMEOUT_SECONDS,
    )


def new_meter_provider(resource: Resource, exporter: MetricExporter) -> MeterProvider:
    reader = PeriodicExportingMetricReader(exporter, export_interval_millis=EXPORT_INTERVAL_MILLIS)
    return MeterProvider(resource=resource, metric_readers=[reader])
