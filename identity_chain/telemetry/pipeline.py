"""
OpenTelemetry pipeline: resource, propagator, tracer provider and meter provider.

A pipeline is either inert (no OTLP endpoint configured) or active. Inert
pipelines build nothing, hand out no-op tracers/meters and shut down trivially.
Active pipelines are built atomically: if any step fails, everything already
built is shut down before the error is raised.
"""
import threading
from typing import Callable, Optional

from opentelemetry import metrics, propagate, trace
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import MetricExporter
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SpanExporter

from identity_chain.config_loader import OTEL_EXPORTER_OTLP_ENDPOINT
from identity_chain.errors import TelemetrySetupError, join_errors
from identity_chain.log import get_logger
from identity_chain.telemetry.meter import create_metric_exporter, new_meter_provider
from identity_chain.telemetry.propagation import new_propagator
from identity_chain.telemetry.shutdown import ShutdownRegistry
from identity_chain.telemetry.tracer import create_span_exporter, new_trace_provider
from identity_chain.telemetry.types import TelemetryConfig

INSTRUMENTATION_NAME = "identity_chain"

SpanExporterFactory = Callable[[TelemetryConfig], SpanExporter]
MetricExporterFactory = Callable[[TelemetryConfig], MetricExporter]

# The pipeline whose providers are installed process-wide, if any.
_active_pipeline = None
_lock = threading.Lock()


class TelemetryPipeline:
    def __init__(self, config: TelemetryConfig):
        self.config = config
        self.resource: Optional[Resource] = None
        self.propagator = None
        self.tracer_provider: Optional[TracerProvider] = None
        self.meter_provider: Optional[MeterProvider] = None
        self._registry = ShutdownRegistry()
        self._owns_globals = False

    @classmethod
    def start(
        cls,
        config: TelemetryConfig,
        install_globals: bool = True,
        span_exporter_factory: Optional[SpanExporterFactory] = None,
        metric_exporter_factory: Optional[MetricExporterFactory] = None,
    ) -> "TelemetryPipeline":
        """
        Bring up the pipeline described by ``config``.

        Returns an inert pipeline when no endpoint is configured. Raises
        TelemetrySetupError if construction fails; nothing is left running then.
        """
        pipeline = cls(config)
        if not config.is_enabled:
            get_logger().info(f"{OTEL_EXPORTER_OTLP_ENDPOINT} not provided, skip")
            return pipeline

        try:
            pipeline._build(
                install_globals,
                span_exporter_factory or create_span_exporter,
                metric_exporter_factory or create_metric_exporter,
            )
        except Exception as e:
            error = join_errors(e, pipeline.shutdown())
            raise TelemetrySetupError(f"Failed to set up telemetry: {error}") from error

        get_logger().info(
            f"Telemetry enabled, exporting to {config.otlp_endpoint} "
            f"with propagators {list(config.propagators) or ['b3']}"
        )
        return pipeline

    def _build(self, install_globals: bool, span_exporter_factory, metric_exporter_factory):
        if install_globals:
            self._claim_globals()

        self.resource = Resource.create({
            SERVICE_NAME: self.config.service_name,
            SERVICE_VERSION: self.config.service_version,
        })

        self.propagator = new_propagator(self.config.propagators)
        if install_globals:
            propagate.set_global_textmap(self.propagator)

        try:
            span_exporter = span_exporter_factory(self.config)
        except Exception as e:
            raise TelemetrySetupError(f"failed to create trace exporter: {e}") from e
        self.tracer_provider = new_trace_provider(self.resource, span_exporter)
        self._registry.register(self.tracer_provider.shutdown)
        if install_globals:
            trace.set_tracer_provider(self.tracer_provider)

        try:
            metric_exporter = metric_exporter_factory(self.config)
        except Exception as e:
            raise TelemetrySetupError(f"failed to create metrics exporter: {e}") from e
        self.meter_provider = new_meter_provider(self.resource, metric_exporter)
        self._registry.register(self.meter_provider.shutdown)
        if install_globals:
            metrics.set_meter_provider(self.meter_provider)

    def _claim_globals(self):
        global _active_pipeline
        with _lock:
            if _active_pipeline is not None:
                raise TelemetrySetupError("another telemetry pipeline is already active")
            _active_pipeline = self
            self._owns_globals = True

    def _release_globals(self):
        global _active_pipeline
        with _lock:
            if _active_pipeline is self:
                _active_pipeline = None
            self._owns_globals = False

    @property
    def is_active(self) -> bool:
        return len(self._registry) > 0

    def get_tracer(self, name: str = INSTRUMENTATION_NAME) -> trace.Tracer:
        if self.tracer_provider is None:
            return trace.NoOpTracerProvider().get_tracer(name)
        return self.tracer_provider.get_tracer(name)

    def get_meter(self, name: str = INSTRUMENTATION_NAME) -> metrics.Meter:
        if self.meter_provider is None:
            return metrics.NoOpMeterProvider().get_meter(name)
        return self.meter_provider.get_meter(name)

    def instrument_app(self, app) -> None:
        """Add server-side HTTP instrumentation to a FastAPI app."""
        if not self.is_active:
            return
        FastAPIInstrumentor.instrument_app(
            app,
            tracer_provider=self.tracer_provider,
            meter_provider=self.meter_provider,
        )

    def instrument_client(self, client) -> None:
        """Add client-side HTTP instrumentation to an httpx client."""
        if not self.is_active:
            return
        HTTPXClientInstrumentor.instrument_client(client, tracer_provider=self.tracer_provider)

    def shutdown(self) -> Optional[BaseException]:
        """
        Flush and shut down every provider exactly once.

        Errors from all providers are joined. Subsequent calls return None.
        """
        if len(self._registry):
            get_logger().debug("Shutting down telemetry providers")
        error = self._registry.shutdown()
        if self._owns_globals:
            self._release_globals()
        return error
