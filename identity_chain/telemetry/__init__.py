from identity_chain.telemetry.config import get_otel_config
from identity_chain.telemetry.pipeline import TelemetryPipeline
from identity_chain.telemetry.types import TelemetryConfig

__all__ = [
    "TelemetryConfig",
    "TelemetryPipeline",
    "get_otel_config",
]
