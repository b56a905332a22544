from identity_chain.config_loader import Settings
from identity_chain.telemetry.types import TelemetryConfig


def get_otel_config(settings: Settings) -> TelemetryConfig:
    """Build the telemetry configuration from process settings"""
    return TelemetryConfig(
        otlp_endpoint=settings.otlp_endpoint,
        propagators=settings.propagators,
        service_name=settings.app,
        service_version=settings.version,
    )


def signal_endpoint(endpoint: str, signal: str) -> str:
    """
    Derive the OTLP/HTTP URL of one signal from the collector endpoint.

    "collector:4318" -> "http://collector:4318/v1/traces"
    "https://collector:4318/" -> "https://collector:4318/v1/traces"
    """
    endpoint = endpoint.strip()
    if "://" not in endpoint:
        endpoint = f"http://{endpoint}"
    return f"{endpoint.rstrip('/')}/v1/{signal}"
