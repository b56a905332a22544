"""
Process configuration read from the environment.

All settings are resolved once at process entry into an immutable
``Settings`` value which is then handed to every component that needs it.
Absent keys are supported operating modes, not errors:

- no ``upstream``: the service only reports its own identity
- no ``OTEL_EXPORTER_OTLP_ENDPOINT``: telemetry is disabled
"""

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional, Tuple

from identity_chain.log import get_logger

APP = "app"
VERSION = "version"
UPSTREAM = "upstream"
PORT = "port"
OTEL_EXPORTER_OTLP_ENDPOINT = "OTEL_EXPORTER_OTLP_ENDPOINT"
OTEL_PROPAGATORS = "OTEL_PROPAGATORS"
LOG_LEVEL = "LOG_LEVEL"
LOG_FORMAT = "LOG_FORMAT"

DEFAULT_PORT = 8080


@dataclass(frozen=True)
class Settings:
    app: str = ""
    version: str = ""
    upstream: Optional[str] = None
    port: int = DEFAULT_PORT
    otlp_endpoint: Optional[str] = None
    propagators: Tuple[str, ...] = field(default_factory=tuple)
    log_level: str = "INFO"
    log_format: str = "CONSOLE"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        if environ is None:
            environ = os.environ

        return cls(
            app=environ.get(APP, ""),
            version=environ.get(VERSION, ""),
            upstream=environ.get(UPSTREAM) or None,
            port=_parse_port(environ.get(PORT)),
            otlp_endpoint=environ.get(OTEL_EXPORTER_OTLP_ENDPOINT) or None,
            propagators=_parse_propagators(environ.get(OTEL_PROPAGATORS)),
            log_level=environ.get(LOG_LEVEL, "INFO"),
            log_format=environ.get(LOG_FORMAT, "CONSOLE").upper(),
        )


def _parse_port(value: Optional[str]) -> int:
    if not value:
        return DEFAULT_PORT
    try:
        port = int(value)
    except ValueError:
        get_logger().warning(f"Invalid port '{value}', falling back to {DEFAULT_PORT}")
        return DEFAULT_PORT
    if not 0 < port < 65536:
        get_logger().warning(f"Port {port} out of range, falling back to {DEFAULT_PORT}")
        return DEFAULT_PORT
    return port


def _parse_propagators(value: Optional[str]) -> Tuple[str, ...]:
    """
    Split a comma-separated propagator list.

    Format: "tracecontext,baggage" or "b3"
    Empty entries are dropped; recognising the names is up to the telemetry layer.
    """
    if not value or not value.strip():
        return ()
    return tuple(name.strip() for name in value.split(",") if name.strip())
