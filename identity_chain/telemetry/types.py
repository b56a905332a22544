from dataclasses import dataclass, field
from typing import Optional, Tuple


@dataclass(frozen=True)
class TelemetryConfig:
    otlp_endpoint: Optional[str]
    propagators: Tuple[str, ...] = field(default_factory=tuple)
    service_name: str = ""
    service_version: str = ""

    @property
    def is_enabled(self) -> bool:
        return bool(self.otlp_endpoint)
