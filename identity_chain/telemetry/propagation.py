from typing import Iterable

from opentelemetry.baggage.propagation import W3CBaggagePropagator
from opentelemetry.propagators.b3 import B3MultiFormat, B3SingleFormat
from opentelemetry.propagators.composite import CompositePropagator
from opentelemetry.propagators.jaeger import JaegerPropagator
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator

from identity_chain.log import get_logger

PROPAGATOR_FACTORIES = {
    "tracecontext": TraceContextTextMapPropagator,
    "b3": B3SingleFormat,
    "b3multi": B3MultiFormat,
    "baggage": W3CBaggagePropagator,
    "jaeger": JaegerPropagator,
}


def new_propagator(names: Iterable[str]) -> CompositePropagator:
    """
    Compose the propagators named in OTEL_PROPAGATORS, in order.

    Unknown names are skipped. With nothing recognised, single-header B3 is used.
    """
    propagators = []
    for name in names:
        factory = PROPAGATOR_FACTORIES.get(name.strip())
        if factory is None:
            get_logger().debug(f"Ignoring unknown propagator '{name}'")
            continue
        propagators.append(factory())

    if not propagators:
        propagators.append(B3SingleFormat())
    return CompositePropagator(propagators)
