from typing import Dict, Mapping, MutableMapping

# Canonical names as transmitted. Both directions use this tuple so that any
# subset present on the inbound request is copied without loss.
TRACING_HEADERS = (
    "X-Ot-Span-Context",
    "Traceparent",
    "X-Request-Id",
    "uber-trace-id",
    "x-b3-traceid",
    "x-b3-spanid",
    "x-b3-parentspanid",
)


def extract(headers: Mapping[str, str]) -> Dict[str, str]:
    """
    Collect the recognised tracing headers present on an inbound request.

    ``headers`` is expected to do case-insensitive lookups (Starlette and httpx
    header mappings both do). Empty values are treated as absent.
    """
    found = {}
    for name in TRACING_HEADERS:
        value = headers.get(name)
        if value:
            found[name] = value
    return found


def inject(target: MutableMapping[str, str], tracing_headers: Mapping[str, str]) -> None:
    """Set each tracing header on ``target``, replacing any existing value."""
    for name, value in tracing_headers.items():
        target[name] = value
