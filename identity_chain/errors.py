from typing import Optional


class IdentityChainError(Exception):
    """Base class for process-scoped failures."""


class TelemetrySetupError(IdentityChainError):
    """Raised when the telemetry pipeline cannot be brought up."""


class ServerStartupError(IdentityChainError):
    """Raised when the HTTP listener exits without ever serving."""


class AggregateError(IdentityChainError):
    """
    Several independent failures reported as one.

    The component errors are kept in the order they happened so none of
    them is lost when a later failure is reported alongside an earlier one.
    """

    def __init__(self, errors):
        self.errors = tuple(errors)
        super().__init__("; ".join(str(e) for e in self.errors))

    def __iter__(self):
        return iter(self.errors)

    def __len__(self):
        return len(self.errors)


def join_errors(*errors: Optional[BaseException]) -> Optional[BaseException]:
    """
    Combine errors into a single value.

    ``None`` entries are skipped and nested aggregates are flattened. Returns
    ``None`` when nothing is left and the bare error when only one remains.
    """
    flat = []
    for error in errors:
        if error is None:
            continue
        if isinstance(error, AggregateError):
            flat.extend(error.errors)
        else:
            flat.append(error)

    if not flat:
        return None
    if len(flat) == 1:
        return flat[0]
    return AggregateError(flat)
