import threading
from typing import Callable, List, Optional

from identity_chain.errors import join_errors
from identity_chain.log import get_logger

ShutdownFunc = Callable[[], Optional[BaseException]]


class ShutdownRegistry:
    """
    Cleanup callbacks for telemetry resources, run once each.

    A callback signals failure either by raising or by returning an exception.
    All failures are joined; the registry is emptied by the first ``shutdown()``
    so later calls do nothing and return ``None``.
    """

    def __init__(self):
        self._funcs: List[ShutdownFunc] = []
        self._lock = threading.Lock()

    def register(self, func: ShutdownFunc) -> None:
        with self._lock:
            self._funcs.append(func)

    def __len__(self):
        return len(self._funcs)

    def shutdown(self) -> Optional[BaseException]:
        with self._lock:
            funcs, self._funcs = self._funcs, []

        error = None
        for func in funcs:
            try:
                result = func()
            except Exception as e:
                get_logger().warning(f"Error shutting down telemetry: {e}")
                result = e
            if isinstance(result, BaseException):
                error = join_errors(error, result)
        return error
