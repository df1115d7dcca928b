from __future__ import annotations

import sys
import threading
from types import TracebackType


def gil_enabled() -> bool:
    """Return whether the running interpreter holds a GIL."""
    is_gil_enabled = getattr(sys, "_is_gil_enabled", None)
    return True if is_gil_enabled is None else bool(is_gil_enabled())


class StateGuard:
    """Guard synchronous state mutations.

    Cooperative asyncio code never yields inside a guarded block, so the GIL
    already serializes it. Free-threaded interpreters get a real thread lock.
    The guard must never be held across an ``await``.
    """

    def __init__(self) -> None:
        self._thread_lock: threading.Lock | None = None
        if not gil_enabled():
            self._thread_lock = threading.Lock()

    @property
    def uses_thread_lock(self) -> bool:
        return self._thread_lock is not None

    def __enter__(self) -> StateGuard:
        if self._thread_lock is not None:
            self._thread_lock.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if self._thread_lock is not None:
            self._thread_lock.release()
