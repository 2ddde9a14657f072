"""grpcdeck/cancel.py: cancellation tokens passed to every blocking operation."""
from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

log = logging.getLogger(__name__)


class CancellationToken:
    """
    One-shot cancellation flag with callbacks.

    Callbacks registered after cancellation run immediately on the
    registering thread. Callbacks never run under the token's lock.
    """

    def __init__(self, reason: str = "cancelled") -> None:
        self._event     = threading.Event()
        self._lock      = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []
        self.reason     = reason

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: Optional[str] = None) -> None:
        with self._lock:
            if self._event.is_set():
                return
            if reason:
                self.reason = reason
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for cb in callbacks:
            _run(cb)

    def on_cancel(self, cb: Callable[[], None]) -> Callable[[], None]:
        """Register cb; returns a function that unregisters it."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(cb)

                def _remove() -> None:
                    with self._lock:
                        if cb in self._callbacks:
                            self._callbacks.remove(cb)
                return _remove
        _run(cb)
        return lambda: None

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)

    def child(self) -> "CancellationToken":
        """Token cancelled with this one, but cancellable on its own."""
        token = CancellationToken()
        remove = self.on_cancel(lambda: token.cancel(self.reason))
        token.on_cancel(remove)
        return token


def _run(cb: Callable[[], None]) -> None:
    try:
        cb()
    except Exception:
        log.exception("cancellation callback failed")
