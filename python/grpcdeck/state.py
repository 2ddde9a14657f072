"""
grpcdeck/state.py

Observable application state. The core writes, front-ends subscribe.

Every write goes through one Dispatcher so listeners never run
concurrently and always see writes in the order they were made. Nothing
here derives one field from another; Session keeps fields consistent.
"""
from __future__ import annotations

import logging
import queue
import threading
from typing import Any, Callable, Generic, Optional, TypeVar

log = logging.getLogger(__name__)

T = TypeVar("T")

Listener = Callable[[Any], None]

MODE_TEXT = "text"
MODE_FORM = "form"


# ──────────────────────────────────────────────────────────────────────────────
# Dispatchers
# ──────────────────────────────────────────────────────────────────────────────

class Dispatcher:
    """Runs state mutations one at a time."""

    def submit(self, fn: Callable[[], None]) -> None:
        raise NotImplementedError

    def close(self) -> None:
        pass


class InlineDispatcher(Dispatcher):
    """Runs on the calling thread, serialised by a re-entrant lock."""

    def __init__(self) -> None:
        self._lock = threading.RLock()

    def submit(self, fn: Callable[[], None]) -> None:
        with self._lock:
            _run(fn)


class QueueDispatcher(Dispatcher):
    """Runs on a single worker thread, in submission order."""

    _STOP = object()

    def __init__(self, name: str = "grpcdeck-state") -> None:
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._thread = threading.Thread(target=self._loop, name=name, daemon=True)
        self._thread.start()

    def submit(self, fn: Callable[[], None]) -> None:
        if threading.current_thread() is self._thread:
            _run(fn)
        else:
            self._queue.put(fn)

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Block until everything submitted so far has run."""
        done = threading.Event()
        self.submit(done.set)
        return done.wait(timeout)

    def close(self) -> None:
        self._queue.put(self._STOP)
        self._thread.join(timeout=1.0)

    def _loop(self) -> None:
        while True:
            fn = self._queue.get()
            if fn is self._STOP:
                return
            _run(fn)


def _run(fn: Callable[[], None]) -> None:
    try:
        fn()
    except Exception:
        log.exception("state update failed")


# ──────────────────────────────────────────────────────────────────────────────
# Bindings
# ──────────────────────────────────────────────────────────────────────────────

class Binding(Generic[T]):
    """One observable value. Listeners fire only when the value changes."""

    def __init__(self, dispatcher: Dispatcher, value: T) -> None:
        self._dispatcher = dispatcher
        self._value      = value
        self._listeners: list[Listener] = []
        self._lock       = threading.Lock()

    def get(self) -> T:
        with self._lock:
            return self._value

    def set(self, value: T) -> None:
        self._dispatcher.submit(lambda: self._apply(value))

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)
        return _unsubscribe

    def _apply(self, value: T) -> None:
        with self._lock:
            if value == self._value:
                return
            self._value = value
            listeners   = list(self._listeners)
        for listener in listeners:
            try:
                listener(value)
            except Exception:
                log.exception("state listener failed")

    def __repr__(self) -> str:
        return f"Binding({self.get()!r})"


class RequestState:

    def __init__(self, dispatcher: Dispatcher) -> None:
        self.mode     = Binding(dispatcher, MODE_FORM)
        self.text     = Binding(dispatcher, "")
        self.metadata = Binding(dispatcher, ())     # ((key, value), ...)


class ResponseState:

    def __init__(self, dispatcher: Dispatcher) -> None:
        self.text      = Binding(dispatcher, "")
        self.loading   = Binding(dispatcher, False)
        self.error     = Binding(dispatcher, "")
        self.duration  = Binding(dispatcher, "")
        self.size      = Binding(dispatcher, "")
        self.headers   = Binding(dispatcher, ())
        self.trailers  = Binding(dispatcher, ())
        # Streaming: messages held vs messages received.
        self.visible   = Binding(dispatcher, 0)
        self.total     = Binding(dispatcher, 0)

    def clear(self) -> None:
        self.text.set("")
        self.error.set("")
        self.duration.set("")
        self.size.set("")
        self.headers.set(())
        self.trailers.set(())
        self.visible.set(0)
        self.total.set(0)


class AppState:

    def __init__(self, dispatcher: Optional[Dispatcher] = None) -> None:
        self.dispatcher       = dispatcher or InlineDispatcher()
        d = self.dispatcher
        self.current_server   = Binding(d, "")
        self.connected        = Binding(d, False)
        self.connection_state = Binding(d, "disconnected")
        self.status_message   = Binding(d, "")
        self.selected_service = Binding(d, "")
        self.selected_method  = Binding(d, "")
        self.services         = Binding(d, ())   # tuple[ServiceDescriptor, ...]
        self.request          = RequestState(d)
        self.response         = ResponseState(d)

    def clear_selection(self) -> None:
        self.selected_service.set("")
        self.selected_method.set("")

    def batch(self, fn: Callable[[], None]) -> None:
        """Run several writes as one dispatcher step."""
        self.dispatcher.submit(fn)
