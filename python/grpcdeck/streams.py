"""
grpcdeck/streams.py

Handles for the three streaming call shapes.

Received messages are decoded on a pump thread and appended to a
MessageBuffer. The buffer is a memory guard only: when it grows past
`cap` the oldest `evict` messages are dropped and the drop is counted,
so a front-end can show "visible of total".

Send side:    OPEN ─close_send→ HALF_CLOSED ─response/end→ CLOSED
                 └──────────────── cancel ────────────────→ CLOSED
Receive side: ACTIVE ─server end→ ENDED
                  └──error/cancel→ ERRORED
"""
from __future__ import annotations

import logging
import queue
import threading
import time
from enum import Enum
from typing import Any, Callable, Iterator, Optional, Union

import grpc

from grpcdeck.cancel import CancellationToken
from grpcdeck.errors import (
    Cancelled,
    GrpcDeckError,
    SendAfterCancel,
    StreamStateError,
    from_rpc_error,
)
from grpcdeck.metadata import Pairs, from_wire

log = logging.getLogger(__name__)

DEFAULT_BUFFER_CAP   = 1000
DEFAULT_BUFFER_EVICT = 200


class _End:
    """Terminal sentinel returned by recv() after a normal end-of-stream."""

    def __repr__(self) -> str:
        return "END"


END = _End()


class SendState(Enum):
    OPEN        = "open"
    HALF_CLOSED = "half_closed"
    CLOSED      = "closed"


class RecvState(Enum):
    ACTIVE  = "active"
    ENDED   = "ended"
    ERRORED = "errored"


# ──────────────────────────────────────────────────────────────────────────────
# Bounded buffer
# ──────────────────────────────────────────────────────────────────────────────

class MessageBuffer:
    """
    Append-only buffer with oldest-first eviction and a read cursor.

    Messages are numbered from 0 in arrival order. Readers keep an
    absolute cursor; a cursor that fell behind an eviction skips ahead
    to the oldest message still held.
    """

    def __init__(self, cap: int = DEFAULT_BUFFER_CAP, evict: int = DEFAULT_BUFFER_EVICT) -> None:
        if cap <= 0 or not 0 < evict <= cap:
            raise ValueError(f"invalid buffer bounds cap={cap} evict={evict}")
        self._cap      = cap
        self._evict    = evict
        self._items:   list[str] = []
        self._evicted  = 0
        self._cursor   = 0
        self._terminal: Optional[Union[_End, GrpcDeckError]] = None
        self._cond     = threading.Condition()

    # ── Producer ─────────────────────────────────────────────────────────────

    def append(self, item: str) -> bool:
        """Returns False once the buffer is terminated; the item is dropped."""
        with self._cond:
            if self._terminal is not None:
                return False
            self._items.append(item)
            if len(self._items) > self._cap:
                del self._items[: self._evict]
                self._evicted += self._evict
                log.debug("stream buffer full, evicted %d (total %d)",
                          self._evict, self.total_received)
            self._cond.notify_all()
            return True

    def finish(self, error: Optional[GrpcDeckError] = None) -> bool:
        """Set the terminal. Only the first call wins."""
        with self._cond:
            if self._terminal is not None:
                return False
            self._terminal = error if error is not None else END
            self._cond.notify_all()
            return True

    # ── Consumer ─────────────────────────────────────────────────────────────

    def get(self, timeout: Optional[float] = None) -> Union[str, _End]:
        """
        Next unread message, or END. Raises the error terminal once all
        held messages before it were read. Raises TimeoutError if nothing
        arrives within `timeout`.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                if self._cursor < self._evicted:
                    log.debug("reader fell behind, skipped %d messages",
                              self._evicted - self._cursor)
                    self._cursor = self._evicted
                index = self._cursor - self._evicted
                if index < len(self._items):
                    self._cursor += 1
                    return self._items[index]
                if isinstance(self._terminal, GrpcDeckError):
                    raise self._terminal
                if self._terminal is not None:
                    return END
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    raise TimeoutError("no message received")
                self._cond.wait(remaining)

    def wait_done(self, timeout: Optional[float] = None) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: self._terminal is not None, timeout)

    def snapshot(self) -> list[str]:
        with self._cond:
            return list(self._items)

    # ── Counters ─────────────────────────────────────────────────────────────

    @property
    def visible(self) -> int:
        with self._cond:
            return len(self._items)

    @property
    def total_received(self) -> int:
        with self._cond:
            return self._evicted + len(self._items)

    @property
    def evicted(self) -> int:
        with self._cond:
            return self._evicted

    @property
    def terminal(self) -> Optional[Union[_End, GrpcDeckError]]:
        with self._cond:
            return self._terminal

    @property
    def done(self) -> bool:
        return self.terminal is not None


# ──────────────────────────────────────────────────────────────────────────────
# Request side
# ──────────────────────────────────────────────────────────────────────────────

class _RequestQueue:
    """Blocking request iterator fed by send(); grpc drains it on its own thread."""

    _CLOSE = object()

    def __init__(self) -> None:
        self._queue: "queue.Queue[Any]" = queue.Queue()

    def put(self, payload: bytes) -> None:
        self._queue.put(payload)

    def close(self) -> None:
        self._queue.put(self._CLOSE)

    def __iter__(self) -> Iterator[bytes]:
        while True:
            item = self._queue.get()
            if item is self._CLOSE:
                return
            yield item


# ──────────────────────────────────────────────────────────────────────────────
# Handles
# ──────────────────────────────────────────────────────────────────────────────

Encoder  = Callable[[str], bytes]
Decoder  = Callable[[bytes], str]
Callback = Callable[["StreamHandle"], None]


class StreamHandle:
    """Shared receive loop, cancellation and completion bookkeeping."""

    def __init__(
        self,
        method:   str,
        decoder:  Decoder,
        token:    CancellationToken,
        buffer:   Optional[MessageBuffer] = None,
    ) -> None:
        self.method      = method
        self._decode     = decoder
        self.token       = token
        self.buffer      = buffer or MessageBuffer()
        self._lock       = threading.Lock()
        self._send_state = SendState.CLOSED
        self._recv_state = RecvState.ACTIVE
        self._call: Any  = None
        self._headers:  Pairs = ()
        self._trailers: Pairs = ()
        self._sent       = 0
        self._bytes      = 0
        self._started    = time.monotonic()
        self._finished: Optional[float] = None
        self._callbacks: list[Callback] = []
        self._released: list[Callable[[], None]] = []

    # ── State ────────────────────────────────────────────────────────────────

    @property
    def send_state(self) -> SendState:
        with self._lock:
            return self._send_state

    @property
    def recv_state(self) -> RecvState:
        with self._lock:
            return self._recv_state

    @property
    def done(self) -> bool:
        return self.recv_state != RecvState.ACTIVE

    @property
    def error(self) -> Optional[GrpcDeckError]:
        terminal = self.buffer.terminal
        return terminal if isinstance(terminal, GrpcDeckError) else None

    @property
    def sent_count(self) -> int:
        return self._sent

    @property
    def message_count(self) -> int:
        return self.buffer.total_received

    @property
    def received_bytes(self) -> int:
        return self._bytes

    @property
    def duration_ms(self) -> float:
        end = self._finished if self._finished is not None else time.monotonic()
        return (end - self._started) * 1000.0

    def headers(self) -> Pairs:
        return self._headers

    def trailers(self) -> Pairs:
        return self._trailers

    # ── Receive ──────────────────────────────────────────────────────────────

    def recv(self, timeout: Optional[float] = None) -> Union[str, _End]:
        return self.buffer.get(timeout)

    def __iter__(self) -> Iterator[str]:
        while True:
            item = self.recv()
            if item is END:
                return
            yield item

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self.buffer.wait_done(timeout)

    def add_done_callback(self, fn: Callback) -> None:
        """fn(handle) runs once, after the receive side reaches a terminal."""
        with self._lock:
            if self._recv_state == RecvState.ACTIVE:
                self._callbacks.append(fn)
                return
        _safe_callback(fn, self)

    # ── Cancel ───────────────────────────────────────────────────────────────

    def cancel(self) -> None:
        self.token.cancel("cancelled by user")

    def _on_cancel(self) -> None:
        with self._lock:
            call = self._call
            if self._send_state != SendState.CLOSED:
                self._send_state = SendState.CLOSED
        self._close_requests()
        log.debug("%s: cancel requested after %d messages", self.method, self.message_count)
        if call is not None:
            call.cancel()
        self._terminate(Cancelled(self.token.reason))

    def _close_requests(self) -> None:
        pass

    # ── Pump ─────────────────────────────────────────────────────────────────

    def _bind(self, call: Any, release: Callable[[], None]) -> None:
        """Attach the live call; cancellation may already have happened."""
        with self._lock:
            self._call = call
        self._release_at_end(release)
        self._release_at_end(self.token.on_cancel(self._on_cancel))

    def _release_at_end(self, fn: Callable[[], None]) -> None:
        """Run fn at the terminal, or now when the terminal has already passed."""
        with self._lock:
            if self._recv_state == RecvState.ACTIVE:
                self._released.append(fn)
                return
        fn()

    def _start_pump(self, responses: Iterator[bytes]) -> None:
        threading.Thread(
            target=self._pump, args=(responses,),
            name=f"grpcdeck-recv {self.method}", daemon=True,
        ).start()

    def _pump(self, responses: Iterator[bytes]) -> None:
        try:
            for data in responses:
                text = self._decode(data)
                self._bytes += len(text.encode("utf-8"))
                if not self.buffer.append(text):
                    break
                log.debug("%s: message %d", self.method, self.message_count)
            self._terminate(None)
        except grpc.RpcError as exc:
            self._terminate(from_rpc_error(exc, self.token.cancelled))
        except GrpcDeckError as exc:
            # A response that does not decode ends the stream.
            self._terminate(exc)
            self._call.cancel()
        except Exception as exc:
            log.exception("%s: receive loop failed", self.method)
            self._terminate(GrpcDeckError(f"receive failed: {exc}", cause=exc))
            self._call.cancel()

    def _terminate(self, error: Optional[GrpcDeckError]) -> None:
        # First terminal wins. A losing caller returns after the winner set the states.
        with self._lock:
            if not self.buffer.finish(error):
                return
            self._finished   = time.monotonic()
            self._recv_state = RecvState.ERRORED if error is not None else RecvState.ENDED
            self._send_state = SendState.CLOSED
            callbacks, self._callbacks = self._callbacks, []
            released, self._released = self._released, []
        self._collect_metadata()
        for release in released:
            release()
        if error is None:
            log.info("%s: stream ended, %d messages in %.0fms",
                     self.method, self.message_count, self.duration_ms)
        elif isinstance(error, Cancelled):
            log.info("%s: stream cancelled after %d messages", self.method, self.message_count)
        else:
            log.error("%s: stream failed: %s", self.method, error)
        for fn in callbacks:
            _safe_callback(fn, self)

    def _collect_metadata(self) -> None:
        call = self._call
        if call is None or not call.done():
            return
        try:
            self._headers  = from_wire(call.initial_metadata())
            self._trailers = from_wire(call.trailing_metadata())
        except grpc.RpcError as exc:
            log.debug("%s: metadata unavailable: %s", self.method, exc)


class ServerStream(StreamHandle):
    """One request in, a lazy sequence of responses out."""

    def start(self, call: Any, release: Callable[[], None]) -> "ServerStream":
        self._bind(call, release)
        self._start_pump(call)
        return self


class _SendingStream(StreamHandle):

    def __init__(self, method: str, encoder: Encoder, decoder: Decoder,
                 token: CancellationToken, buffer: Optional[MessageBuffer] = None) -> None:
        super().__init__(method, decoder, token, buffer)
        self._encode     = encoder
        self._requests   = _RequestQueue()
        self._send_state = SendState.OPEN

    @property
    def request_iterator(self) -> Iterator[bytes]:
        return iter(self._requests)

    def send(self, text: str) -> None:
        if self.token.cancelled:
            raise SendAfterCancel(f"{self.method}: stream was cancelled")
        state = self.send_state
        if state != SendState.OPEN:
            raise StreamStateError(f"{self.method}: send side is {state.value}")
        payload = self._encode(text)
        with self._lock:
            if self.token.cancelled:
                raise SendAfterCancel(f"{self.method}: stream was cancelled")
            if self._send_state != SendState.OPEN:
                raise StreamStateError(f"{self.method}: send side is {self._send_state.value}")
            self._requests.put(payload)
            self._sent += 1
        log.debug("%s: sent message %d", self.method, self._sent)

    def close_send(self) -> None:
        with self._lock:
            if self._send_state != SendState.OPEN:
                return
            self._send_state = SendState.HALF_CLOSED
        self._requests.close()
        log.debug("%s: send side half-closed after %d messages", self.method, self._sent)

    def _close_requests(self) -> None:
        self._requests.close()


class ClientStream(_SendingStream):
    """Incremental requests in, a single response out."""

    def start(self, future: Any, release: Callable[[], None]) -> "ClientStream":
        self._bind(future, release)
        future.add_done_callback(self._on_response)
        return self

    def _on_response(self, future: Any) -> None:
        if future.cancelled():
            self._terminate(Cancelled(self.token.reason))
            return
        try:
            data = future.result()
        except grpc.RpcError as exc:
            self._terminate(from_rpc_error(exc, self.token.cancelled))
            return
        try:
            text = self._decode(data)
        except GrpcDeckError as exc:
            self._terminate(exc)
            return
        except Exception as exc:
            log.exception("%s: response handling failed", self.method)
            self._terminate(GrpcDeckError(f"receive failed: {exc}", cause=exc))
            return
        self._bytes = len(text.encode("utf-8"))
        self.buffer.append(text)
        self._terminate(None)

    def close_and_receive(self, timeout: Optional[float] = None) -> str:
        """Half-close, wait for the single response and return it."""
        if self.token.cancelled:
            raise SendAfterCancel(f"{self.method}: stream was cancelled")
        self.close_send()
        if not self.wait(timeout):
            raise TimeoutError(f"{self.method}: no response within {timeout}s")
        item = self.recv(0)
        if item is END:
            raise StreamStateError(f"{self.method}: server closed without a response")
        return item


class BidiStream(_SendingStream):
    """Incremental requests and responses; close_send keeps receiving."""

    def start(self, call: Any, release: Callable[[], None]) -> "BidiStream":
        self._bind(call, release)
        self._start_pump(call)
        return self


def _safe_callback(fn: Callback, handle: StreamHandle) -> None:
    try:
        fn(handle)
    except Exception:
        log.exception("stream completion callback failed")
