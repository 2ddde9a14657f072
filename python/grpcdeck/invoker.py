"""
grpcdeck/invoker.py

Drives the four call shapes over the managed channel. Requests and
responses cross grpc as raw bytes; the Codec does all the typing.

    invoker = Invoker(manager, codec)
    result  = invoker.unary(method, '{"name": "world"}')
    stream  = invoker.server_stream(method, '{"count": 3}')
    for text in stream:
        ...

Encoding happens before anything touches the wire, so a CodecError or
ValidationError from any call means nothing was sent.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Optional, Sequence

import grpc

from grpcdeck.cancel import CancellationToken
from grpcdeck.codec import Codec
from grpcdeck.config import DEFAULT_CALL_TIMEOUT
from grpcdeck.connection import ConnectionManager
from grpcdeck.domain import StreamType
from grpcdeck.errors import Cancelled, StreamStateError, from_rpc_error
from grpcdeck.metadata import Pairs, from_wire, to_wire
from grpcdeck.schema import MethodDescriptor
from grpcdeck.streams import (
    DEFAULT_BUFFER_CAP,
    DEFAULT_BUFFER_EVICT,
    BidiStream,
    ClientStream,
    MessageBuffer,
    ServerStream,
)

log = logging.getLogger(__name__)

Metadata = Sequence[Sequence[str]]


@dataclass(frozen=True)
class UnaryResult:
    text:        str
    headers:     Pairs
    trailers:    Pairs
    duration_ms: float
    size:        int        # bytes of response text


class Invoker:

    def __init__(
        self,
        manager:      ConnectionManager,
        codec:        Codec,
        call_timeout: Optional[float] = DEFAULT_CALL_TIMEOUT,
        buffer_cap:   int = DEFAULT_BUFFER_CAP,
        buffer_evict: int = DEFAULT_BUFFER_EVICT,
    ) -> None:
        self._manager      = manager
        self._codec        = codec
        self._call_timeout = call_timeout
        self._buffer_cap   = buffer_cap
        self._buffer_evict = buffer_evict

    # ──────────────────────────────────────────────────────────────────────
    # Unary
    # ──────────────────────────────────────────────────────────────────────

    def unary(
        self,
        method:   MethodDescriptor,
        text:     str,
        metadata: Metadata = (),
        token:    Optional[CancellationToken] = None,
        timeout:  Optional[float] = None,
    ) -> UnaryResult:
        _expect(method, StreamType.UNARY)
        payload, wire_md = self._preamble(method, text, metadata)
        channel = self._manager.require()
        token   = token or CancellationToken()
        if token.cancelled:
            raise Cancelled(token.reason)

        stub    = channel.unary_unary(method.path)
        started = time.monotonic()
        future  = stub.future(payload, metadata=wire_md, timeout=timeout or self._call_timeout)
        untrack = self._manager.track(token)
        remove  = token.on_cancel(future.cancel)
        try:
            data = future.result()
        except grpc.FutureCancelledError as exc:
            raise Cancelled(token.reason, cause=exc) from exc
        except grpc.RpcError as exc:
            err = from_rpc_error(exc, token.cancelled)
            log.error("%s failed: %s", method.qualified, err)
            raise err from exc
        finally:
            remove()
            untrack()
        duration = (time.monotonic() - started) * 1000.0

        out = self._codec.decode(data, method.output_type)
        log.info("%s completed in %.0fms", method.qualified, duration)
        return UnaryResult(
            text=out,
            headers=from_wire(future.initial_metadata()),
            trailers=from_wire(future.trailing_metadata()),
            duration_ms=duration,
            size=len(out.encode("utf-8")),
        )

    # ──────────────────────────────────────────────────────────────────────
    # Streaming
    # ──────────────────────────────────────────────────────────────────────

    def server_stream(
        self,
        method:   MethodDescriptor,
        text:     str,
        metadata: Metadata = (),
        token:    Optional[CancellationToken] = None,
        timeout:  Optional[float] = None,
    ) -> ServerStream:
        _expect(method, StreamType.SERVER_STREAM)
        payload, wire_md = self._preamble(method, text, metadata)
        channel = self._manager.require()
        token   = token or CancellationToken()

        handle = ServerStream(method.qualified, self._decoder(method), token, self._buffer())
        call   = channel.unary_stream(method.path)(payload, metadata=wire_md, timeout=timeout)
        return handle.start(call, self._manager.track(token))

    def client_stream(
        self,
        method:   MethodDescriptor,
        metadata: Metadata = (),
        token:    Optional[CancellationToken] = None,
        timeout:  Optional[float] = None,
    ) -> ClientStream:
        _expect(method, StreamType.CLIENT_STREAM)
        wire_md = to_wire(metadata)
        channel = self._manager.require()
        token   = token or CancellationToken()

        handle = ClientStream(
            method.qualified, self._encoder(method), self._decoder(method), token, self._buffer(),
        )
        future = channel.stream_unary(method.path).future(
            handle.request_iterator, metadata=wire_md, timeout=timeout,
        )
        return handle.start(future, self._manager.track(token))

    def bidi_stream(
        self,
        method:   MethodDescriptor,
        metadata: Metadata = (),
        token:    Optional[CancellationToken] = None,
        timeout:  Optional[float] = None,
    ) -> BidiStream:
        _expect(method, StreamType.BIDI_STREAM)
        wire_md = to_wire(metadata)
        channel = self._manager.require()
        token   = token or CancellationToken()

        handle = BidiStream(
            method.qualified, self._encoder(method), self._decoder(method), token, self._buffer(),
        )
        call = channel.stream_stream(method.path)(
            handle.request_iterator, metadata=wire_md, timeout=timeout,
        )
        return handle.start(call, self._manager.track(token))

    # ── Internals ────────────────────────────────────────────────────────────

    def _preamble(self, method: MethodDescriptor, text: str, metadata: Metadata):
        payload = self._codec.encode(text, method.input_type)
        return payload, to_wire(metadata)

    def _encoder(self, method: MethodDescriptor):
        return lambda text: self._codec.encode(text, method.input_type)

    def _decoder(self, method: MethodDescriptor):
        return lambda data: self._codec.decode(data, method.output_type)

    def _buffer(self) -> MessageBuffer:
        return MessageBuffer(self._buffer_cap, self._buffer_evict)


def _expect(method: MethodDescriptor, shape: StreamType) -> None:
    if method.stream_type != shape:
        raise StreamStateError(
            f"{method.qualified} is {method.stream_type.value}, not {shape.value}"
        )
