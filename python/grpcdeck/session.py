"""
grpcdeck/session.py

Composition root. Owns the ConnectionManager, the per-connection schema,
codec and invoker, the controllers and the AppState, and turns user-level
operations ("connect", "send", "replay") into calls on them.

    session = Session()
    session.connect(Endpoint("localhost:50051"))
    session.select_method("helloworld.Greeter", "SayHello")
    session.set_request('{"name": "world"}')
    result = session.send()

Front-ends read AppState; they never touch the manager directly.
"""
from __future__ import annotations

import logging
import threading
from typing import Optional, Union

from grpcdeck.cancel import CancellationToken
from grpcdeck.codec import Codec
from grpcdeck.config import REPLAY_CONNECT_TIMEOUT, Config
from grpcdeck.connection import ConnectionManager
from grpcdeck.domain import (
    CallRecord,
    ConnectionState,
    ConnectionStatus,
    Endpoint,
    StreamType,
    Workspace,
    format_byte_size,
    format_duration,
)
from grpcdeck.errors import (
    CodecError,
    GrpcDeckError,
    StorageIOError,
    TransportError,
    ValidationError,
)
from grpcdeck.history import HistoryController
from grpcdeck.invoker import Invoker, UnaryResult
from grpcdeck.metadata import flatten, normalize_key
from grpcdeck.reflection import ReflectionClient
from grpcdeck.schema import (
    MessageDescriptor,
    MethodDescriptor,
    ResolvedMethod,
    SchemaCache,
    ServiceDescriptor,
    split_method_path,
)
from grpcdeck.state import AppState
from grpcdeck.storage import JSONRepository, MemoryRepository, Repository
from grpcdeck.streams import StreamHandle
from grpcdeck.workspace import WorkspaceController

log = logging.getLogger(__name__)

EMPTY_REQUEST = "{}"

SendResult = Union[UnaryResult, StreamHandle]


def open_repository(path: str) -> Repository:
    """JSON storage under `path`, or memory when the directory is unusable."""
    try:
        return JSONRepository(path)
    except StorageIOError as exc:
        log.warning("storage unavailable, keeping data in memory: %s", exc)
        return MemoryRepository()


class Session:

    def __init__(
        self,
        config:  Optional[Config] = None,
        repo:    Optional[Repository] = None,
        state:   Optional[AppState] = None,
        manager: Optional[ConnectionManager] = None,
    ) -> None:
        self.config     = config or Config.from_env()
        self.repo       = repo or open_repository(self.config.storage_path)
        self.state      = state or AppState()
        self.manager    = manager or ConnectionManager(self.config.dial_timeout)
        self.history    = HistoryController(self.repo)
        self.workspaces = WorkspaceController(self.repo)

        self._lock      = threading.RLock()
        self._schema:  Optional[SchemaCache] = None
        self._codec:   Optional[Codec] = None
        self._invoker: Optional[Invoker] = None
        self._active:  Optional[StreamHandle] = None
        self._token:   Optional[CancellationToken] = None
        self._request_cache: dict[str, str] = {}

        self._unsubscribe = self.manager.subscribe(self._on_connection)

    # ──────────────────────────────────────────────────────────────────────
    # Connection
    # ──────────────────────────────────────────────────────────────────────

    @property
    def endpoint(self) -> Optional[Endpoint]:
        return self.manager.state.endpoint

    @property
    def connected(self) -> bool:
        return self.manager.state.status == ConnectionStatus.CONNECTED

    @property
    def schema(self) -> SchemaCache:
        with self._lock:
            if self._schema is None:
                raise TransportError("not connected")
            return self._schema

    @property
    def codec(self) -> Codec:
        with self._lock:
            if self._codec is None:
                raise TransportError("not connected")
            return self._codec

    @property
    def invoker(self) -> Invoker:
        with self._lock:
            if self._invoker is None:
                raise TransportError("not connected")
            return self._invoker

    def connect(self, endpoint: Endpoint, timeout: Optional[float] = None) -> list[ServiceDescriptor]:
        """Dial, discover services over reflection and publish them."""
        self.cancel()
        channel = self.manager.connect(endpoint, timeout)
        schema  = SchemaCache(ReflectionClient(channel, timeout=self.config.dial_timeout))
        with self._lock:
            self._schema  = schema
            self._codec   = Codec(schema)
            self._invoker = Invoker(self.manager, self._codec, self.config.call_timeout)
            self._request_cache.clear()

        try:
            self.repo.add_recent(endpoint)
        except StorageIOError as exc:
            log.warning("recent connections not saved: %s", exc)

        try:
            services = schema.services()
        except GrpcDeckError as exc:
            self.state.status_message.set(f"Connected to {endpoint.address} ({exc})")
            raise
        failed = sum(1 for s in services if s.error)
        self.state.batch(lambda: (
            self.state.services.set(tuple(services)),
            self.state.status_message.set(
                f"Connected to {endpoint.address} "
                f"({len(services)} services, {failed} with errors)"
            ),
        ))
        log.info("%s: %d services, %d failed to resolve", endpoint.address, len(services), failed)
        return services

    def disconnect(self) -> None:
        self.cancel()
        self.manager.disconnect()

    def ensure_connected(self, endpoint: Optional[Endpoint],
                         timeout: float = REPLAY_CONNECT_TIMEOUT) -> None:
        """Connect to `endpoint` unless already connected to the same target."""
        if endpoint is None:
            if not self.connected:
                raise TransportError("not connected")
            return
        if self.connected and endpoint.same_target(self.endpoint):
            return
        self.connect(endpoint, timeout)

    def recent(self) -> list[Endpoint]:
        try:
            return self.repo.recent()
        except StorageIOError as exc:
            log.warning("recent connections unavailable: %s", exc)
            return []

    def _on_connection(self, conn: ConnectionState, message: str) -> None:
        connected = conn.status == ConnectionStatus.CONNECTED
        address   = conn.endpoint.address if conn.endpoint else ""

        def _write() -> None:
            self.state.connection_state.set(conn.status.value)
            self.state.status_message.set(message)
            self.state.connected.set(connected)
            self.state.current_server.set(address if connected else "")
            if not connected:
                self.state.services.set(())
                self.state.clear_selection()
                self.state.response.loading.set(False)
        self.state.batch(_write)

        if not connected:
            with self._lock:
                self._schema = self._codec = self._invoker = None
                self._active = None

    # ──────────────────────────────────────────────────────────────────────
    # Schema
    # ──────────────────────────────────────────────────────────────────────

    def services(self) -> list[ServiceDescriptor]:
        return list(self.state.services.get()) or self.schema.services()

    def resolve(self, path: str) -> ResolvedMethod:
        service, method = split_method_path(path)
        return self.schema.resolve_method(service, method)

    def describe(self, symbol: str) -> Union[ServiceDescriptor, MethodDescriptor, MessageDescriptor]:
        """Service, method or message by fully-qualified name."""
        schema = self.schema
        symbol = symbol.lstrip(".")
        if symbol in schema.list_services():
            return schema.resolve_service(symbol)
        if "/" in symbol:
            return self.resolve(symbol).method
        try:
            return schema.resolve_message(symbol)
        except GrpcDeckError:
            return self.resolve(symbol).method

    def current_method(self) -> ResolvedMethod:
        service = self.state.selected_service.get()
        method  = self.state.selected_method.get()
        if not service or not method:
            raise ValidationError("no method selected")
        return self.schema.resolve_method(service, method)

    def select_method(self, service: str, method: str) -> ResolvedMethod:
        """
        Make service/method current. The request text of the method being
        left is cached and restored on return.
        """
        resolved = self.schema.resolve_method(service, method)
        self.cancel()
        with self._lock:
            previous = self._cache_key()
            if previous:
                self._request_cache[previous] = self.state.request.text.get()
            text = self._request_cache.get(f"{service}/{method}", EMPTY_REQUEST)

        def _write() -> None:
            self.state.selected_service.set(service)
            self.state.selected_method.set(method)
            self.state.request.text.set(text)
            self.state.response.clear()
        self.state.batch(_write)
        return resolved

    def _cache_key(self) -> str:
        service = self.state.selected_service.get()
        method  = self.state.selected_method.get()
        return f"{service}/{method}" if service and method else ""

    # ──────────────────────────────────────────────────────────────────────
    # Request editing
    # ──────────────────────────────────────────────────────────────────────

    def set_request(self, text: str) -> None:
        self.state.request.text.set(text)

    def set_mode(self, mode: str) -> None:
        self.state.request.mode.set(mode)

    def set_header(self, key: str, value: str) -> None:
        key   = normalize_key(key)
        pairs = [kv for kv in self.state.request.metadata.get() if kv[0] != key]
        self.state.request.metadata.set(tuple(pairs) + ((key, value),))

    def add_header(self, key: str, value: str) -> None:
        pairs = tuple(self.state.request.metadata.get())
        self.state.request.metadata.set(pairs + ((normalize_key(key), value),))

    def clear_headers(self) -> None:
        self.state.request.metadata.set(())

    # ──────────────────────────────────────────────────────────────────────
    # Send
    # ──────────────────────────────────────────────────────────────────────

    def send(self, timeout: Optional[float] = None) -> SendResult:
        """
        Invoke the selected method with the current request.

        Unary calls block and return a UnaryResult. Streaming shapes return
        the live handle; server streams already carry the request, client
        and bidi handles wait for send().
        """
        resolved = self.current_method()
        method   = resolved.method
        text     = self.state.request.text.get()
        metadata = tuple(self.state.request.metadata.get())

        self.cancel()
        token = CancellationToken()
        with self._lock:
            self._token = token

        self.state.batch(lambda: (
            self.state.response.clear(),
            self.state.response.loading.set(True),
        ))
        try:
            if method.stream_type == StreamType.UNARY:
                return self._send_unary(method, text, metadata, token, timeout)
            invoker = self.invoker
            if method.stream_type == StreamType.SERVER_STREAM:
                handle: StreamHandle = invoker.server_stream(method, text, metadata, token, timeout)
            elif method.stream_type == StreamType.CLIENT_STREAM:
                handle = invoker.client_stream(method, metadata, token, timeout)
            else:
                handle = invoker.bidi_stream(method, metadata, token, timeout)
        except GrpcDeckError as exc:
            self._publish_error(exc)
            raise

        with self._lock:
            self._active = handle
        endpoint = self.endpoint
        handle.add_done_callback(
            lambda h: self._stream_done(h, endpoint, method, text, metadata),
        )
        return handle

    def _send_unary(self, method: MethodDescriptor, text: str, metadata: tuple,
                    token: CancellationToken, timeout: Optional[float]) -> UnaryResult:
        endpoint = self.endpoint
        try:
            result = self.invoker.unary(method, text, metadata, token, timeout)
        except (CodecError, ValidationError):
            # Never left the process; nothing to record.
            raise
        except GrpcDeckError as exc:
            self.history.record(
                endpoint, method.qualified, text,
                error=str(exc), request_metadata=metadata,
            )
            raise

        self.state.batch(lambda: (
            self.state.response.text.set(result.text),
            self.state.response.duration.set(format_duration(result.duration_ms)),
            self.state.response.size.set(format_byte_size(result.size)),
            self.state.response.headers.set(result.headers),
            self.state.response.trailers.set(result.trailers),
            self.state.response.loading.set(False),
        ))
        self.history.record(
            endpoint, method.qualified, text,
            response=result.text,
            duration_ms=result.duration_ms,
            request_metadata=metadata,
            response_metadata=tuple(flatten(result.headers).items()),
        )
        return result

    def _stream_done(self, handle: StreamHandle, endpoint: Optional[Endpoint],
                     method: MethodDescriptor, text: str, metadata: tuple) -> None:
        error = handle.error
        count = handle.message_count
        shown = "\n".join(handle.buffer.snapshot())

        def _write() -> None:
            self.state.response.text.set(shown)
            self.state.response.duration.set(format_duration(handle.duration_ms))
            self.state.response.size.set(format_byte_size(handle.received_bytes))
            self.state.response.headers.set(handle.headers())
            self.state.response.trailers.set(handle.trailers())
            self.state.response.visible.set(handle.buffer.visible)
            self.state.response.total.set(count)
            self.state.response.error.set(str(error) if error is not None else "")
            self.state.response.loading.set(False)
        self.state.batch(_write)

        with self._lock:
            if self._active is handle:
                self._active = None
        self.history.record(
            endpoint, method.qualified, text,
            response=f"({count} messages)",
            duration_ms=handle.duration_ms,
            error=str(error) if error is not None else "",
            request_metadata=metadata,
            response_metadata=tuple(flatten(handle.headers()).items()),
            stream_type=method.stream_type,
            message_count=count,
        )

    def _publish_error(self, exc: GrpcDeckError) -> None:
        self.state.batch(lambda: (
            self.state.response.error.set(str(exc)),
            self.state.response.loading.set(False),
        ))

    @property
    def active_stream(self) -> Optional[StreamHandle]:
        with self._lock:
            return self._active

    def cancel(self) -> None:
        """Cancel whatever call is in flight."""
        with self._lock:
            token, self._token = self._token, None
        if token is not None and not token.cancelled:
            token.cancel("cancelled by user")

    # ──────────────────────────────────────────────────────────────────────
    # History / workspaces
    # ──────────────────────────────────────────────────────────────────────

    def replay(self, record: Union[CallRecord, str], send: bool = False) -> Optional[SendResult]:
        """
        Load a history entry as the current request, connecting to its
        endpoint first when needed. Sends only when asked to.
        """
        entry = record if isinstance(record, CallRecord) else self.history.get(record)
        self.ensure_connected(entry.endpoint)
        service, method = split_method_path(entry.method)
        self.select_method(service, method)
        self.history.apply(entry, self.state)
        return self.send() if send else None

    def save_workspace(self, name: str, overwrite: bool = False) -> Workspace:
        workspace = self.workspaces.capture(name, self.state, self.endpoint)
        self.workspaces.save(workspace, overwrite)
        return workspace

    def load_workspace(self, name: str) -> Workspace:
        workspace = self.workspaces.load(name)
        if workspace.endpoint is not None:
            self.ensure_connected(workspace.endpoint)
        if workspace.selected_service and workspace.selected_method and self.connected:
            self.select_method(workspace.selected_service, workspace.selected_method)
        self.workspaces.apply(workspace, self.state)
        return workspace

    # ──────────────────────────────────────────────────────────────────────

    def close(self) -> None:
        self.disconnect()
        self._unsubscribe()
        self.state.dispatcher.close()
