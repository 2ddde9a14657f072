"""
grpcdeck/connection.py

ConnectionManager: owns at most one grpc.Channel and publishes every
state transition to its observers.

    Disconnected ─connect→ Connecting ─ok→ Connected ─disconnect→ Disconnected
                              │                │
                              └─fail→ Error ←──┘ channel dead (keepalive)
                                        └─connect→ Connecting
"""
from __future__ import annotations

import logging
import socket
import ssl
import threading
from collections import deque
from typing import Callable, Optional

import grpc

from grpcdeck.cancel import CancellationToken
from grpcdeck.config import DEFAULT_DIAL_TIMEOUT
from grpcdeck.domain import ConnectionState, ConnectionStatus, Endpoint, SecurityProfile
from grpcdeck.errors import DeadlineExceeded, GrpcDeckError, TransportError, ValidationError

log = logging.getLogger(__name__)

KEEPALIVE_OPTIONS = [
    ("grpc.keepalive_time_ms", 10_000),
    ("grpc.keepalive_timeout_ms", 3_000),
    ("grpc.keepalive_permit_without_calls", 1),
    ("grpc.http2.max_pings_without_data", 0),
]

Observer = Callable[[ConnectionState, str], None]

_DEAD_STATES = (
    grpc.ChannelConnectivity.TRANSIENT_FAILURE,
    grpc.ChannelConnectivity.SHUTDOWN,
)


class ConnectionManager:

    def __init__(self, dial_timeout: float = DEFAULT_DIAL_TIMEOUT) -> None:
        self._dial_timeout = dial_timeout
        self._lock         = threading.RLock()
        self._state        = ConnectionState.disconnected()
        self._channel: Optional[grpc.Channel] = None
        self._generation   = 0
        self._watcher: Optional[Callable] = None
        self._observers:  list[Observer] = []
        self._tokens:     set[CancellationToken] = set()
        # Notifications in transition order; one thread at a time drains them.
        self._pending:    deque[tuple[ConnectionState, str]] = deque()
        self._delivering  = False

    # ──────────────────────────────────────────────────────────────────────
    # Public
    # ──────────────────────────────────────────────────────────────────────

    @property
    def state(self) -> ConnectionState:
        with self._lock:
            return self._state

    def current(self) -> Optional[grpc.Channel]:
        """The active channel, or None when not connected."""
        with self._lock:
            if self._state.status != ConnectionStatus.CONNECTED:
                return None
            return self._channel

    def require(self) -> grpc.Channel:
        channel = self.current()
        if channel is None:
            raise TransportError("not connected")
        return channel

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        with self._lock:
            self._observers.append(observer)

        def _unsubscribe() -> None:
            with self._lock:
                if observer in self._observers:
                    self._observers.remove(observer)
        return _unsubscribe

    def connect(self, endpoint: Endpoint, timeout: Optional[float] = None) -> grpc.Channel:
        endpoint.validate()
        with self._lock:
            if (
                self._state.status == ConnectionStatus.CONNECTED
                and self._state.endpoint == endpoint
                and self._channel is not None
            ):
                return self._channel

        timeout = timeout or endpoint.timeout or self._dial_timeout
        with self._lock:
            self._generation += 1
            generation = self._generation
            old, self._channel = self._channel, None
            old_watcher, self._watcher = self._watcher, None
            self._transition(
                ConnectionState(ConnectionStatus.CONNECTING, endpoint),
                f"Connecting to {endpoint.address}",
            )
        self._cancel_tracked("reconnecting")
        if old is not None:
            self._close_async(old, old_watcher)
        self._deliver()

        channel: Optional[grpc.Channel] = None
        try:
            channel = _open_channel(endpoint, timeout)
            grpc.channel_ready_future(channel).result(timeout=timeout)
        except grpc.FutureTimeoutError as exc:
            self._fail(generation, endpoint, f"timed out after {timeout:g}s")
            _close_quietly(channel)
            raise DeadlineExceeded(
                f"timed out connecting to {endpoint.address}", cause=exc,
            ) from exc
        except GrpcDeckError as exc:
            self._fail(generation, endpoint, str(exc))
            raise
        except (OSError, ValueError, grpc.RpcError) as exc:
            self._fail(generation, endpoint, str(exc))
            raise TransportError(f"cannot connect to {endpoint.address}: {exc}", cause=exc) from exc

        with self._lock:
            superseded = generation != self._generation
            if not superseded:
                self._channel = channel
                watcher = self._make_watcher(generation)
                self._watcher = watcher
                self._transition(
                    ConnectionState(ConnectionStatus.CONNECTED, endpoint),
                    f"Connected to {endpoint.address}",
                )
        if superseded:
            # A newer connect or a disconnect won the race.
            _close_quietly(channel)
            raise TransportError("connection superseded")
        channel.subscribe(watcher, try_to_connect=False)
        self._deliver()
        log.info("connected to %s (%s)", endpoint.address, endpoint.profile.value)
        return channel

    def disconnect(self) -> None:
        with self._lock:
            self._generation += 1
            channel, self._channel = self._channel, None
            watcher, self._watcher = self._watcher, None
            was = self._state.status
            if was != ConnectionStatus.DISCONNECTED:
                self._transition(ConnectionState.disconnected(), "Disconnected")
        self._cancel_tracked("disconnected")
        if channel is not None and watcher is not None:
            channel.unsubscribe(watcher)
        _close_quietly(channel)
        if was == ConnectionStatus.DISCONNECTED:
            log.debug("disconnect: already disconnected")
            return
        self._deliver()
        log.info("disconnected")

    # ── Tracked calls ────────────────────────────────────────────────────────

    def track(self, token: CancellationToken) -> Callable[[], None]:
        """Cancel `token` when the connection goes away."""
        with self._lock:
            self._tokens.add(token)

        def _untrack() -> None:
            with self._lock:
                self._tokens.discard(token)
        return _untrack

    def _cancel_tracked(self, reason: str) -> None:
        with self._lock:
            tokens, self._tokens = list(self._tokens), set()
        for token in tokens:
            token.cancel(reason)

    # ──────────────────────────────────────────────────────────────────────
    # Internals
    # ──────────────────────────────────────────────────────────────────────

    def _transition(self, state: ConnectionState, message: str) -> None:
        """Caller holds _lock. The notification is queued for _deliver."""
        self._state = ConnectionState(state.status, state.endpoint, message)
        self._pending.append((self._state, message))
        log.debug("connection state → %s: %s", state.status.value, message)

    def _deliver(self) -> None:
        """
        Run observers for every queued transition, in order, holding no lock.

        When another thread is already delivering, it picks up what this
        thread queued; an observer may therefore call back into the manager,
        or wait on a thread that does, without deadlocking.
        """
        with self._lock:
            if self._delivering:
                return
            self._delivering = True
        drained = False
        try:
            while True:
                with self._lock:
                    if not self._pending:
                        self._delivering = False
                        drained = True
                        return
                    snapshot, message = self._pending.popleft()
                    observers = list(self._observers)
                for observer in observers:
                    try:
                        observer(snapshot, message)
                    except Exception:
                        log.exception("connection observer failed")
        finally:
            if not drained:
                with self._lock:
                    self._delivering = False

    def _fail(self, generation: int, endpoint: Endpoint, reason: str) -> None:
        with self._lock:
            if generation != self._generation:
                return
            self._transition(
                ConnectionState(ConnectionStatus.ERROR, endpoint),
                f"Failed to connect: {reason}",
            )
        log.error("failed to connect to %s: %s", endpoint.address, reason)
        self._deliver()

    def _make_watcher(self, generation: int) -> Callable:
        def _on_connectivity(connectivity: grpc.ChannelConnectivity) -> None:
            if connectivity in _DEAD_STATES:
                target = self._channel_died
            elif connectivity == grpc.ChannelConnectivity.IDLE:
                # A dropped transport (keepalive timeout, GOAWAY) parks the
                # channel in IDLE; check it to tell idle from dead.
                target = self._check_idle
            else:
                return
            threading.Thread(
                target=target, args=(generation, connectivity), daemon=True,
            ).start()
        return _on_connectivity

    def _check_idle(self, generation: int, connectivity: grpc.ChannelConnectivity) -> None:
        with self._lock:
            if generation != self._generation or self._channel is None:
                return
            channel = self._channel
        try:
            grpc.channel_ready_future(channel).result(timeout=self._dial_timeout)
        except grpc.FutureTimeoutError:
            self._channel_died(generation, connectivity)
        except ValueError as exc:
            log.debug("idle check skipped, channel closed: %s", exc)

    def _channel_died(self, generation: int, connectivity: grpc.ChannelConnectivity) -> None:
        with self._lock:
            if generation != self._generation or self._state.status != ConnectionStatus.CONNECTED:
                return
            endpoint = self._state.endpoint
            self._generation += 1
            channel, self._channel = self._channel, None
            watcher, self._watcher = self._watcher, None
            self._transition(
                ConnectionState(ConnectionStatus.ERROR, endpoint),
                f"Connection lost: {connectivity.name.lower()}",
            )
        log.warning("connection to %s lost (%s)",
                    endpoint.address if endpoint else "?", connectivity.name)
        self._cancel_tracked("connection lost")
        self._close_async(channel, watcher)
        self._deliver()

    @staticmethod
    def _close_async(channel: Optional[grpc.Channel], watcher: Optional[Callable]) -> None:
        if channel is None:
            return

        def _close() -> None:
            if watcher is not None:
                try:
                    channel.unsubscribe(watcher)
                except ValueError:
                    pass
            _close_quietly(channel)
        threading.Thread(target=_close, name="grpcdeck-close", daemon=True).start()


# ──────────────────────────────────────────────────────────────────────────────
# Channel construction
# ──────────────────────────────────────────────────────────────────────────────

def _close_quietly(channel: Optional[grpc.Channel]) -> None:
    if channel is None:
        return
    try:
        channel.close()
    except Exception as exc:
        log.debug("ignoring error while closing channel: %s", exc)


def _read(path: str) -> Optional[bytes]:
    if not path:
        return None
    try:
        with open(path, "rb") as fh:
            return fh.read()
    except OSError as exc:
        raise ValidationError(f"cannot read {path}: {exc}", cause=exc) from exc


def _split_host_port(address: str) -> tuple[str, int]:
    host, _, port = address.rpartition(":")
    if not host:
        return address, 443
    try:
        return host.strip("[]"), int(port)
    except ValueError as exc:
        raise ValidationError(f"invalid port in {address!r}", cause=exc) from exc


def peer_certificate(address: str, timeout: float) -> tuple[bytes, str]:
    """
    Fetch the server's leaf certificate without verifying it and return
    (PEM, name the certificate is issued for).
    """
    host, port = _split_host_port(address)
    pem = ssl.get_server_certificate((host, port), timeout=timeout)

    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    ctx.check_hostname = False
    ctx.load_verify_locations(cadata=pem)
    ctx.verify_flags |= ssl.VERIFY_X509_PARTIAL_CHAIN
    ctx.set_alpn_protocols(["h2"])
    name = host
    try:
        with socket.create_connection((host, port), timeout=timeout) as sock:
            with ctx.wrap_socket(sock, server_hostname=host) as tls:
                name = _certificate_name(tls.getpeercert()) or host
    except (OSError, ssl.SSLError) as exc:
        log.debug("could not read certificate names from %s: %s", address, exc)
    return pem.encode("ascii"), name


def _certificate_name(cert: Optional[dict]) -> str:
    if not cert:
        return ""
    for kind, value in cert.get("subjectAltName", ()):
        if kind == "DNS":
            return value
    for rdn in cert.get("subject", ()):
        for key, value in rdn:
            if key == "commonName":
                return value
    return ""


def _open_channel(endpoint: Endpoint, timeout: float) -> grpc.Channel:
    options = list(KEEPALIVE_OPTIONS)

    if endpoint.profile == SecurityProfile.PLAINTEXT:
        return grpc.insecure_channel(endpoint.address, options=options)

    root = _read(endpoint.tls.ca_file)
    if endpoint.profile == SecurityProfile.TLS_SKIP_VERIFY:
        log.warning("TLS verification disabled for %s", endpoint.address)
        root, name = peer_certificate(endpoint.address, timeout)
        options.append(("grpc.ssl_target_name_override", name))

    credentials = grpc.ssl_channel_credentials(
        root_certificates=root,
        private_key=_read(endpoint.tls.key_file),
        certificate_chain=_read(endpoint.tls.cert_file),
    )
    return grpc.secure_channel(endpoint.address, credentials, options=options)
