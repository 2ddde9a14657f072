"""
grpcdeck/domain.py

Plain value types shared across the core: endpoints, connection state,
call records and workspaces. No I/O, no grpc.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from grpcdeck.errors import ValidationError


# ──────────────────────────────────────────────────────────────────────────────
# Endpoint
# ──────────────────────────────────────────────────────────────────────────────

class SecurityProfile(Enum):
    PLAINTEXT       = "plaintext"
    TLS             = "tls"
    TLS_SKIP_VERIFY = "tls_skip_verify"

    @classmethod
    def from_flags(cls, use_tls: bool, insecure: bool) -> "SecurityProfile":
        if insecure and not use_tls:
            raise ValidationError("skip-verify requires TLS")
        if not use_tls:
            return cls.PLAINTEXT
        return cls.TLS_SKIP_VERIFY if insecure else cls.TLS


@dataclass(frozen=True)
class TLSFiles:
    """Optional PEM paths layered on top of the TLS profiles."""
    ca_file:   str = ""
    cert_file: str = ""
    key_file:  str = ""

    def validate(self) -> None:
        if bool(self.cert_file) != bool(self.key_file):
            raise ValidationError("client certificate and key must be given together")


@dataclass(frozen=True)
class Endpoint:
    address:  str
    profile:  SecurityProfile = SecurityProfile.PLAINTEXT
    timeout:  Optional[float] = None
    tls:      TLSFiles = field(default_factory=TLSFiles)

    @property
    def use_tls(self) -> bool:
        return self.profile != SecurityProfile.PLAINTEXT

    @property
    def insecure(self) -> bool:
        return self.profile == SecurityProfile.TLS_SKIP_VERIFY

    def validate(self) -> None:
        if not self.address or not self.address.strip():
            raise ValidationError("address must not be empty")
        if not isinstance(self.profile, SecurityProfile):
            raise ValidationError(f"unknown security profile: {self.profile!r}")
        if self.profile == SecurityProfile.PLAINTEXT and (
            self.tls.ca_file or self.tls.cert_file
        ):
            raise ValidationError("certificate files require TLS")
        self.tls.validate()

    def same_target(self, other: Optional["Endpoint"]) -> bool:
        return (
            other is not None
            and self.address == other.address
            and self.use_tls == other.use_tls
        )

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "address":  self.address,
            "use_tls":  self.use_tls,
            "insecure": self.insecure,
        }
        if self.timeout is not None:
            d["timeout"] = self.timeout
        if self.tls != TLSFiles():
            d["tls"] = {
                "ca_file":   self.tls.ca_file,
                "cert_file": self.tls.cert_file,
                "key_file":  self.tls.key_file,
            }
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "Endpoint":
        tls = d.get("tls") or {}
        return cls(
            address=d.get("address", ""),
            profile=SecurityProfile.from_flags(
                bool(d.get("use_tls")), bool(d.get("insecure"))
            ),
            timeout=d.get("timeout"),
            tls=TLSFiles(
                ca_file=tls.get("ca_file", ""),
                cert_file=tls.get("cert_file", ""),
                key_file=tls.get("key_file", ""),
            ),
        )


# ──────────────────────────────────────────────────────────────────────────────
# Connection state
# ──────────────────────────────────────────────────────────────────────────────

class ConnectionStatus(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING   = "connecting"
    CONNECTED    = "connected"
    ERROR        = "error"


@dataclass(frozen=True)
class ConnectionState:
    status:   ConnectionStatus
    endpoint: Optional[Endpoint] = None
    message:  str = ""

    @classmethod
    def disconnected(cls) -> "ConnectionState":
        return cls(ConnectionStatus.DISCONNECTED)


# ──────────────────────────────────────────────────────────────────────────────
# Call records
# ──────────────────────────────────────────────────────────────────────────────

class StreamType(Enum):
    UNARY         = "unary"
    SERVER_STREAM = "server_stream"
    CLIENT_STREAM = "client_stream"
    BIDI_STREAM   = "bidi_stream"

    @classmethod
    def of(cls, client_streaming: bool, server_streaming: bool) -> "StreamType":
        if client_streaming and server_streaming:
            return cls.BIDI_STREAM
        if server_streaming:
            return cls.SERVER_STREAM
        if client_streaming:
            return cls.CLIENT_STREAM
        return cls.UNARY


STATUS_SUCCESS = "success"
STATUS_ERROR   = "error"


@dataclass(frozen=True)
class CallRecord:
    id:                str
    timestamp:         str            # RFC 3339, UTC
    endpoint:          Optional[Endpoint]
    method:            str            # "pkg.Service/Method"
    request:           str
    response:          str
    duration_ms:       float
    status:            str
    error:             str = ""
    request_metadata:  tuple[tuple[str, str], ...] = ()
    response_metadata: tuple[tuple[str, str], ...] = ()
    stream_type:       StreamType = StreamType.UNARY
    message_count:     int = 0

    @property
    def service(self) -> str:
        return self.method.rsplit("/", 1)[0]

    @property
    def method_name(self) -> str:
        return self.method.rsplit("/", 1)[-1]

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id":         self.id,
            "timestamp":  self.timestamp,
            "connection": self.endpoint.to_dict() if self.endpoint else None,
            "method":     self.method,
            "request":    self.request,
            "response":   self.response,
            "duration":   self.duration_ms,
            "status":     self.status,
            "error":      self.error,
            "metadata": {
                "request":  [list(kv) for kv in self.request_metadata],
                "response": [list(kv) for kv in self.response_metadata],
            },
        }
        if self.stream_type != StreamType.UNARY:
            d["stream_type"]   = self.stream_type.value
            d["message_count"] = self.message_count
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "CallRecord":
        conn = d.get("connection")
        md   = d.get("metadata") or {}
        return cls(
            id=str(d.get("id", "")),
            timestamp=d.get("timestamp", ""),
            endpoint=Endpoint.from_dict(conn) if conn else None,
            method=d.get("method", ""),
            request=d.get("request", ""),
            response=d.get("response", ""),
            duration_ms=float(d.get("duration") or 0),
            status=d.get("status", STATUS_SUCCESS),
            error=d.get("error", ""),
            request_metadata=_pairs(md.get("request")),
            response_metadata=_pairs(md.get("response")),
            stream_type=StreamType(d.get("stream_type") or "unary"),
            message_count=int(d.get("message_count") or 0),
        )


def _pairs(raw: Any) -> tuple[tuple[str, str], ...]:
    # Older files stored metadata as an object.
    if isinstance(raw, dict):
        return tuple((str(k), str(v)) for k, v in raw.items())
    if isinstance(raw, list):
        return tuple((str(kv[0]), str(kv[1])) for kv in raw if len(kv) == 2)
    return ()


# ──────────────────────────────────────────────────────────────────────────────
# Workspace
# ──────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class RequestSnapshot:
    method:   str = ""        # "pkg.Service/Method"
    body:     str = ""
    metadata: tuple[tuple[str, str], ...] = ()


@dataclass(frozen=True)
class Workspace:
    name:             str
    endpoint:         Optional[Endpoint] = None
    request:          Optional[RequestSnapshot] = None
    selected_service: str = ""
    selected_method:  str = ""

    def to_dict(self) -> dict[str, Any]:
        req = None
        if self.request is not None:
            req = {
                "method":   self.request.method,
                "body":     self.request.body,
                "metadata": [list(kv) for kv in self.request.metadata],
            }
        return {
            "name":               self.name,
            "current_connection": self.endpoint.to_dict() if self.endpoint else None,
            "current_request":    req,
            "selected_service":   self.selected_service,
            "selected_method":    self.selected_method,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "Workspace":
        conn = d.get("current_connection")
        req  = d.get("current_request")
        return cls(
            name=d.get("name", ""),
            endpoint=Endpoint.from_dict(conn) if conn else None,
            request=RequestSnapshot(
                method=req.get("method", ""),
                body=req.get("body", ""),
                metadata=_pairs(req.get("metadata")),
            ) if req else None,
            selected_service=d.get("selected_service", ""),
            selected_method=d.get("selected_method", ""),
        )


# ──────────────────────────────────────────────────────────────────────────────
# Presentation helpers
# ──────────────────────────────────────────────────────────────────────────────

def format_duration(ms: float) -> str:
    return f"{int(round(ms))}ms"


def format_byte_size(n: int) -> str:
    if n < 1024:
        return f"{n} B"
    if n < 1024 * 1024:
        return f"{n / 1024:.1f} KB"
    return f"{n / (1024 * 1024):.1f} MB"
