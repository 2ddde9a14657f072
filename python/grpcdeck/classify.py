"""
grpcdeck/classify.py

Turns any exception into a UIError: severity, short title, message,
recovery hints, and technical details. Used only at the display boundary.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

import grpc
from google.rpc import error_details_pb2, status_pb2
from grpc_status import rpc_status

from grpcdeck.errors import (
    ErrorKind, GrpcDeckError, RemoteStatusError,
)

log = logging.getLogger(__name__)

STATUS_DETAILS_KEY = "grpc-status-details-bin"


class Severity(Enum):
    INFO    = "info"      # worth knowing, not blocking
    WARNING = "warning"   # degraded functionality
    ERROR   = "error"     # operation failed, can retry
    FATAL   = "fatal"


@dataclass(frozen=True)
class UIError:
    kind:     Optional[ErrorKind]
    severity: Severity
    title:    str
    message:  str
    recovery: tuple[str, ...] = ()
    actions:  tuple[str, ...] = ()
    details:  str = ""

    def summary(self) -> str:
        return f"{self.title}: {self.message}"


# ──────────────────────────────────────────────────────────────────────────────
# Per-status presentation: (severity, title, message, recovery, actions, only_message)
# only_message=True → details drop the "gRPC: CODE - " prefix.
# ──────────────────────────────────────────────────────────────────────────────

_STATUS_TABLE: dict[grpc.StatusCode, tuple] = {
    grpc.StatusCode.UNAVAILABLE: (
        Severity.ERROR, "Cannot Connect to Server", "The server is not responding.",
        ("Check that the server is running", "Verify the address and port",
         "Check your network connection"),
        ("Retry", "Edit Connection"), False,
    ),
    grpc.StatusCode.DEADLINE_EXCEEDED: (
        Severity.ERROR, "Request Timeout", "The server took too long to respond.",
        ("Try again", "Increase timeout setting"), ("Retry", "Settings"), False,
    ),
    grpc.StatusCode.UNAUTHENTICATED: (
        Severity.ERROR, "Authentication Required",
        "You need to authenticate to access this service.",
        ("Add credentials in metadata",), ("Add Credentials",), False,
    ),
    grpc.StatusCode.PERMISSION_DENIED: (
        Severity.ERROR, "Access Denied", "You don't have permission to call this method.",
        ("Contact administrator for access",), (), False,
    ),
    grpc.StatusCode.INVALID_ARGUMENT: (
        Severity.ERROR, "Invalid Request", "The request contains invalid data.",
        ("Check field values", "See details for specifics"),
        ("View Details", "Edit Request"), True,
    ),
    grpc.StatusCode.INTERNAL: (
        Severity.ERROR, "Server Error", "The server encountered an unexpected error.",
        ("Try again later", "Contact server administrator"), ("Retry",), False,
    ),
    grpc.StatusCode.UNIMPLEMENTED: (
        Severity.WARNING, "Method Not Available",
        "This method is not implemented on the server.",
        ("Check method name", "Verify server version"), (), False,
    ),
    grpc.StatusCode.NOT_FOUND: (
        Severity.ERROR, "Not Found", "The requested resource was not found.",
        ("Check the request parameters",), (), False,
    ),
    grpc.StatusCode.ALREADY_EXISTS: (
        Severity.ERROR, "Already Exists", "The resource already exists.",
        ("Use a different identifier",), (), False,
    ),
    grpc.StatusCode.RESOURCE_EXHAUSTED: (
        Severity.ERROR, "Resource Exhausted", "The server has insufficient resources.",
        ("Try again later", "Reduce request size"), ("Retry",), False,
    ),
    grpc.StatusCode.FAILED_PRECONDITION: (
        Severity.ERROR, "Failed Precondition",
        "The operation was rejected due to system state.",
        ("Check system state", "See details for more info"), (), True,
    ),
    grpc.StatusCode.ABORTED: (
        Severity.ERROR, "Operation Aborted",
        "The operation was aborted, typically due to concurrency issues.",
        ("Try again",), ("Retry",), False,
    ),
    grpc.StatusCode.OUT_OF_RANGE: (
        Severity.ERROR, "Out of Range", "A value is out of the valid range.",
        ("Check input values", "See details for specifics"), (), True,
    ),
    grpc.StatusCode.DATA_LOSS: (
        Severity.FATAL, "Data Loss", "Unrecoverable data loss or corruption.",
        ("Contact server administrator immediately",), (), False,
    ),
    grpc.StatusCode.CANCELLED: (
        Severity.INFO, "Request Cancelled", "The operation was cancelled.", (), (), False,
    ),
}


_CALL_KINDS = (ErrorKind.TRANSPORT, ErrorKind.DEADLINE_EXCEEDED, ErrorKind.CANCELLED)


def classify(exc: BaseException) -> UIError:
    if isinstance(exc, RemoteStatusError):
        return classify_status(exc.code, exc.details, exc.cause, exc.trailers, exc)

    if isinstance(exc, GrpcDeckError):
        # Call failures mapped to a kind still carry their status.
        if (
            exc.kind in _CALL_KINDS
            and isinstance(exc.cause, grpc.RpcError)
            and hasattr(exc.cause, "code")
        ):
            cause = exc.cause
            return classify_status(
                cause.code(), cause.details() or "", cause,
                cause.trailing_metadata() or (), exc,
            )
        return _classify_kind(exc)

    if isinstance(exc, grpc.RpcError) and hasattr(exc, "code"):
        return classify_status(
            exc.code(), exc.details() or "", exc, exc.trailing_metadata() or (), None,
        )

    return UIError(
        kind=None,
        severity=Severity.ERROR,
        title="Unexpected Error",
        message="An unexpected error occurred.",
        recovery=("Try again",),
        details=str(exc),
    )


def classify_status(
    code: grpc.StatusCode,
    message: str,
    call: Any = None,
    trailers: Any = (),
    exc: Optional[GrpcDeckError] = None,
) -> UIError:
    kind    = exc.kind if exc is not None else ErrorKind.REMOTE_STATUS
    details = f"gRPC: {code.name} - {message}"
    bare    = message
    extra   = format_status_details(_rich_status(call, trailers))
    if extra:
        details += "\n\n" + extra
        bare    += "\n\n" + extra

    entry = _STATUS_TABLE.get(code)
    if entry is None:
        title = "Unknown Error" if code == grpc.StatusCode.UNKNOWN else "Request Failed"
        recovery = (
            ("Try again", "Contact server administrator if problem persists")
            if code == grpc.StatusCode.UNKNOWN else ("Try again",)
        )
        return UIError(
            kind=kind, severity=Severity.ERROR, title=title,
            message=message or title, recovery=recovery,
            actions=("Retry",) if code == grpc.StatusCode.UNKNOWN else (),
            details=details,
        )

    severity, title, text, recovery, actions, only_message = entry
    return UIError(
        kind=kind,
        severity=severity,
        title=title,
        message=text,
        recovery=recovery,
        actions=actions,
        details=bare if only_message else details,
    )


def _classify_kind(exc: GrpcDeckError) -> UIError:
    kind = exc.kind
    if kind == ErrorKind.TRANSPORT:
        return UIError(
            kind, Severity.ERROR, "Connection Failed", "Unable to connect to the server.",
            ("Check that the server is running", "Verify the address and port",
             "Check your network connection"),
            ("Retry", "Edit Connection"), str(exc),
        )
    if kind == ErrorKind.REFLECTION_UNAVAILABLE:
        return UIError(
            kind, Severity.WARNING, "Reflection Not Available",
            "This server doesn't support gRPC reflection.",
            ("Enable the reflection service on the server",), (), str(exc),
        )
    if kind == ErrorKind.INVALID_DESCRIPTOR:
        return UIError(
            kind, Severity.ERROR, "Invalid Descriptor",
            "The server returned an invalid proto descriptor.",
            ("Check server configuration",), (), str(exc),
        )
    if kind == ErrorKind.DEADLINE_EXCEEDED:
        return UIError(
            kind, Severity.ERROR, "Request Timeout", "The server took too long to respond.",
            ("Try again", "Increase the timeout setting"), ("Retry", "Settings"), str(exc),
        )
    if kind in (ErrorKind.CANCELLED, ErrorKind.SEND_AFTER_CANCEL):
        return UIError(
            kind, Severity.INFO, "Request Cancelled", "The operation was cancelled.",
            (), (), str(exc),
        )
    if kind in (ErrorKind.CODEC_PARSE, ErrorKind.CODEC_TYPE, ErrorKind.CODEC_RANGE):
        return UIError(
            kind, Severity.ERROR, "Invalid Request Body", exc.message,
            ("Correct the request JSON and try again",), ("Edit Request",), str(exc),
        )
    if kind == ErrorKind.VALIDATION:
        return UIError(
            kind, Severity.ERROR, "Validation Error", exc.message,
            ("Correct the field value and try again",), (), str(exc),
        )
    if kind == ErrorKind.STORAGE_IO:
        return UIError(
            kind, Severity.WARNING, "Storage Error", "Could not read or write local data.",
            ("Check permissions on the storage directory",), (), str(exc),
        )
    if kind == ErrorKind.STREAM_STATE:
        return UIError(
            kind, Severity.WARNING, "Stream Closed", exc.message, (), (), str(exc),
        )
    return UIError(
        kind, Severity.ERROR, "Unexpected Error", "An unexpected error occurred.",
        ("Try again",), (), str(exc),
    )


# ──────────────────────────────────────────────────────────────────────────────
# Rich status details (google.rpc.Status carried in the trailers)
# ──────────────────────────────────────────────────────────────────────────────

def _rich_status(call: Any, trailers: Any) -> Optional[status_pb2.Status]:
    if call is not None and hasattr(call, "trailing_metadata"):
        try:
            return rpc_status.from_call(call)
        except ValueError as exc:
            log.debug("ignoring inconsistent status details: %s", exc)
            return None
    for key, value in trailers or ():
        if key == STATUS_DETAILS_KEY and isinstance(value, bytes):
            return status_pb2.Status.FromString(value)
    return None


def format_status_details(status: Optional[status_pb2.Status]) -> str:
    if status is None:
        return ""

    sections: list[str] = []
    for any_detail in status.details:
        sections.append(_format_detail(any_detail))
    return "\n\n".join(s for s in sections if s)


def _format_detail(any_detail) -> str:
    if any_detail.Is(error_details_pb2.BadRequest.DESCRIPTOR):
        d = error_details_pb2.BadRequest()
        any_detail.Unpack(d)
        if not d.field_violations:
            return ""
        lines = ["Field Violations:"]
        for fv in d.field_violations:
            line = f"  {fv.field}: {fv.description}"
            if fv.reason:
                line += f" (reason: {fv.reason})"
            lines.append(line)
        return "\n".join(lines)

    if any_detail.Is(error_details_pb2.DebugInfo.DESCRIPTOR):
        d = error_details_pb2.DebugInfo()
        any_detail.Unpack(d)
        lines = ["Debug Info:"]
        if d.detail:
            lines.append("  " + d.detail)
        lines.extend("  " + entry for entry in d.stack_entries)
        return "\n".join(lines)

    if any_detail.Is(error_details_pb2.ErrorInfo.DESCRIPTOR):
        d = error_details_pb2.ErrorInfo()
        any_detail.Unpack(d)
        lines = [f"Error Info: {d.reason}"]
        if d.domain:
            lines.append(f"  Domain: {d.domain}")
        for k in sorted(d.metadata):
            lines.append(f"  {k}: {d.metadata[k]}")
        return "\n".join(lines)

    if any_detail.Is(error_details_pb2.RetryInfo.DESCRIPTOR):
        d = error_details_pb2.RetryInfo()
        any_detail.Unpack(d)
        if not d.HasField("retry_delay"):
            return ""
        return f"Retry after: {d.retry_delay.ToTimedelta()}"

    if any_detail.Is(error_details_pb2.PreconditionFailure.DESCRIPTOR):
        d = error_details_pb2.PreconditionFailure()
        any_detail.Unpack(d)
        if not d.violations:
            return ""
        lines = ["Precondition Failures:"]
        lines.extend(f"  [{v.type}] {v.subject}: {v.description}" for v in d.violations)
        return "\n".join(lines)

    if any_detail.Is(error_details_pb2.QuotaFailure.DESCRIPTOR):
        d = error_details_pb2.QuotaFailure()
        any_detail.Unpack(d)
        if not d.violations:
            return ""
        lines = ["Quota Failures:"]
        lines.extend(f"  {v.subject}: {v.description}" for v in d.violations)
        return "\n".join(lines)

    if any_detail.Is(error_details_pb2.RequestInfo.DESCRIPTOR):
        d = error_details_pb2.RequestInfo()
        any_detail.Unpack(d)
        return f"Request ID: {d.request_id}"

    if any_detail.Is(error_details_pb2.ResourceInfo.DESCRIPTOR):
        d = error_details_pb2.ResourceInfo()
        any_detail.Unpack(d)
        return f"Resource: {d.resource_type}/{d.resource_name} ({d.description})"

    if any_detail.Is(error_details_pb2.Help.DESCRIPTOR):
        d = error_details_pb2.Help()
        any_detail.Unpack(d)
        if not d.links:
            return ""
        lines = ["Help:"]
        lines.extend(f"  {link.description}: {link.url}" for link in d.links)
        return "\n".join(lines)

    return f"Detail: {any_detail.type_url}"
