import grpc
import pytest
from google.protobuf import any_pb2
from google.rpc import code_pb2, error_details_pb2, status_pb2

from grpcdeck.classify import STATUS_DETAILS_KEY, Severity, classify, format_status_details
from grpcdeck.errors import (
    Cancelled,
    CodecTypeError,
    DeadlineExceeded,
    ErrorKind,
    InvalidDescriptor,
    ReflectionUnavailable,
    RemoteStatusError,
    SendAfterCancel,
    StorageIOError,
    TransportError,
    ValidationError,
    from_rpc_error,
)


class StatusError(grpc.RpcError):
    """RpcError carrying a code, details and trailers, like a failed call."""

    def __init__(self, code, details="", trailers=()):
        self._code     = code
        self._details  = details
        self._trailers = tuple(trailers)

    def code(self):
        return self._code

    def details(self):
        return self._details

    def trailing_metadata(self):
        return self._trailers


def _bad_request_trailers(message="bad count"):
    violation = error_details_pb2.BadRequest(field_violations=[
        error_details_pb2.BadRequest.FieldViolation(
            field="count", description="must be positive", reason="NEGATIVE",
        ),
    ])
    detail = any_pb2.Any()
    detail.Pack(violation)
    status = status_pb2.Status(code=code_pb2.INVALID_ARGUMENT, message=message, details=[detail])
    return ((STATUS_DETAILS_KEY, status.SerializeToString()),)


@pytest.mark.parametrize("code,title,severity", [
    (grpc.StatusCode.UNAVAILABLE, "Cannot Connect to Server", Severity.ERROR),
    (grpc.StatusCode.DEADLINE_EXCEEDED, "Request Timeout", Severity.ERROR),
    (grpc.StatusCode.UNAUTHENTICATED, "Authentication Required", Severity.ERROR),
    (grpc.StatusCode.PERMISSION_DENIED, "Access Denied", Severity.ERROR),
    (grpc.StatusCode.UNIMPLEMENTED, "Method Not Available", Severity.WARNING),
    (grpc.StatusCode.DATA_LOSS, "Data Loss", Severity.FATAL),
    (grpc.StatusCode.CANCELLED, "Request Cancelled", Severity.INFO),
    (grpc.StatusCode.UNKNOWN, "Unknown Error", Severity.ERROR),
])
def test_status_titles(code, title, severity):
    ui = classify(StatusError(code, "boom"))
    assert ui.title == title
    assert ui.severity == severity


def test_remote_status_keeps_code_in_details():
    ui = classify(RemoteStatusError(grpc.StatusCode.INTERNAL, "db down"))
    assert ui.kind == ErrorKind.REMOTE_STATUS
    assert ui.title == "Server Error"
    assert ui.details == "gRPC: INTERNAL - db down"
    assert "Retry" in ui.actions


def test_invalid_argument_details_are_bare_message():
    ui = classify(RemoteStatusError(grpc.StatusCode.INVALID_ARGUMENT, "name is required"))
    assert ui.title == "Invalid Request"
    assert ui.details == "name is required"


def test_rich_details_are_formatted():
    exc = from_rpc_error(StatusError(
        grpc.StatusCode.INVALID_ARGUMENT, "bad count", _bad_request_trailers(),
    ))
    ui = classify(exc)
    assert ui.title == "Invalid Request"
    assert ui.details.startswith("bad count\n\nField Violations:")
    assert "count: must be positive (reason: NEGATIVE)" in ui.details


def test_inconsistent_rich_details_are_ignored():
    # code in the trailer disagrees with the call status
    exc = from_rpc_error(StatusError(
        grpc.StatusCode.INTERNAL, "bad count", _bad_request_trailers(),
    ))
    assert classify(exc).details == "gRPC: INTERNAL - bad count"


def test_format_status_details_multiple_sections():
    info = any_pb2.Any()
    info.Pack(error_details_pb2.ErrorInfo(reason="QUOTA", domain="example.com",
                                          metadata={"b": "2", "a": "1"}))
    req = any_pb2.Any()
    req.Pack(error_details_pb2.RequestInfo(request_id="r-1"))
    text = format_status_details(status_pb2.Status(details=[info, req]))
    assert text == (
        "Error Info: QUOTA\n  Domain: example.com\n  a: 1\n  b: 2\n\nRequest ID: r-1"
    )


def test_format_status_details_none():
    assert format_status_details(None) == ""


def test_unknown_detail_type_shows_type_url():
    other = any_pb2.Any(type_url="type.googleapis.com/acme.Thing", value=b"")
    assert format_status_details(status_pb2.Status(details=[other])) == (
        "Detail: type.googleapis.com/acme.Thing"
    )


@pytest.mark.parametrize("exc,kind,title", [
    (TransportError("refused"), ErrorKind.TRANSPORT, "Connection Failed"),
    (ReflectionUnavailable("nope"), ErrorKind.REFLECTION_UNAVAILABLE, "Reflection Not Available"),
    (InvalidDescriptor("bad"), ErrorKind.INVALID_DESCRIPTOR, "Invalid Descriptor"),
    (DeadlineExceeded("slow"), ErrorKind.DEADLINE_EXCEEDED, "Request Timeout"),
    (Cancelled("stop"), ErrorKind.CANCELLED, "Request Cancelled"),
    (SendAfterCancel("late"), ErrorKind.SEND_AFTER_CANCEL, "Request Cancelled"),
    (ValidationError("empty"), ErrorKind.VALIDATION, "Validation Error"),
    (StorageIOError("disk"), ErrorKind.STORAGE_IO, "Storage Error"),
])
def test_kind_mapping(exc, kind, title):
    ui = classify(exc)
    assert ui.kind == kind
    assert ui.title == title


def test_codec_error_message_has_path():
    ui = classify(CodecTypeError("expected string", path="tags[1]"))
    assert ui.title == "Invalid Request Body"
    assert ui.details == "tags[1]: expected string"


def test_transport_error_from_call_keeps_status():
    exc = from_rpc_error(StatusError(grpc.StatusCode.UNAVAILABLE, "connection refused"))
    assert isinstance(exc, TransportError)
    ui = classify(exc)
    assert ui.kind == ErrorKind.TRANSPORT
    assert ui.title == "Cannot Connect to Server"


def test_foreign_exception():
    ui = classify(RuntimeError("kaboom"))
    assert ui.kind is None
    assert ui.title == "Unexpected Error"
    assert ui.details == "kaboom"


# ── from_rpc_error ───────────────────────────────────────────────────────────

def test_from_rpc_error_cancelled_flag_wins():
    exc = from_rpc_error(StatusError(grpc.StatusCode.UNKNOWN, "x"), cancelled=True)
    assert isinstance(exc, Cancelled)


def test_from_rpc_error_deadline():
    assert isinstance(from_rpc_error(StatusError(grpc.StatusCode.DEADLINE_EXCEEDED)),
                      DeadlineExceeded)


def test_from_rpc_error_unavailable_with_trailers_is_remote():
    exc = from_rpc_error(StatusError(grpc.StatusCode.UNAVAILABLE, "drain", (("k", "v"),)))
    assert isinstance(exc, RemoteStatusError)
    assert exc.details == "drain"
    assert exc.trailers == (("k", "v"),)
