"""
grpcdeck/errors.py

Exception hierarchy shared by every layer. Each exception carries an
ErrorKind so the classifier can map it without isinstance ladders.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Optional, Sequence, Tuple

import grpc


class ErrorKind(Enum):
    VALIDATION             = "validation"
    TRANSPORT              = "transport"
    REFLECTION_UNAVAILABLE = "reflection_unavailable"
    INVALID_DESCRIPTOR     = "invalid_descriptor"
    CODEC_PARSE            = "codec_parse"
    CODEC_TYPE             = "codec_type"
    CODEC_RANGE            = "codec_range"
    REMOTE_STATUS          = "remote_status"
    DEADLINE_EXCEEDED      = "deadline_exceeded"
    CANCELLED              = "cancelled"
    STORAGE_IO             = "storage_io"
    SEND_AFTER_CANCEL      = "send_after_cancel"
    STREAM_STATE           = "stream_state"


class GrpcDeckError(Exception):
    kind = ErrorKind.TRANSPORT

    def __init__(
        self,
        message: str,
        path: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.path    = path
        self.cause   = cause

    def __str__(self) -> str:
        if self.path:
            return f"{self.path}: {self.message}"
        return self.message


class ValidationError(GrpcDeckError):
    kind = ErrorKind.VALIDATION


class TransportError(GrpcDeckError):
    kind = ErrorKind.TRANSPORT


class ReflectionUnavailable(GrpcDeckError):
    kind = ErrorKind.REFLECTION_UNAVAILABLE


class InvalidDescriptor(GrpcDeckError):
    kind = ErrorKind.INVALID_DESCRIPTOR


class CodecError(GrpcDeckError):
    kind = ErrorKind.CODEC_TYPE


class CodecParseError(CodecError):
    kind = ErrorKind.CODEC_PARSE


class CodecTypeError(CodecError):
    kind = ErrorKind.CODEC_TYPE


class CodecRangeError(CodecError):
    kind = ErrorKind.CODEC_RANGE


class DeadlineExceeded(GrpcDeckError):
    kind = ErrorKind.DEADLINE_EXCEEDED


class Cancelled(GrpcDeckError):
    kind = ErrorKind.CANCELLED


class StorageIOError(GrpcDeckError):
    kind = ErrorKind.STORAGE_IO


class SendAfterCancel(GrpcDeckError):
    kind = ErrorKind.SEND_AFTER_CANCEL


class StreamStateError(GrpcDeckError):
    kind = ErrorKind.STREAM_STATE


class WorkspaceExistsError(ValidationError):
    """Saving would overwrite a workspace and overwrite was not requested."""


class RemoteStatusError(GrpcDeckError):
    """Non-OK status from the peer. Code and details are kept verbatim."""

    kind = ErrorKind.REMOTE_STATUS

    def __init__(
        self,
        code: grpc.StatusCode,
        details: str,
        trailers: Sequence[Tuple[str, Any]] = (),
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(f"{code.name}: {details}", cause=cause)
        self.code     = code
        self.details  = details
        self.trailers = tuple(trailers)


def from_rpc_error(exc: grpc.RpcError, cancelled: bool = False) -> GrpcDeckError:
    """Map a grpc.RpcError (which is also a grpc.Call) onto the taxonomy."""
    code     = exc.code() if hasattr(exc, "code") else grpc.StatusCode.UNKNOWN
    details  = (exc.details() if hasattr(exc, "details") else None) or ""
    trailers = ()
    if hasattr(exc, "trailing_metadata"):
        trailers = exc.trailing_metadata() or ()

    if cancelled or code == grpc.StatusCode.CANCELLED:
        return Cancelled(details or "call cancelled", cause=exc)
    if code == grpc.StatusCode.DEADLINE_EXCEEDED:
        return DeadlineExceeded(details or "deadline exceeded", cause=exc)
    if code == grpc.StatusCode.UNAVAILABLE and not trailers:
        return TransportError(details or "server unavailable", cause=exc)
    return RemoteStatusError(code, details, trailers, cause=exc)
