"""
grpcdeck/codec.py

JSON text ⇄ wire bytes, driven by descriptors fetched at runtime.

Encoding walks the JSON tree field by field against the schema model,
coercing scalars with range checks and building a dynamic protobuf
message. Decoding walks the message in descriptor order and emits only
populated fields. Errors carry the path of the offending field, e.g.
`items[2].price`.
"""
from __future__ import annotations

import base64
import binascii
import json
import logging
import math
import re
import struct
from typing import Any, Optional

from google.protobuf import json_format
from google.protobuf import (
    duration_pb2, empty_pb2, field_mask_pb2, struct_pb2, timestamp_pb2, wrappers_pb2,
)
from google.protobuf.message import DecodeError

from grpcdeck.errors import CodecParseError, CodecRangeError, CodecTypeError
from grpcdeck.schema import (
    Cardinality, FieldDescriptor, FieldKind, MessageDescriptor, SchemaCache,
)

log = logging.getLogger(__name__)

INT32_MIN,  INT32_MAX  = -(1 << 31), (1 << 31) - 1
UINT32_MAX             = (1 << 32) - 1
INT64_MIN,  INT64_MAX  = -(1 << 63), (1 << 63) - 1
UINT64_MAX             = (1 << 64) - 1

_INT_RANGES = {
    FieldKind.INT32:    (INT32_MIN, INT32_MAX),
    FieldKind.SINT32:   (INT32_MIN, INT32_MAX),
    FieldKind.SFIXED32: (INT32_MIN, INT32_MAX),
    FieldKind.UINT32:   (0, UINT32_MAX),
    FieldKind.FIXED32:  (0, UINT32_MAX),
    FieldKind.INT64:    (INT64_MIN, INT64_MAX),
    FieldKind.SINT64:   (INT64_MIN, INT64_MAX),
    FieldKind.SFIXED64: (INT64_MIN, INT64_MAX),
    FieldKind.UINT64:   (0, UINT64_MAX),
    FieldKind.FIXED64:  (0, UINT64_MAX),
}

_64_BIT = {
    FieldKind.INT64, FieldKind.SINT64, FieldKind.SFIXED64,
    FieldKind.UINT64, FieldKind.FIXED64,
}

_ZERO = {
    FieldKind.BOOL:   False,
    FieldKind.STRING: "",
    FieldKind.BYTES:  b"",
}

# Well-known types with a canonical JSON form. Values are converted through
# the generated class and copied across as wire bytes.
_WELL_KNOWN = {
    "google.protobuf.Timestamp":   timestamp_pb2.Timestamp,
    "google.protobuf.Duration":    duration_pb2.Duration,
    "google.protobuf.FieldMask":   field_mask_pb2.FieldMask,
    "google.protobuf.Struct":      struct_pb2.Struct,
    "google.protobuf.Value":       struct_pb2.Value,
    "google.protobuf.ListValue":   struct_pb2.ListValue,
    "google.protobuf.Empty":       empty_pb2.Empty,
    "google.protobuf.DoubleValue": wrappers_pb2.DoubleValue,
    "google.protobuf.FloatValue":  wrappers_pb2.FloatValue,
    "google.protobuf.Int64Value":  wrappers_pb2.Int64Value,
    "google.protobuf.UInt64Value": wrappers_pb2.UInt64Value,
    "google.protobuf.Int32Value":  wrappers_pb2.Int32Value,
    "google.protobuf.UInt32Value": wrappers_pb2.UInt32Value,
    "google.protobuf.BoolValue":   wrappers_pb2.BoolValue,
    "google.protobuf.StringValue": wrappers_pb2.StringValue,
    "google.protobuf.BytesValue":  wrappers_pb2.BytesValue,
}

_DURATION_RE = re.compile(r"^\s*(-?\d+(?:\.\d+)?)\s*(ns|us|µs|ms|s|m|h)\s*$")
_DURATION_UNITS = {
    "ns": 1, "us": 1_000, "µs": 1_000, "ms": 1_000_000,
    "s": 1_000_000_000, "m": 60_000_000_000, "h": 3_600_000_000_000,
}


def _join(path: str, name: str) -> str:
    return f"{path}.{name}" if path else name


class Codec:

    def __init__(self, schema: SchemaCache, allow_raw_bytes: bool = False) -> None:
        self._schema          = schema
        self._allow_raw_bytes = allow_raw_bytes

    # ──────────────────────────────────────────────────────────────────────
    # Text → wire
    # ──────────────────────────────────────────────────────────────────────

    def encode(self, text: str, type_name: str) -> bytes:
        return self.from_text(text, type_name).SerializeToString()

    def from_text(self, text: str, type_name: str):
        if not text or not text.strip():
            obj: Any = {}
        else:
            try:
                obj = json.loads(text)
            except json.JSONDecodeError as exc:
                raise CodecParseError(
                    f"invalid JSON: {exc.msg} (line {exc.lineno}, column {exc.colno})",
                    cause=exc,
                ) from exc
        return self.from_dict(obj, type_name)

    def from_dict(self, obj: Any, type_name: str):
        msg = self._schema.message_class(type_name)()
        self._fill(msg, obj, "")
        return msg

    def _fill(self, msg, obj: Any, path: str) -> None:
        full_name = msg.DESCRIPTOR.full_name
        if full_name in _WELL_KNOWN:
            self._fill_well_known(msg, obj, path)
            return
        if not isinstance(obj, dict):
            raise CodecTypeError(
                f"expected an object for {full_name}, got {_type_word(obj)}", path=path or "$",
            )

        mdesc     = self._schema.resolve_message(full_name)
        set_oneof: dict[str, str] = {}
        for key, value in obj.items():
            fpath = _join(path, key)
            field = mdesc.field(key)
            if field is None:
                raise CodecTypeError(f"unknown field {key!r} in {full_name}", path=fpath)
            if value is None and field.type_name != "google.protobuf.Value":
                continue
            if field.oneof:
                previous = set_oneof.get(field.oneof)
                if previous and previous != field.name:
                    log.debug("oneof %s: %s replaces %s", field.oneof, field.name, previous)
                set_oneof[field.oneof] = field.name
            self._set_field(msg, field, value, fpath)

    def _set_field(self, msg, field: FieldDescriptor, value: Any, path: str) -> None:
        if field.cardinality == Cardinality.MAP:
            if not isinstance(value, dict):
                raise CodecTypeError(f"expected an object, got {_type_word(value)}", path=path)
            container = getattr(msg, field.name)
            for raw_key, item in value.items():
                ipath = f"{path}[{raw_key}]"
                key   = self._coerce_key(field.map_key, raw_key, ipath)
                vdesc = field.map_value
                if vdesc.kind == FieldKind.MESSAGE:
                    self._fill(container[key], item, ipath)
                else:
                    container[key] = self._coerce(vdesc, item, ipath)
            return

        if field.cardinality == Cardinality.REPEATED:
            if not isinstance(value, list):
                raise CodecTypeError(f"expected an array, got {_type_word(value)}", path=path)
            container = getattr(msg, field.name)
            for i, item in enumerate(value):
                ipath = f"{path}[{i}]"
                if field.kind == FieldKind.MESSAGE:
                    self._fill(container.add(), item, ipath)
                else:
                    container.append(self._coerce(field, item, ipath))
            return

        if field.kind == FieldKind.MESSAGE:
            sub = getattr(msg, field.name)
            sub.SetInParent()
            self._fill(sub, value, path)
            return

        setattr(msg, field.name, self._coerce(field, value, path))

    def _fill_well_known(self, msg, obj: Any, path: str) -> None:
        full_name = msg.DESCRIPTOR.full_name
        canonical = _WELL_KNOWN[full_name]()
        if full_name == "google.protobuf.Duration" and isinstance(obj, str):
            seconds, nanos = _parse_duration(obj, path)
            canonical.seconds, canonical.nanos = seconds, nanos
        else:
            try:
                json_format.ParseDict(obj, canonical)
            except json_format.ParseError as exc:
                raise CodecTypeError(f"invalid {full_name}: {exc}", path=path or "$", cause=exc) from exc
        msg.MergeFromString(canonical.SerializeToString())
        msg.SetInParent()

    # ── Scalars ──────────────────────────────────────────────────────────────

    def _coerce(self, field: FieldDescriptor, value: Any, path: str) -> Any:
        kind = field.kind

        if kind == FieldKind.BOOL:
            if isinstance(value, bool):
                return value
            raise CodecTypeError(f"expected a boolean, got {_type_word(value)}", path=path)

        if kind in _INT_RANGES:
            return _to_int(value, kind, path)

        if kind in (FieldKind.FLOAT, FieldKind.DOUBLE):
            number = _to_float(value, path)
            if kind == FieldKind.FLOAT and not _fits_float32(number):
                raise CodecRangeError(f"{value!r} overflows float", path=path)
            return number

        if kind == FieldKind.STRING:
            if isinstance(value, str):
                return value
            raise CodecTypeError(f"expected a string, got {_type_word(value)}", path=path)

        if kind == FieldKind.BYTES:
            if not isinstance(value, str):
                raise CodecTypeError(f"expected base64 text, got {_type_word(value)}", path=path)
            try:
                return base64.b64decode(value, validate=True)
            except (binascii.Error, ValueError) as exc:
                if self._allow_raw_bytes:
                    return value.encode("utf-8")
                raise CodecTypeError("bytes must be standard base64", path=path, cause=exc) from exc

        if kind == FieldKind.ENUM:
            enum = self._schema.resolve_enum(field.type_name)
            if isinstance(value, str):
                ev = enum.by_name(value)
                if ev is None:
                    raise CodecTypeError(
                        f"{value!r} is not a value of {enum.full_name}", path=path,
                    )
                return ev.number
            return _to_int(value, FieldKind.INT32, path)

        raise CodecTypeError(f"cannot assign a scalar to {kind.value}", path=path)

    def _coerce_key(self, key: FieldDescriptor, raw: str, path: str) -> Any:
        if key.kind == FieldKind.STRING:
            return raw
        if key.kind == FieldKind.BOOL:
            if raw in ("true", "false"):
                return raw == "true"
            raise CodecTypeError(f"map key {raw!r} is not a boolean", path=path)
        return _to_int(raw, key.kind, path)

    # ──────────────────────────────────────────────────────────────────────
    # Wire → text
    # ──────────────────────────────────────────────────────────────────────

    def decode(self, data: bytes, type_name: str) -> str:
        return self.to_text(self.parse(data, type_name))

    def parse(self, data: bytes, type_name: str):
        msg = self._schema.message_class(type_name)()
        try:
            msg.ParseFromString(data)
        except DecodeError as exc:
            raise CodecParseError(f"malformed {type_name} message: {exc}", cause=exc) from exc
        return msg

    def to_text(self, msg) -> str:
        return json.dumps(self.to_dict(msg), indent=2, ensure_ascii=False)

    def to_dict(self, msg) -> Any:
        full_name = msg.DESCRIPTOR.full_name
        if full_name in _WELL_KNOWN:
            canonical = _WELL_KNOWN[full_name]()
            canonical.ParseFromString(msg.SerializeToString())
            try:
                return json_format.MessageToDict(canonical)
            except (ValueError, json_format.Error) as exc:
                # Out-of-range timestamps and the like: show the raw fields.
                log.debug("no canonical form for %s: %s", full_name, exc)

        mdesc = self._schema.resolve_message(full_name)
        return self._message_out(msg, mdesc)

    def _message_out(self, msg, mdesc: MessageDescriptor) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for field in mdesc.fields:
            value = getattr(msg, field.name)

            if field.cardinality == Cardinality.MAP:
                if len(value):
                    out[field.name] = {
                        _key_text(k): self._value_out(field.map_value, value[k])
                        for k in sorted(value.keys())
                    }
            elif field.cardinality == Cardinality.REPEATED:
                if len(value):
                    out[field.name] = [self._value_out(field, v) for v in value]
            elif field.tracks_presence:
                if msg.HasField(field.name):
                    out[field.name] = self._value_out(field, value)
            elif value != _ZERO.get(field.kind, 0):
                out[field.name] = self._value_out(field, value)
        return out

    def _value_out(self, field: FieldDescriptor, value: Any) -> Any:
        kind = field.kind
        if kind == FieldKind.MESSAGE:
            return self.to_dict(value)
        if kind == FieldKind.ENUM:
            ev = self._schema.resolve_enum(field.type_name).by_number(value)
            return ev.name if ev is not None else value
        if kind == FieldKind.BYTES:
            return base64.b64encode(value).decode("ascii")
        if kind in _64_BIT:
            return str(value)
        if kind == FieldKind.FLOAT:
            return _float_out(_shortest_float32(value))
        if kind == FieldKind.DOUBLE:
            return _float_out(value)
        return value


# ──────────────────────────────────────────────────────────────────────────────
# Helpers
# ──────────────────────────────────────────────────────────────────────────────

def _type_word(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def _to_int(value: Any, kind: FieldKind, path: str) -> int:
    if isinstance(value, bool):
        raise CodecTypeError("expected an integer, got boolean", path=path)
    if isinstance(value, int):
        number = value
    elif isinstance(value, float):
        if not value.is_integer():
            raise CodecTypeError(f"{value!r} is not an integer", path=path)
        number = int(value)
    elif isinstance(value, str):
        try:
            number = int(value.strip(), 10)
        except ValueError:
            try:
                as_float = float(value)
            except ValueError:
                raise CodecTypeError(f"{value!r} is not an integer", path=path) from None
            if not as_float.is_integer():
                raise CodecTypeError(f"{value!r} is not an integer", path=path)
            number = int(as_float)
    else:
        raise CodecTypeError(f"expected an integer, got {_type_word(value)}", path=path)

    lo, hi = _INT_RANGES[kind]
    if not lo <= number <= hi:
        raise CodecRangeError(f"{number} out of range for {kind.value}", path=path)
    return number


def _to_float(value: Any, path: str) -> float:
    if isinstance(value, bool):
        raise CodecTypeError("expected a number, got boolean", path=path)
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        special = {"NaN": math.nan, "Infinity": math.inf, "-Infinity": -math.inf}
        if value in special:
            return special[value]
        try:
            return float(value)
        except ValueError:
            pass
    raise CodecTypeError(f"expected a number, got {_type_word(value)}", path=path)


def _float_out(value: float) -> Any:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "Infinity" if value > 0 else "-Infinity"
    return value


def _fits_float32(value: float) -> bool:
    """False when a finite value rounds to infinity as a float32."""
    try:
        struct.pack("<f", value)
    except OverflowError:
        return False
    return True


def _shortest_float32(value: float) -> float:
    """Shortest decimal that maps back to the same float32."""
    if not math.isfinite(value):
        return value
    for precision in range(6, 10):
        candidate = float(f"{value:.{precision}g}")
        try:
            if struct.unpack("<f", struct.pack("<f", candidate))[0] == value:
                return candidate
        except OverflowError:
            continue
    return value


def _key_text(key: Any) -> str:
    if isinstance(key, bool):
        return "true" if key else "false"
    return str(key)


def _parse_duration(text: str, path: str) -> tuple[int, int]:
    m = _DURATION_RE.match(text)
    if m is None:
        raise CodecTypeError(f"invalid duration {text!r}", path=path or "$")
    number, unit = m.group(1), m.group(2)
    negative = number.startswith("-")
    whole, _, frac = number.lstrip("-").partition(".")
    scale = _DURATION_UNITS[unit]
    nanos_total = int(whole) * scale
    if frac:
        nanos_total += int(frac) * scale // (10 ** len(frac))
    seconds, nanos = divmod(nanos_total, 1_000_000_000)
    if negative:
        seconds, nanos = -seconds, -nanos
    if abs(seconds) > 315_576_000_000:
        raise CodecRangeError(f"duration {text!r} out of range", path=path or "$")
    return seconds, nanos
