"""
grpcdeck/schema.py

Descriptor model and the per-connection schema cache.

Messages refer to each other by fully-qualified name, never by ownership,
so cyclic graphs (TreeNode.left: TreeNode) are plain data. The cache
resolves names on demand against a private DescriptorPool filled over
reflection.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional

from google.protobuf import descriptor_pool as _dp
from google.protobuf import message_factory
from google.protobuf.descriptor import FieldDescriptor as _PbField

from grpcdeck.domain import StreamType
from grpcdeck.errors import GrpcDeckError, InvalidDescriptor, ReflectionUnavailable
from grpcdeck.reflection import REFLECTION_SERVICES, DescriptorLoader

log = logging.getLogger(__name__)


# ──────────────────────────────────────────────────────────────────────────────
# Model
# ──────────────────────────────────────────────────────────────────────────────

class FieldKind(Enum):
    BOOL     = "bool"
    INT32    = "int32"
    INT64    = "int64"
    UINT32   = "uint32"
    UINT64   = "uint64"
    SINT32   = "sint32"
    SINT64   = "sint64"
    FIXED32  = "fixed32"
    FIXED64  = "fixed64"
    SFIXED32 = "sfixed32"
    SFIXED64 = "sfixed64"
    FLOAT    = "float"
    DOUBLE   = "double"
    STRING   = "string"
    BYTES    = "bytes"
    ENUM     = "enum"
    MESSAGE  = "message"


_KIND_BY_PB_TYPE = {
    _PbField.TYPE_BOOL:     FieldKind.BOOL,
    _PbField.TYPE_INT32:    FieldKind.INT32,
    _PbField.TYPE_INT64:    FieldKind.INT64,
    _PbField.TYPE_UINT32:   FieldKind.UINT32,
    _PbField.TYPE_UINT64:   FieldKind.UINT64,
    _PbField.TYPE_SINT32:   FieldKind.SINT32,
    _PbField.TYPE_SINT64:   FieldKind.SINT64,
    _PbField.TYPE_FIXED32:  FieldKind.FIXED32,
    _PbField.TYPE_FIXED64:  FieldKind.FIXED64,
    _PbField.TYPE_SFIXED32: FieldKind.SFIXED32,
    _PbField.TYPE_SFIXED64: FieldKind.SFIXED64,
    _PbField.TYPE_FLOAT:    FieldKind.FLOAT,
    _PbField.TYPE_DOUBLE:   FieldKind.DOUBLE,
    _PbField.TYPE_STRING:   FieldKind.STRING,
    _PbField.TYPE_BYTES:    FieldKind.BYTES,
    _PbField.TYPE_ENUM:     FieldKind.ENUM,
    _PbField.TYPE_MESSAGE:  FieldKind.MESSAGE,
    _PbField.TYPE_GROUP:    FieldKind.MESSAGE,
}


class Cardinality(Enum):
    SINGULAR = "singular"
    OPTIONAL = "optional"     # singular scalar with explicit presence
    REPEATED = "repeated"
    MAP      = "map"


@dataclass(frozen=True)
class EnumValue:
    name:   str
    number: int


@dataclass(frozen=True)
class EnumDescriptor:
    full_name: str
    values:    tuple[EnumValue, ...]

    def by_name(self, name: str) -> Optional[EnumValue]:
        return next((v for v in self.values if v.name == name), None)

    def by_number(self, number: int) -> Optional[EnumValue]:
        return next((v for v in self.values if v.number == number), None)


@dataclass(frozen=True)
class FieldDescriptor:
    name:        str
    json_name:   str
    number:      int
    kind:        FieldKind
    cardinality: Cardinality
    type_name:   str = ""                       # message / enum full name
    oneof:       Optional[str] = None           # real oneofs only
    map_key:     Optional["FieldDescriptor"] = None
    map_value:   Optional["FieldDescriptor"] = None

    @property
    def tracks_presence(self) -> bool:
        return (
            self.cardinality == Cardinality.OPTIONAL
            or self.oneof is not None
            or (self.kind == FieldKind.MESSAGE and self.cardinality == Cardinality.SINGULAR)
        )

    def type_label(self) -> str:
        if self.cardinality == Cardinality.MAP and self.map_key and self.map_value:
            return f"map<{self.map_key.type_label()}, {self.map_value.type_label()}>"
        base = self.type_name if self.type_name else self.kind.value
        if self.cardinality == Cardinality.REPEATED:
            return f"repeated {base}"
        if self.cardinality == Cardinality.OPTIONAL:
            return f"optional {base}"
        return base


@dataclass(frozen=True)
class OneofDescriptor:
    name:   str
    fields: tuple[str, ...]


@dataclass(frozen=True)
class MessageDescriptor:
    full_name: str
    fields:    tuple[FieldDescriptor, ...]
    oneofs:    tuple[OneofDescriptor, ...] = ()

    @property
    def name(self) -> str:
        return self.full_name.rsplit(".", 1)[-1]

    def field(self, key: str) -> Optional[FieldDescriptor]:
        for f in self.fields:
            if f.name == key or f.json_name == key:
                return f
        return None


@dataclass(frozen=True)
class MethodDescriptor:
    name:             str
    full_name:        str          # pkg.Service.Method
    service:          str          # pkg.Service
    input_type:       str
    output_type:      str
    client_streaming: bool = False
    server_streaming: bool = False

    @property
    def path(self) -> str:
        return f"/{self.service}/{self.name}"

    @property
    def qualified(self) -> str:
        """'pkg.Service/Method', the form kept in history."""
        return f"{self.service}/{self.name}"

    @property
    def stream_type(self) -> StreamType:
        return StreamType.of(self.client_streaming, self.server_streaming)


@dataclass(frozen=True)
class ServiceDescriptor:
    name:         str
    full_name:    str
    methods:      tuple[MethodDescriptor, ...] = ()
    error:        str = ""
    display_name: str = ""

    def method(self, name: str) -> Optional[MethodDescriptor]:
        return next((m for m in self.methods if m.name == name), None)


@dataclass(frozen=True)
class ResolvedMethod:
    method: MethodDescriptor
    input:  MessageDescriptor
    output: MessageDescriptor


def split_method_path(path: str) -> tuple[str, str]:
    """'/pkg.Svc/Method', 'pkg.Svc/Method' or 'pkg.Svc.Method' → (service, method)."""
    path = path.lstrip("/")
    if "/" in path:
        parts = path.rsplit("/", 1)
    else:
        parts = path.rsplit(".", 1)
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise InvalidDescriptor(f"invalid method path: {path!r}")
    return parts[0], parts[1]


def display_names(full_names: list[str]) -> dict[str, str]:
    """
    Shortest unambiguous suffix per service.

    Names whose last segment is unique display as that segment; colliding
    names get preceding segments prepended until no other name ends with
    the candidate.
    """
    out: dict[str, str] = {}
    for full in full_names:
        segments = full.split(".")
        others   = [o for o in full_names if o != full]
        candidate = segments[-1]
        i = len(segments) - 1
        while i > 0 and any(o == candidate or o.endswith("." + candidate) for o in others):
            i -= 1
            candidate = f"{segments[i]}.{candidate}"
        out[full] = candidate
    return out


# ──────────────────────────────────────────────────────────────────────────────
# Cache
# ──────────────────────────────────────────────────────────────────────────────

class SchemaCache:
    """
    Lazily resolved schema for one connection.

    `source` is anything with list_services(), file_containing_symbol()
    and file_by_filename(); normally a ReflectionClient. Resolution is
    idempotent, so concurrent resolves may duplicate work but never
    disagree.
    """

    def __init__(self, source, pool: Optional[_dp.DescriptorPool] = None) -> None:
        self._source   = source
        self._loader   = DescriptorLoader(source, pool)
        self._lock     = threading.RLock()
        self._names:    Optional[list[str]] = None
        self._services: dict[str, ServiceDescriptor] = {}
        self._messages: dict[str, MessageDescriptor] = {}
        self._enums:    dict[str, EnumDescriptor] = {}
        self._classes:  dict[str, type] = {}

    @property
    def pool(self) -> _dp.DescriptorPool:
        return self._loader.pool

    # ── Services ─────────────────────────────────────────────────────────────

    def list_services(self) -> list[str]:
        with self._lock:
            if self._names is None:
                names = self._source.list_services()
                self._names = sorted(n for n in names if n not in REFLECTION_SERVICES)
            return list(self._names)

    def services(self) -> list[ServiceDescriptor]:
        """Every listed service, resolved, with display names filled in."""
        names   = self.list_services()
        labels  = display_names(names)
        return [replace(self.resolve_service(n), display_name=labels[n]) for n in names]

    def resolve_service(self, name: str) -> ServiceDescriptor:
        with self._lock:
            cached = self._services.get(name)
        if cached is not None:
            return cached

        service = self._load_service(name)
        with self._lock:
            self._services.setdefault(name, service)
            return self._services[name]

    def _load_service(self, name: str) -> ServiceDescriptor:
        simple = name.rsplit(".", 1)[-1]
        try:
            self._ensure_symbol(name)
            desc = self.pool.FindServiceByName(name)
        except ReflectionUnavailable:
            raise
        except (GrpcDeckError, KeyError) as exc:
            log.warning("service %s failed to resolve: %s", name, exc)
            return ServiceDescriptor(simple, name, (), error=str(exc), display_name=simple)

        methods = tuple(sorted(
            (
                MethodDescriptor(
                    name=m.name,
                    full_name=m.full_name,
                    service=desc.full_name,
                    input_type=m.input_type.full_name,
                    output_type=m.output_type.full_name,
                    client_streaming=bool(m.client_streaming),
                    server_streaming=bool(m.server_streaming),
                )
                for m in desc.methods
            ),
            key=lambda m: m.name,
        ))

        error = ""
        visited: set[str] = set()
        for m in methods:
            try:
                self._walk(m.input_type, visited)
                self._walk(m.output_type, visited)
            except InvalidDescriptor as exc:
                log.warning("service %s has unresolved types: %s", name, exc)
                error = str(exc)
                break
        return ServiceDescriptor(simple, name, methods, error=error, display_name=simple)

    def _ensure_symbol(self, symbol: str) -> None:
        """Standard load, then one lenient retry."""
        if self._has_symbol(symbol):
            return
        try:
            self._loader.load_symbol(symbol)
        except ReflectionUnavailable:
            raise
        except (GrpcDeckError, KeyError) as first:
            log.warning("standard resolution of %s failed, trying lenient: %s", symbol, first)
            try:
                self._loader.load_symbol_lenient(symbol)
            except GrpcDeckError as second:
                raise InvalidDescriptor(
                    f"{first}\n\nLenient: {second}", cause=second,
                ) from second
            if not self._has_symbol(symbol):
                raise InvalidDescriptor(f"{symbol} not found after lenient resolution") from first
            log.info("lenient resolution of %s succeeded", symbol)

    def _has_symbol(self, symbol: str) -> bool:
        for finder in (
            self.pool.FindServiceByName,
            self.pool.FindMessageTypeByName,
            self.pool.FindEnumTypeByName,
        ):
            try:
                finder(symbol)
                return True
            except KeyError:
                continue
        return False

    def _walk(self, type_name: str, visited: set[str]) -> None:
        """Resolve everything reachable from type_name; terminates on cycles."""
        if type_name in visited:
            return
        visited.add(type_name)
        msg = self.resolve_message(type_name)
        for f in msg.fields:
            target = f.map_value if f.cardinality == Cardinality.MAP and f.map_value else f
            if target.kind == FieldKind.MESSAGE:
                self._walk(target.type_name, visited)
            elif target.kind == FieldKind.ENUM:
                self.resolve_enum(target.type_name)

    # ── Methods ──────────────────────────────────────────────────────────────

    def resolve_method(self, service: str, method: str) -> ResolvedMethod:
        svc = self.resolve_service(service)
        if svc.error and not svc.methods:
            raise InvalidDescriptor(f"service {service} unavailable: {svc.error}")
        md = svc.method(method)
        if md is None:
            raise InvalidDescriptor(f"method {method} not found in service {service}")
        return ResolvedMethod(
            md, self.resolve_message(md.input_type), self.resolve_message(md.output_type),
        )

    def find_method(self, path: str) -> MethodDescriptor:
        service, method = split_method_path(path)
        return self.resolve_method(service, method).method

    # ── Messages / enums ─────────────────────────────────────────────────────

    def resolve_message(self, full_name: str) -> MessageDescriptor:
        full_name = full_name.lstrip(".")
        with self._lock:
            cached = self._messages.get(full_name)
        if cached is not None:
            return cached

        desc = self._find(self.pool.FindMessageTypeByName, full_name)
        msg  = _convert_message(desc)
        with self._lock:
            self._messages.setdefault(full_name, msg)
            return self._messages[full_name]

    def resolve_enum(self, full_name: str) -> EnumDescriptor:
        full_name = full_name.lstrip(".")
        with self._lock:
            cached = self._enums.get(full_name)
        if cached is not None:
            return cached

        desc = self._find(self.pool.FindEnumTypeByName, full_name)
        enum = EnumDescriptor(
            full_name, tuple(EnumValue(v.name, v.number) for v in desc.values),
        )
        with self._lock:
            self._enums.setdefault(full_name, enum)
            return self._enums[full_name]

    def message_class(self, full_name: str) -> type:
        """Dynamic protobuf class for a message type in this cache's pool."""
        full_name = full_name.lstrip(".")
        with self._lock:
            cls = self._classes.get(full_name)
        if cls is None:
            desc = self._find(self.pool.FindMessageTypeByName, full_name)
            cls  = message_factory.GetMessageClass(desc)
            with self._lock:
                self._classes.setdefault(full_name, cls)
        return cls

    def _find(self, finder, full_name: str):
        try:
            return finder(full_name)
        except KeyError:
            pass
        # Not loaded yet; ask the server for the file that defines it.
        try:
            self._ensure_symbol(full_name)
            return finder(full_name)
        except (GrpcDeckError, KeyError) as exc:
            raise InvalidDescriptor(f"cannot resolve type {full_name}: {exc}", cause=exc) from exc


def _convert_field(f) -> FieldDescriptor:
    kind      = _KIND_BY_PB_TYPE[f.type]
    type_name = ""
    if kind == FieldKind.MESSAGE:
        type_name = f.message_type.full_name
    elif kind == FieldKind.ENUM:
        type_name = f.enum_type.full_name

    if f.is_repeated:
        entry = f.message_type
        if entry is not None and entry.GetOptions().map_entry:
            return FieldDescriptor(
                name=f.name, json_name=f.json_name, number=f.number,
                kind=kind, cardinality=Cardinality.MAP, type_name=type_name,
                map_key=_convert_field(entry.fields_by_name["key"]),
                map_value=_convert_field(entry.fields_by_name["value"]),
            )
        return FieldDescriptor(
            f.name, f.json_name, f.number, kind, Cardinality.REPEATED, type_name,
        )

    oneof       = f.containing_oneof
    cardinality = Cardinality.SINGULAR
    oneof_name  = None
    if oneof is not None and len(oneof.fields) > 1:
        oneof_name = oneof.name
    elif kind != FieldKind.MESSAGE and (oneof is not None or f.has_presence):
        # Synthetic or single-member oneof, or proto2 optional.
        cardinality = Cardinality.OPTIONAL
    return FieldDescriptor(
        f.name, f.json_name, f.number, kind, cardinality, type_name, oneof_name,
    )


def _convert_message(desc) -> MessageDescriptor:
    fields = tuple(_convert_field(f) for f in desc.fields)
    oneofs = tuple(
        OneofDescriptor(o.name, tuple(f.name for f in o.fields))
        for o in desc.oneofs
        if len(o.fields) > 1
    )
    return MessageDescriptor(desc.full_name, fields, oneofs)
