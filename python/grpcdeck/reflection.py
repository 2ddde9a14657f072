"""
grpcdeck/reflection.py

Server-reflection wire client and descriptor loading.

ReflectionClient speaks the reflection protocol (one short stream per
request). DescriptorLoader turns the FileDescriptorProtos it returns into
files in a private DescriptorPool, either strictly (dependencies first,
no edits) or leniently (fetch what is missing, repair known server
quirks, build whatever can be built).
"""
from __future__ import annotations

import logging
from typing import Iterable, Optional

import grpc
from grpc_reflection.v1alpha import reflection_pb2
from google.protobuf import descriptor_pool as _dp
from google.protobuf.descriptor_pb2 import (
    DescriptorProto, FieldDescriptorProto, FileDescriptorProto,
)

# Registers the well-known types in the default pool so they can stand in
# for files the server omits or ships in non-canonical form.
from google.protobuf import (  # noqa: F401
    any_pb2, api_pb2, descriptor_pb2, duration_pb2, empty_pb2, field_mask_pb2,
    source_context_pb2, struct_pb2, timestamp_pb2, type_pb2, wrappers_pb2,
)

from grpcdeck.errors import (
    GrpcDeckError, InvalidDescriptor, ReflectionUnavailable, from_rpc_error,
)

log = logging.getLogger(__name__)

REFLECTION_SERVICES = frozenset({
    "grpc.reflection.v1alpha.ServerReflection",
    "grpc.reflection.v1.ServerReflection",
})

# (version, method path), in the order they are tried.
REFLECTION_METHODS = (
    ("v1",      "/grpc.reflection.v1.ServerReflection/ServerReflectionInfo"),
    ("v1alpha", "/grpc.reflection.v1alpha.ServerReflection/ServerReflectionInfo"),
)

WELL_KNOWN_PREFIX = "google/protobuf/"

DEFAULT_REFLECTION_TIMEOUT = 10.0

_BUILD_ERRORS = (TypeError, KeyError, ValueError)


# ──────────────────────────────────────────────────────────────────────────────
# Wire client
# ──────────────────────────────────────────────────────────────────────────────

class ReflectionClient:
    """
    Client for grpc.reflection ServerReflection.

    The v1 service is tried first and v1alpha second; the two share one
    message layout. Whichever answers is remembered in `version` and used
    first from then on.
    """

    def __init__(
        self,
        channel: grpc.Channel,
        timeout: Optional[float] = DEFAULT_REFLECTION_TIMEOUT,
        metadata: Iterable[tuple[str, str]] = (),
    ) -> None:
        self._calls = {
            version: channel.stream_stream(
                path,
                request_serializer=reflection_pb2.ServerReflectionRequest.SerializeToString,
                response_deserializer=reflection_pb2.ServerReflectionResponse.FromString,
            )
            for version, path in REFLECTION_METHODS
        }
        self._timeout  = timeout
        self._metadata = list(metadata)
        self.version: Optional[str] = None

    def list_services(self) -> list[str]:
        request = reflection_pb2.ServerReflectionRequest(list_services="")
        services: list[str] = []
        for response in self._exchange(request):
            if response.HasField("list_services_response"):
                services.extend(s.name for s in response.list_services_response.service)
        log.debug("reflection listed %d services", len(services))
        return services

    def file_containing_symbol(self, symbol: str) -> list[FileDescriptorProto]:
        log.debug("reflection: file containing %s", symbol)
        request = reflection_pb2.ServerReflectionRequest(file_containing_symbol=symbol)
        return self._files(request, symbol)

    def file_by_filename(self, filename: str) -> list[FileDescriptorProto]:
        log.debug("reflection: file by name %s", filename)
        request = reflection_pb2.ServerReflectionRequest(file_by_filename=filename)
        return self._files(request, filename)

    def _files(self, request, subject: str) -> list[FileDescriptorProto]:
        fds: list[FileDescriptorProto] = []
        for response in self._exchange(request):
            if response.HasField("file_descriptor_response"):
                for proto_bytes in response.file_descriptor_response.file_descriptor_proto:
                    fd = FileDescriptorProto()
                    fd.ParseFromString(proto_bytes)
                    fds.append(fd)
        if not fds:
            raise InvalidDescriptor(f"no file descriptor returned for {subject}")
        return fds

    def _exchange(self, request) -> list:
        order = [v for v, _ in REFLECTION_METHODS]
        if self.version is not None:
            order.remove(self.version)
            order.insert(0, self.version)

        unimplemented: Optional[grpc.RpcError] = None
        for version in order:
            try:
                responses = list(self._calls[version](
                    iter([request]), timeout=self._timeout, metadata=self._metadata,
                ))
            except grpc.RpcError as exc:
                if exc.code() == grpc.StatusCode.UNIMPLEMENTED:
                    log.debug("reflection %s not implemented by server", version)
                    unimplemented = exc
                    continue
                raise from_rpc_error(exc) from exc
            if self.version != version:
                log.debug("using reflection %s", version)
                self.version = version
            break
        else:
            raise ReflectionUnavailable(
                "server does not implement the reflection service", cause=unimplemented,
            ) from unimplemented

        for response in responses:
            if response.HasField("error_response"):
                err = response.error_response
                raise InvalidDescriptor(
                    f"reflection error {err.error_code}: {err.error_message}"
                )
        return responses


# ──────────────────────────────────────────────────────────────────────────────
# Descriptor repairs
# ──────────────────────────────────────────────────────────────────────────────

def map_entry_name(field_name: str) -> str:
    """'foo_bar' → 'FooBarEntry', the name protoc gives a map's entry type."""
    out: list[str] = []
    upper_next = True
    for c in field_name:
        if c == "_":
            upper_next = True
            continue
        out.append(c.upper() if upper_next else c)
        upper_next = False
    return "".join(out) + "Entry"


def fix_reserved_ranges(fd: FileDescriptorProto) -> bool:
    """Reserved ranges are [start, end); end <= start becomes start + 1."""
    fixed = False
    for msg in fd.message_type:
        fixed = _fix_reserved_in_message(msg) or fixed
    return fixed


def _fix_reserved_in_message(msg: DescriptorProto) -> bool:
    fixed = False
    for rng in msg.reserved_range:
        if rng.end <= rng.start:
            rng.end = rng.start + 1
            fixed = True
    for nested in msg.nested_type:
        fixed = _fix_reserved_in_message(nested) or fixed
    return fixed


def fix_map_entry_names(fd: FileDescriptorProto) -> bool:
    fixed = False
    for msg in fd.message_type:
        fqn = f"{fd.package}.{msg.name}" if fd.package else msg.name
        fixed = _fix_map_entries_in_message(msg, fqn) or fixed
    return fixed


def _fix_map_entries_in_message(msg: DescriptorProto, fqn: str) -> bool:
    fixed = False
    for nested in msg.nested_type:
        if nested.options.map_entry:
            continue
        fixed = _fix_map_entries_in_message(nested, f"{fqn}.{nested.name}") or fixed

    for field in msg.field:
        type_name = field.type_name
        if not type_name:
            continue
        for nested in msg.nested_type:
            if not nested.options.map_entry:
                continue
            entry   = nested.name
            abs_ref = f".{fqn}.{entry}"
            # Type names may be absolute or relative depending on the tooling.
            if type_name != abs_ref and type_name != entry and not abs_ref.endswith("." + type_name):
                continue
            expected = map_entry_name(field.name)
            if entry == expected:
                break
            nested.name = expected
            if type_name == abs_ref:
                field.type_name = f".{fqn}.{expected}"
            else:
                field.type_name = type_name[: -len(entry)] + expected
            fixed = True
            break
    return fixed


def collect_type_refs(fd: FileDescriptorProto) -> list[str]:
    refs: list[str] = []

    def _field(f: FieldDescriptorProto) -> None:
        if f.type_name:
            refs.append(f.type_name)
        if f.extendee:
            refs.append(f.extendee)

    def _message(m: DescriptorProto) -> None:
        for f in m.field:
            _field(f)
        for f in m.extension:
            _field(f)
        for nested in m.nested_type:
            _message(nested)

    for m in fd.message_type:
        _message(m)
    for f in fd.extension:
        _field(f)
    for svc in fd.service:
        for method in svc.method:
            if method.input_type:
                refs.append(method.input_type)
            if method.output_type:
                refs.append(method.output_type)
    return refs


def _find_type_file(pool, name: str) -> Optional[str]:
    for finder in (pool.FindMessageTypeByName, pool.FindEnumTypeByName):
        try:
            return finder(name).file.name
        except KeyError:
            continue
    return None


def resolve_type_file(name: str, package: str, pool) -> Optional[str]:
    """File that defines `name`, trying proto scoping from `package` outwards."""
    found = _find_type_file(pool, name)
    if found:
        return found
    pkg = package
    while pkg:
        found = _find_type_file(pool, f"{pkg}.{name}")
        if found:
            return found
        pkg = pkg.rpartition(".")[0]
    return None


def fix_missing_imports(fd: FileDescriptorProto, pool) -> bool:
    existing = set(fd.dependency)
    added    = False
    for ref in collect_type_refs(fd):
        name = ref.lstrip(".")
        if not name:
            continue
        path = resolve_type_file(name, fd.package, pool)
        if path is None or path == fd.name or path in existing:
            continue
        log.debug("adding missing import %s to %s (for %s)", path, fd.name, name)
        fd.dependency.append(path)
        existing.add(path)
        added = True
    return added


# ──────────────────────────────────────────────────────────────────────────────
# Loading into a pool
# ──────────────────────────────────────────────────────────────────────────────

class DescriptorLoader:
    """Fills a private DescriptorPool from reflection responses."""

    def __init__(self, source, pool: Optional[_dp.DescriptorPool] = None) -> None:
        self._source = source
        self.pool    = pool or _dp.DescriptorPool()

    # ── Queries ──────────────────────────────────────────────────────────────

    def has_file(self, name: str) -> bool:
        try:
            self.pool.FindFileByName(name)
            return True
        except KeyError:
            return False

    @staticmethod
    def well_known(name: str) -> Optional[FileDescriptorProto]:
        if not name.startswith(WELL_KNOWN_PREFIX):
            return None
        try:
            local = _dp.Default().FindFileByName(name)
        except KeyError:
            return None
        return FileDescriptorProto.FromString(local.serialized_pb)

    # ── Strict ───────────────────────────────────────────────────────────────

    def load_symbol(self, symbol: str) -> None:
        protos = self._source.file_containing_symbol(symbol)
        known  = {p.name: p for p in protos}
        for proto in protos:
            self._add_with_deps(proto, known, set())

    def _add_with_deps(
        self,
        proto: FileDescriptorProto,
        known: dict[str, FileDescriptorProto],
        visiting: set[str],
    ) -> None:
        if self.has_file(proto.name):
            return
        if proto.name in visiting:
            raise InvalidDescriptor(f"import cycle through {proto.name}")
        visiting.add(proto.name)

        for dep in proto.dependency:
            if self.has_file(dep):
                continue
            dep_proto = self.well_known(dep)
            if dep_proto is None:
                dep_proto = known.get(dep)
            if dep_proto is None:
                fetched = self._source.file_by_filename(dep)
                known.update((p.name, p) for p in fetched)
                dep_proto = known.get(dep, fetched[0])
            self._add_with_deps(dep_proto, known, visiting)

        # Server-shipped copies of well-known files lose to the local ones.
        local = self.well_known(proto.name)
        if local is not None:
            proto = local
        try:
            self._add(proto)
        except _BUILD_ERRORS as exc:
            raise InvalidDescriptor(f"cannot build {proto.name}: {exc}", cause=exc) from exc

    # ── Lenient ──────────────────────────────────────────────────────────────

    def load_symbol_lenient(self, symbol: str) -> None:
        protos: dict[str, FileDescriptorProto] = {}
        for proto in self._source.file_containing_symbol(symbol):
            protos.setdefault(proto.name, proto)

        pending = [dep for p in list(protos.values()) for dep in p.dependency]
        while pending:
            dep = pending.pop()
            if dep in protos or self.has_file(dep) or self.well_known(dep) is not None:
                continue
            try:
                fetched = self._source.file_by_filename(dep)
            except GrpcDeckError as exc:
                log.debug("could not fetch dependency %s: %s", dep, exc)
                continue
            for proto in fetched:
                if proto.name not in protos:
                    protos[proto.name] = proto
                    pending.extend(proto.dependency)

        built, stuck = self.build(list(protos.values()))
        if not built and not any(self.has_file(name) for name in protos):
            raise InvalidDescriptor(
                f"no files could be built for {symbol}: "
                + "; ".join(f"{k}: {v}" for k, v in stuck.items())
            )

    def build(
        self, protos: list[FileDescriptorProto],
    ) -> tuple[list[str], dict[str, str]]:
        """
        Build files in whatever order their dependencies allow, repairing
        them along the way. Returns (built file names, {stuck name: error}).
        """
        for fd in protos:
            if fix_map_entry_names(fd):
                log.debug("fixed malformed map entry names in %s", fd.name)
            if fix_reserved_ranges(fd):
                log.debug("fixed malformed reserved ranges in %s", fd.name)

        built: list[str] = []
        errors: dict[str, str] = {}
        remaining = list(protos)
        iteration = 0

        while remaining:
            iteration += 1
            progress = False
            next_round: list[FileDescriptorProto] = []

            for fd in remaining:
                if self.has_file(fd.name):
                    progress = True
                    continue
                self._add_well_known_deps(fd)
                try:
                    self._add(fd)
                except _BUILD_ERRORS as first:
                    errors[fd.name] = str(first)
                    if not fix_missing_imports(fd, self.pool):
                        next_round.append(fd)
                        continue
                    self._add_well_known_deps(fd)
                    try:
                        self._add(fd)
                    except _BUILD_ERRORS as retry:
                        log.debug("%s still failing after import fix: %s", fd.name, retry)
                        errors[fd.name] = str(retry)
                        next_round.append(fd)
                        continue
                errors.pop(fd.name, None)
                built.append(fd.name)
                progress = True
                log.debug("built %s (iteration %d)", fd.name, iteration)

            remaining = next_round
            if not progress:
                for fd in remaining:
                    log.warning("descriptor file %s could not be built: %s",
                                fd.name, errors.get(fd.name, "unresolved dependencies"))
                break

        return built, {fd.name: errors.get(fd.name, "") for fd in remaining}

    def _add_well_known_deps(self, fd: FileDescriptorProto) -> None:
        for dep in fd.dependency:
            if self.has_file(dep):
                continue
            wkt = self.well_known(dep)
            if wkt is not None:
                self._add_well_known_deps(wkt)
                self._add(wkt)

    def _add(self, fd: FileDescriptorProto) -> None:
        self.pool.AddSerializedFile(fd.SerializeToString())
