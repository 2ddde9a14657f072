import pytest
from google.protobuf import descriptor_pool, timestamp_pb2
from google.protobuf.descriptor_pb2 import DescriptorProto, FieldDescriptorProto, FileDescriptorProto

from grpcdeck.errors import InvalidDescriptor
from grpcdeck.reflection import (
    DescriptorLoader,
    collect_type_refs,
    fix_map_entry_names,
    fix_missing_imports,
    fix_reserved_ranges,
    map_entry_name,
)

F = FieldDescriptorProto


def _file(name, package="acme", deps=(), messages=()):
    fd = FileDescriptorProto(name=name, package=package, syntax="proto3")
    fd.dependency.extend(deps)
    for msg in messages:
        fd.message_type.add().CopyFrom(msg)
    return fd


def _message(name, *fields):
    msg = DescriptorProto(name=name)
    for number, (fname, ftype, type_name) in enumerate(fields, start=1):
        f = msg.field.add(name=fname, number=number, type=ftype, label=F.LABEL_OPTIONAL)
        if type_name:
            f.type_name = type_name
    return msg


class FakeSource:
    """Serves FileDescriptorProtos by symbol and by file name, counting fetches."""

    def __init__(self, by_symbol, by_name=None):
        self.by_symbol = by_symbol
        self.by_name   = by_name or {}
        self.fetched: list[str] = []

    def file_containing_symbol(self, symbol):
        try:
            return list(self.by_symbol[symbol])
        except KeyError:
            raise InvalidDescriptor(f"no file descriptor returned for {symbol}")

    def file_by_filename(self, filename):
        self.fetched.append(filename)
        try:
            return [self.by_name[filename]]
        except KeyError:
            raise InvalidDescriptor(f"no file descriptor returned for {filename}")


# ── repairs ──────────────────────────────────────────────────────────────────

@pytest.mark.parametrize("field,entry", [
    ("labels", "LabelsEntry"),
    ("foo_bar", "FooBarEntry"),
    ("a_b_c", "ABCEntry"),
])
def test_map_entry_name(field, entry):
    assert map_entry_name(field) == entry


def test_fix_reserved_ranges_nested():
    outer = DescriptorProto(name="Outer")
    outer.reserved_range.add(start=5, end=5)
    inner = outer.nested_type.add(name="Inner")
    inner.reserved_range.add(start=9, end=3)
    inner.reserved_range.add(start=1, end=4)
    fd = _file("a.proto", messages=[outer])

    assert fix_reserved_ranges(fd)
    msg = fd.message_type[0]
    assert (msg.reserved_range[0].start, msg.reserved_range[0].end) == (5, 6)
    assert [(r.start, r.end) for r in msg.nested_type[0].reserved_range] == [(9, 10), (1, 4)]
    assert not fix_reserved_ranges(fd)


def test_fix_map_entry_names_renames_entry_and_reference():
    msg   = _message("Thing", ("labels", F.TYPE_MESSAGE, ".acme.Thing.Wrong"))
    msg.field[0].label = F.LABEL_REPEATED
    entry = msg.nested_type.add(name="Wrong")
    entry.options.map_entry = True
    entry.field.add(name="key", number=1, type=F.TYPE_STRING, label=F.LABEL_OPTIONAL)
    entry.field.add(name="value", number=2, type=F.TYPE_STRING, label=F.LABEL_OPTIONAL)
    fd = _file("thing.proto", messages=[msg])

    assert fix_map_entry_names(fd)
    fixed = fd.message_type[0]
    assert fixed.nested_type[0].name == "LabelsEntry"
    assert fixed.field[0].type_name == ".acme.Thing.LabelsEntry"
    assert not fix_map_entry_names(fd)

    pool = descriptor_pool.DescriptorPool()
    pool.AddSerializedFile(fd.SerializeToString())
    assert pool.FindMessageTypeByName("acme.Thing").fields_by_name["labels"].message_type.GetOptions().map_entry


def test_collect_type_refs():
    fd  = _file("svc.proto", messages=[_message("Req", ("at", F.TYPE_MESSAGE, ".google.protobuf.Timestamp"))])
    svc = fd.service.add(name="Svc")
    svc.method.add(name="Do", input_type=".acme.Req", output_type=".acme.Req")
    assert collect_type_refs(fd) == [".google.protobuf.Timestamp", ".acme.Req", ".acme.Req"]


def test_fix_missing_imports_adds_defining_file():
    pool = descriptor_pool.DescriptorPool()
    pool.AddSerializedFile(timestamp_pb2.DESCRIPTOR.serialized_pb)
    fd = _file("svc.proto", messages=[_message("Req", ("at", F.TYPE_MESSAGE, ".google.protobuf.Timestamp"))])

    assert fix_missing_imports(fd, pool)
    assert list(fd.dependency) == ["google/protobuf/timestamp.proto"]
    assert not fix_missing_imports(fd, pool)


def test_fix_missing_imports_resolves_relative_names():
    base = _file("base.proto", package="acme.common", messages=[_message("Money", ("units", F.TYPE_INT64, ""))])
    pool = descriptor_pool.DescriptorPool()
    pool.AddSerializedFile(base.SerializeToString())
    fd = _file("order.proto", package="acme.common.orders",
               messages=[_message("Order", ("price", F.TYPE_MESSAGE, "Money"))])

    assert fix_missing_imports(fd, pool)
    assert list(fd.dependency) == ["base.proto"]


# ── loading ──────────────────────────────────────────────────────────────────

def _pair():
    a = _file("a.proto", messages=[_message("A", ("x", F.TYPE_STRING, ""))])
    b = _file("b.proto", deps=["a.proto"], messages=[_message("B", ("a", F.TYPE_MESSAGE, ".acme.A"))])
    return a, b


def test_build_handles_dependency_order():
    a, b   = _pair()
    loader = DescriptorLoader(source=None)
    built, stuck = loader.build([b, a])
    assert set(built) == {"a.proto", "b.proto"}
    assert stuck == {}
    assert loader.pool.FindMessageTypeByName("acme.B").fields_by_name["a"].message_type.full_name == "acme.A"


def test_build_reports_stuck_files():
    orphan = _file("orphan.proto", deps=["gone.proto"],
                   messages=[_message("O", ("g", F.TYPE_MESSAGE, ".acme.Gone"))])
    loader = DescriptorLoader(source=None)
    built, stuck = loader.build([orphan])
    assert built == []
    assert list(stuck) == ["orphan.proto"]


def test_build_pulls_in_well_known_dependencies():
    fd = _file("svc.proto", deps=["google/protobuf/timestamp.proto"],
               messages=[_message("Req", ("at", F.TYPE_MESSAGE, ".google.protobuf.Timestamp"))])
    loader = DescriptorLoader(source=None)
    built, _ = loader.build([fd])
    assert built == ["svc.proto"]
    assert loader.has_file("google/protobuf/timestamp.proto")


def test_well_known_lookup():
    assert DescriptorLoader.well_known("google/protobuf/timestamp.proto").package == "google.protobuf"
    assert DescriptorLoader.well_known("acme/timestamp.proto") is None
    assert DescriptorLoader.well_known("google/protobuf/nope.proto") is None


def test_load_symbol_fetches_missing_dependencies():
    a, b   = _pair()
    source = FakeSource({"acme.B": [b]}, {"a.proto": a})
    loader = DescriptorLoader(source)
    loader.load_symbol("acme.B")
    assert source.fetched == ["a.proto"]
    assert loader.has_file("a.proto") and loader.has_file("b.proto")

    loader.load_symbol("acme.B")
    assert source.fetched == ["a.proto"]


def test_load_symbol_uses_files_shipped_together():
    a, b   = _pair()
    source = FakeSource({"acme.B": [b, a]})
    loader = DescriptorLoader(source)
    loader.load_symbol("acme.B")
    assert source.fetched == []
    assert loader.has_file("b.proto")


def test_load_symbol_strict_fails_on_missing_dependency():
    _, b   = _pair()
    loader = DescriptorLoader(FakeSource({"acme.B": [b]}))
    with pytest.raises(InvalidDescriptor):
        loader.load_symbol("acme.B")


def test_load_symbol_lenient_builds_what_it_can():
    a, b   = _pair()
    b.dependency.append("missing.proto")
    b.dependency.remove("a.proto")
    source = FakeSource({"acme.B": [b, a]})
    loader = DescriptorLoader(source)
    loader.load_symbol_lenient("acme.B")
    assert source.fetched == ["missing.proto"]
    assert loader.has_file("a.proto")


def test_load_symbol_lenient_raises_when_nothing_builds():
    orphan = _file("orphan.proto", deps=["gone.proto"],
                   messages=[_message("O", ("g", F.TYPE_MESSAGE, ".acme.Gone"))])
    loader = DescriptorLoader(FakeSource({"acme.O": [orphan]}))
    with pytest.raises(InvalidDescriptor):
        loader.load_symbol_lenient("acme.O")
