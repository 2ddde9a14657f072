import pytest
from google.protobuf.descriptor import FieldDescriptor as PbField

from grpcdeck.domain import StreamType
from grpcdeck.errors import InvalidDescriptor
from grpcdeck.schema import (
    Cardinality,
    FieldKind,
    SchemaCache,
    _convert_field,
    display_names,
    split_method_path,
)

from conftest import GREETER, STREAMER, StaticSource


def test_display_names_unique_suffix():
    names = ["a.v1.UserService", "b.v1.UserService", "a.v1.Orders"]
    assert display_names(names) == {
        "a.v1.UserService": "a.v1.UserService",
        "b.v1.UserService": "b.v1.UserService",
        "a.v1.Orders": "Orders",
    }


def test_display_names_shortest_distinguishing_suffix():
    names = ["x.alpha.Svc", "x.beta.Svc"]
    assert display_names(names) == {"x.alpha.Svc": "alpha.Svc", "x.beta.Svc": "beta.Svc"}


@pytest.mark.parametrize("path", [
    "/helloworld.Greeter/SayHello",
    "helloworld.Greeter/SayHello",
    "helloworld.Greeter.SayHello",
])
def test_split_method_path(path):
    assert split_method_path(path) == ("helloworld.Greeter", "SayHello")


@pytest.mark.parametrize("path", ["", "Greeter", "/x/"])
def test_split_method_path_invalid(path):
    with pytest.raises(InvalidDescriptor):
        split_method_path(path)


def test_services_are_listed_and_resolved(schema):
    services = schema.services()
    assert [s.full_name for s in services] == ["demo.Streamer", "helloworld.Greeter"]
    assert all(not s.error for s in services)
    assert services[1].display_name == "Greeter"


def test_reflection_service_is_hidden(demo_pool):
    source = StaticSource([GREETER, "grpc.reflection.v1alpha.ServerReflection"])
    assert SchemaCache(source, pool=demo_pool).list_services() == [GREETER]


def test_method_shapes(schema):
    svc = schema.resolve_service(STREAMER)
    shapes = {m.name: m.stream_type for m in svc.methods}
    assert shapes == {
        "Count": StreamType.SERVER_STREAM,
        "Sum": StreamType.CLIENT_STREAM,
        "Echo": StreamType.BIDI_STREAM,
        "Fail": StreamType.UNARY,
        "Inspect": StreamType.UNARY,
    }
    assert svc.method("Count").path == "/demo.Streamer/Count"
    assert svc.method("Count").qualified == "demo.Streamer/Count"


def test_resolve_method(schema):
    resolved = schema.resolve_method(GREETER, "SayHello")
    assert resolved.input.full_name == "helloworld.HelloRequest"
    assert resolved.output.field("message").kind == FieldKind.STRING


def test_unknown_method(schema):
    with pytest.raises(InvalidDescriptor):
        schema.resolve_method(GREETER, "Nope")


def test_unknown_service_is_recorded_not_raised(demo_pool):
    cache = SchemaCache(StaticSource([GREETER, "demo.Missing"]), pool=demo_pool)
    by_name = {s.full_name: s for s in cache.services()}
    assert by_name["demo.Missing"].error
    assert by_name["demo.Missing"].methods == ()
    assert not by_name[GREETER].error


def test_field_model(schema):
    msg = schema.resolve_message("demo.Everything")
    assert msg.field("ttl").cardinality == Cardinality.OPTIONAL
    assert msg.field("ttl").oneof is None
    assert msg.field("name").oneof == "choice"
    assert msg.field("tags").cardinality == Cardinality.REPEATED
    counts = msg.field("counts")
    assert counts.cardinality == Cardinality.MAP
    assert counts.type_label() == "map<string, int64>"
    assert msg.field("color").type_name == "demo.Color"
    assert [o.name for o in msg.oneofs] == ["choice"]


def test_cyclic_messages_are_name_references(schema):
    tree = schema.resolve_message("demo.TreeNode")
    assert tree.field("left").type_name == "demo.TreeNode"
    assert schema.resolve_message(".demo.TreeNode") is tree


def test_enum(schema):
    enum = schema.resolve_enum("demo.Color")
    assert enum.by_name("RED").number == 1
    assert enum.by_number(2).name == "GREEN"
    assert enum.by_number(99) is None


def test_unresolvable_type(schema):
    with pytest.raises(InvalidDescriptor):
        schema.resolve_message("demo.Nope")


class _BareField:
    """Field descriptor exposing only the accessors current protobuf keeps (no `label`)."""

    def __init__(self, name, pb_type, is_repeated=False, has_presence=False):
        self.name             = name
        self.json_name        = name
        self.number           = 1
        self.type             = pb_type
        self.is_repeated      = is_repeated
        self.has_presence     = has_presence
        self.message_type     = None
        self.enum_type        = None
        self.containing_oneof = None


@pytest.mark.parametrize("field,cardinality", [
    (_BareField("tags", PbField.TYPE_STRING, is_repeated=True), Cardinality.REPEATED),
    (_BareField("ttl", PbField.TYPE_INT32, has_presence=True), Cardinality.OPTIONAL),
    (_BareField("name", PbField.TYPE_STRING), Cardinality.SINGULAR),
])
def test_field_conversion_without_label(field, cardinality):
    converted = _convert_field(field)
    assert converted.cardinality == cardinality
    assert converted.name == field.name
