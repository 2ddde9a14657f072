"""Shared fixtures: a hand-built demo schema and an in-process gRPC server."""

import threading
import time
from concurrent import futures

import grpc
import pytest
from google.protobuf import any_pb2, descriptor_pool, duration_pb2, message_factory, timestamp_pb2
from google.protobuf.descriptor_pb2 import (
    FieldDescriptorProto,
    FileDescriptorProto,
)
from google.rpc import code_pb2, error_details_pb2, status_pb2
from grpc_reflection.v1alpha import reflection
from grpc_status import rpc_status

from grpcdeck.codec import Codec
from grpcdeck.config import Config
from grpcdeck.connection import ConnectionManager
from grpcdeck.domain import Endpoint
from grpcdeck.errors import InvalidDescriptor
from grpcdeck.schema import SchemaCache
from grpcdeck.session import Session
from grpcdeck.storage import MemoryRepository

F = FieldDescriptorProto

GREETER  = "helloworld.Greeter"
STREAMER = "demo.Streamer"
MISSING  = "demo.Missing"


# ──────────────────────────────────────────────────────────────────────────────
# Descriptors
# ──────────────────────────────────────────────────────────────────────────────

def _field(msg, name, number, ftype, label=F.LABEL_OPTIONAL, type_name="", **kw):
    f = msg.field.add(name=name, number=number, type=ftype, label=label, **kw)
    if type_name:
        f.type_name = type_name
    return f


def greeter_file() -> FileDescriptorProto:
    fd = FileDescriptorProto(name="demo/greeter.proto", package="helloworld", syntax="proto3")
    req = fd.message_type.add(name="HelloRequest")
    _field(req, "name", 1, F.TYPE_STRING)
    rep = fd.message_type.add(name="HelloReply")
    _field(rep, "message", 1, F.TYPE_STRING)
    svc = fd.service.add(name="Greeter")
    svc.method.add(name="SayHello", input_type=".helloworld.HelloRequest",
                   output_type=".helloworld.HelloReply")
    return fd


def demo_file() -> FileDescriptorProto:
    fd = FileDescriptorProto(name="demo/types.proto", package="demo", syntax="proto3")
    fd.dependency.append("google/protobuf/timestamp.proto")
    fd.dependency.append("google/protobuf/duration.proto")

    color = fd.enum_type.add(name="Color")
    color.value.add(name="COLOR_UNSPECIFIED", number=0)
    color.value.add(name="RED", number=1)
    color.value.add(name="GREEN", number=2)

    tree = fd.message_type.add(name="TreeNode")
    _field(tree, "value", 1, F.TYPE_INT32)
    _field(tree, "left", 2, F.TYPE_MESSAGE, type_name=".demo.TreeNode")
    _field(tree, "right", 3, F.TYPE_MESSAGE, type_name=".demo.TreeNode")

    every = fd.message_type.add(name="Everything")
    entry = every.nested_type.add(name="CountsEntry")
    entry.options.map_entry = True
    _field(entry, "key", 1, F.TYPE_STRING)
    _field(entry, "value", 2, F.TYPE_INT64)
    every.oneof_decl.add(name="choice")
    every.oneof_decl.add(name="_ttl")
    _field(every, "i32", 1, F.TYPE_INT32)
    _field(every, "i64", 2, F.TYPE_INT64)
    _field(every, "u32", 3, F.TYPE_UINT32)
    _field(every, "flag", 4, F.TYPE_BOOL)
    _field(every, "text", 5, F.TYPE_STRING)
    _field(every, "blob", 6, F.TYPE_BYTES)
    _field(every, "ratio", 7, F.TYPE_DOUBLE)
    _field(every, "f", 8, F.TYPE_FLOAT)
    _field(every, "color", 9, F.TYPE_ENUM, type_name=".demo.Color")
    _field(every, "tags", 10, F.TYPE_STRING, label=F.LABEL_REPEATED)
    _field(every, "counts", 11, F.TYPE_MESSAGE, label=F.LABEL_REPEATED,
           type_name=".demo.Everything.CountsEntry")
    _field(every, "ttl", 12, F.TYPE_INT32, oneof_index=1, proto3_optional=True)
    _field(every, "name", 13, F.TYPE_STRING, oneof_index=0)
    _field(every, "id", 14, F.TYPE_INT32, oneof_index=0)
    _field(every, "at", 15, F.TYPE_MESSAGE, type_name=".google.protobuf.Timestamp")
    _field(every, "tree", 16, F.TYPE_MESSAGE, type_name=".demo.TreeNode")
    _field(every, "wait", 17, F.TYPE_MESSAGE, type_name=".google.protobuf.Duration")

    count_req = fd.message_type.add(name="CountRequest")
    _field(count_req, "count", 1, F.TYPE_INT32)
    _field(count_req, "pause_after", 2, F.TYPE_INT32)
    tick = fd.message_type.add(name="Tick")
    _field(tick, "seq", 1, F.TYPE_INT64)
    sum_req = fd.message_type.add(name="SumRequest")
    _field(sum_req, "value", 1, F.TYPE_INT32)
    sum_rep = fd.message_type.add(name="SumReply")
    _field(sum_rep, "total", 1, F.TYPE_INT64)
    _field(sum_rep, "count", 2, F.TYPE_INT32)

    svc = fd.service.add(name="Streamer")
    svc.method.add(name="Count", input_type=".demo.CountRequest",
                   output_type=".demo.Tick", server_streaming=True)
    svc.method.add(name="Sum", input_type=".demo.SumRequest",
                   output_type=".demo.SumReply", client_streaming=True)
    svc.method.add(name="Echo", input_type=".demo.SumRequest",
                   output_type=".demo.SumReply", client_streaming=True, server_streaming=True)
    svc.method.add(name="Fail", input_type=".demo.CountRequest", output_type=".demo.Tick")
    svc.method.add(name="Inspect", input_type=".demo.Everything", output_type=".demo.Everything")
    return fd


def build_pool() -> descriptor_pool.DescriptorPool:
    pool = descriptor_pool.DescriptorPool()
    pool.AddSerializedFile(timestamp_pb2.DESCRIPTOR.serialized_pb)
    pool.AddSerializedFile(duration_pb2.DESCRIPTOR.serialized_pb)
    pool.AddSerializedFile(greeter_file().SerializeToString())
    pool.AddSerializedFile(demo_file().SerializeToString())
    return pool


class StaticSource:
    """Reflection stand-in for caches whose pool is already populated."""

    def __init__(self, names=(GREETER, STREAMER)):
        self.names = list(names)

    def list_services(self):
        return list(self.names)

    def file_containing_symbol(self, symbol):
        raise InvalidDescriptor(f"no file descriptor returned for {symbol}")

    def file_by_filename(self, filename):
        raise InvalidDescriptor(f"no file descriptor returned for {filename}")


@pytest.fixture
def demo_pool():
    return build_pool()


@pytest.fixture
def schema(demo_pool):
    return SchemaCache(StaticSource(), pool=demo_pool)


@pytest.fixture
def codec(schema):
    return Codec(schema)


# ──────────────────────────────────────────────────────────────────────────────
# In-process server
# ──────────────────────────────────────────────────────────────────────────────

class DemoServicer:

    def __init__(self, pool):
        def cls(name):
            return message_factory.GetMessageClass(pool.FindMessageTypeByName(name))
        self.HelloRequest = cls("helloworld.HelloRequest")
        self.HelloReply   = cls("helloworld.HelloReply")
        self.CountRequest = cls("demo.CountRequest")
        self.Tick         = cls("demo.Tick")
        self.SumRequest   = cls("demo.SumRequest")
        self.SumReply     = cls("demo.SumReply")
        self.Everything   = cls("demo.Everything")
        self.cancelled    = threading.Event()

    def say_hello(self, request, context):
        md = dict(context.invocation_metadata())
        context.send_initial_metadata((("x-served-by", "demo"),))
        context.set_trailing_metadata((("x-request-id", md.get("x-request-id", "none")),))
        return self.HelloReply(message=f"Hello {request.name}")

    def count(self, request, context):
        for i in range(request.count):
            if request.pause_after and i >= request.pause_after:
                while context.is_active():
                    time.sleep(0.01)
                self.cancelled.set()
                return
            yield self.Tick(seq=i + 1)

    def sum(self, request_iterator, context):
        total = n = 0
        for req in request_iterator:
            total += req.value
            n += 1
        return self.SumReply(total=total, count=n)

    def echo(self, request_iterator, context):
        total = n = 0
        for req in request_iterator:
            total += req.value
            n += 1
            yield self.SumReply(total=total, count=n)

    def fail(self, request, context):
        violation = error_details_pb2.BadRequest(field_violations=[
            error_details_pb2.BadRequest.FieldViolation(field="count", description="must be positive"),
        ])
        detail = any_pb2.Any()
        detail.Pack(violation)
        status = status_pb2.Status(
            code=code_pb2.INVALID_ARGUMENT, message="bad count", details=[detail],
        )
        context.abort_with_status(rpc_status.to_status(status))

    def inspect(self, request, context):
        return request

    def handlers(self):
        def unary(fn, req, rep):
            return grpc.unary_unary_rpc_method_handler(
                fn, request_deserializer=req.FromString, response_serializer=rep.SerializeToString,
            )
        return [
            grpc.method_handlers_generic_handler(GREETER, {
                "SayHello": unary(self.say_hello, self.HelloRequest, self.HelloReply),
            }),
            grpc.method_handlers_generic_handler(STREAMER, {
                "Count": grpc.unary_stream_rpc_method_handler(
                    self.count, request_deserializer=self.CountRequest.FromString,
                    response_serializer=self.Tick.SerializeToString,
                ),
                "Sum": grpc.stream_unary_rpc_method_handler(
                    self.sum, request_deserializer=self.SumRequest.FromString,
                    response_serializer=self.SumReply.SerializeToString,
                ),
                "Echo": grpc.stream_stream_rpc_method_handler(
                    self.echo, request_deserializer=self.SumRequest.FromString,
                    response_serializer=self.SumReply.SerializeToString,
                ),
                "Fail": unary(self.fail, self.CountRequest, self.Tick),
                "Inspect": unary(self.inspect, self.Everything, self.Everything),
            }),
        ]


@pytest.fixture
def demo_server():
    """Yields (address, servicer). Reflection lists one service it cannot describe."""
    pool      = build_pool()
    servicer  = DemoServicer(pool)
    server    = grpc.server(futures.ThreadPoolExecutor(max_workers=8))
    server.add_generic_rpc_handlers(servicer.handlers())
    reflection.enable_server_reflection(
        (GREETER, STREAMER, MISSING, reflection.SERVICE_NAME), server, pool=pool,
    )
    port = server.add_insecure_port("127.0.0.1:0")
    server.start()
    try:
        yield f"127.0.0.1:{port}", servicer
    finally:
        server.stop(grace=None)


@pytest.fixture
def session(tmp_path):
    s = Session(Config(storage_path=str(tmp_path)), repo=MemoryRepository())
    yield s
    s.close()


@pytest.fixture
def connected(session, demo_server):
    address, _ = demo_server
    session.connect(Endpoint(address))
    return session


@pytest.fixture
def manager():
    m = ConnectionManager(dial_timeout=5.0)
    yield m
    m.disconnect()
