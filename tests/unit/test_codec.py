import base64
import json
import struct

import pytest

from grpcdeck.errors import CodecParseError, CodecRangeError, CodecTypeError


def _round(codec, body, type_name="demo.Everything"):
    return json.loads(codec.decode(codec.encode(json.dumps(body), type_name), type_name))


def test_hello_request_encodes(codec):
    data = codec.encode('{"name": "world"}', "helloworld.HelloRequest")
    assert data == b"\n\x05world"


def test_empty_text_is_empty_message(codec):
    assert codec.encode("", "helloworld.HelloRequest") == b""
    assert codec.encode("   ", "helloworld.HelloRequest") == b""


def test_decode_omits_defaults(codec):
    assert json.loads(codec.decode(b"", "demo.Everything")) == {}


def test_scalars_and_collections(codec):
    body = {
        "i32": -5,
        "i64": "9007199254740993",
        "u32": 7,
        "flag": True,
        "text": "hi",
        "blob": base64.b64encode(b"\x00\x01").decode(),
        "ratio": 0.25,
        "color": "GREEN",
        "tags": ["a", "b"],
        "counts": {"x": "3"},
    }
    out = _round(codec, body)
    assert out["i32"] == -5
    assert out["i64"] == "9007199254740993"
    assert out["u32"] == 7
    assert out["flag"] is True
    assert out["blob"] == "AAE="
    assert out["color"] == "GREEN"
    assert out["tags"] == ["a", "b"]
    assert out["counts"] == {"x": "3"}


def test_float_is_shortest_decimal(codec):
    assert _round(codec, {"f": 0.1})["f"] == 0.1


def test_output_uses_two_space_indent(codec):
    text = codec.decode(codec.encode('{"text": "a"}', "demo.Everything"), "demo.Everything")
    assert text == '{\n  "text": "a"\n}'


def test_json_names_are_accepted(codec):
    msg = codec.from_text('{"pauseAfter": 3}', "demo.CountRequest")
    assert msg.pause_after == 3


def test_explicit_presence_keeps_zero(codec):
    assert _round(codec, {"ttl": 0}) == {"ttl": 0}
    assert "ttl" not in _round(codec, {"i32": 1})


def test_oneof_last_member_wins(codec):
    assert _round(codec, {"name": "n", "id": 4}) == {"id": 4}


def test_oneof_member_zero_is_kept(codec):
    assert _round(codec, {"id": 0}) == {"id": 0}


def test_recursive_message(codec):
    body = {"tree": {"value": 1, "left": {"value": 2, "left": {"value": -3}}}}
    assert _round(codec, body) == body


def test_timestamp_uses_canonical_form(codec):
    out = _round(codec, {"at": "2024-05-01T12:00:00Z"})
    assert out["at"] == "2024-05-01T12:00:00Z"


def test_null_fields_are_skipped(codec):
    assert _round(codec, {"text": None, "i32": 2}) == {"i32": 2}


def test_invalid_json(codec):
    with pytest.raises(CodecParseError) as exc:
        codec.encode('{"name": ', "helloworld.HelloRequest")
    assert "invalid JSON" in str(exc.value)


def test_unknown_field_reports_path(codec):
    with pytest.raises(CodecTypeError) as exc:
        codec.encode('{"tree": {"nope": 1}}', "demo.Everything")
    assert exc.value.path == "tree.nope"


def test_type_mismatch_reports_path(codec):
    with pytest.raises(CodecTypeError) as exc:
        codec.encode('{"tags": ["a", 3]}', "demo.Everything")
    assert exc.value.path == "tags[1]"


@pytest.mark.parametrize("body", [
    {"i32": 2 ** 31},
    {"i32": -(2 ** 31) - 1},
    {"u32": -1},
    {"i64": str(2 ** 63)},
    {"f": 1e39},
])
def test_out_of_range(codec, body):
    with pytest.raises(CodecRangeError):
        codec.encode(json.dumps(body), "demo.Everything")


def test_fractional_integer_is_rejected(codec):
    with pytest.raises(CodecTypeError):
        codec.encode('{"i32": 1.5}', "demo.Everything")


def test_integral_float_is_accepted(codec):
    assert _round(codec, {"i32": 3.0}) == {"i32": 3}


def test_unknown_enum_name(codec):
    with pytest.raises(CodecTypeError) as exc:
        codec.encode('{"color": "PURPLE"}', "demo.Everything")
    assert "PURPLE" in str(exc.value)


def test_unknown_enum_number_decodes_as_number(codec):
    data = codec.encode('{"color": 9}', "demo.Everything")
    assert json.loads(codec.decode(data, "demo.Everything")) == {"color": 9}


def test_bad_base64(codec):
    with pytest.raises(CodecTypeError):
        codec.encode('{"blob": "***"}', "demo.Everything")


def test_bool_requires_boolean(codec):
    with pytest.raises(CodecTypeError):
        codec.encode('{"flag": "yes"}', "demo.Everything")


def test_malformed_wire_bytes(codec):
    with pytest.raises(CodecParseError):
        codec.decode(b"\xff\xff\xff", "helloworld.HelloRequest")


# ── float32 bounds ───────────────────────────────────────────────────────────

FLT_MAX = struct.unpack("<f", b"\xff\xff\x7f\x7f")[0]


@pytest.mark.parametrize("value", [FLT_MAX, -FLT_MAX])
def test_float32_max_survives_decode_then_encode(codec, schema, value):
    wire = schema.message_class("demo.Everything")(f=value).SerializeToString()
    text = codec.decode(wire, "demo.Everything")
    assert json.loads(text) == {"f": 3.4028235e38 if value > 0 else -3.4028235e38}
    assert codec.encode(text, "demo.Everything") == wire


def test_float32_rounding_past_max_overflows(codec):
    with pytest.raises(CodecRangeError) as exc:
        codec.encode('{"f": 3.41e38}', "demo.Everything")
    assert exc.value.path == "f"


def test_float32_infinity_is_accepted(codec):
    assert _round(codec, {"f": "Infinity"}) == {"f": "Infinity"}


# ── durations ────────────────────────────────────────────────────────────────

@pytest.mark.parametrize("text,canonical", [
    ("1.5s", "1.500s"),
    ("90m", "5400s"),
    ("-0.5s", "-0.500s"),
    ("250ms", "0.250s"),
    ("2h", "7200s"),
])
def test_duration_text_forms(codec, text, canonical):
    out = _round(codec, {"wait": text})
    assert out == {"wait": canonical}
    assert _round(codec, out) == out


def test_duration_out_of_range(codec):
    with pytest.raises(CodecRangeError) as exc:
        codec.encode('{"wait": "315576000001s"}', "demo.Everything")
    assert exc.value.path == "wait"


def test_duration_with_unknown_unit(codec):
    with pytest.raises(CodecTypeError) as exc:
        codec.encode('{"wait": "3 days"}', "demo.Everything")
    assert exc.value.path == "wait"
