import pytest

from grpcdeck.errors import ValidationError
from grpcdeck.metadata import flatten, from_wire, normalize_key, parse_header, to_wire


@pytest.mark.parametrize("text,expected", [
    ("Authorization: Bearer abc", ("authorization", "Bearer abc")),
    ("x-id=42", ("x-id", "42")),
    ("x-url: http://a:1/b", ("x-url", "http://a:1/b")),
])
def test_parse_header(text, expected):
    assert parse_header(text) == expected


def test_parse_header_requires_separator():
    with pytest.raises(ValidationError):
        parse_header("no separator")


@pytest.mark.parametrize("key", ["", "  ", "grpc-timeout", "has space", "ключ"])
def test_invalid_keys(key):
    with pytest.raises(ValidationError):
        normalize_key(key)


def test_to_wire_decodes_binary_values():
    wire = to_wire([("trace-bin", "AAE="), ("x-k", "v")])
    assert wire == [("trace-bin", b"\x00\x01"), ("x-k", "v")]


def test_to_wire_rejects_bad_base64():
    with pytest.raises(ValidationError):
        to_wire([("trace-bin", "***")])


def test_to_wire_rejects_non_ascii_values():
    with pytest.raises(ValidationError):
        to_wire([("x-k", "héllo")])


def test_from_wire_keeps_duplicates_and_encodes_binary():
    pairs = from_wire((("a", "1"), ("a", "2"), ("b-bin", b"\x00\x01")))
    assert pairs == (("a", "1"), ("a", "2"), ("b-bin", "AAE="))
    assert from_wire(None) == ()


def test_flatten_joins_duplicates():
    assert flatten([("a", "1"), ("b", "x"), ("a", "2")]) == {"a": "1, 2", "b": "x"}
