"""
grpcdeck/metadata.py

Request/response metadata as ordered (key, value) pairs. Duplicate keys
are preserved. Keys ending in -bin carry binary values, written by users
as base64.
"""
from __future__ import annotations

import base64
import binascii
from typing import Any, Iterable, Optional, Sequence, Union

from grpcdeck.errors import ValidationError

Pairs = tuple[tuple[str, str], ...]

BINARY_SUFFIX = "-bin"


def parse_header(text: str) -> tuple[str, str]:
    """'key: value' or 'key=value' → (key, value)."""
    for sep in (":", "="):
        if sep in text:
            key, value = text.split(sep, 1)
            return normalize_key(key), value.strip()
    raise ValidationError(f"invalid header {text!r}: expected key:value")


def normalize_key(key: str) -> str:
    key = key.strip().lower()
    if not key:
        raise ValidationError("metadata key must not be empty")
    if not key.isascii() or any(c.isspace() for c in key):
        raise ValidationError(f"invalid metadata key {key!r}")
    if key.startswith("grpc-"):
        raise ValidationError(f"metadata key {key!r} is reserved")
    return key


def to_wire(pairs: Iterable[Sequence[str]]) -> list[tuple[str, Union[str, bytes]]]:
    out: list[tuple[str, Union[str, bytes]]] = []
    for key, value in pairs:
        key = normalize_key(key)
        if key.endswith(BINARY_SUFFIX):
            try:
                out.append((key, base64.b64decode(value, validate=True)))
            except (binascii.Error, ValueError) as exc:
                raise ValidationError(
                    f"binary metadata {key!r} must be base64", cause=exc
                ) from exc
        else:
            if not value.isascii():
                raise ValidationError(f"metadata value for {key!r} must be ASCII")
            out.append((key, value))
    return out


def from_wire(md: Optional[Iterable[Any]]) -> Pairs:
    if not md:
        return ()
    out = []
    for item in md:
        key, value = item[0], item[1]
        if isinstance(value, bytes):
            value = base64.b64encode(value).decode("ascii")
        out.append((key, value))
    return tuple(out)


def flatten(pairs: Iterable[Sequence[str]]) -> dict[str, str]:
    """Join duplicate keys as 'v1, v2' for display and history."""
    merged: dict[str, list[str]] = {}
    for key, value in pairs:
        merged.setdefault(key, []).append(value)
    return {k: ", ".join(v) for k, v in merged.items()}
