"""
grpcdeck/repl/tea/model.py

Immutable Model + auxiliary state types.
No I/O. No grpc.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional


class ReplMode(Enum):
    NORMAL = "normal"
    WIZARD = "wizard"
    CONFIRM = "confirm"


@dataclass(frozen=True)
class WizardField:
    name: str
    label: str          # "int32", "repeated string", "map<string, int64>"
    is_string: bool     # raw text is taken verbatim


@dataclass(frozen=True)
class WizardState:
    service: str
    method: str
    fields: tuple[WizardField, ...]
    fields_pending: tuple[WizardField, ...]
    collected: tuple[tuple[str, str], ...]

    def next_field(self) -> Optional[WizardField]:
        return self.fields_pending[0] if self.fields_pending else None

    def remaining_count(self) -> int:
        return len(self.fields_pending)


@dataclass(frozen=True)
class Model:
    # ── Connection ──────────────────────────────────────────────────────────
    server: str
    connected: bool

    # ── Schema ──────────────────────────────────────────────────────────────
    services: tuple[str, ...]

    # ── Session ─────────────────────────────────────────────────────────────
    headers: tuple[tuple[str, str], ...]
    history: tuple[str, ...]

    # ── Selection (`use <service>`) ──────────────────────────────────────────
    service: str

    # ── UI state ────────────────────────────────────────────────────────────
    error: Optional[str]
    mode: ReplMode
    wizard_state: Optional[WizardState]
    stream_kind: Optional[str]          # StreamType value of the open stream
    pending_save: Optional[str]         # workspace awaiting overwrite confirmation

    # ── Derived helpers ──────────────────────────────────────────────────────

    @property
    def stream_active(self) -> bool:
        return self.stream_kind is not None

    def short_service(self) -> str:
        return self.service.rsplit(".", 1)[-1] if self.service else ""

    def resolve_method(self, word: str) -> Optional[tuple[str, str]]:
        """
        'pkg.Svc/Method', '/pkg.Svc/Method' and 'pkg.Svc.Method' are
        absolute; a bare 'Method' is relative to the service in use.
        """
        word = word.lstrip("/")
        if "/" in word:
            service, _, method = word.rpartition("/")
        elif "." in word:
            service, _, method = word.rpartition(".")
        elif self.service:
            service, method = self.service, word
        else:
            return None
        if not service or not method:
            return None
        return service, method

    def resolve_service(self, word: str) -> Optional[str]:
        """Full name for `word`, matched exactly or by unique suffix."""
        if word in self.services:
            return word
        matches = [s for s in self.services if s.endswith("." + word)]
        return matches[0] if len(matches) == 1 else None

    def with_header(self, name: str, value: str) -> "Model":
        name = name.lower()
        kept = tuple(kv for kv in self.headers if kv[0] != name)
        return replace(self, headers=kept + ((name, value),))

    def without_header(self, name: str) -> "Model":
        name = name.lower()
        return replace(self, headers=tuple(kv for kv in self.headers if kv[0] != name))


def initial_model(server: str = "", connected: bool = False) -> Model:
    return Model(
        server=server,
        connected=connected,
        services=(),
        headers=(),
        history=(),
        service="",
        error=None,
        mode=ReplMode.NORMAL,
        wizard_state=None,
        stream_kind=None,
        pending_save=None,
    )
