"""
grpcdeck/repl/tea/msg.py: all Msg variants (inputs / async results)
                           and all Cmd variants (effect descriptors)

Kept in one file to avoid circular imports; split into msg/cmd sections.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

from grpcdeck.classify import UIError


# ══════════════════════════════════════════════════════════════════════════════
# MSG: events flowing INTO Update
# ══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class UserInput:
    text: str

@dataclass(frozen=True)
class WizardFieldDone:
    field_name: str
    value:      str

@dataclass(frozen=True)
class WizardAborted:
    pass

@dataclass(frozen=True)
class Interrupt:
    pass

@dataclass(frozen=True)
class Connected:
    server:   str
    services: tuple[str, ...]

@dataclass(frozen=True)
class Disconnected:
    message: str

@dataclass(frozen=True)
class CallSucceeded:
    method:   str
    text:     str
    duration: str
    size:     str
    headers:  tuple[tuple[str, str], ...] = ()
    trailers: tuple[tuple[str, str], ...] = ()

@dataclass(frozen=True)
class CallFailed:
    method: str
    error:  UIError

@dataclass(frozen=True)
class StreamOpened:
    method: str
    kind:   str

@dataclass(frozen=True)
class StreamMessage:
    method: str
    text:   str
    index:  int

@dataclass(frozen=True)
class StreamClosed:
    method:   str
    total:    int
    visible:  int
    duration: str
    error:    Optional[UIError] = None

@dataclass(frozen=True)
class SaveConflict:
    name: str

@dataclass(frozen=True)
class RequestLoaded:
    service: str
    method:  str
    headers: tuple[tuple[str, str], ...] = ()


Msg = Union[
    UserInput, WizardFieldDone, WizardAborted, Interrupt,
    Connected, Disconnected, CallSucceeded, CallFailed,
    StreamOpened, StreamMessage, StreamClosed, SaveConflict, RequestLoaded,
]


# ══════════════════════════════════════════════════════════════════════════════
# CMD: side-effect descriptors returned by Update
# ══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Connect:
    address:  str
    tls:      bool = False
    insecure: bool = False

@dataclass(frozen=True)
class Disconnect:
    pass

@dataclass(frozen=True)
class ListServices:
    pass

@dataclass(frozen=True)
class ListMethods:
    service: str

@dataclass(frozen=True)
class Describe:
    symbol: str

@dataclass(frozen=True)
class InvokeMethod:
    service: str
    method:  str
    body:    str

@dataclass(frozen=True)
class StartWizard:
    service: str
    method:  str

@dataclass(frozen=True)
class StreamSend:
    text: str

@dataclass(frozen=True)
class StreamFinish:
    pass

@dataclass(frozen=True)
class StreamRecv:
    wait: float = 0.0

@dataclass(frozen=True)
class CancelActiveStream:
    pass

@dataclass(frozen=True)
class SyncHeaders:
    headers: tuple[tuple[str, str], ...]

@dataclass(frozen=True)
class ShowHistory:
    filter: str = ""

@dataclass(frozen=True)
class ReplayHistory:
    index: int          # 1-based, as listed by the last `history`
    send:  bool = False

@dataclass(frozen=True)
class SaveWorkspace:
    name:      str
    overwrite: bool = False

@dataclass(frozen=True)
class LoadWorkspace:
    name: str

@dataclass(frozen=True)
class ListWorkspaces:
    pass

@dataclass(frozen=True)
class DeleteWorkspace:
    name: str

@dataclass(frozen=True)
class ShowRecent:
    pass

@dataclass(frozen=True)
class WriteHistory:
    line: str

@dataclass(frozen=True)
class ExitRepl:
    pass


Cmd = Union[
    Connect, Disconnect, ListServices, ListMethods, Describe, InvokeMethod,
    StartWizard, StreamSend, StreamFinish, StreamRecv, CancelActiveStream,
    SyncHeaders, ShowHistory, ReplayHistory, SaveWorkspace, LoadWorkspace,
    ListWorkspaces, DeleteWorkspace, ShowRecent, WriteHistory, ExitRepl,
]
