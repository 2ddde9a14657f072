"""
grpcdeck/repl/tea/update.py

Pure update function: (Model, Msg) → (Model, list[Cmd])

No I/O. No grpc calls. No rendering. 100% unit-testable.
"""
from __future__ import annotations

import argparse
import json
import shlex
from dataclasses import dataclass, replace
from typing import Any, Optional

from grpcdeck.classify import UIError
from grpcdeck.errors import ErrorKind
from grpcdeck.repl.tea.model import Model, ReplMode, WizardField, WizardState
from grpcdeck.repl.tea.msg import (
    CallFailed, CallSucceeded, Connected, Disconnected, Interrupt, Msg,
    RequestLoaded, SaveConflict, StreamClosed, StreamMessage, StreamOpened, UserInput,
    WizardAborted, WizardFieldDone,
)
from grpcdeck.repl.tea.msg import (
    CancelActiveStream, Connect, DeleteWorkspace, Describe, Disconnect,
    ExitRepl, InvokeMethod, ListMethods, ListServices, ListWorkspaces,
    LoadWorkspace, ReplayHistory, SaveWorkspace, ShowHistory, ShowRecent,
    StartWizard, StreamFinish, StreamRecv, StreamSend, SyncHeaders,
    WriteHistory,
)


# ──────────────────────────────────────────────────────────────────────────────
# Entry point
# ──────────────────────────────────────────────────────────────────────────────

def update(model: Model, msg: Msg) -> tuple[Model, list]:
    """
    Pure state transition.  Returns (new_model, list[Cmd]).
    The runtime executes the Cmd list as side effects.
    """
    if isinstance(msg, UserInput):
        if model.mode == ReplMode.CONFIRM:
            return _handle_confirm(model, msg.text)
        return _handle_user_input(model, msg.text)

    if isinstance(msg, WizardFieldDone):
        return _handle_wizard_field(model, msg.field_name, msg.value)

    if isinstance(msg, WizardAborted):
        return (
            replace(model, mode=ReplMode.NORMAL, wizard_state=None, error=None),
            [],
        )

    if isinstance(msg, Connected):
        return replace(
            model, server=msg.server, connected=True, services=msg.services,
            service="", error=None,
        ), []

    if isinstance(msg, Disconnected):
        return replace(
            model, connected=False, services=(), service="", stream_kind=None,
        ), [RenderInfo(msg.message)]

    if isinstance(msg, CallSucceeded):
        return replace(model, error=None), [RenderResponse(
            method=msg.method, text=msg.text, duration=msg.duration, size=msg.size,
            headers=msg.headers, trailers=msg.trailers,
        )]

    if isinstance(msg, CallFailed):
        return replace(model, error=msg.error.summary()), [
            RenderError(msg.error.summary(), msg.error)
        ]

    if isinstance(msg, StreamOpened):
        return replace(model, stream_kind=msg.kind, error=None), [
            RenderStreamStart(msg.method, msg.kind)
        ]

    if isinstance(msg, StreamMessage):
        return model, [RenderStreamMessage(msg.text, msg.index)]

    if isinstance(msg, StreamClosed):
        new_model = replace(model, stream_kind=None)
        if msg.error is not None and msg.error.kind != ErrorKind.CANCELLED:
            new_model = replace(new_model, error=msg.error.summary())
        return new_model, [RenderStreamEnd(msg.total, msg.visible, msg.duration, msg.error)]

    if isinstance(msg, SaveConflict):
        return replace(model, mode=ReplMode.CONFIRM, pending_save=msg.name), [
            RenderInfo(f"Workspace '{msg.name}' exists. Overwrite? [y/N]")
        ]

    if isinstance(msg, RequestLoaded):
        return replace(
            model, service=msg.service, headers=tuple(msg.headers), error=None,
        ), [RenderInfo(f"Loaded {msg.service}/{msg.method}")]

    if isinstance(msg, Interrupt):
        if model.stream_active:
            return model, [CancelActiveStream()]
        return model, []

    return model, []


# ──────────────────────────────────────────────────────────────────────────────
# UserInput dispatch
# ──────────────────────────────────────────────────────────────────────────────

def _handle_user_input(model: Model, raw: str) -> tuple[Model, list]:
    text = raw.strip()
    if not text:
        return model, []

    word, _, rest = text.partition(" ")
    rest = rest.strip()
    handler = _COMMANDS.get(word)
    if handler is None:
        return _error(model, f"Unknown command: '{word}'. Type 'help' for available commands.")

    new_model, cmds = handler(model, rest)
    if word not in ("exit", "quit", "q"):
        new_model = replace(new_model, history=new_model.history + (text,))
        cmds = [WriteHistory(text)] + cmds
    return new_model, cmds


def _cmd_exit(model: Model, rest: str) -> tuple[Model, list]:
    return model, [ExitRepl()]


def _cmd_help(model: Model, rest: str) -> tuple[Model, list]:
    return model, [RenderHelp(topic=rest)]


# ── Connection ───────────────────────────────────────────────────────────────

def _cmd_connect(model: Model, rest: str) -> tuple[Model, list]:
    parser = _SilentParser(prog="connect", add_help=False, exit_on_error=False)
    parser.add_argument("address")
    parser.add_argument("--tls", action="store_true")
    parser.add_argument("--insecure-skip-verify", action="store_true", dest="insecure")
    try:
        ns = parser.parse_args(_split(rest))
    except (argparse.ArgumentError, SystemExit, ValueError) as exc:
        return _error(model, f"Usage: connect <host:port> [--tls] [--insecure-skip-verify] ({exc})")
    if ns.insecure and not ns.tls:
        return _error(model, "--insecure-skip-verify requires --tls")
    return model, [Connect(ns.address, tls=ns.tls, insecure=ns.insecure)]


def _cmd_disconnect(model: Model, rest: str) -> tuple[Model, list]:
    return model, [Disconnect()]


def _cmd_recent(model: Model, rest: str) -> tuple[Model, list]:
    return model, [ShowRecent()]


# ── Schema ───────────────────────────────────────────────────────────────────

def _cmd_services(model: Model, rest: str) -> tuple[Model, list]:
    if not model.connected:
        return _error(model, "Not connected. Use: connect <host:port>")
    return model, [ListServices()]


def _cmd_use(model: Model, rest: str) -> tuple[Model, list]:
    if not rest:
        return replace(model, service=""), []
    if rest in ("..", "-"):
        return replace(model, service=""), []
    full = model.resolve_service(rest)
    if full is None:
        return _error(model, f"Unknown service: '{rest}'")
    return replace(model, service=full, error=None), []


def _cmd_methods(model: Model, rest: str) -> tuple[Model, list]:
    service = model.resolve_service(rest) if rest else model.service
    if not service:
        return _error(model, "Usage: methods <service>  (or `use <service>` first)")
    return model, [ListMethods(service)]


def _cmd_describe(model: Model, rest: str) -> tuple[Model, list]:
    if not rest:
        return _error(model, "Usage: describe <service|method|message>")
    symbol = rest
    if "." not in rest and "/" not in rest and model.service:
        symbol = f"{model.service}/{rest}"
    return model, [Describe(symbol)]


# ── Calls ────────────────────────────────────────────────────────────────────

def _cmd_call(model: Model, rest: str) -> tuple[Model, list]:
    if not model.connected:
        return _error(model, "Not connected. Use: connect <host:port>")
    target, _, body = rest.partition(" ")
    if not target:
        return _error(model, "Usage: call <method> [json]")
    resolved = model.resolve_method(target)
    if resolved is None:
        return _error(model, f"Cannot resolve method '{target}'. Use `use <service>` or a full name.")
    service, method = resolved
    body = body.strip()
    if model.stream_active:
        return _error(model, "A stream is open. `finish` or `cancel` it first.")
    if not body:
        return replace(model, error=None), [StartWizard(service, method)]
    return replace(model, error=None), [InvokeMethod(service, method, body)]


def _cmd_send(model: Model, rest: str) -> tuple[Model, list]:
    if model.stream_kind not in ("client_stream", "bidi_stream"):
        return _error(model, "No client or bidi stream is open.")
    return model, [StreamSend(rest or "{}")]


def _cmd_finish(model: Model, rest: str) -> tuple[Model, list]:
    if model.stream_kind not in ("client_stream", "bidi_stream"):
        return _error(model, "No client or bidi stream is open.")
    return model, [StreamFinish()]


def _cmd_recv(model: Model, rest: str) -> tuple[Model, list]:
    if model.stream_kind != "bidi_stream":
        return _error(model, "No bidi stream is open.")
    try:
        wait = float(rest) if rest else 0.0
    except ValueError:
        return _error(model, "Usage: recv [seconds]")
    return model, [StreamRecv(wait)]


def _cmd_cancel(model: Model, rest: str) -> tuple[Model, list]:
    if not model.stream_active:
        return _error(model, "Nothing to cancel.")
    return model, [CancelActiveStream()]


# ── Headers ──────────────────────────────────────────────────────────────────

def _cmd_header(model: Model, rest: str) -> tuple[Model, list]:
    words = rest.split(None, 2)
    if not words:
        return _error(model, "Usage: header set|list|clear [name] [value]")

    sub = words[0]
    if sub == "list":
        return model, [RenderHeaderList(model.headers)]
    if sub == "clear":
        if len(words) == 1:
            new_model = replace(model, headers=())
        else:
            new_model = model.without_header(words[1])
        return new_model, [SyncHeaders(new_model.headers)]
    if sub == "set":
        if len(words) < 3:
            return _error(model, "Usage: header set <name> <value>")
        name = words[1].rstrip(":")
        if name.lower().startswith("grpc-") or any(c.isspace() for c in name):
            return _error(model, f"Invalid header name: '{name}'")
        new_model = model.with_header(name, words[2])
        return new_model, [SyncHeaders(new_model.headers)]

    return _error(model, f"Unknown header sub-command: {sub}")


# ── History / workspaces ─────────────────────────────────────────────────────

def _cmd_history(model: Model, rest: str) -> tuple[Model, list]:
    return model, [ShowHistory(rest)]


def _cmd_replay(model: Model, rest: str) -> tuple[Model, list]:
    try:
        words = _split(rest)
    except ValueError as exc:
        return _error(model, f"Parse error: {exc}")
    send  = "--send" in words
    words = [w for w in words if w != "--send"]
    if len(words) != 1 or not words[0].isdigit() or int(words[0]) < 1:
        return _error(model, "Usage: replay <n> [--send]")
    return model, [ReplayHistory(int(words[0]), send=send)]


def _cmd_save(model: Model, rest: str) -> tuple[Model, list]:
    try:
        words = _split(rest)
    except ValueError as exc:
        return _error(model, f"Parse error: {exc}")
    force = "--force" in words
    words = [w for w in words if w != "--force"]
    if len(words) != 1:
        return _error(model, "Usage: save <name> [--force]")
    return model, [SaveWorkspace(words[0], overwrite=force)]


def _cmd_load(model: Model, rest: str) -> tuple[Model, list]:
    if not rest:
        return _error(model, "Usage: load <name>")
    return model, [LoadWorkspace(rest)]


def _cmd_workspaces(model: Model, rest: str) -> tuple[Model, list]:
    return model, [ListWorkspaces()]


def _cmd_rm(model: Model, rest: str) -> tuple[Model, list]:
    if not rest:
        return _error(model, "Usage: rm <name>")
    return model, [DeleteWorkspace(rest)]


def _handle_confirm(model: Model, raw: str) -> tuple[Model, list]:
    name      = model.pending_save
    new_model = replace(model, mode=ReplMode.NORMAL, pending_save=None)
    if name and raw.strip().lower() in ("y", "yes"):
        return new_model, [SaveWorkspace(name, overwrite=True)]
    return new_model, [RenderInfo("Not saved.")]


_COMMANDS = {
    "exit":       _cmd_exit,
    "quit":       _cmd_exit,
    "q":          _cmd_exit,
    "help":       _cmd_help,
    "?":          _cmd_help,
    "connect":    _cmd_connect,
    "disconnect": _cmd_disconnect,
    "recent":     _cmd_recent,
    "services":   _cmd_services,
    "use":        _cmd_use,
    "methods":    _cmd_methods,
    "describe":   _cmd_describe,
    "call":       _cmd_call,
    "send":       _cmd_send,
    "finish":     _cmd_finish,
    "recv":       _cmd_recv,
    "cancel":     _cmd_cancel,
    "header":     _cmd_header,
    "history":    _cmd_history,
    "replay":     _cmd_replay,
    "save":       _cmd_save,
    "load":       _cmd_load,
    "workspaces": _cmd_workspaces,
    "rm":         _cmd_rm,
}

COMMAND_NAMES = tuple(sorted(_COMMANDS))


# ──────────────────────────────────────────────────────────────────────────────
# Wizard
# ──────────────────────────────────────────────────────────────────────────────

def begin_wizard(model: Model, service: str, method: str,
                 fields: tuple[WizardField, ...]) -> Model:
    ws = WizardState(
        service=service, method=method, fields=fields, fields_pending=fields, collected=(),
    )
    return replace(model, mode=ReplMode.WIZARD, wizard_state=ws)


def _handle_wizard_field(
    model: Model,
    field_name: str,
    value: str,
) -> tuple[Model, list]:
    ws = model.wizard_state
    if ws is None:
        return model, []

    new_collected = ws.collected + ((field_name, value),)
    remaining     = tuple(f for f in ws.fields_pending if f.name != field_name)

    if remaining:
        new_ws = replace(ws, fields_pending=remaining, collected=new_collected)
        return replace(model, wizard_state=new_ws), []

    # All fields collected → build the body and fire the call
    kinds = {f.name: f for f in ws.fields}
    body: dict[str, Any] = {}
    for name, raw in new_collected:
        if raw.strip() == "":
            continue
        body[name] = wizard_value(kinds.get(name), raw)

    new_model = replace(model, mode=ReplMode.NORMAL, wizard_state=None, error=None)
    return new_model, [InvokeMethod(ws.service, ws.method, json.dumps(body))]


def wizard_value(field: Optional[WizardField], raw: str) -> Any:
    """
    Strings are taken verbatim; everything else is read as JSON, falling
    back to the raw text so the codec reports the type error with its path.
    """
    if field is not None and field.is_string:
        return raw
    try:
        return json.loads(raw)
    except ValueError:
        return raw


# ──────────────────────────────────────────────────────────────────────────────
# Render cmds  (runtime pattern-matches on class + attributes)
# ──────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class RenderResponse:
    method:   str
    text:     str
    duration: str
    size:     str
    headers:  tuple[tuple[str, str], ...] = ()
    trailers: tuple[tuple[str, str], ...] = ()

@dataclass(frozen=True)
class RenderStreamStart:
    method: str
    kind:   str

@dataclass(frozen=True)
class RenderStreamMessage:
    text:  str
    index: int

@dataclass(frozen=True)
class RenderStreamEnd:
    total:    int
    visible:  int
    duration: str
    error:    Optional[UIError] = None

@dataclass(frozen=True)
class RenderError:
    message: str
    error:   Optional[UIError] = None

@dataclass(frozen=True)
class RenderInfo:
    message: str

@dataclass(frozen=True)
class RenderHelp:
    topic: str

@dataclass(frozen=True)
class RenderHeaderList:
    headers: tuple[tuple[str, str], ...]


class _SilentParser(argparse.ArgumentParser):
    """ArgumentParser that raises instead of calling sys.exit."""

    def error(self, message: str):  # type: ignore[override]
        raise argparse.ArgumentError(None, message)

    def exit(self, status: int = 0, message: str = ""):  # type: ignore[override]
        raise SystemExit(status)


def _split(text: str) -> list[str]:
    return shlex.split(text) if text else []


def _error(model: Model, msg: str) -> tuple[Model, list]:
    return replace(model, error=msg), [RenderError(message=msg)]
