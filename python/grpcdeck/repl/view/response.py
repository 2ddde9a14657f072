"""
grpcdeck/repl/view/response.py

Pure render functions. Return strings. No I/O, no grpc calls.
"""
from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Optional, Sequence, Union

from grpcdeck.classify import UIError
from grpcdeck.domain import CallRecord, Endpoint
from grpcdeck.schema import (
    MessageDescriptor,
    MethodDescriptor,
    ServiceDescriptor,
)


# ──────────────────────────────────────────────────────────────────────────────
# Help
# ──────────────────────────────────────────────────────────────────────────────

HELP: dict[str, tuple[str, str]] = {
    "connect":    ("connect <host:port> [--tls] [--insecure-skip-verify]", "Connect and discover services"),
    "disconnect": ("disconnect", "Close the connection"),
    "recent":     ("recent", "Recently used servers"),
    "services":   ("services", "List services"),
    "use":        ("use <service>", "Select a service for relative method names"),
    "methods":    ("methods [service]", "List methods of a service"),
    "describe":   ("describe <symbol>", "Show a service, method or message"),
    "call":       ("call <method> [json]", "Invoke a method; without json, prompt field by field"),
    "send":       ("send <json>", "Send a message on the open client/bidi stream"),
    "finish":     ("finish", "Half-close the open stream and wait for the server"),
    "recv":       ("recv [seconds]", "Print messages received on the open bidi stream"),
    "cancel":     ("cancel", "Cancel the open stream (also Ctrl-C)"),
    "header":     ("header set|list|clear [name] [value]", "Request metadata"),
    "history":    ("history [filter]", "Past calls, most recent first"),
    "replay":     ("replay <n> [--send]", "Load call n from the last history listing"),
    "save":       ("save <name> [--force]", "Save the current workspace"),
    "load":       ("load <name>", "Load a workspace"),
    "workspaces": ("workspaces", "List saved workspaces"),
    "rm":         ("rm <name>", "Delete a workspace"),
    "help":       ("help [command]", "This help"),
    "exit":       ("exit", "Quit"),
}


def view_help(topic: str = "") -> str:
    names = [n for n in HELP if n.startswith(topic)] if topic else list(HELP)
    if not names:
        return f"  No commands matching '{topic}'."
    width = max(len(HELP[n][0]) for n in names)
    lines = ["  Commands:\n"]
    for name in names:
        usage, desc = HELP[name]
        lines.append(f"  {usage:<{width}}  {desc}")
    return "\n".join(lines)


# ──────────────────────────────────────────────────────────────────────────────
# Responses
# ──────────────────────────────────────────────────────────────────────────────

def view_response(
    text: str,
    duration: str,
    size: str,
    headers: Sequence[tuple[str, str]] = (),
    trailers: Sequence[tuple[str, str]] = (),
) -> str:
    lines = [f"  ✔  {duration}  {size}"]
    lines.extend(_metadata_lines("headers", headers))
    lines.extend(_metadata_lines("trailers", trailers))
    lines.append(text)
    return "\n".join(lines)


def view_stream_start(method: str, kind: str) -> str:
    if kind == "server_stream":
        hint = "Ctrl-C to stop"
    elif kind == "client_stream":
        hint = "`send <json>` then `finish`"
    else:
        hint = "`send <json>`, `recv`, `finish` or `cancel`"
    return f"\n  📡  {method}  [{kind}]  ({hint})\n"


def view_stream_message(text: str, index: int) -> str:
    ts = datetime.now().strftime("%H:%M:%S")
    return f"[{index:>4}] {ts}  {_compact(text)}"


def view_stream_end(total: int, visible: int, duration: str,
                    error: Optional[UIError] = None) -> str:
    held = f" ({visible} held)" if visible != total else ""
    if error is None:
        return f"\n  ⏹  Stream ended — {total} message(s){held} in {duration}."
    if error.title == "Request Cancelled":
        return f"\n  ⏹  Stream cancelled — {total} message(s){held}."
    return view_error(error) + f"\n  ⏹  {total} message(s) received{held}."


def view_error(err: Union[str, UIError]) -> str:
    if isinstance(err, str):
        return f"  ❌  {err}"
    lines = [f"  ❌  {err.title}: {err.message}"]
    for hint in err.recovery:
        lines.append(f"      • {hint}")
    if err.details:
        for line in err.details.splitlines():
            lines.append(f"      {line}")
    return "\n".join(lines)


def view_info(msg: str) -> str:
    return f"  {msg}"


# ──────────────────────────────────────────────────────────────────────────────
# Schema
# ──────────────────────────────────────────────────────────────────────────────

def view_services(services: Sequence[ServiceDescriptor]) -> str:
    if not services:
        return "  (no services)"
    width = max(len(s.display_name or s.name) for s in services)
    lines = []
    for svc in services:
        label = svc.display_name or svc.name
        if svc.error:
            lines.append(f"  ⚠  {label:<{width}}  {svc.full_name}  ({svc.error})")
        else:
            lines.append(f"  📦 {label:<{width}}  {svc.full_name}  {len(svc.methods)} method(s)")
    return "\n".join(lines)


def view_methods(service: ServiceDescriptor) -> str:
    if service.error:
        return view_error(f"{service.full_name}: {service.error}")
    if not service.methods:
        return "  (no methods)"
    width = max(len(m.name) for m in service.methods)
    lines = [f"  {service.full_name}"]
    for m in service.methods:
        lines.append(
            f"    🚀 {m.name:<{width}}  ({_short(m.input_type)}) → ({_short(m.output_type)})"
            f"  {_shape(m)}"
        )
    return "\n".join(lines)


def view_describe(obj: Any, messages: Sequence[MessageDescriptor] = ()) -> str:
    if isinstance(obj, ServiceDescriptor):
        return view_methods(obj)
    if isinstance(obj, MethodDescriptor):
        lines = [
            f"  rpc {obj.full_name}",
            f"    input:  {obj.input_type}",
            f"    output: {obj.output_type}",
            f"    shape:  {obj.stream_type.value}",
        ]
        for msg in messages:
            lines.append("")
            lines.append(view_message(msg))
        return "\n".join(lines)
    if isinstance(obj, MessageDescriptor):
        return view_message(obj)
    return str(obj)


def view_message(msg: MessageDescriptor) -> str:
    lines = [f"  message {msg.full_name} {{"]
    for f in msg.fields:
        label = f.type_label()
        extra = f"  // oneof {f.oneof}" if f.oneof else ""
        lines.append(f"    {label} {f.name} = {f.number};{extra}")
    lines.append("  }")
    return "\n".join(lines)


# ──────────────────────────────────────────────────────────────────────────────
# History / workspaces / recents
# ──────────────────────────────────────────────────────────────────────────────

def view_history(entries: Sequence[CallRecord]) -> str:
    if not entries:
        return "  (no history)"
    lines = []
    for i, e in enumerate(entries, 1):
        mark   = "✔" if e.status == "success" else "✘"
        server = e.endpoint.address if e.endpoint else "-"
        when   = e.timestamp.replace("T", " ")[:19]
        extra  = f"  {e.response}" if e.message_count or e.stream_type.value != "unary" else ""
        lines.append(
            f"  {i:>3}. {mark} {when}  {e.method_name:<20} {server:<22} "
            f"{int(round(e.duration_ms))}ms{extra}"
        )
        if e.error:
            lines.append(f"        {e.error}")
    return "\n".join(lines)


def view_workspaces(names: Sequence[str]) -> str:
    if not names:
        return "  (no workspaces)"
    return "\n".join(f"  📁 {n}" for n in names)


def view_recent(endpoints: Sequence[Endpoint]) -> str:
    if not endpoints:
        return "  (no recent servers)"
    lines = []
    for e in endpoints:
        flags = " --tls" if e.use_tls else ""
        if e.insecure:
            flags += " --insecure-skip-verify"
        lines.append(f"  {e.address}{flags}")
    return "\n".join(lines)


def view_header_list(headers: Sequence[tuple[str, str]]) -> str:
    if not headers:
        return "  (no headers set)"
    return "\n".join(f"  {k}: {v}" for k, v in headers)


# ──────────────────────────────────────────────────────────────────────────────
# Chrome
# ──────────────────────────────────────────────────────────────────────────────

def view_banner(server: str, n_services: int) -> str:
    width = 54
    inner = width - 2
    where = server or "not connected"
    found = f"{n_services} services discovered" if server else "connect <host:port>"
    lines = [
        "  ┌" + "─" * inner + "┐",
        f"  │  {'grpcdeck':^{inner - 2}}  │",
        f"  │  {where:^{inner - 2}}  │",
        f"  │  {found:^{inner - 2}}  │",
        f"  │  {'type  help  to get started':^{inner - 2}}  │",
        "  └" + "─" * inner + "┘",
    ]
    return "\n".join(lines)


def view_prompt_tokens(server: str, service: str = "", mode: str = ""):
    """prompt_toolkit (style, text) token list for the prompt."""
    if server:
        tokens = [("class:server", f"[{server}]")]
    else:
        tokens = [("class:disconnected", "[offline]")]
    if service:
        tokens.append(("class:service", f" {service}"))
    if mode:
        tokens.append(("class:service", f" {mode}"))
    tokens.append(("class:arrow", "> "))
    return tokens


# ──────────────────────────────────────────────────────────────────────────────
# Helpers
# ──────────────────────────────────────────────────────────────────────────────

def _metadata_lines(title: str, pairs: Sequence[tuple[str, str]]) -> list[str]:
    if not pairs:
        return []
    return [f"  {title}:"] + [f"    {k}: {v}" for k, v in pairs]


def _compact(text: str) -> str:
    try:
        return json.dumps(json.loads(text), separators=(",", ":"), ensure_ascii=False)
    except ValueError:
        return text


def _short(type_name: str) -> str:
    return type_name.rsplit(".", 1)[-1]


def _shape(m: MethodDescriptor) -> str:
    value = m.stream_type.value
    return "" if value == "unary" else f"[{value}]"
