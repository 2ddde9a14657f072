"""
grpcdeck/repl/tea/runtime.py

ReplRuntime: owns the prompt_toolkit event loop and executes Cmd side effects
against a Session. This is the only REPL file allowed to do I/O or touch
prompt_toolkit.
"""
from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, Optional

from prompt_toolkit import PromptSession
from prompt_toolkit.auto_suggest import AutoSuggestFromHistory
from prompt_toolkit.completion import WordCompleter
from prompt_toolkit.formatted_text import FormattedText
from prompt_toolkit.history import FileHistory, InMemoryHistory
from prompt_toolkit.patch_stdout import patch_stdout

from grpcdeck.classify import classify
from grpcdeck.domain import (
    CallRecord,
    Endpoint,
    SecurityProfile,
    StreamType,
    format_byte_size,
    format_duration,
)
from grpcdeck.errors import GrpcDeckError, WorkspaceExistsError
from grpcdeck.invoker import UnaryResult
from grpcdeck.repl.completer import ReplCompleter
from grpcdeck.repl.tea.model import ReplMode, WizardField, initial_model
from grpcdeck.repl.tea.msg import (
    CallFailed, CallSucceeded, Connected, Disconnected, RequestLoaded,
    SaveConflict, StreamClosed, StreamMessage, StreamOpened, UserInput,
    WizardAborted, WizardFieldDone,
)
from grpcdeck.repl.tea.msg import (
    CancelActiveStream, Connect, DeleteWorkspace, Describe, Disconnect,
    ExitRepl, InvokeMethod, ListMethods, ListServices, ListWorkspaces,
    LoadWorkspace, ReplayHistory, SaveWorkspace, ShowHistory, ShowRecent,
    StartWizard, StreamFinish, StreamRecv, StreamSend, SyncHeaders,
    WriteHistory,
)
from grpcdeck.repl.tea.update import (
    RenderError, RenderHeaderList, RenderHelp, RenderInfo, RenderResponse,
    RenderStreamEnd, RenderStreamMessage, RenderStreamStart, begin_wizard,
    update,
)
from grpcdeck.repl.view.response import (
    view_banner, view_describe, view_error, view_header_list, view_help,
    view_history, view_info, view_methods, view_prompt_tokens, view_recent,
    view_response, view_services, view_stream_end, view_stream_message,
    view_stream_start, view_workspaces,
)
from grpcdeck.repl.view.style import build_key_bindings, repl_style
from grpcdeck.schema import Cardinality, FieldKind, MethodDescriptor
from grpcdeck.session import Session
from grpcdeck.state import MODE_FORM, MODE_TEXT
from grpcdeck.streams import END, StreamHandle

log = logging.getLogger(__name__)

HISTORY_FILE = "repl_history"


class ReplRuntime:
    """
    Outer shell of the TEA loop.
    Responsibilities (only this class):
      - Run prompt_toolkit event loop
      - Execute Cmd side effects against the Session
      - Feed results back as Msg via _dispatch (from any thread)
    """

    def __init__(self, session: Session, endpoint: Optional[Endpoint] = None) -> None:
        self._session   = session
        self._endpoint  = endpoint
        self._model     = initial_model()
        self._exit_flag = False
        self._lock      = threading.RLock()
        self._stream: Optional[StreamHandle] = None
        self._recv_index = 0
        self._listing: list[CallRecord] = []

        completer = ReplCompleter(
            services_fn=lambda: self._model.services,
            methods_fn=self._method_candidates,
            workspaces_fn=self._workspace_candidates,
            recent_fn=lambda: [e.address for e in self._session.recent()],
        )
        self._prompt = PromptSession(
            completer=completer,
            history=_history(session.config.storage_path),
            auto_suggest=AutoSuggestFromHistory(),
            style=repl_style,
            key_bindings=build_key_bindings(
                is_streaming_fn=lambda: self._model.stream_active,
                cancel_fn=self._session.cancel,
            ),
            bottom_toolbar=self._bottom_toolbar,
            refresh_interval=0.5,
            multiline=False,
            complete_while_typing=False,
        )
        self._unsubscribe = session.state.connected.subscribe(self._on_connected_changed)

    # ──────────────────────────────────────────────────────────────────────
    # Public
    # ──────────────────────────────────────────────────────────────────────

    def run(self) -> None:
        print(view_banner("", 0))
        print()
        if self._endpoint is not None:
            self._connect(self._endpoint)

        try:
            while not self._exit_flag:
                try:
                    text = self._prompt.prompt(
                        lambda: FormattedText(view_prompt_tokens(
                            self._model.server if self._model.connected else "",
                            self._model.short_service(),
                            self._prompt_mode(),
                        ))
                    )
                    if text and text.strip():
                        self._dispatch(UserInput(text=text.strip()))

                except KeyboardInterrupt:
                    if self._model.stream_active:
                        self._session.cancel()
                    else:
                        print()  # clear line
                except EOFError:
                    print("\n  Bye.")
                    break
        finally:
            self._unsubscribe()
            self._session.close()

    # ──────────────────────────────────────────────────────────────────────
    # Dispatch loop
    # ──────────────────────────────────────────────────────────────────────

    def _dispatch(self, msg: Any) -> None:
        with self._lock:
            new_model, cmds = update(self._model, msg)
            self._model = new_model
        for cmd in cmds:
            self._execute(cmd)

    def _fail(self, method: str, exc: BaseException) -> None:
        self._dispatch(CallFailed(method=method, error=classify(exc)))

    def _on_connected_changed(self, connected: bool) -> None:
        if not connected and self._model.connected:
            self._dispatch(Disconnected(self._session.state.status_message.get()))

    # ──────────────────────────────────────────────────────────────────────
    # Cmd executor
    # ──────────────────────────────────────────────────────────────────────

    def _execute(self, cmd: Any) -> None:
        # ── Connection ───────────────────────────────────────────────────────
        if isinstance(cmd, Connect):
            try:
                profile = SecurityProfile.from_flags(cmd.tls, cmd.insecure)
            except GrpcDeckError as exc:
                self._fail("connect", exc)
                return
            self._connect(Endpoint(cmd.address, profile))
            return

        if isinstance(cmd, Disconnect):
            self._session.disconnect()
            return

        if isinstance(cmd, ShowRecent):
            print(view_recent(self._session.recent()))
            return

        # ── Schema ───────────────────────────────────────────────────────────
        if isinstance(cmd, ListServices):
            self._guard("services", lambda: print(view_services(self._session.services())))
            return

        if isinstance(cmd, ListMethods):
            self._guard("methods", lambda: print(
                view_methods(self._session.schema.resolve_service(cmd.service))
            ))
            return

        if isinstance(cmd, Describe):
            self._guard("describe", lambda: print(self._describe(cmd.symbol)))
            return

        # ── Calls ────────────────────────────────────────────────────────────
        if isinstance(cmd, InvokeMethod):
            self._invoke(cmd)
            return

        if isinstance(cmd, StartWizard):
            self._run_wizard(cmd.service, cmd.method)
            return

        if isinstance(cmd, StreamSend):
            self._stream_send(cmd.text)
            return

        if isinstance(cmd, StreamFinish):
            self._stream_finish()
            return

        if isinstance(cmd, StreamRecv):
            self._stream_recv(cmd.wait)
            return

        if isinstance(cmd, CancelActiveStream):
            self._session.cancel()
            return

        if isinstance(cmd, SyncHeaders):
            self._session.state.request.metadata.set(tuple(cmd.headers))
            return

        # ── History / workspaces ─────────────────────────────────────────────
        if isinstance(cmd, ShowHistory):
            self._listing = self._session.history.filter(cmd.filter)
            print(view_history(self._listing))
            return

        if isinstance(cmd, ReplayHistory):
            self._replay(cmd)
            return

        if isinstance(cmd, SaveWorkspace):
            self._save(cmd)
            return

        if isinstance(cmd, LoadWorkspace):
            self._load(cmd.name)
            return

        if isinstance(cmd, ListWorkspaces):
            self._guard("workspaces", lambda: print(
                view_workspaces(self._session.workspaces.list())
            ))
            return

        if isinstance(cmd, DeleteWorkspace):
            self._guard("rm", lambda: (
                self._session.workspaces.delete(cmd.name),
                print(f"  🗑  Deleted workspace '{cmd.name}'."),
            ))
            return

        # ── Render ───────────────────────────────────────────────────────────
        if isinstance(cmd, RenderResponse):
            print(view_response(cmd.text, cmd.duration, cmd.size, cmd.headers, cmd.trailers))
            return

        if isinstance(cmd, RenderStreamStart):
            _print_async(view_stream_start(cmd.method, cmd.kind))
            return

        if isinstance(cmd, RenderStreamMessage):
            _print_async(view_stream_message(cmd.text, cmd.index))
            return

        if isinstance(cmd, RenderStreamEnd):
            _print_async(view_stream_end(cmd.total, cmd.visible, cmd.duration, cmd.error))
            return

        if isinstance(cmd, RenderError):
            _print_async(view_error(cmd.error if cmd.error is not None else cmd.message))
            return

        if isinstance(cmd, RenderInfo):
            _print_async(view_info(cmd.message))
            return

        if isinstance(cmd, RenderHelp):
            print(view_help(cmd.topic))
            return

        if isinstance(cmd, RenderHeaderList):
            print(view_header_list(cmd.headers))
            return

        # ── Write history ────────────────────────────────────────────────────
        if isinstance(cmd, WriteHistory):
            return  # prompt_toolkit handles history via FileHistory

        # ── Exit ─────────────────────────────────────────────────────────────
        if isinstance(cmd, ExitRepl):
            print("  Bye.")
            self._exit_flag = True
            return

    def _guard(self, what: str, fn) -> None:
        try:
            fn()
        except GrpcDeckError as exc:
            self._fail(what, exc)

    # ──────────────────────────────────────────────────────────────────────
    # Connection
    # ──────────────────────────────────────────────────────────────────────

    def _connect(self, endpoint: Endpoint) -> None:
        print(f"  🔍  Connecting to {endpoint.address} …")
        try:
            services = self._session.connect(endpoint)
        except KeyboardInterrupt:
            self._session.disconnect()
            print("  ↩  Connect aborted.")
            return
        except GrpcDeckError as exc:
            self._fail("connect", exc)
            return
        self._sync_connection()
        print(f"  ✔  {self._session.state.status_message.get()}")
        print(view_services(services))

    def _sync_connection(self) -> None:
        """Bring the model in line with the session after a (re)connect."""
        if not self._session.connected:
            return
        address = self._session.endpoint.address
        names   = tuple(self._session.schema.list_services())
        if self._model.server != address or not self._model.connected \
                or self._model.services != names:
            self._dispatch(Connected(address, names))

    # ──────────────────────────────────────────────────────────────────────
    # Calls
    # ──────────────────────────────────────────────────────────────────────

    def _invoke(self, cmd: InvokeMethod) -> None:
        qualified = f"{cmd.service}/{cmd.method}"
        try:
            resolved = self._session.select_method(cmd.service, cmd.method)
            self._session.set_request(cmd.body)
            self._session.set_mode(MODE_TEXT)
            result = self._session.send()
        except KeyboardInterrupt:
            self._session.cancel()
            print("  ↩  Call cancelled.")
            return
        except GrpcDeckError as exc:
            self._fail(qualified, exc)
            return

        if isinstance(result, UnaryResult):
            self._dispatch(CallSucceeded(
                method=qualified,
                text=result.text,
                duration=format_duration(result.duration_ms),
                size=format_byte_size(result.size),
                headers=result.headers,
                trailers=result.trailers,
            ))
            return
        self._attach_stream(result, resolved.method)

    def _attach_stream(self, handle: StreamHandle, method: MethodDescriptor) -> None:
        kind = method.stream_type
        with self._lock:
            self._stream     = handle
            self._recv_index = 0
        self._dispatch(StreamOpened(method.qualified, kind.value))

        if kind == StreamType.BIDI_STREAM:
            # Received messages wait in the buffer until `recv`.
            handle.add_done_callback(lambda h: self._stream_closed(h, drain=True))
            return

        def _print_all() -> None:
            index = 0
            try:
                for text in handle:
                    index += 1
                    self._dispatch(StreamMessage(method.qualified, text, index))
            except GrpcDeckError as exc:
                log.debug("%s: stream terminated: %s", method.qualified, exc)
            handle.wait()
            self._stream_closed(handle, drain=False)

        threading.Thread(target=_print_all, name="grpcdeck-repl-stream", daemon=True).start()

    def _stream_closed(self, handle: StreamHandle, drain: bool) -> None:
        if drain:
            self._drain(handle, 0.0)
        with self._lock:
            if self._stream is handle:
                self._stream = None
        error = handle.error
        self._dispatch(StreamClosed(
            method=handle.method,
            total=handle.message_count,
            visible=handle.buffer.visible,
            duration=format_duration(handle.duration_ms),
            error=classify(error) if error is not None else None,
        ))

    def _active_stream(self) -> Optional[StreamHandle]:
        with self._lock:
            return self._stream

    def _stream_send(self, text: str) -> None:
        handle = self._active_stream()
        if handle is None:
            self._dispatch(CallFailed("send", classify(RuntimeError("no open stream"))))
            return
        try:
            handle.send(text)
        except GrpcDeckError as exc:
            self._fail(handle.method, exc)
            return
        print(f"  ➤  sent #{handle.sent_count}")

    def _stream_finish(self) -> None:
        handle = self._active_stream()
        if handle is None:
            return
        handle.close_send()
        print(f"  ⏏  send side closed after {handle.sent_count} message(s)")

    def _stream_recv(self, wait: float) -> None:
        handle = self._active_stream()
        if handle is None:
            return
        if self._drain(handle, wait) == 0:
            print("  (nothing received)")

    def _drain(self, handle: StreamHandle, wait: float) -> int:
        count   = 0
        timeout = wait
        while True:
            try:
                item = handle.recv(timeout)
            except TimeoutError:
                return count
            except GrpcDeckError:
                return count
            if item is END:
                return count
            with self._lock:
                self._recv_index += 1
                index = self._recv_index
            self._dispatch(StreamMessage(handle.method, item, index))
            count  += 1
            timeout = 0.0

    # ──────────────────────────────────────────────────────────────────────
    # Wizard
    # ──────────────────────────────────────────────────────────────────────

    def _run_wizard(self, service: str, method: str) -> None:
        try:
            resolved = self._session.resolve(f"{service}/{method}")
        except GrpcDeckError as exc:
            self._fail(f"{service}/{method}", exc)
            return

        fields = tuple(
            WizardField(
                name=f.json_name or f.name,
                label=f.type_label(),
                is_string=f.kind in (FieldKind.STRING, FieldKind.BYTES)
                and f.cardinality in (Cardinality.SINGULAR, Cardinality.OPTIONAL),
            )
            for f in resolved.input.fields
        )
        if not fields:
            self._execute(InvokeMethod(service, method, "{}"))
            return

        self._session.set_mode(MODE_FORM)
        with self._lock:
            self._model = begin_wizard(self._model, service, method, fields)

        print(f"  ✏️  {method}: enter each field, empty to skip, Ctrl-C to abort\n")

        by_name = {f.json_name or f.name: f for f in resolved.input.fields}
        for wf in fields:
            value = self._wizard_prompt_field(wf, by_name[wf.name])
            if value is None:
                self._dispatch(WizardAborted())
                print("  ↩  Wizard aborted.")
                return
            self._dispatch(WizardFieldDone(field_name=wf.name, value=value))

    def _wizard_prompt_field(self, wf: WizardField, field: Any) -> Optional[str]:
        """Prompt for a single wizard field with inline completion."""
        mini_completer = None
        if field.kind == FieldKind.ENUM and field.type_name:
            try:
                enum = self._session.schema.resolve_enum(field.type_name)
                mini_completer = WordCompleter([v.name for v in enum.values])
            except GrpcDeckError as exc:
                log.debug("no enum completion for %s: %s", field.type_name, exc)
        elif field.kind == FieldKind.BOOL:
            mini_completer = WordCompleter(["true", "false"])

        prompt_str = FormattedText([
            ("class:wizard-field", f"  {wf.name}"),
            ("class:wizard-type",  f" [{wf.label}]"),
            ("",                   ": "),
        ])
        try:
            mini_session = PromptSession(
                completer=mini_completer,
                style=repl_style,
                complete_while_typing=True,
            )
            return mini_session.prompt(prompt_str)
        except (KeyboardInterrupt, EOFError):
            return None

    # ──────────────────────────────────────────────────────────────────────
    # History / workspaces
    # ──────────────────────────────────────────────────────────────────────

    def _replay(self, cmd: ReplayHistory) -> None:
        listing = self._listing or self._session.history.entries()
        if cmd.index > len(listing):
            self._dispatch(CallFailed("replay", classify(
                IndexError(f"no entry {cmd.index}; run `history` first")
            )))
            return
        entry = listing[cmd.index - 1]
        try:
            self._session.replay(entry)
        except GrpcDeckError as exc:
            self._fail("replay", exc)
            return
        self._sync_connection()
        self._dispatch(RequestLoaded(entry.service, entry.method_name, entry.request_metadata))
        print(f"  {entry.request}")
        if cmd.send:
            self._execute(InvokeMethod(entry.service, entry.method_name, entry.request))

    def _save(self, cmd: SaveWorkspace) -> None:
        try:
            self._session.save_workspace(cmd.name, overwrite=cmd.overwrite)
        except WorkspaceExistsError:
            self._dispatch(SaveConflict(cmd.name))
            return
        except GrpcDeckError as exc:
            self._fail("save", exc)
            return
        print(f"  💾  Saved workspace '{cmd.name}'.")

    def _load(self, name: str) -> None:
        try:
            ws = self._session.load_workspace(name)
        except GrpcDeckError as exc:
            self._fail("load", exc)
            return
        self._sync_connection()
        headers = ws.request.metadata if ws.request else ()
        self._dispatch(RequestLoaded(ws.selected_service, ws.selected_method, headers))

    # ──────────────────────────────────────────────────────────────────────
    # Completion sources
    # ──────────────────────────────────────────────────────────────────────

    def _method_candidates(self) -> list[str]:
        if not self._session.connected:
            return []
        out = []
        for svc in self._session.state.services.get():
            for m in svc.methods:
                if svc.full_name == self._model.service:
                    out.append(m.name)
                out.append(m.qualified)
        return out

    def _workspace_candidates(self) -> list[str]:
        try:
            return self._session.workspaces.list()
        except GrpcDeckError:
            return []

    # ──────────────────────────────────────────────────────────────────────
    # Prompt accessories
    # ──────────────────────────────────────────────────────────────────────

    def _describe(self, symbol: str) -> str:
        obj = self._session.describe(symbol)
        if isinstance(obj, MethodDescriptor):
            schema = self._session.schema
            return view_describe(obj, (
                schema.resolve_message(obj.input_type),
                schema.resolve_message(obj.output_type),
            ))
        return view_describe(obj)

    def _prompt_mode(self) -> str:
        if self._model.mode == ReplMode.WIZARD:
            return "wizard"
        if self._model.mode == ReplMode.CONFIRM:
            return "confirm"
        if self._model.stream_kind:
            return self._model.stream_kind
        return ""

    def _bottom_toolbar(self) -> FormattedText:
        parts: list[tuple[str, str]] = []
        handle = self._active_stream()
        if self._model.stream_active and handle is not None:
            parts.append((
                "class:bottom-toolbar.stream",
                f" 📡 {handle.method}  sent {handle.sent_count}  "
                f"received {handle.message_count}  Esc to cancel ",
            ))
        elif self._model.error:
            err = self._model.error[:60]
            parts.append(("class:error", f" ❌ {err} "))
        else:
            state  = self._session.state
            status = state.status_message.get() or "not connected"
            hdrs   = len(self._model.headers)
            parts.append((
                "class:bottom-toolbar.text",
                f" {status}  {hdrs} header(s)  F1=help ",
            ))
        return FormattedText(parts)


def _history(storage_path: str):
    base = Path(storage_path)
    if base.is_dir():
        return FileHistory(str(base / HISTORY_FILE))
    return InMemoryHistory()


def _print_async(text: str) -> None:
    with patch_stdout():
        print(text)
