"""
grpcdeck/repl/completer.py

ReplCompleter: completes command words and their first argument.
Candidates come from callables the runtime supplies, so the completer
itself does no I/O.
"""

from __future__ import annotations

from typing import Callable, Iterable, Iterator

from prompt_toolkit.completion import CompleteEvent, Completer, Completion
from prompt_toolkit.document import Document

from grpcdeck.repl.view.response import HELP

Source = Callable[[], Iterable[str]]

_HEADER_SUBCOMMANDS = ("set", "list", "clear")
_CONNECT_FLAGS      = ("--tls", "--insecure-skip-verify")


class ReplCompleter(Completer):
    """
    Completion logic for the main prompt.

      <TAB>                  → command names, with their help text as meta
      use|methods <TAB>      → service names
      call|describe <TAB>    → methods (relative to `use` when one is set)
      load|rm <TAB>          → saved workspaces
      connect <TAB>          → recent servers, then flags
      header <TAB>           → set / list / clear
    """

    def __init__(
        self,
        services_fn:   Source = lambda: (),
        methods_fn:    Source = lambda: (),
        workspaces_fn: Source = lambda: (),
        recent_fn:     Source = lambda: (),
    ) -> None:
        self._services_fn   = services_fn
        self._methods_fn    = methods_fn
        self._workspaces_fn = workspaces_fn
        self._recent_fn     = recent_fn

    def get_completions(
        self, document: Document, complete_event: CompleteEvent
    ) -> Iterator[Completion]:
        text = document.text_before_cursor
        after_space = text.endswith(" ")
        words = text.split()

        # ── Command name ─────────────────────────────────────────────────────
        if not words or (len(words) == 1 and not after_space):
            yield from self._complete_command(words[0] if words else "")
            return

        cmd = words[0]
        # Only the first argument is completed; call bodies are free text.
        if len(words) > 2 or (len(words) == 2 and after_space):
            if cmd == "connect":
                partial = "" if after_space else words[-1]
                yield from _from(_CONNECT_FLAGS, partial)
            return

        partial = "" if after_space else words[1]
        if cmd in ("use", "methods"):
            yield from _from(self._services_fn(), partial)
        elif cmd in ("call", "describe"):
            yield from _from(self._methods_fn(), partial)
        elif cmd in ("load", "rm", "save"):
            yield from _from(self._workspaces_fn(), partial)
        elif cmd == "connect":
            yield from _from(self._recent_fn(), partial)
        elif cmd == "header":
            yield from _from(_HEADER_SUBCOMMANDS, partial)
        elif cmd in ("help", "?"):
            yield from _from(HELP, partial)

    def _complete_command(self, partial: str) -> Iterator[Completion]:
        for name, (usage, desc) in HELP.items():
            if name.startswith(partial):
                yield Completion(
                    name,
                    start_position=-len(partial),
                    display=name,
                    display_meta=desc,
                )


def _from(candidates: Iterable[str], partial: str) -> Iterator[Completion]:
    seen: set[str] = set()
    for value in candidates:
        if value in seen or not value.startswith(partial):
            continue
        seen.add(value)
        yield Completion(value, start_position=-len(partial))
