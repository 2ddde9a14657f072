"""grpcdeck/repl/view/style.py: colours for prompt, toolbar and wizard; REPL key bindings."""

from __future__ import annotations

from typing import Callable, Optional

from prompt_toolkit.key_binding import KeyBindings
from prompt_toolkit.styles import Style

# Connection and call status colours, shared by prompt and toolbar.
OK_COLOUR      = "#a6e3a1"
WARN_COLOUR    = "#f9e2af"
ERROR_COLOUR   = "#f38ba8"
MUTED_COLOUR   = "#6c7086"
ACCENT_COLOUR  = "#89b4fa"

repl_style = Style.from_dict(
    {
        # Prompt: [server] service mode>
        "server":       ACCENT_COLOUR,
        "disconnected": f"{ERROR_COLOUR} italic",
        "service":      f"{OK_COLOUR} bold",
        "arrow":        "#cdd6f4",

        "completion-menu.completion":         "bg:#1e1e2e #cdd6f4",
        "completion-menu.completion.current": "bg:#313244 #cba6f7 bold",
        "completion-menu.meta":               MUTED_COLOUR,
        "completion-menu.meta.current":       "#a6adc8",
        "auto-suggestion":                    "#585b70 italic",

        # Toolbar carries connection status, or the open stream, or the last error
        "bottom-toolbar":        f"bg:#181825 {MUTED_COLOUR}",
        "bottom-toolbar.text":   MUTED_COLOUR,
        "bottom-toolbar.stream": f"{WARN_COLOUR} bold",
        "error":                 ERROR_COLOUR,

        # Field-by-field request wizard
        "wizard-field": f"{OK_COLOUR} bold",
        "wizard-type":  f"{MUTED_COLOUR} italic",
    }
)


def build_key_bindings(
    is_streaming_fn: Optional[Callable[[], bool]] = None,
    cancel_fn: Optional[Callable[[], None]] = None,
) -> KeyBindings:
    """
    Ctrl-C and Escape cancel the open stream. With no stream, Ctrl-C
    clears the line and Escape does nothing.
    """
    kb = KeyBindings()

    def _streaming() -> bool:
        return bool(is_streaming_fn and is_streaming_fn() and cancel_fn)

    @kb.add("c-c")
    def _interrupt(event):
        if _streaming():
            cancel_fn()
        else:
            event.app.current_buffer.reset()

    @kb.add("escape", eager=True)
    def _cancel_stream(event):
        if _streaming():
            cancel_fn()

    @kb.add("tab")
    def _tab(event):
        buf = event.app.current_buffer
        if buf.complete_state:
            buf.complete_next()
        else:
            buf.start_completion(select_first=True)

    @kb.add("f1")
    def _help(event):
        # help for the command being typed
        buf  = event.app.current_buffer
        word = buf.text.split(" ")[0] if buf.text.strip() else ""
        buf.text = f"help {word}".strip()
        buf.validate_and_handle()

    return kb
