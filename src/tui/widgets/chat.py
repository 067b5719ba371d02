"""Chat panel widget - transcript view and message input.

The panel renders a ChatSession's transcript and forwards submissions to
it. The input is never locked: messages typed while a reply is streaming
are queued by the session and answered in order.
"""

from typing import TYPE_CHECKING

from rich.console import Group
from rich.markdown import Markdown
from rich.text import Text
from textual.app import ComposeResult
from textual.containers import Vertical, VerticalScroll
from textual.message import Message
from textual.widgets import Input, Static

from ..styles import CYAN, FG, FG_DIM, PINK, RED, YELLOW, rule_color
from ...session import Turn

if TYPE_CHECKING:
    from ...session import ChatSession


class ChatPanel(Vertical):
    """Scrollable transcript with an always-enabled input line."""

    DEFAULT_CSS = f"""
    ChatPanel {{
        width: 100%;
        height: 1fr;
        border: solid {FG_DIM};
        background: transparent;
    }}

    ChatPanel .chat-header {{
        height: 1;
        padding: 0 1;
    }}

    ChatPanel .chat-container {{
        height: 1fr;
        padding: 0 1;
        background: transparent;
        overflow-x: hidden;
        overflow-y: auto;
    }}

    ChatPanel .chat-message {{
        padding: 0;
        margin: 0 0 1 0;
        width: 100%;
    }}

    ChatPanel Input {{
        width: 100%;
        border: none;
        background: transparent;
        padding: 0;
    }}

    ChatPanel .status-line {{
        height: 1;
        padding: 0 1;
    }}

    ChatPanel .chat-footer {{
        height: 1;
        padding: 0 1;
        color: {FG_DIM};
    }}
    """

    class Submitted(Message):
        """Posted when the user enters a message."""

        def __init__(self, text: str) -> None:
            super().__init__()
            self.text = text

    def __init__(self, title: str = "relaychat") -> None:
        super().__init__()
        self._title = title
        # (role, content, failed) last rendered per transcript index
        self._rendered: list[tuple[str, str, bool]] = []
        self._messages: list[Static] = []

    def compose(self) -> ComposeResult:
        """Compose the chat widget."""
        yield Static(self._render_header(), classes="chat-header")
        yield VerticalScroll(id="chat-container", classes="chat-container")
        yield Static("", id="chat-status-line", classes="status-line")
        yield Input(placeholder="> Ask something...", id="chat-input")
        yield Static(self._render_footer(), classes="chat-footer")

    def on_mount(self) -> None:
        self.query_one("#chat-input", Input).focus()

    def _render_header(self) -> Text:
        """Render header with title and gradient rule."""
        text = Text()
        text.append(f"{self._title} ", style=f"bold {PINK}")
        width = 60 - len(self._title)
        for i in range(width):
            text.append("─", style=rule_color(i / width))
        return text

    def _render_footer(self) -> Text:
        """Render footer with key hints."""
        text = Text()
        for key, label in (("enter", "send"), ("ctrl+l", "clear"), ("ctrl+s", "settings"), ("ctrl+c", "quit")):
            text.append(key, style=f"bold {FG}")
            text.append(f" {label}   ", style=FG_DIM)
        return text

    def on_input_submitted(self, event: Input.Submitted) -> None:
        event.stop()
        text = event.value.strip()
        if not text:
            return
        self.post_message(self.Submitted(text))

    def clear_input(self) -> None:
        self.query_one("#chat-input", Input).value = ""

    def focus_input(self) -> None:
        self.query_one("#chat-input", Input).focus()

    # ------------------------------------------------------------------
    # Transcript rendering
    # ------------------------------------------------------------------

    def sync(self, session: "ChatSession") -> None:
        """Bring the displayed messages in line with the session transcript."""
        container = self.query_one("#chat-container", VerticalScroll)
        transcript = session.snapshot()
        active_index = session.active.turn_index if session.active else None

        if len(transcript) < len(self._rendered):
            # Transcript was cleared
            container.remove_children()
            self._rendered = []
            self._messages = []

        changed = False
        for index, turn in enumerate(transcript):
            state = (turn.role, turn.content, turn.failed)
            if index < len(self._rendered):
                if self._rendered[index] == state and index != active_index:
                    continue
                self._messages[index].update(self._render_turn(turn, index == active_index))
                self._rendered[index] = state
            else:
                message = Static(self._render_turn(turn, index == active_index), classes="chat-message")
                container.mount(message)
                self._messages.append(message)
                self._rendered.append(state)
            changed = True

        if changed:
            container.scroll_end(animate=False)
        self._update_status(session)

    def _render_turn(self, turn: Turn, streaming: bool):
        if turn.role == "user":
            text = Text()
            text.append("You: ", style=f"bold {CYAN}")
            text.append(turn.content, style=FG)
            return text

        label = Text("Assistant:", style=f"bold {PINK}")
        if turn.failed:
            return Group(label, Text(_plain_error(turn.content), style=f"bold {RED}"))
        if streaming and not turn.content:
            return Group(label, Text("...", style=FG_DIM))
        return Group(label, Markdown(turn.content))

    def _update_status(self, session: "ChatSession") -> None:
        status = self.query_one("#chat-status-line", Static)
        if not session.busy:
            status.update("")
            return
        queued = max(len(session.pending) - 1, 0)
        text = Text("Generating...", style=YELLOW)
        if queued:
            text.append(f"  {queued} queued", style=FG_DIM)
        status.update(text)


def _plain_error(content: str) -> str:
    """Drop markdown emphasis from an error line for plain rendering."""
    return content.replace("**", "")

