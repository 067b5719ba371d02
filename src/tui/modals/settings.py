"""Settings modal for the upstream URL and API key."""

from typing import Optional

from textual.app import ComposeResult
from textual.binding import Binding
from textual.containers import Vertical
from textual.screen import ModalScreen
from textual.widgets import Input, Static

from ..styles import PURPLE, FG_DIM, RED
from ...config import ChatSettings


class SettingsModal(ModalScreen[Optional[ChatSettings]]):
    """Modal for entering the tunnel URL and API key.

    Dismisses with the updated (and saved) settings, or None on cancel.
    """

    BINDINGS = [
        Binding("escape", "cancel", "Cancel", show=False),
    ]

    DEFAULT_CSS = f"""
    SettingsModal {{
        align: center middle;
        background: transparent;
    }}

    SettingsModal > Vertical {{
        width: 70;
        height: auto;
        border: thick $background 80%;
        background: $surface;
        padding: 1 2;
    }}

    SettingsModal .modal-title {{
        text-align: center;
        text-style: bold;
        color: {PURPLE};
        padding-bottom: 1;
    }}

    SettingsModal .modal-hint {{
        text-align: center;
        color: {FG_DIM};
        padding-bottom: 1;
    }}

    SettingsModal .modal-footer {{
        text-align: center;
        color: {FG_DIM};
        padding-top: 1;
    }}

    SettingsModal Input {{
        width: 100%;
        margin-bottom: 1;
    }}

    SettingsModal Input.error {{
        border: solid {RED};
    }}
    """

    def __init__(self, settings: ChatSettings) -> None:
        super().__init__()
        self._settings = settings

    def compose(self) -> ComposeResult:
        """Compose the modal layout."""
        with Vertical():
            yield Static("Settings", classes="modal-title")
            yield Static("Tunnel URL of your model server, e.g. https://abcd.ngrok-free.app", classes="modal-hint")
            yield Input(value=self._settings.api_url, placeholder="API URL", id="url-input")
            yield Input(value=self._settings.api_key, placeholder="API key (optional)", password=True, id="key-input")
            yield Static("enter save • esc cancel", classes="modal-footer")

    def on_mount(self) -> None:
        """Focus the URL input on mount."""
        self.query_one("#url-input", Input).focus()

    def on_input_submitted(self, event: Input.Submitted) -> None:
        """Enter on the URL moves to the key; enter on the key saves."""
        event.stop()
        if event.input.id == "url-input":
            self.query_one("#key-input", Input).focus()
            return
        self._save()

    def _save(self) -> None:
        url_input = self.query_one("#url-input", Input)
        url = url_input.value.strip()
        if not url:
            # Flash the input to indicate error
            url_input.add_class("error")
            url_input.focus()
            self.set_timer(0.5, lambda: url_input.remove_class("error"))
            return

        self._settings.api_url = url
        self._settings.api_key = self.query_one("#key-input", Input).value.strip()
        self._settings.save()
        self.dismiss(self._settings)

    def action_cancel(self) -> None:
        """Cancel and close the modal."""
        self.dismiss(None)
