"""Main screen - chat panel bound to a ChatSession, settings float on top."""

import logging
from typing import TYPE_CHECKING, Optional

from rich.text import Text
from textual.app import ComposeResult
from textual.binding import Binding
from textual.screen import Screen
from textual.widgets import Footer, Static

from ..styles import CYAN, FG_DIM, YELLOW
from ..widgets.chat import ChatPanel
from ...config import ChatSettings
from ...session import ChatSession, create_relay

if TYPE_CHECKING:
    from ..app import ChatApp

log = logging.getLogger(__name__)


class MainScreen(Screen):
    """Chat screen owning the conversation for the lifetime of the app."""

    BINDINGS = [
        Binding("ctrl+l", "clear_chat", "Clear", show=True),
        Binding("ctrl+s", "open_settings", "Settings", show=True),
    ]

    DEFAULT_CSS = """
    MainScreen {
        layout: vertical;
        overflow: hidden;
    }

    MainScreen #main-status {
        width: 100%;
        height: 1;
        padding: 0 2;
    }

    MainScreen ChatPanel {
        margin: 0 2;
    }
    """

    def __init__(self) -> None:
        super().__init__()
        self.session: Optional[ChatSession] = None
        self._settings_open = False

    def compose(self) -> ComposeResult:
        yield Static("", id="main-status")
        yield ChatPanel()
        yield Footer()

    def on_mount(self) -> None:
        """Create the session, or ask for settings first."""
        app: "ChatApp" = self.app  # type: ignore
        settings = app.settings

        self.session = ChatSession(
            create_relay(settings),
            settings,
            on_change=self._on_session_change,
            on_config_required=self.action_open_settings,
        )
        self._update_status(settings)

        if not settings.is_configured:
            self.action_open_settings()

    def _on_session_change(self, session: ChatSession) -> None:
        self.query_one(ChatPanel).sync(session)

    def on_chat_panel_submitted(self, event: ChatPanel.Submitted) -> None:
        """Queue the message; the input stays enabled while replies stream."""
        if self.session is None:
            return
        panel = self.query_one(ChatPanel)
        if self.session.submit(event.text):
            panel.clear_input()

    def _update_status(self, settings: ChatSettings) -> None:
        """Show where messages are sent."""
        status = self.query_one("#main-status", Static)
        text = Text()
        if not settings.is_configured:
            text.append("Not configured - press ctrl+s to set the API URL", style=YELLOW)
        else:
            text.append("Upstream ", style=FG_DIM)
            text.append(settings.api_url, style=CYAN)
            if settings.relay_url:
                text.append("  via ", style=FG_DIM)
                text.append(settings.relay_url, style=CYAN)
            text.append(f"  [{settings.relay_mode}]", style=FG_DIM)
        status.update(text)

    def action_open_settings(self) -> None:
        """Open the settings modal (at most one at a time)."""
        from ..modals.settings import SettingsModal

        if self._settings_open:
            return
        self._settings_open = True
        app: "ChatApp" = self.app  # type: ignore

        def handle_settings(result: Optional[ChatSettings]) -> None:
            self._settings_open = False
            if result is not None:
                log.info("Settings updated")
                self._update_status(result)
            self.query_one(ChatPanel).focus_input()

        self.app.push_screen(SettingsModal(app.settings), handle_settings)

    def action_clear_chat(self) -> None:
        """Drop the conversation, including any reply still streaming."""
        if self.session is not None:
            self.session.clear()

    async def shutdown(self) -> None:
        """Abandon in-flight work and release the relay's connections."""
        if self.session is None:
            return
        session, self.session = self.session, None
        session.clear()
        await session.relay.close()
