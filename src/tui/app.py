"""Main relaychat TUI application using Textual framework."""

import atexit
import logging
import sys
from pathlib import Path
from typing import Optional

from textual.app import App
from textual.binding import Binding

from ..config import ChatSettings
from .styles import RELAYCHAT_CSS


def _restore_terminal():
    """Restore terminal state on exit."""
    if sys.stdout.isatty():
        # Show cursor
        sys.stdout.write("\033[?25h")
        # Reset terminal attributes
        sys.stdout.write("\033[0m")
        sys.stdout.flush()


# Register terminal restore on exit
atexit.register(_restore_terminal)


class ChatApp(App):
    """Main relaychat TUI application."""

    CSS = RELAYCHAT_CSS

    ENABLE_COMMAND_PALETTE = False

    BINDINGS = [
        Binding("ctrl+c", "quit", "Quit", show=True, priority=True),
    ]

    # Shared application state
    settings: ChatSettings
    verbose: bool = False
    _log_file: Optional[Path] = None

    def __init__(self, verbose: bool = False, settings: Optional[ChatSettings] = None) -> None:
        super().__init__()
        self.verbose = verbose
        self.settings = settings or ChatSettings.load()
        self.theme = "dracula"

        # Configure debug logging when verbose mode is enabled
        if verbose:
            self._setup_debug_logging()

    def _setup_debug_logging(self) -> None:
        """Setup debug logging to file when verbose mode is enabled."""
        log_file = Path.cwd() / "relaychat-debug.log"

        root_logger = logging.getLogger()

        # Remove existing handlers
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)

        # File handler - captures all debug output
        file_handler = logging.FileHandler(log_file, mode='w')
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%H:%M:%S",
        ))

        # Console handler - only warnings (don't mess up TUI)
        console_handler = logging.StreamHandler()
        console_handler.setLevel(logging.WARNING)
        console_handler.setFormatter(logging.Formatter("%(message)s"))

        root_logger.addHandler(file_handler)
        root_logger.addHandler(console_handler)
        root_logger.setLevel(logging.DEBUG)

        # httpx logs every request at INFO
        logging.getLogger("httpx").setLevel(logging.WARNING)

        self._log_file = log_file

    def on_mount(self) -> None:
        """Handle mount event - push the main screen."""
        from .screens.main import MainScreen
        self.push_screen(MainScreen())

    async def action_quit(self) -> None:
        """Drop any in-flight exchange, close the relay and exit."""
        from .screens.main import MainScreen

        for screen in self.screen_stack:
            if isinstance(screen, MainScreen):
                await screen.shutdown()
        self.exit()

