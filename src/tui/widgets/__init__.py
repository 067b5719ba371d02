"""TUI widgets for relaychat."""

from .chat import ChatPanel

__all__ = ["ChatPanel"]
