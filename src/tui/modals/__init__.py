"""TUI modals for dialogs and inputs."""

from .settings import SettingsModal

__all__ = ["SettingsModal"]
