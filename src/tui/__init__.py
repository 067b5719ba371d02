"""Textual chat front end for relaychat."""

from .app import ChatApp

__all__ = ["ChatApp"]
