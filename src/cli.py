#!/usr/bin/env python3
"""relaychat CLI - headless relay server and terminal chat.

Usage:
    relaychat --serve                          Run the relay server
    relaychat --url https://xyz.ngrok.app --key sk-...   Save upstream settings
    relaychat --ask "Explain async/await"      One-shot question
    relaychat --chat                           Line-based chat in the terminal
    relaychat --clear-key                      Forget the saved API key

Environment variables (alternative to args):
    RELAY_MODE          stream or aggregate (default: stream)
    UPSTREAM_API_KEY    Server-side default credential
    HOST / PORT         Relay server bind address (default: 127.0.0.1, OS-assigned port)
"""

import argparse
import asyncio
import logging
import sys
from typing import Optional

from rich.console import Console
from rich.text import Text

from .config import ChatSettings, RELAY_MODES
from .session import ChatSession, Turn, create_relay

# Setup logging
logging.basicConfig(
    level=logging.WARNING,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
log = logging.getLogger("relaychat")

console = Console()


class TerminalChat:
    """Line-based chat driving a ChatSession.

    Replies are printed as they stream in. Reading the next line runs in a
    worker thread so queued messages keep being processed while typing.
    """

    def __init__(self, settings: ChatSettings, relay=None):
        self.settings = settings
        self.relay = relay or create_relay(settings)
        self.session = ChatSession(
            self.relay,
            settings,
            on_change=self._on_change,
            on_config_required=self._on_config_required,
        )
        self._printed: dict[int, int] = {}  # turn index -> chars already printed
        self._finished: set[int] = set()

    def _on_config_required(self) -> None:
        console.print("[yellow]No API URL configured. Run: relaychat --url <tunnel url> --key <api key>[/yellow]")

    def _on_change(self, session: ChatSession) -> None:
        if not session.transcript:
            self._printed.clear()
            self._finished.clear()
            return

        active_index = session.active.turn_index if session.active else None
        for index, turn in enumerate(session.transcript):
            if turn.role != "assistant" or index in self._finished:
                continue
            self._print_progress(index, turn)
            if index != active_index:
                self._finish(index, turn)

    def _print_progress(self, index: int, turn: Turn) -> None:
        if turn.failed:
            return
        printed = self._printed.get(index, 0)
        if len(turn.content) > printed:
            console.print(Text(turn.content[printed:]), end="", soft_wrap=True)
            self._printed[index] = len(turn.content)

    def _finish(self, index: int, turn: Turn) -> None:
        if self._printed.get(index):
            console.print()
        if turn.failed:
            console.print(Text(turn.content, style="bold red"))
        self._finished.add(index)

    async def ask(self, text: str) -> int:
        """Send one message and wait for the reply. Returns exit code."""
        if not self.session.submit(text):
            return 1
        await self.session.wait_idle()
        last = self.session.transcript[-1] if self.session.transcript else None
        return 1 if last is None or last.failed else 0

    async def run(self) -> int:
        """Interactive loop until EOF or /quit."""
        console.print("[bold]relaychat[/bold] [dim]/clear resets the conversation, /quit exits[/dim]")
        loop = asyncio.get_running_loop()
        try:
            while True:
                try:
                    line = await loop.run_in_executor(None, input, "")
                except (EOFError, KeyboardInterrupt):
                    break

                line = line.strip()
                if not line:
                    continue
                if line.lower() in ("/quit", "/exit", "quit", "exit"):
                    break
                if line.lower() == "/clear":
                    self.session.clear()
                    console.print("[dim]Conversation cleared[/dim]")
                    continue

                self.session.submit(line)

            await self.session.wait_idle()
            return 0
        finally:
            await self.relay.close()


def _apply_settings(args: argparse.Namespace) -> ChatSettings:
    """Merge command-line overrides into the saved settings."""
    settings = ChatSettings.load()
    changed = False
    if args.url is not None:
        settings.api_url = args.url
        changed = True
    if args.key is not None:
        settings.api_key = args.key
        changed = True
    if args.mode is not None:
        settings.relay_mode = args.mode
        changed = True
    if args.relay is not None:
        settings.relay_url = args.relay
        changed = True
    if changed:
        settings.save()
        log.info("Settings saved")
    return settings


async def _ask(settings: ChatSettings, text: str) -> int:
    chat = TerminalChat(settings)
    try:
        return await chat.ask(text)
    finally:
        await chat.relay.close()


def main(argv: Optional[list[str]] = None):
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="relaychat - chat with a remote OpenAI-compatible model server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  relaychat --url https://abcd.ngrok-free.app --key sk-xxx   # Save settings
  relaychat --serve --port 8081                            # Run the relay
  relaychat --ask "Write a Python hello world"
  relaychat --chat --relay http://127.0.0.1:8081           # Chat through a relay server
  relaychat status                                         # Show relay status
        """,
    )

    parser.add_argument("--url", help="Upstream base URL (saved to settings)")
    parser.add_argument("--key", help="Upstream API key (saved to settings)")
    parser.add_argument("--clear-key", action="store_true", help="Forget the saved API key")
    parser.add_argument(
        "--mode",
        choices=RELAY_MODES,
        help="Relay mode: stream tokens as they arrive or wait for the whole reply",
    )
    parser.add_argument(
        "--relay",
        help="Relay server URL to chat through (saved to settings; empty string to call upstream directly)",
    )
    parser.add_argument("--serve", action="store_true", help="Run the relay server")
    parser.add_argument("--host", help="Relay server bind host (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, help="Relay server port (default: OS-assigned)")
    parser.add_argument("--ask", metavar="TEXT", help="Send one message and print the reply")
    parser.add_argument("--chat", action="store_true", help="Line-based terminal chat")
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    settings = _apply_settings(args)
    if args.clear_key:
        settings.clear_key()
        console.print("[dim]API key cleared[/dim]")

    if args.serve:
        logging.getLogger().setLevel(logging.DEBUG if args.verbose else logging.INFO)
        from .main import run
        run(host=args.host, port=args.port, mode=args.mode)
        return

    if args.ask:
        sys.exit(asyncio.run(_ask(settings, args.ask)))

    if args.chat:
        try:
            exit_code = asyncio.run(TerminalChat(settings).run())
        except KeyboardInterrupt:
            exit_code = 0
        sys.exit(exit_code)

    if not args.clear_key and not any(v is not None for v in (args.url, args.key, args.mode, args.relay)):
        parser.print_help()


if __name__ == "__main__":
    main()
