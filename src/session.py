"""Chat session: transcript ownership and single-flight dispatch.

A ChatSession is the one mutable object a front end holds per
conversation. Submissions are appended to the transcript immediately and
queued; a single processing task drains the queue, running at most one
relay exchange at a time so replies land in submission order. Input is
never blocked while an exchange is running.

The relay is anything with an ``exchange(messages, api_url, api_key)``
method returning an async iterator of Frames (UpstreamRelay, RemoteRelay).
"""

import asyncio
import logging
from collections import deque
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any, Callable, Literal, Optional

from .config import ChatSettings, load_config
from .deadline import Deadline, guard_stream
from .errors import ErrorKind, FrameType, RelayError

logger = logging.getLogger(__name__)

ERROR_PREFIX = "⚠️ **Error:** "


@dataclass
class Turn:
    """One entry of the transcript."""
    role: Literal["user", "assistant"]
    content: str = ""
    failed: bool = False  # Assistant turn rewritten with an error message

    def append(self, text: str) -> None:
        self.content += text

    def as_message(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class Exchange:
    """State bound to the queue item currently being processed."""
    generation: int
    turn_index: int
    text: str
    tokens: int = 0


def format_error(error: RelayError) -> str:
    return f"{ERROR_PREFIX}{error.message}"


def create_relay(settings: ChatSettings) -> Any:
    """Pick the relay for these settings: a relay server if one is set, else direct."""
    if settings.relay_url:
        from .remote import RemoteRelay
        return RemoteRelay(settings.relay_url, mode=settings.relay_mode)
    from .relay import UpstreamRelay
    return UpstreamRelay(mode=settings.relay_mode)


class ChatSession:
    """Ordered, single-flight conversation with one upstream.

    Callbacks:
        on_change: called after every transcript mutation
        on_config_required: called when a submission is rejected for lack
            of an upstream URL (front ends open their settings dialog)
    """

    def __init__(
        self,
        relay: Any,
        settings: Optional[ChatSettings] = None,
        on_change: Optional[Callable[["ChatSession"], None]] = None,
        on_config_required: Optional[Callable[[], None]] = None,
        timeout: Optional[float] = None,
        stall_timeout: Optional[float] = None,
    ):
        config = load_config()
        self.relay = relay
        self.settings = settings or ChatSettings()
        self.on_change = on_change
        self.on_config_required = on_config_required
        self.timeout = timeout or config["CLIENT_TIMEOUT"]
        self.stall_timeout = stall_timeout or config["CLIENT_STALL_TIMEOUT"]

        self.transcript: list[Turn] = []
        self.pending: deque[str] = deque()
        self.busy = False
        self.active: Optional[Exchange] = None
        self._generation = 0
        self._task: Optional[asyncio.Task] = None
        self._idle = asyncio.Event()
        self._idle.set()

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def submit(self, text: str) -> bool:
        """Queue a user message. Returns False if it was rejected."""
        text = text.strip()
        if not text:
            return False

        if not self.settings.is_configured:
            logger.info("Submission rejected: no upstream URL configured")
            if self.on_config_required:
                self.on_config_required()
            return False

        self.transcript.append(Turn("user", text))
        self.pending.append(text)
        self._idle.clear()
        self._notify()
        self._start_processing()
        return True

    async def process_next(self) -> None:
        """Drain the pending queue, one exchange at a time.

        Returns immediately if another drain is already running.
        """
        if self.busy:
            return
        self.busy = True
        generation = self._generation

        try:
            while self.pending and generation == self._generation:
                await self._run_exchange(generation)
        finally:
            # A clear() has already reset state for the new generation
            if generation == self._generation:
                self.busy = False
                self.active = None

        if generation != self._generation:
            return
        if self.pending:
            # Work queued while this drain was tearing down
            logger.debug("Pending work found after drain, restarting")
            self._start_processing()
        else:
            self._idle.set()

    def clear(self) -> None:
        """Drop the transcript and queue, abandoning any in-flight exchange."""
        self._generation += 1
        self.transcript.clear()
        self.pending.clear()
        self.busy = False
        self.active = None

        task, self._task = self._task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

        self._idle.set()
        self._notify()

    def snapshot(self) -> list[Turn]:
        """Copy of the transcript for rendering."""
        return [Turn(t.role, t.content, t.failed) for t in self.transcript]

    async def wait_idle(self) -> None:
        """Wait until the queue is drained."""
        await self._idle.wait()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _start_processing(self) -> None:
        if self.busy:
            return
        # busy is only set once the task runs; a task created earlier in this
        # tick will drain the new item too
        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            return
        self._task = asyncio.get_running_loop().create_task(self.process_next())

    def _is_active(self, exchange: Exchange) -> bool:
        return self.active is exchange and exchange.generation == self._generation

    def _history(self) -> list[dict[str, str]]:
        """Messages to send upstream: everything except failed and empty turns."""
        return [
            turn.as_message()
            for turn in self.transcript
            if not turn.failed and turn.content
        ]

    async def _run_exchange(self, generation: int) -> None:
        """Attempt the head of the queue; never raises for exchange failures."""
        text = self.pending[0]
        history = self._history()

        placeholder = Turn("assistant")
        self.transcript.append(placeholder)
        exchange = Exchange(generation, len(self.transcript) - 1, text)
        self.active = exchange
        self._notify()

        error: Optional[RelayError] = None
        try:
            frames = self.relay.exchange(
                history,
                self.settings.api_url,
                self.settings.api_key,
            )
            # A single aggregate reply may legitimately take the whole deadline
            stall_timeout = self.stall_timeout if getattr(self.relay, "streaming", True) else None
            guarded = guard_stream(
                frames,
                Deadline(self.timeout),
                stall_timeout,
                is_active=lambda: self._is_active(exchange),
            )
            async with aclosing(guarded):
                async for frame in guarded:
                    if not self._is_active(exchange):
                        break
                    if frame.type is FrameType.TOKEN:
                        placeholder.append(frame.text)
                        exchange.tokens += 1
                        self._notify()
                    elif frame.type is FrameType.ERROR:
                        error = frame.error
                        break
                    else:
                        break

            if error is None and not placeholder.content:
                error = RelayError(ErrorKind.EMPTY_RESPONSE)
        except RelayError as e:
            error = e
        except Exception as e:
            logger.exception("Exchange processing error")
            error = RelayError(ErrorKind.UNREACHABLE, f"Unexpected error: {e}")
        finally:
            if self._is_active(exchange):
                if error is not None:
                    logger.warning(f"Exchange failed ({error.kind.value}): {error.message}")
                    placeholder.content = format_error(error)
                    placeholder.failed = True
                else:
                    logger.debug(f"Exchange complete: {exchange.tokens} tokens, {len(placeholder.content)} chars")
                self.pending.popleft()
                self.active = None
                self._notify()

    def _notify(self) -> None:
        if self.on_change:
            self.on_change(self)
