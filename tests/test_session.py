"""
Tests for the single-flight chat session.

These tests verify that ChatSession:
1. Resolves queued submissions in submission order, one exchange at a time
2. Keeps draining the queue after a failed exchange
3. Rejects submissions when no upstream URL is configured
4. Discards frames from an exchange abandoned by clear()
5. Sends history without the in-progress placeholder or failed turns
"""

import asyncio
import typing

import pytest

from src.config import ChatSettings
from src.errors import ErrorKind, Frame, RelayError
from src.session import ERROR_PREFIX, ChatSession, Turn, format_error


class FakeRelay:
    """Relay double driven by a per-call script.

    Each script entry is a list of frames, or a callable that returns an
    async iterator of frames for full control over timing.
    """

    def __init__(self, *scripts, streaming: bool = True):
        self.scripts = list(scripts)
        self.histories: list[list[dict]] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.streaming = streaming
        self.closed = False

    def exchange(self, messages, api_url, api_key=""):
        self.histories.append([dict(m) for m in messages])
        script = self.scripts.pop(0) if self.scripts else [Frame.token("ok"), Frame.done("ok")]
        if callable(script):
            return self._tracked(script())
        return self._tracked(self._replay(script))

    async def _replay(self, frames):
        for frame in frames:
            await asyncio.sleep(0)
            yield frame

    async def _tracked(self, frames):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            async for frame in frames:
                yield frame
        finally:
            self.in_flight -= 1

    async def close(self):
        self.closed = True


def reply(text: str) -> list[Frame]:
    return [Frame.token(text), Frame.done(text)]


def configured() -> ChatSettings:
    return ChatSettings(api_url="https://abcd.ngrok-free.app", api_key="sk-test")


def contents(session: ChatSession, role: str) -> list[str]:
    return [t.content for t in session.transcript if t.role == role]


class TestOrdering:
    """Submissions resolve in order, one at a time."""

    @pytest.mark.asyncio
    async def test_replies_in_submission_order(self):
        relay = FakeRelay(reply("one"), reply("two"), reply("three"))
        session = ChatSession(relay, configured())

        for text in ("a", "b", "c"):
            assert session.submit(text) is True
        await asyncio.wait_for(session.wait_idle(), timeout=2)

        assert contents(session, "user") == ["a", "b", "c"]
        assert contents(session, "assistant") == ["one", "two", "three"]
        assert len(relay.histories) == 3, "Exactly one exchange per submission"
        assert relay.max_in_flight == 1, "At most one exchange in flight"
        assert session.busy is False
        assert not session.pending

    @pytest.mark.asyncio
    async def test_submit_while_streaming_is_queued(self):
        """A message sent mid-reply waits for the current exchange."""
        release = asyncio.Event()

        async def slow():
            yield Frame.token("first ")
            await release.wait()
            yield Frame.token("reply")
            yield Frame.done("first reply")

        relay = FakeRelay(slow, reply("second reply"))
        session = ChatSession(relay, configured())

        session.submit("one")
        await asyncio.sleep(0.05)
        assert session.busy is True
        session.submit("two")
        assert list(session.pending) == ["one", "two"]

        release.set()
        await asyncio.wait_for(session.wait_idle(), timeout=2)

        assert contents(session, "assistant") == ["first reply", "second reply"]
        assert relay.max_in_flight == 1

    @pytest.mark.asyncio
    async def test_empty_submission_ignored(self):
        session = ChatSession(FakeRelay(), configured())
        assert session.submit("   ") is False
        assert session.transcript == []


class TestFailures:
    """A failed exchange never stalls the queue."""

    @pytest.mark.asyncio
    async def test_failure_rewrites_placeholder_and_queue_continues(self):
        error = RelayError(ErrorKind.UNREACHABLE, "Cannot reach the model server: refused")
        relay = FakeRelay([Frame.failure(error)], reply("recovered"))
        session = ChatSession(relay, configured())

        session.submit("a")
        session.submit("b")
        await asyncio.wait_for(session.wait_idle(), timeout=2)

        assistants = [t for t in session.transcript if t.role == "assistant"]
        assert assistants[0].failed is True
        assert assistants[0].content == format_error(error)
        assert assistants[0].content.startswith(ERROR_PREFIX)
        assert assistants[1].content == "recovered"
        assert assistants[1].failed is False

    @pytest.mark.asyncio
    async def test_partial_reply_then_error_shows_error(self):
        error = RelayError(ErrorKind.STALLED)
        relay = FakeRelay([Frame.token("half"), Frame.failure(error)])
        session = ChatSession(relay, configured())

        session.submit("a")
        await asyncio.wait_for(session.wait_idle(), timeout=2)

        assert session.transcript[-1].content == format_error(error)

    @pytest.mark.asyncio
    async def test_relay_exception_is_contained(self):
        """An exception escaping the relay still clears busy and advances."""
        async def broken():
            raise RuntimeError("boom")
            yield  # pragma: no cover

        relay = FakeRelay(broken, reply("fine"))
        session = ChatSession(relay, configured())

        session.submit("a")
        session.submit("b")
        await asyncio.wait_for(session.wait_idle(), timeout=2)

        assistants = [t for t in session.transcript if t.role == "assistant"]
        assert assistants[0].failed is True
        assert "boom" in assistants[0].content
        assert assistants[1].content == "fine"
        assert session.busy is False

    @pytest.mark.asyncio
    async def test_done_without_content_is_empty_response(self):
        relay = FakeRelay([Frame.done("")])
        session = ChatSession(relay, configured())

        session.submit("a")
        await asyncio.wait_for(session.wait_idle(), timeout=2)

        assert session.transcript[-1].content == format_error(RelayError(ErrorKind.EMPTY_RESPONSE))

    @pytest.mark.asyncio
    async def test_client_stall_deadline(self):
        async def silent():
            yield Frame.token("x")
            await asyncio.sleep(30)
            yield Frame.done("x")

        relay = FakeRelay(silent)
        session = ChatSession(relay, configured(), timeout=5.0, stall_timeout=0.2)

        session.submit("a")
        await asyncio.wait_for(session.wait_idle(), timeout=3)

        assert session.transcript[-1].failed is True
        assert relay.in_flight == 0, "Abandoned exchange is closed"


class TestConfiguration:
    """Submissions without an upstream URL are rejected."""

    @pytest.mark.asyncio
    async def test_rejected_and_prompts_for_settings(self):
        prompts = []
        relay = FakeRelay()
        session = ChatSession(relay, ChatSettings(), on_config_required=lambda: prompts.append(True))

        assert session.submit("hello") is False
        assert prompts == [True]
        assert session.transcript == []
        assert not session.pending
        assert relay.histories == [], "No exchange attempted"


class TestClear:
    """clear() abandons in-flight work."""

    @pytest.mark.asyncio
    async def test_clear_discards_late_frames(self):
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow():
            yield Frame.token("partial")
            started.set()
            await release.wait()
            yield Frame.token(" late")
            yield Frame.done("partial late")

        relay = FakeRelay(slow)
        session = ChatSession(relay, configured())

        session.submit("a")
        session.submit("b")
        await asyncio.wait_for(started.wait(), timeout=2)

        session.clear()
        await asyncio.sleep(0.05)
        assert relay.in_flight == 0, "clear() must interrupt the exchange blocked on its next chunk"

        release.set()
        await asyncio.sleep(0.05)

        assert session.transcript == [], "Stale exchange must not mutate the transcript"
        assert not session.pending
        assert session.busy is False
        assert len(relay.histories) == 1, "Queued work is dropped, not attempted"

    @pytest.mark.asyncio
    async def test_same_tick_submits_then_clear_keeps_single_flight(self):
        """
        Two submits before the processing task first runs, then clear().

        The exchange started for the first submit must be cancelled, so the
        submission after clear() never runs beside it.
        """
        started = asyncio.Event()

        async def blocked():
            yield Frame.token("partial")
            started.set()
            await asyncio.sleep(30)
            yield Frame.done("partial")

        relay = FakeRelay(blocked, reply("fresh"))
        session = ChatSession(relay, configured())

        session.submit("a")
        session.submit("b")
        await asyncio.wait_for(started.wait(), timeout=2)

        session.clear()
        await asyncio.sleep(0.05)
        assert relay.in_flight == 0

        session.submit("c")
        await asyncio.wait_for(session.wait_idle(), timeout=2)

        assert relay.max_in_flight == 1, "At most one exchange in flight"
        assert relay.in_flight == 0
        assert [t.content for t in session.transcript] == ["c", "fresh"]

    @pytest.mark.asyncio
    async def test_session_usable_after_clear(self):
        release = asyncio.Event()

        async def slow():
            await release.wait()
            yield Frame.done("never")

        relay = FakeRelay(slow, reply("fresh"))
        session = ChatSession(relay, configured())

        session.submit("a")
        await asyncio.sleep(0.01)
        session.clear()

        session.submit("b")
        await asyncio.wait_for(session.wait_idle(), timeout=2)

        assert [t.content for t in session.transcript] == ["b", "fresh"]
        assert relay.histories[-1] == [{"role": "user", "content": "b"}]


class TestHistory:
    """What each exchange is sent."""

    @pytest.mark.asyncio
    async def test_history_excludes_placeholder(self):
        relay = FakeRelay(reply("first"), reply("second"))
        session = ChatSession(relay, configured())

        session.submit("a")
        await asyncio.wait_for(session.wait_idle(), timeout=2)
        session.submit("b")
        await asyncio.wait_for(session.wait_idle(), timeout=2)

        assert relay.histories[0] == [{"role": "user", "content": "a"}]
        assert relay.histories[1] == [
            {"role": "user", "content": "a"},
            {"role": "assistant", "content": "first"},
            {"role": "user", "content": "b"},
        ]

    @pytest.mark.asyncio
    async def test_failed_turns_not_sent_upstream(self):
        relay = FakeRelay([Frame.failure(RelayError(ErrorKind.TIMEOUT))], reply("ok"))
        session = ChatSession(relay, configured())

        session.submit("a")
        await asyncio.wait_for(session.wait_idle(), timeout=2)
        session.submit("b")
        await asyncio.wait_for(session.wait_idle(), timeout=2)

        assert relay.histories[1] == [
            {"role": "user", "content": "a"},
            {"role": "user", "content": "b"},
        ]


class TestNotifications:

    @pytest.mark.asyncio
    async def test_on_change_sees_incremental_content(self):
        seen = []
        relay = FakeRelay([Frame.token("Hi"), Frame.token(" there"), Frame.done("Hi there")])
        session = ChatSession(
            relay,
            configured(),
            on_change=lambda s: seen.append(s.snapshot()[-1].content),
        )

        session.submit("a")
        await asyncio.wait_for(session.wait_idle(), timeout=2)

        assert "Hi" in seen
        assert seen[-1] == "Hi there"

    @pytest.mark.asyncio
    async def test_snapshot_is_a_copy(self):
        session = ChatSession(FakeRelay(reply("x")), configured())
        session.submit("a")
        await asyncio.wait_for(session.wait_idle(), timeout=2)

        snapshot = session.snapshot()
        snapshot[0].content = "changed"
        assert session.transcript[0].content == "a"


class TestTurn:

    def test_role_is_closed_enumeration(self):
        assert typing.get_type_hints(Turn)["role"] == typing.Literal["user", "assistant"]

    def test_transcript_roles(self):
        session = ChatSession(FakeRelay(), configured())
        session.transcript.extend([Turn("user", "a"), Turn("assistant", "b")])
        assert [t.as_message()["role"] for t in session.snapshot()] == ["user", "assistant"]
