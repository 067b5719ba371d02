"""Liveness deadlines for async streams.

Two independent timers guard an exchange: an overall deadline fixed when
the exchange starts, and a rolling stall deadline that restarts every time
an item arrives.
"""

import asyncio
from typing import AsyncIterator, Callable, Optional, TypeVar

from .errors import ErrorKind, RelayError

T = TypeVar("T")


class Deadline:
    """Overall deadline for one exchange, measured on the loop clock."""

    def __init__(self, timeout: float):
        self.timeout = timeout
        self._loop = asyncio.get_running_loop()
        self.expires_at = self._loop.time() + timeout

    def remaining(self) -> float:
        return self.expires_at - self._loop.time()

    def expired_error(self) -> RelayError:
        return RelayError(
            ErrorKind.TIMEOUT,
            f"Model server timed out ({self.timeout:g} s). Make sure it is still running.",
        )

    async def run(self, awaitable):
        """Await ``awaitable`` within the time left, raising TIMEOUT otherwise."""
        remaining = self.remaining()
        if remaining <= 0:
            raise self.expired_error()
        try:
            return await asyncio.wait_for(awaitable, timeout=remaining)
        except asyncio.TimeoutError:
            raise self.expired_error() from None


async def guard_stream(
    source: AsyncIterator[T],
    deadline: Deadline,
    stall_timeout: Optional[float] = None,
    is_active: Optional[Callable[[], bool]] = None,
) -> AsyncIterator[T]:
    """Re-yield ``source`` while enforcing both deadlines.

    Raises RelayError(TIMEOUT) when the overall deadline passes and
    RelayError(STALLED) when no item arrives within ``stall_timeout``.
    Iteration stops silently once ``is_active`` turns false. The source is
    always closed on exit so its transport is released.
    """
    iterator = source.__aiter__()
    try:
        while True:
            remaining = deadline.remaining()
            if remaining <= 0:
                raise deadline.expired_error()

            stalling = stall_timeout is not None and stall_timeout < remaining
            wait = stall_timeout if stalling else remaining
            try:
                item = await asyncio.wait_for(iterator.__anext__(), timeout=wait)
            except StopAsyncIteration:
                return
            except asyncio.TimeoutError:
                if stalling:
                    raise RelayError(
                        ErrorKind.STALLED,
                        f"Model server stopped sending data (nothing for {stall_timeout:g} s).",
                    ) from None
                raise deadline.expired_error() from None

            if is_active is not None and not is_active():
                return
            yield item
    finally:
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()
