"""Deadlines and cancellable timed waits for poll loops."""

import asyncio
from dataclasses import dataclass


class RunCancelledError(Exception):
    """Raised when a run is cancelled while waiting."""


@dataclass(frozen=True, kw_only=True)
class Deadline:
    """A point on the event loop clock, fixed when the deadline is created."""

    expires_at: float

    @classmethod
    def after(cls, seconds: float) -> "Deadline":
        """Create a deadline ``seconds`` from now."""
        return cls(expires_at=asyncio.get_running_loop().time() + seconds)

    def remaining(self) -> float:
        """Seconds left, never negative."""
        return max(self.expires_at - asyncio.get_running_loop().time(), 0.0)

    @property
    def expired(self) -> bool:
        """Whether the deadline has passed."""
        return self.remaining() <= 0


async def wait(
    seconds: float,
    cancel_event: asyncio.Event | None = None,
    deadline: Deadline | None = None,
) -> None:
    """Sleep for ``seconds``, woken early by cancellation or the deadline.

    Raises:
        RunCancelledError: If ``cancel_event`` is set before or during the wait

    """
    if deadline is not None:
        seconds = min(seconds, deadline.remaining())

    if cancel_event is None:
        await asyncio.sleep(seconds)
        return

    if cancel_event.is_set():
        raise RunCancelledError("Run cancelled")

    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=seconds)
    except TimeoutError:
        return
    raise RunCancelledError("Run cancelled")
