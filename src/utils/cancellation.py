"""Cooperative cancellation token threaded through every parse stage.

Cancellation never interrupts a running coroutine.  The ProgressSessionStore
flips the token when a caller asks to cancel; each stage calls
:meth:`CancellationToken.raise_if_cancelled` at its checkpoints (before
the next expensive call) and stops there.  A provider call that was
already dispatched runs to completion and its result is thrown away.
"""

from __future__ import annotations

import asyncio

from src.utils.errors import JobCancelledError


class CancellationToken:
    """A one-way cancellation flag for a single parse session."""

    def __init__(self, session_id: str | None = None) -> None:
        self._session_id = session_id
        self._event = asyncio.Event()
        self._reason = ""

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: str = "Cancelled by user") -> None:
        """Set the flag.  Calling it again keeps the first reason."""
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    def raise_if_cancelled(self, checkpoint: str = "") -> None:
        """Checkpoint: raise :class:`JobCancelledError` if cancellation was requested."""
        if self._event.is_set():
            where = f" at {checkpoint}" if checkpoint else ""
            raise JobCancelledError(f"{self._reason}{where}")

    async def wait(self) -> None:
        """Block until the token is cancelled."""
        await self._event.wait()


def never_cancelled() -> CancellationToken:
    """Return a fresh token for callers that do not track a session."""
    return CancellationToken()
