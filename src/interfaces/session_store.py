"""Abstract base class for progress session storage.

Parse sessions are ephemeral, process-wide state: created when a job
starts, updated by every stage, polled by the client and reaped after a
TTL.  The ProgressSessionStore talks to storage only through this
interface, so an in-memory dict and a shared backend are interchangeable.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable

from src.models.session import ParseSession


class ISessionStore(ABC):
    """Contract for keyed :class:`ParseSession` storage with TTL expiry.

    Implementations must serialize :meth:`update` calls per session id so
    concurrent stages of one job never lose each other's writes, while
    different sessions proceed independently.
    """

    @abstractmethod
    async def get(self, session_id: str) -> ParseSession | None:
        """Return the session, or ``None`` if unknown or expired."""

    @abstractmethod
    async def set(self, session: ParseSession) -> None:
        """Insert or replace a session and refresh its TTL."""

    @abstractmethod
    async def update(
        self,
        session_id: str,
        mutate: Callable[[ParseSession], ParseSession],
    ) -> ParseSession | None:
        """Atomically replace a session with ``mutate(session)``.

        Returns
        -------
        ParseSession or None
            The stored new session, or ``None`` if the id is unknown or
            expired (``mutate`` is not called then).
        """

    @abstractmethod
    async def delete(self, session_id: str) -> bool:
        """Remove a session.  Returns ``True`` if it existed."""

    @abstractmethod
    async def sweep(self) -> int:
        """Reap expired sessions.  Returns how many were removed."""
