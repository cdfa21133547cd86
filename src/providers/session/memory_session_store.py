"""In-memory session store with per-key locks and TTL reaping.

Default :class:`ISessionStore` for single-process deployments.  Sessions
live in a plain dict next to the monotonic time they were last written;
anything not written for ``ttl_seconds`` is treated as gone and removed
on the next :meth:`sweep` (or lazily, on the next read).

Writes to one session are serialized by that session's ``asyncio.Lock``;
different sessions never contend.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable

import structlog

from src.interfaces.session_store import ISessionStore
from src.models.session import ParseSession
from src.utils.logging import get_logger


class InMemorySessionStore(ISessionStore):
    """Dict-backed session store.

    Parameters
    ----------
    ttl_seconds:
        Idle time after which a session expires.
    clock:
        Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        ttl_seconds: float = 30 * 60,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._sessions: dict[str, ParseSession] = {}
        self._touched: dict[str, float] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._logger: structlog.BoundLogger = get_logger(__name__)

    # ------------------------------------------------------------------
    # ISessionStore implementation
    # ------------------------------------------------------------------

    async def get(self, session_id: str) -> ParseSession | None:
        if self._expired(session_id):
            self._drop(session_id)
            return None
        return self._sessions.get(session_id)

    async def set(self, session: ParseSession) -> None:
        async with self._lock(session.id):
            self._write(session)

    async def update(
        self,
        session_id: str,
        mutate: Callable[[ParseSession], ParseSession],
    ) -> ParseSession | None:
        if await self.get(session_id) is None:
            return None
        async with self._lock(session_id):
            current = await self.get(session_id)
            if current is None:
                return None
            updated = mutate(current)
            self._write(updated)
            return updated

    async def delete(self, session_id: str) -> bool:
        existed = session_id in self._sessions
        self._drop(session_id)
        return existed

    async def sweep(self) -> int:
        expired = [session_id for session_id in list(self._sessions) if self._expired(session_id)]
        for session_id in expired:
            self._drop(session_id)
        orphaned = [key for key, lock in self._locks.items() if key not in self._sessions and not lock.locked()]
        for session_id in orphaned:
            del self._locks[session_id]
        if expired:
            self._logger.info("sessions_reaped", reaped=len(expired), remaining=len(self._sessions))
        return len(expired)

    def __len__(self) -> int:
        return len(self._sessions)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _lock(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    def _write(self, session: ParseSession) -> None:
        self._sessions[session.id] = session
        self._touched[session.id] = self._clock()

    def _expired(self, session_id: str) -> bool:
        touched = self._touched.get(session_id)
        return touched is not None and self._clock() - touched >= self._ttl

    def _drop(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)
        self._touched.pop(session_id, None)
        lock = self._locks.get(session_id)
        if lock is not None and not lock.locked():
            del self._locks[session_id]
