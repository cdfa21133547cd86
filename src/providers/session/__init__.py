"""Progress session storage backends.

InMemorySessionStore implements ISessionStore (src/interfaces/session_store.py)
with a dict, per-key asyncio locks and TTL reaping.  A shared backend
(Redis, a database table) can replace it for multi-worker deployments.
"""

from src.providers.session.memory_session_store import InMemorySessionStore

__all__ = ["InMemorySessionStore"]
