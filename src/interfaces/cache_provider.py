"""Abstract base class for the extraction result cache.

Defines the contract for memoizing provider results by content
fingerprint.  The default implementation is in-memory
(``cachetools.TTLCache``); a shared backend such as Redis can be swapped
in behind the same interface without touching the orchestrator.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any

from src.models.provider import ProviderResult


class IResultCache(ABC):
    """Contract for fingerprint-keyed provider result caches.

    All operations are async to allow for network-backed stores without
    blocking the event loop.
    """

    @abstractmethod
    async def get(self, fingerprint: str) -> ProviderResult | None:
        """Return the cached result for *fingerprint*, or ``None``.

        A hit increments the entry's ``hit_count`` and the hit metrics.
        """

    @abstractmethod
    async def put(self, fingerprint: str, result: ProviderResult) -> bool:
        """Store *result* if it qualifies for caching.

        Returns
        -------
        bool
            ``True`` if stored; failed, empty or low-confidence results
            are not stored.
        """

    @abstractmethod
    async def get_or_compute(
        self,
        fingerprint: str,
        factory: Callable[[], Awaitable[ProviderResult]],
    ) -> tuple[ProviderResult, bool]:
        """Return the cached result or compute it exactly once.

        Concurrent callers with the same fingerprint share a single
        ``factory()`` call.

        Returns
        -------
        tuple[ProviderResult, bool]
            The result and whether it was served from the cache.
        """

    @abstractmethod
    async def invalidate(self, fingerprint: str) -> bool:
        """Remove one entry.  Returns ``True`` if it existed."""

    @abstractmethod
    async def prune(self) -> int:
        """Drop expired entries.  Returns how many were removed."""

    @abstractmethod
    async def clear(self) -> None:
        """Remove every entry and reset the metrics."""

    @abstractmethod
    def stats(self) -> dict[str, Any]:
        """Return hit/miss metrics and occupancy."""
