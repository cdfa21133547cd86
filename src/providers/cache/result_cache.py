"""In-memory extraction result cache using cachetools.TTLCache.

Identical uploads (the same spreadsheet posted twice, a retried request)
should not pay for a second model call.  Results are keyed by a content
fingerprint and held in a ``TTLCache``, which evicts the least recently
used entry on overflow and expires entries after the TTL.

Concurrent misses for the same fingerprint are collapsed into one
underlying call: the first caller takes the per-key ``asyncio.Lock`` and
computes; the others wait on the lock and then read the result.  When the
computation raises, the callers already waiting get the same exception
instead of running it again.  A cancelled job's exception is not shared:
the next waiter computes with its own cancellation token.
"""

from __future__ import annotations

import asyncio
import hashlib
import time
from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from cachetools import TTLCache

from src.interfaces.cache_provider import IResultCache
from src.models.parts import ParseOptions
from src.models.provider import CacheEntry, ProviderResult
from src.utils.errors import JobCancelledError

logger = structlog.get_logger(logger_name=__name__)

FINGERPRINT_LENGTH = 32


def compute_fingerprint(data: bytes | str, options: ParseOptions | None = None, operation: str = "") -> str:
    """Stable fingerprint of input content plus the options that shape the output.

    Parameters
    ----------
    data:
        Raw input bytes or text.
    options:
        Material, thickness, units and dimension-order options.  Review
        strictness does not change what a provider returns and is left out.
    operation:
        ``text`` / ``image`` / ``document``, so the same bytes sent down
        different paths do not collide.
    """
    digest = hashlib.sha256()
    digest.update(data.encode("utf-8") if isinstance(data, str) else data)
    if options is not None:
        digest.update(
            "|".join(
                (
                    options.default_material_id,
                    f"{options.default_thickness_mm:g}",
                    options.units.value,
                    options.dim_order_hint.value,
                )
            ).encode("utf-8")
        )
    if operation:
        digest.update(operation.encode("utf-8"))
    return digest.hexdigest()[:FINGERPRINT_LENGTH]


class ResultCache(IResultCache):
    """TTL + LRU cache of :class:`ProviderResult` objects.

    Parameters
    ----------
    max_entries:
        Capacity; the least recently used entry is evicted on overflow.
    ttl_seconds:
        Time-to-live of every entry.
    min_confidence:
        Results below this ``total_confidence`` are returned to the
        caller but never stored.
    timer:
        Clock used by the TTL (injectable for tests).
    """

    def __init__(
        self,
        max_entries: int = 100,
        ttl_seconds: float = 24 * 60 * 60,
        min_confidence: float = 0.7,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self._capacity = max_entries
        self._min_confidence = min_confidence
        self._entries: TTLCache[str, CacheEntry] = TTLCache(maxsize=max_entries, ttl=ttl_seconds, timer=timer)
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}
        # Results handed to callers queued behind an in-flight computation
        # that was not cacheable.
        self._shared: dict[str, ProviderResult] = {}
        self._failures: dict[str, Exception] = {}
        self._in_flight = 0
        self._hits = 0
        self._misses = 0
        self._saved_time_ms = 0.0

    # ------------------------------------------------------------------
    # IResultCache implementation
    # ------------------------------------------------------------------

    async def get(self, fingerprint: str) -> ProviderResult | None:
        """Return the cached result, counting a hit or a miss."""
        result = self._lookup(fingerprint)
        if result is None:
            self._misses += 1
            logger.debug("cache_miss", fingerprint=fingerprint)
        return result

    async def put(self, fingerprint: str, result: ProviderResult) -> bool:
        if not self._is_cacheable(result):
            logger.debug(
                "cache_skip_store",
                fingerprint=fingerprint,
                success=result.success,
                parts=len(result.parts),
                confidence=result.total_confidence,
            )
            return False
        self._entries[fingerprint] = CacheEntry(
            fingerprint=fingerprint,
            result=result,
            saved_time_ms=result.processing_time_ms,
        )
        logger.debug("cache_set", fingerprint=fingerprint)
        return True

    async def get_or_compute(
        self,
        fingerprint: str,
        factory: Callable[[], Awaitable[ProviderResult]],
    ) -> tuple[ProviderResult, bool]:
        cached = self._lookup(fingerprint)
        if cached is not None:
            return cached, True

        lock = self._locks.setdefault(fingerprint, asyncio.Lock())
        self._waiters[fingerprint] = self._waiters.get(fingerprint, 0) + 1
        try:
            async with lock:
                cached = self._lookup(fingerprint)
                if cached is not None:
                    return cached, True
                shared = self._shared.get(fingerprint)
                if shared is not None:
                    self._hits += 1
                    return shared, True
                failure = self._failures.get(fingerprint)
                if failure is not None:
                    raise failure

                self._misses += 1
                self._in_flight += 1
                try:
                    result = await factory()
                except JobCancelledError:
                    raise
                except Exception as exc:
                    if self._waiters[fingerprint] > 1:
                        self._failures[fingerprint] = exc
                    raise
                finally:
                    self._in_flight -= 1

                stored = await self.put(fingerprint, result)
                if not stored and self._waiters[fingerprint] > 1:
                    self._shared[fingerprint] = result
                return result, False
        finally:
            self._waiters[fingerprint] -= 1
            if self._waiters[fingerprint] == 0:
                del self._waiters[fingerprint]
                self._locks.pop(fingerprint, None)
                self._shared.pop(fingerprint, None)
                self._failures.pop(fingerprint, None)

    async def invalidate(self, fingerprint: str) -> bool:
        removed = self._entries.pop(fingerprint, None) is not None
        if removed:
            logger.debug("cache_invalidated", fingerprint=fingerprint)
        return removed

    async def prune(self) -> int:
        expired = self._entries.expire()
        if expired:
            logger.info("cache_pruned", removed=len(expired))
        return len(expired)

    async def clear(self) -> None:
        self._entries.clear()
        self._hits = 0
        self._misses = 0
        self._saved_time_ms = 0.0

    def stats(self) -> dict[str, Any]:
        lookups = self._hits + self._misses
        return {
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(self._hits / lookups, 4) if lookups else 0.0,
            "entries": len(self._entries),
            "capacity": self._capacity,
            "avg_saved_time_ms": round(self._saved_time_ms / self._hits, 2) if self._hits else 0.0,
            "in_flight": self._in_flight,
        }

    def entry(self, fingerprint: str) -> CacheEntry | None:
        """Return the raw entry without counting a hit."""
        return self._entries.get(fingerprint)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _lookup(self, fingerprint: str) -> ProviderResult | None:
        entry = self._entries.get(fingerprint)
        if entry is None:
            return None
        entry.hit_count += 1
        self._hits += 1
        self._saved_time_ms += entry.saved_time_ms
        logger.debug("cache_hit", fingerprint=fingerprint, hit_count=entry.hit_count)
        return entry.result

    def _is_cacheable(self, result: ProviderResult) -> bool:
        return result.success and bool(result.parts) and result.total_confidence >= self._min_confidence
