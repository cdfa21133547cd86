"""Unit tests for the extraction result cache."""

from __future__ import annotations

import asyncio

import pytest

from src.models.parts import ConfidenceLevel, ParseOptions, Units
from src.models.provider import FailureKind
from src.providers.cache.result_cache import FINGERPRINT_LENGTH, ResultCache, compute_fingerprint
from src.utils.errors import DegradedModeError, JobCancelledError


class _FakeTimer:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


# ======================================================================
# Fingerprints
# ======================================================================


class TestComputeFingerprint:
    def test_stable_for_same_input(self) -> None:
        options = ParseOptions()
        assert compute_fingerprint("Side 720x560", options, "text") == compute_fingerprint(
            "Side 720x560", options, "text"
        )

    def test_length(self) -> None:
        assert len(compute_fingerprint(b"data")) == FINGERPRINT_LENGTH

    def test_operation_changes_fingerprint(self) -> None:
        assert compute_fingerprint(b"data", operation="text") != compute_fingerprint(b"data", operation="image")

    def test_output_shaping_options_change_fingerprint(self) -> None:
        base = compute_fingerprint("x", ParseOptions())
        assert compute_fingerprint("x", ParseOptions(units=Units.CM)) != base
        assert compute_fingerprint("x", ParseOptions(default_material_id="oak")) != base

    def test_review_level_does_not_change_fingerprint(self) -> None:
        strict = ParseOptions(confidence_level=ConfidenceLevel.STRICT)
        assert compute_fingerprint("x", strict) == compute_fingerprint("x", ParseOptions())


# ======================================================================
# ResultCache
# ======================================================================


class TestResultCache:
    @pytest.fixture()
    def timer(self) -> _FakeTimer:
        return _FakeTimer()

    @pytest.fixture()
    def cache(self, timer: _FakeTimer) -> ResultCache:
        return ResultCache(max_entries=2, ttl_seconds=60, min_confidence=0.7, timer=timer)

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, cache: ResultCache) -> None:
        assert await cache.get("nope") is None
        assert cache.stats()["misses"] == 1

    @pytest.mark.asyncio
    async def test_repeated_get_is_idempotent(self, cache: ResultCache, make_result) -> None:
        result = make_result(confidence=0.9)
        assert await cache.put("fp", result) is True

        first = await cache.get("fp")
        second = await cache.get("fp")

        assert first == second == result
        entry = cache.entry("fp")
        assert entry is not None
        assert entry.hit_count == 2
        assert cache.stats()["hits"] == 2
        assert cache.stats()["avg_saved_time_ms"] == pytest.approx(120.0)

    @pytest.mark.asyncio
    async def test_low_confidence_not_stored(self, cache: ResultCache, make_result) -> None:
        assert await cache.put("fp", make_result(confidence=0.5)) is False
        assert await cache.get("fp") is None

    @pytest.mark.asyncio
    async def test_failed_result_not_stored(self, cache: ResultCache, make_result) -> None:
        failed = make_result(failure=FailureKind.TRANSIENT)
        assert await cache.put("fp", failed) is False

    @pytest.mark.asyncio
    async def test_least_recently_used_evicted(self, cache: ResultCache, make_result) -> None:
        await cache.put("a", make_result())
        await cache.put("b", make_result())
        await cache.get("a")
        await cache.put("c", make_result())

        assert cache.entry("a") is not None
        assert cache.entry("b") is None
        assert cache.entry("c") is not None
        assert cache.stats()["entries"] == 2

    @pytest.mark.asyncio
    async def test_prune_removes_expired(self, cache: ResultCache, timer: _FakeTimer, make_result) -> None:
        await cache.put("a", make_result())
        await cache.put("b", make_result())
        timer.now = 61.0

        assert await cache.prune() == 2
        assert cache.entry("a") is None

    @pytest.mark.asyncio
    async def test_invalidate(self, cache: ResultCache, make_result) -> None:
        await cache.put("a", make_result())
        assert await cache.invalidate("a") is True
        assert await cache.invalidate("a") is False

    @pytest.mark.asyncio
    async def test_clear_resets_counters(self, cache: ResultCache, make_result) -> None:
        await cache.put("a", make_result())
        await cache.get("a")
        await cache.clear()
        stats = cache.stats()
        assert stats["hits"] == 0
        assert stats["entries"] == 0

    @pytest.mark.asyncio
    async def test_get_or_compute_caches(self, cache: ResultCache, make_result) -> None:
        calls = 0

        async def factory():
            nonlocal calls
            calls += 1
            return make_result()

        _, first_hit = await cache.get_or_compute("fp", factory)
        _, second_hit = await cache.get_or_compute("fp", factory)

        assert calls == 1
        assert (first_hit, second_hit) == (False, True)

    @pytest.mark.asyncio
    async def test_concurrent_misses_share_one_call(self, cache: ResultCache, make_result) -> None:
        calls = 0

        async def factory():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.01)
            return make_result()

        outcomes = await asyncio.gather(*(cache.get_or_compute("fp", factory) for _ in range(5)))

        assert calls == 1
        assert sum(1 for _, hit in outcomes if not hit) == 1
        assert len({id(result) for result, _ in outcomes}) == 1
        assert cache.stats()["in_flight"] == 0

    @pytest.mark.asyncio
    async def test_uncacheable_result_shared_with_waiters(self, cache: ResultCache, make_result) -> None:
        calls = 0

        async def factory():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.01)
            return make_result(confidence=0.4)

        outcomes = await asyncio.gather(*(cache.get_or_compute("fp", factory) for _ in range(3)))

        assert calls == 1
        assert all(result.total_confidence == 0.4 for result, _ in outcomes)
        assert cache.entry("fp") is None

        # Once every waiter is gone, the next caller computes again.
        await cache.get_or_compute("fp", factory)
        assert calls == 2

    @pytest.mark.asyncio
    async def test_failure_shared_with_waiters(self, cache: ResultCache) -> None:
        calls = 0

        async def factory():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.01)
            raise DegradedModeError("Job time budget of 10s exceeded")

        outcomes = await asyncio.gather(
            *(cache.get_or_compute("fp", factory) for _ in range(5)), return_exceptions=True
        )

        assert calls == 1
        assert all(isinstance(outcome, DegradedModeError) for outcome in outcomes)
        assert cache.stats()["in_flight"] == 0

        # The failure is not remembered once every waiter has seen it.
        with pytest.raises(DegradedModeError):
            await cache.get_or_compute("fp", factory)
        assert calls == 2

    @pytest.mark.asyncio
    async def test_cancelled_job_not_shared(self, cache: ResultCache, make_result) -> None:
        calls = 0

        async def factory():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.01)
            if calls == 1:
                raise JobCancelledError("Cancelled by user at provider call")
            return make_result()

        first, second = await asyncio.gather(
            cache.get_or_compute("fp", factory), cache.get_or_compute("fp", factory), return_exceptions=True
        )

        assert isinstance(first, JobCancelledError)
        result, hit = second
        assert hit is False
        assert result.success is True
        assert calls == 2
