"""Bounded fan-out helpers for bulk record updates.

A parse job performs its provider calls sequentially; the only place it
runs work side by side is when it finalizes many records at once (per-file
progress updates, handing parsed parts to the result sink).  Those fan-outs
go through :func:`throttled_gather` so a job with hundreds of files never
opens hundreds of concurrent writes.

Two helpers are exposed:

1. **throttled_gather** -- ``asyncio.gather`` with every awaitable wrapped
   in a semaphore acquire/release.
2. **bulk_apply** -- the fan-out-then-join pattern: call ``fn(item)`` for
   every item under a concurrency cap, log failures, and return the
   successful results in input order.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, TypeVar

import structlog

from src.utils.logging import get_logger

_T = TypeVar("_T")

# Default cap for bulk record updates inside a single job.
DEFAULT_BULK_CONCURRENCY = 10

_logger: structlog.BoundLogger = get_logger(__name__)


async def throttled_gather(
    coros: list[Awaitable[_T]],
    semaphore: asyncio.Semaphore | None = None,
    return_exceptions: bool = True,
) -> list[_T | BaseException]:
    """Run awaitables concurrently with semaphore throttling.

    Parameters
    ----------
    coros:
        Awaitable objects to execute concurrently.
    semaphore:
        Semaphore for concurrency control.  A fresh one with
        ``DEFAULT_BULK_CONCURRENCY`` slots is created when omitted.
    return_exceptions:
        If ``True``, exceptions are returned in the results list rather
        than being raised.  Mirrors ``asyncio.gather`` semantics.

    Returns
    -------
    list[_T | BaseException]
        Results in the same order as the input coroutines.
    """
    if semaphore is None:
        semaphore = asyncio.Semaphore(DEFAULT_BULK_CONCURRENCY)

    async def _wrapped(coro: Awaitable[_T]) -> _T:
        async with semaphore:
            return await coro

    tasks = [_wrapped(c) for c in coros]
    return await asyncio.gather(*tasks, return_exceptions=return_exceptions)


async def bulk_apply(
    fn: Callable[[Any], Awaitable[_T]],
    items: list[Any],
    limit: int = DEFAULT_BULK_CONCURRENCY,
    logger: structlog.BoundLogger | None = None,
    error_msg: str = "bulk_update_failed",
) -> list[_T]:
    """Apply *fn* to every item with at most *limit* calls in flight.

    All calls are joined before returning.  Failed items are logged and
    left out of the result list; they never cancel their siblings.

    Parameters
    ----------
    fn:
        Async callable invoked once per item.
    items:
        Inputs for *fn*.
    limit:
        Maximum number of concurrent calls.
    logger:
        Optional structured logger for failures.
    error_msg:
        Event name logged for each failed item.

    Returns
    -------
    list[_T]
        Results of the successful calls, in input order.
    """
    if logger is None:
        logger = _logger

    semaphore = asyncio.Semaphore(max(1, limit))
    raw_results = await throttled_gather(
        [fn(item) for item in items], semaphore=semaphore, return_exceptions=True
    )

    results: list[_T] = []
    for idx, result in enumerate(raw_results):
        if isinstance(result, BaseException):
            logger.warning(error_msg, index=idx, error=str(result))
        else:
            results.append(result)
    return results
