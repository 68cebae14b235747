"""Bounded-concurrency worker pool over a fixed list of items."""

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from typing import TypeVar

from perpdata.concurrency.rate_limiter import TokenBucketLimiter

T = TypeVar("T")
R = TypeVar("R")


async def run_worker_pool(
    items: Sequence[T],
    worker: Callable[[T, int], Awaitable[R]],
    *,
    concurrency: int = 1,
    delay: float = 0.0,
    rate_limiter: TokenBucketLimiter | None = None,
    weight: int = 1,
) -> list[R | None]:
    """Run ``worker(item, index)`` for every item with at most ``concurrency`` in flight.

    Slots share one cursor into ``items``, so every item is claimed exactly
    once regardless of the concurrency value. Before each item a slot takes
    ``weight`` tokens from ``rate_limiter`` (when given), and after it a slot
    sleeps ``delay`` seconds if items remain.

    An exception stops only the slot that raised it; the remaining slots
    drain the rest of the items. Once every slot has finished, the first
    exception is re-raised. Items are never retried.

    Returns worker results in item order (None for items that were never
    completed).
    """
    items = list(items)
    results: list[R | None] = [None] * len(items)
    if not items:
        return results

    next_index = 0

    async def slot() -> None:
        nonlocal next_index
        while next_index < len(items):
            index = next_index
            next_index += 1

            if rate_limiter is not None:
                await rate_limiter.consume(weight)
            results[index] = await worker(items[index], index)

            if delay > 0 and next_index < len(items):
                await asyncio.sleep(delay)

    slots = min(max(concurrency, 1), len(items))
    outcomes = await asyncio.gather(*(slot() for _ in range(slots)), return_exceptions=True)

    for outcome in outcomes:
        if isinstance(outcome, BaseException):
            raise outcome
    return results
