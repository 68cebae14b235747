"""Token bucket rate limiter shared by all pipelines of one platform.

Tokens refill continuously at ``capacity / interval`` per second. Callers
queue in strict FIFO order, so a heavy request at the head blocks lighter
requests behind it until enough tokens accumulate. At most one timer is
armed at any time; it re-evaluates the queue when the head request could
be served.
"""

import asyncio
import time
from collections import deque
from collections.abc import Callable

from perpdata.logging import get_logger

logger = get_logger(__name__)

MIN_WAIT_SECONDS = 0.01


class TokenBucketLimiter:
    """Weighted FIFO token bucket.

    Usage:
        limiter = TokenBucketLimiter(capacity=1200, interval=60.0)
        await limiter.consume(44)  # blocks until 44 tokens are available
    """

    def __init__(
        self,
        capacity: int,
        interval: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self._capacity = float(capacity)
        self._refill_rate = capacity / interval  # tokens per second
        self._clock = clock
        self._tokens = float(capacity)
        self._last_refill = clock()
        self._queue: deque[tuple[float, asyncio.Future[None]]] = deque()
        self._timer: asyncio.TimerHandle | None = None

    @property
    def capacity(self) -> int:
        return int(self._capacity)

    @property
    def tokens(self) -> float:
        """Current token count after refilling for elapsed time."""
        self._refill()
        return self._tokens

    async def consume(self, weight: float = 1) -> None:
        """Wait until ``weight`` tokens are available, then take them.

        A weight above capacity is treated as a request for the full bucket:
        it waits until the bucket is full and drains it.
        """
        if weight < 0:
            raise ValueError(f"weight must not be negative, got {weight}")
        if weight == 0:
            return

        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._queue.append((min(float(weight), self._capacity), future))
        self._process_queue()
        await future

    def stats(self) -> dict[str, float]:
        """Return a snapshot of bucket state for status reporting."""
        self._refill()
        return {
            "tokens": self._tokens,
            "queue_length": len(self._queue),
            "capacity": self._capacity,
        }

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._last_refill
        if elapsed > 0:
            self._tokens = min(self._capacity, self._tokens + elapsed * self._refill_rate)
        self._last_refill = now

    def _process_queue(self) -> None:
        """Serve queued waiters in order and arm a single re-check timer if needed."""
        self._refill()

        while self._queue:
            need, future = self._queue[0]
            if future.done():
                # Waiter was cancelled while queued
                self._queue.popleft()
                continue
            if self._tokens < need:
                break
            self._queue.popleft()
            self._tokens -= need
            future.set_result(None)

        if not self._queue or self._timer is not None:
            return

        need = self._queue[0][0]
        wait = max(MIN_WAIT_SECONDS, (need - self._tokens) / self._refill_rate)
        self._timer = asyncio.get_running_loop().call_later(wait, self._on_timer)
        logger.debug(
            "rate_limiter_waiting",
            wait_seconds=round(wait, 3),
            queue_length=len(self._queue),
            tokens=round(self._tokens, 2),
        )

    def _on_timer(self) -> None:
        self._timer = None
        self._process_queue()
