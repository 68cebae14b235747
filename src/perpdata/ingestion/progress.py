"""Stage-based progress tracking and fan-out of progress events.

StageProgressTracker holds the per-stage counters of one fetch run and
derives percentages from them. FetchRun bundles a tracker with the run's
record counters and error list and renders ProgressEvents. The
ProgressBroadcaster delivers those events to any number of subscribers,
each through its own bounded queue: a slow subscriber loses its oldest
undelivered events instead of growing memory without bound.
"""

import asyncio
import math
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Self

from perpdata.exceptions import UnknownStageError
from perpdata.logging import get_logger
from perpdata.models import (
    EventType,
    FetchKind,
    ProgressEvent,
    ProgressPhase,
    StageKey,
    StageSnapshot,
    StageStatus,
)

logger = get_logger(__name__)


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


@dataclass
class _Stage:
    key: StageKey
    status: StageStatus = StageStatus.PENDING
    completed: int = 0
    total: int = 0
    current_item: str | None = None
    message: str | None = None

    @property
    def percentage(self) -> int:
        if self.total > 0:
            return min(100, _round_half_up(self.completed / self.total * 100))
        return 100 if self.status is StageStatus.COMPLETE else 0

    def snapshot(self) -> StageSnapshot:
        return StageSnapshot(
            key=self.key,
            label=self.key.label,
            status=self.status,
            completed=self.completed,
            total=self.total,
            percentage=self.percentage,
            current_item=self.current_item,
            message=self.message,
        )


class StageProgressTracker:
    """Ordered set of progress stages with clamped counters.

    Status transitions are not validated; callers drive stages from
    pending to active to complete.
    """

    def __init__(self) -> None:
        self._stages: dict[StageKey, _Stage] = {}

    def init_stages(
        self,
        order: Iterable[StageKey],
        totals: Mapping[StageKey, int] | None = None,
    ) -> None:
        """Reset the tracker to ``order``, all pending, with optional initial totals."""
        totals = totals or {}
        self._stages = {key: _Stage(key=key, total=max(0, totals.get(key, 0))) for key in order}

    @property
    def order(self) -> list[StageKey]:
        return list(self._stages)

    def has_stage(self, key: StageKey) -> bool:
        return key in self._stages

    def update_stage(
        self,
        key: StageKey,
        *,
        status: StageStatus | None = None,
        completed: int | None = None,
        total: int | None = None,
        current_item: str | None = None,
        message: str | None = None,
    ) -> StageSnapshot:
        """Apply the given changes to one stage and return its new snapshot.

        ``completed`` is clamped to [0, total] after any total change.
        """
        stage = self._stages.get(key)
        if stage is None:
            raise UnknownStageError(f"Stage {key.value!r} was not initialized")

        if total is not None:
            stage.total = max(0, total)
        if completed is not None:
            stage.completed = completed
        stage.completed = max(0, min(stage.completed, stage.total))
        if status is not None:
            stage.status = status
        if current_item is not None:
            stage.current_item = current_item
        if message is not None:
            stage.message = message
        return stage.snapshot()

    def get(self, key: StageKey) -> StageSnapshot:
        stage = self._stages.get(key)
        if stage is None:
            raise UnknownStageError(f"Stage {key.value!r} was not initialized")
        return stage.snapshot()

    def snapshot_all(self) -> list[StageSnapshot]:
        return [stage.snapshot() for stage in self._stages.values()]

    def overall_percentage(self) -> int:
        """Mean of stage percentages weighted by stage total (1 for empty stages)."""
        if not self._stages:
            return 0
        weighted = 0.0
        weights = 0
        for stage in self._stages.values():
            weight = stage.total if stage.total > 0 else 1
            weighted += stage.percentage * weight
            weights += weight
        return min(100, _round_half_up(weighted / weights))


# ──────────────────────────────────────────────
# Run state
# ──────────────────────────────────────────────


@dataclass
class FetchRun:
    """In-memory state of the active fetch run of one platform."""

    platform: str
    kind: FetchKind
    started_at: float = field(default_factory=time.monotonic)
    phase: ProgressPhase = ProgressPhase.FETCH
    tracker: StageProgressTracker = field(default_factory=StageProgressTracker)
    current_stage: StageKey | None = None
    total_assets: int = 0
    processed_assets: int = 0
    current_asset: str | None = None
    records_fetched: int = 0
    ohlcv_records_fetched: int = 0
    oi_records_fetched: int = 0
    ratio_records_fetched: int = 0
    resample_records_created: int = 0
    resample_assets_processed: int = 0
    stored_symbols: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started_at

    def to_event(
        self,
        event_type: EventType = EventType.PROGRESS,
        message: str | None = None,
    ) -> ProgressEvent:
        return ProgressEvent(
            type=event_type,
            phase=self.phase,
            stage=self.current_stage,
            stages=self.tracker.snapshot_all(),
            total_assets=self.total_assets,
            processed_assets=self.processed_assets,
            current_asset=self.current_asset,
            records_fetched=self.records_fetched,
            ohlcv_records_fetched=self.ohlcv_records_fetched,
            oi_records_fetched=self.oi_records_fetched,
            ratio_records_fetched=self.ratio_records_fetched,
            resample_records_created=self.resample_records_created,
            resample_assets_processed=self.resample_assets_processed,
            errors=list(self.errors),
            percentage=self.tracker.overall_percentage(),
            message=message,
        )


# ──────────────────────────────────────────────
# Event fan-out
# ──────────────────────────────────────────────


class _Done:
    def __repr__(self) -> str:
        return "DONE"


DONE: Any = _Done()


class ProgressSubscription:
    """Async iterator over progress events, ending after the DONE sentinel.

    Usage:
        async with broadcaster.subscribe() as subscription:
            async for event in subscription:
                ...
    """

    def __init__(self, broadcaster: "ProgressBroadcaster", maxsize: int) -> None:
        self._broadcaster = broadcaster
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        self.closed = False

    def offer(self, item: Any) -> None:
        """Enqueue without blocking, evicting the oldest item if the queue is full."""
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(item)

    async def get(self, timeout: float | None = None) -> ProgressEvent | Any:
        """Next event or DONE. Raises asyncio.TimeoutError after ``timeout`` seconds."""
        if timeout is None:
            return await self._queue.get()
        return await asyncio.wait_for(self._queue.get(), timeout)

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._broadcaster.unsubscribe(self)

    def __aiter__(self) -> Self:
        return self

    async def __anext__(self) -> ProgressEvent:
        item = await self._queue.get()
        if item is DONE:
            self.close()
            raise StopAsyncIteration
        return item

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        self.close()


class ProgressBroadcaster:
    """Single-publisher, multi-subscriber progress channel."""

    def __init__(self, queue_size: int = 256) -> None:
        self._queue_size = queue_size
        self._subscribers: list[ProgressSubscription] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> ProgressSubscription:
        subscription = ProgressSubscription(self, self._queue_size)
        self._subscribers.append(subscription)
        return subscription

    def unsubscribe(self, subscription: ProgressSubscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)

    def publish(self, event: ProgressEvent) -> None:
        for subscription in self._subscribers:
            subscription.offer(event)

    def publish_done(self) -> None:
        """Send the DONE sentinel to every subscriber and detach them all."""
        subscribers, self._subscribers = self._subscribers, []
        for subscription in subscribers:
            subscription.offer(DONE)
            subscription.closed = True
        if subscribers:
            logger.debug("progress_subscribers_released", count=len(subscribers))
