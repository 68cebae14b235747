"""Periodic incremental fetches across platforms.

Each tick runs an incremental fetch for every configured platform in
turn. Platforms with a run already in flight are skipped, and a tick that
would overlap a previous one is skipped entirely.
"""

import asyncio
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any

from perpdata.config import SchedulerSettings
from perpdata.exceptions import FetchAlreadyRunningError, NoAssetsRegisteredError
from perpdata.ingestion.registry import FetcherRegistry, parse_platform
from perpdata.logging import get_logger
from perpdata.models import FetchStatus, Platform

logger = get_logger(__name__)


@dataclass
class PlatformRunSummary:
    """Outcome of one platform within a scheduler tick."""

    platform: str
    status: str  # a FetchStatus value or "skipped"
    records_fetched: int = 0
    errors: int = 0
    duration_seconds: float = 0.0
    message: str | None = None


@dataclass
class SchedulerRun:
    """One scheduler tick over all configured platforms."""

    started_at: str
    finished_at: str | None = None
    status: str = FetchStatus.RUNNING.value
    platforms: list[PlatformRunSummary] = field(default_factory=list)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def overall_status(summaries: list[PlatformRunSummary]) -> FetchStatus:
    """success if all succeeded, partial if any stored data, failed otherwise."""
    ran = [s for s in summaries if s.status != "skipped"]
    if ran and all(s.status == FetchStatus.SUCCESS.value for s in ran):
        return FetchStatus.SUCCESS
    if any(s.status in (FetchStatus.SUCCESS.value, FetchStatus.PARTIAL.value) for s in ran):
        return FetchStatus.PARTIAL
    return FetchStatus.FAILED


class IncrementalScheduler:
    """Background loop running incremental fetches on a fixed interval."""

    def __init__(self, registry: FetcherRegistry, settings: SchedulerSettings) -> None:
        self._registry = registry
        self._settings = settings
        if settings.platforms:
            self._platforms = [parse_platform(p) for p in settings.platforms]
        else:
            self._platforms = registry.platforms()
        self._running = False
        self._task: asyncio.Task | None = None  # type: ignore[type-arg]
        self._tick_lock = asyncio.Lock()
        self._last_run: SchedulerRun | None = None
        self._next_run_at: float | None = None

    @property
    def platforms(self) -> list[Platform]:
        return list(self._platforms)

    @property
    def last_run(self) -> SchedulerRun | None:
        return self._last_run

    async def start(self) -> None:
        """Begin the periodic loop in the background."""
        if self._running:
            logger.warning("scheduler_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info(
            "scheduler_started",
            interval_minutes=self._settings.interval_minutes,
            platforms=[p.value for p in self._platforms],
        )

    async def stop(self) -> None:
        """Stop the loop; an in-flight tick is cancelled."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("scheduler_stopped")

    async def _loop(self) -> None:
        interval = self._settings.interval_minutes * 60
        if not self._settings.run_on_start:
            self._next_run_at = time.time() + interval
            await asyncio.sleep(interval)
        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.error("scheduler_tick_error", exc_info=True)
            if self._running:
                self._next_run_at = time.time() + interval
                await asyncio.sleep(interval)

    async def run_once(self) -> SchedulerRun | None:
        """Run one tick now. Returns None if a tick is already in progress."""
        if self._tick_lock.locked():
            logger.warning("scheduler_tick_skipped", reason="previous_tick_running")
            return None

        async with self._tick_lock:
            run = SchedulerRun(started_at=_utc_now())
            self._last_run = run
            for platform in self._platforms:
                run.platforms.append(await self._run_platform(platform))
            run.status = overall_status(run.platforms).value
            run.finished_at = _utc_now()
            logger.info(
                "scheduler_tick_completed",
                status=run.status,
                platforms={s.platform: s.status for s in run.platforms},
            )
            return run

    async def _run_platform(self, platform: Platform) -> PlatformRunSummary:
        service = self._registry.get(platform)
        started = time.monotonic()
        try:
            result = await service.fetch_incremental_data()
        except FetchAlreadyRunningError:
            return PlatformRunSummary(
                platform=platform.value, status="skipped", message="fetch already running"
            )
        except NoAssetsRegisteredError as e:
            return PlatformRunSummary(
                platform=platform.value,
                status=FetchStatus.FAILED.value,
                errors=1,
                message=str(e),
            )
        except Exception as e:
            logger.error("scheduler_platform_failed", platform=platform.value, exc_info=True)
            return PlatformRunSummary(
                platform=platform.value,
                status=FetchStatus.FAILED.value,
                errors=1,
                duration_seconds=time.monotonic() - started,
                message=str(e),
            )

        return PlatformRunSummary(
            platform=platform.value,
            status=result.status.value,
            records_fetched=(
                result.records_fetched
                + result.ohlcv_records_fetched
                + result.oi_records_fetched
                + result.ratio_records_fetched
            ),
            errors=len(result.errors),
            duration_seconds=result.duration_seconds,
        )

    def status(self) -> dict[str, Any]:
        return {
            "enabled": self._settings.enabled,
            "running": self._running,
            "tick_in_progress": self._tick_lock.locked(),
            "interval_minutes": self._settings.interval_minutes,
            "platforms": [p.value for p in self._platforms],
            "next_run_at": (
                datetime.fromtimestamp(self._next_run_at, tz=timezone.utc).isoformat()
                if self._next_run_at is not None
                else None
            ),
            "last_run": asdict(self._last_run) if self._last_run is not None else None,
        }
