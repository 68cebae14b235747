"""Per-platform ingestion orchestrator.

DataFetcherService owns one exchange client, one token bucket limiter and
at most one active FetchRun. A run discovers (initial) or loads
(incremental) the platform's assets, runs the dataset pipelines
concurrently against the shared limiter, resamples hourly funding when the
platform needs it, and publishes progress events throughout.

Pipeline errors never escape a run: they accumulate on the run and decide
its final status. Only run-level preconditions (a run already active, no
registered assets for an incremental run) raise to the caller.
"""

import asyncio
from typing import Any

import structlog

from perpdata.concurrency import TokenBucketLimiter
from perpdata.data.repositories import Repositories
from perpdata.exceptions import FetchAlreadyRunningError, NoAssetsRegisteredError
from perpdata.exchange.client import ExchangeClient
from perpdata.ingestion.pipelines import (
    CandlePipeline,
    DatasetPipeline,
    FundingPipeline,
    OpenInterestPipeline,
    PipelineContext,
    RatioPipeline,
)
from perpdata.ingestion.progress import FetchRun, ProgressBroadcaster, ProgressSubscription
from perpdata.ingestion.resample import FundingResampler
from perpdata.logging import get_logger
from perpdata.models import (
    Asset,
    EventType,
    FetchKind,
    FetchResult,
    FetchStatus,
    ProgressEvent,
    ProgressPhase,
    StageKey,
    StageStatus,
)

logger = get_logger(__name__)

_MAX_LOGGED_ERRORS = 50


class DataFetcherService:
    """Runs initial and incremental fetches for a single platform.

    Usage:
        service = DataFetcherService(client, repositories)
        result = await service.fetch_initial_data()

        # or, fail-fast start from a request handler
        task = await service.start_incremental()
    """

    def __init__(
        self,
        client: ExchangeClient,
        repositories: Repositories,
        *,
        limiter: TokenBucketLimiter | None = None,
        subscriber_queue_size: int = 256,
    ) -> None:
        self._client = client
        self._repositories = repositories
        self._profile = client.profile
        self._limiter = limiter or TokenBucketLimiter(
            self._profile.limiter_capacity, self._profile.limiter_interval
        )
        self._pipelines: list[DatasetPipeline] = [
            FundingPipeline(repositories.funding),
            CandlePipeline(repositories.ohlcv),
            OpenInterestPipeline(repositories.open_interest),
            RatioPipeline(repositories.ratios),
        ]
        self._resampler = FundingResampler(repositories.funding)
        self._broadcaster = ProgressBroadcaster(subscriber_queue_size)
        self._run: FetchRun | None = None
        self._last_result: FetchResult | None = None

    @property
    def platform(self) -> str:
        return self._profile.platform.value

    @property
    def client(self) -> ExchangeClient:
        return self._client

    @property
    def limiter(self) -> TokenBucketLimiter:
        return self._limiter

    @property
    def is_running(self) -> bool:
        return self._run is not None

    @property
    def last_result(self) -> FetchResult | None:
        return self._last_result

    # ──────────────────────────────────────────────
    # Run control
    # ──────────────────────────────────────────────

    async def fetch_initial_data(self) -> FetchResult:
        """Discover assets and backfill the full lookback window for all datasets."""
        run = self._claim(FetchKind.INITIAL)
        return await self._execute(run, assets=None)

    async def fetch_incremental_data(self) -> FetchResult:
        """Fetch and store only records newer than what is already stored.

        Raises NoAssetsRegisteredError if no initial fetch has registered assets.
        """
        run = self._claim(FetchKind.INCREMENTAL)
        assets = await self._load_registered_assets(run)
        return await self._execute(run, assets=assets)

    async def start_initial(self) -> asyncio.Task[FetchResult]:
        """Claim the platform and run an initial fetch in the background."""
        run = self._claim(FetchKind.INITIAL)
        return self._spawn(run, assets=None)

    async def start_incremental(self) -> asyncio.Task[FetchResult]:
        """Claim the platform, verify registered assets, then fetch in the background."""
        run = self._claim(FetchKind.INCREMENTAL)
        assets = await self._load_registered_assets(run)
        return self._spawn(run, assets=assets)

    def current_progress(self) -> ProgressEvent | None:
        """Snapshot of the active run, or None when idle."""
        if self._run is None:
            return None
        return self._run.to_event(EventType.PROGRESS)

    def subscribe(self) -> ProgressSubscription:
        """Subscribe to progress events; the subscription ends after the next run ends."""
        return self._broadcaster.subscribe()

    def stage_order(self, kind: FetchKind) -> list[StageKey]:
        """Stages of a run of ``kind`` on this platform, in display order."""
        order: list[StageKey] = []
        if kind is FetchKind.INITIAL:
            order.append(StageKey.ASSET_DISCOVERY)
        for pipeline in self._pipelines:
            if self._profile.supports(pipeline.dataset):
                order.extend([pipeline.fetch_stage, pipeline.store_stage])
        if self._profile.needs_resample:
            order.append(StageKey.RESAMPLE)
        return order

    async def status(self) -> dict[str, Any]:
        """Stored data counts, last successful run and in-progress state."""
        repos = self._repositories
        return {
            "platform": self.platform,
            "asset_count": await repos.assets.count(self.platform),
            "funding_rate_count": await repos.funding.count(self.platform),
            "ohlcv_count": await repos.ohlcv.count(self.platform),
            "open_interest_count": await repos.open_interest.count(self.platform),
            "long_short_ratio_count": await repos.ratios.count(self.platform),
            "last_fetch": await repos.fetch_logs.get_last_successful(self.platform),
            "fetch_in_progress": self.is_running,
            "progress": event.to_dict() if (event := self.current_progress()) else None,
            "is_banned": self._client.is_banned,
            "rate_limiter": self._limiter.stats(),
        }

    # ──────────────────────────────────────────────
    # Run lifecycle
    # ──────────────────────────────────────────────

    def _claim(self, kind: FetchKind) -> FetchRun:
        # No await between check and set: the claim is atomic on the event loop
        if self._run is not None:
            raise FetchAlreadyRunningError(self.platform)
        self._run = FetchRun(platform=self.platform, kind=kind)
        # Bans last for one run
        self._client.reset_ban()
        return self._run

    def _release(self, run: FetchRun) -> None:
        if self._run is run:
            self._run = None

    def _spawn(self, run: FetchRun, assets: list[Asset] | None) -> asyncio.Task[FetchResult]:
        return asyncio.create_task(
            self._execute(run, assets=assets),
            name=f"fetch-{self.platform}-{run.kind.value}",
        )

    async def _load_registered_assets(self, run: FetchRun) -> list[Asset]:
        try:
            assets = await self._repositories.assets.find_by_platform(self.platform)
        except BaseException:
            self._release(run)
            raise
        if assets:
            return assets

        message = f"No assets registered for {self.platform}; run an initial fetch first"
        run.errors.append(message)
        self._emit(run, EventType.ERROR, message=message)
        self._broadcaster.publish_done()
        self._release(run)
        logger.warning("incremental_fetch_rejected", platform=self.platform, reason="no_assets")
        raise NoAssetsRegisteredError(self.platform)

    async def _execute(self, run: FetchRun, assets: list[Asset] | None) -> FetchResult:
        status = FetchStatus.FAILED
        log_id: int | None = None

        with structlog.contextvars.bound_contextvars(
            platform=self.platform, fetch_kind=run.kind.value
        ):
            logger.info("fetch_run_started")
            try:
                log_id = await self._repositories.fetch_logs.create(
                    self.platform, run.kind.value
                )
                if assets is None:
                    assets = await self._discover_assets(run)
                else:
                    self._begin(run, assets)

                await self._run_pipelines(run, assets)
                if self._profile.needs_resample:
                    await self._resample(run, assets)

                status = self._final_status(run)
                self._emit(
                    run,
                    EventType.COMPLETE,
                    message=f"{run.kind.value.capitalize()} fetch finished: {status.value}",
                )
            except Exception as e:
                logger.exception("fetch_run_failed", error=str(e))
                run.errors.append(f"Fetch failed: {e}")
                status = FetchStatus.FAILED
                self._emit(run, EventType.ERROR, message=str(e))
            finally:
                result = self._build_result(run, status)
                self._last_result = result
                await self._write_fetch_log(log_id, result)
                self._broadcaster.publish_done()
                self._release(run)
                logger.info(
                    "fetch_run_finished",
                    status=status.value,
                    assets=result.assets_processed,
                    funding_records=result.records_fetched,
                    ohlcv_records=result.ohlcv_records_fetched,
                    oi_records=result.oi_records_fetched,
                    ratio_records=result.ratio_records_fetched,
                    resampled=result.resample_records_created,
                    errors=len(result.errors),
                    duration=round(result.duration_seconds, 2),
                )
        return result

    async def _discover_assets(self, run: FetchRun) -> list[Asset]:
        tracker = run.tracker
        tracker.init_stages(self.stage_order(run.kind))
        tracker.update_stage(StageKey.ASSET_DISCOVERY, status=StageStatus.ACTIVE)
        run.current_stage = StageKey.ASSET_DISCOVERY
        self._emit(run, EventType.START, message=f"Discovering {self.platform} assets")

        listed = await self._client.list_assets()
        await self._repositories.assets.bulk_upsert(self.platform, listed)
        await self._repositories.assets.deactivate_missing(
            self.platform, [asset.symbol for asset in listed]
        )
        assets = await self._repositories.assets.find_by_platform(self.platform)

        tracker.update_stage(
            StageKey.ASSET_DISCOVERY,
            status=StageStatus.COMPLETE,
            total=len(assets),
            completed=len(assets),
        )
        run.total_assets = len(assets)
        self._set_pipeline_totals(run, len(assets))
        logger.info("assets_discovered", listed=len(listed), active=len(assets))
        self._emit(run, message=f"Found {len(assets)} assets")
        return assets

    def _begin(self, run: FetchRun, assets: list[Asset]) -> None:
        run.tracker.init_stages(self.stage_order(run.kind))
        run.total_assets = len(assets)
        self._set_pipeline_totals(run, len(assets))
        self._emit(run, EventType.START, message=f"Updating {len(assets)} assets")

    def _set_pipeline_totals(self, run: FetchRun, count: int) -> None:
        for key in run.tracker.order:
            if key is not StageKey.ASSET_DISCOVERY:
                run.tracker.update_stage(key, total=count)

    async def _run_pipelines(self, run: FetchRun, assets: list[Asset]) -> None:
        ctx = PipelineContext(
            run=run,
            client=self._client,
            limiter=self._limiter,
            assets={asset.symbol: asset for asset in assets},
            emit=lambda: self._emit(run),
        )
        outcomes = await asyncio.gather(
            *(pipeline.run(ctx) for pipeline in self._pipelines),
            return_exceptions=True,
        )
        for pipeline, outcome in zip(self._pipelines, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, Exception):
                logger.error(
                    "pipeline_failed",
                    dataset=pipeline.dataset.value,
                    error=str(outcome),
                    exc_info=outcome,
                )
                run.errors.append(f"{pipeline.label} pipeline failed: {outcome}")

        for key in run.tracker.order:
            if key is not StageKey.RESAMPLE:
                run.tracker.update_stage(key, status=StageStatus.COMPLETE)
        self._emit(run)

    async def _resample(self, run: FetchRun, assets: list[Asset]) -> None:
        tracker = run.tracker
        run.phase = ProgressPhase.RESAMPLE
        run.current_stage = StageKey.RESAMPLE
        tracker.update_stage(StageKey.RESAMPLE, status=StageStatus.ACTIVE, total=len(assets))
        self._emit(run, message="Resampling hourly funding to 8h")

        def on_asset(asset: Asset, processed: int) -> None:
            run.resample_assets_processed = processed
            tracker.update_stage(StageKey.RESAMPLE, completed=processed, current_item=asset.symbol)
            self._emit(run)

        result = await self._resampler.resample(
            self.platform, assets, self._profile.sampling_interval, on_asset=on_asset
        )
        run.resample_records_created += result.records_created
        run.errors.extend(result.errors)
        tracker.update_stage(StageKey.RESAMPLE, status=StageStatus.COMPLETE)
        self._emit(run)

    # ──────────────────────────────────────────────
    # Helpers
    # ──────────────────────────────────────────────

    @staticmethod
    def _final_status(run: FetchRun) -> FetchStatus:
        if not run.errors:
            return FetchStatus.SUCCESS
        if run.stored_symbols > 0:
            return FetchStatus.PARTIAL
        return FetchStatus.FAILED

    def _build_result(self, run: FetchRun, status: FetchStatus) -> FetchResult:
        return FetchResult(
            platform=self.platform,
            kind=run.kind,
            status=status,
            assets_processed=run.total_assets,
            records_fetched=run.records_fetched,
            ohlcv_records_fetched=run.ohlcv_records_fetched,
            oi_records_fetched=run.oi_records_fetched,
            ratio_records_fetched=run.ratio_records_fetched,
            resample_records_created=run.resample_records_created,
            errors=list(run.errors),
            duration_seconds=run.elapsed,
        )

    async def _write_fetch_log(self, log_id: int | None, result: FetchResult) -> None:
        if log_id is None:
            return
        total_records = (
            result.records_fetched
            + result.ohlcv_records_fetched
            + result.oi_records_fetched
            + result.ratio_records_fetched
        )
        error_message = "; ".join(result.errors[:_MAX_LOGGED_ERRORS]) or None
        try:
            await self._repositories.fetch_logs.complete(
                log_id,
                result.status.value,
                result.assets_processed,
                total_records,
                error_message,
            )
        except Exception:
            logger.error("fetch_log_write_failed", log_id=log_id, exc_info=True)

    def _emit(
        self,
        run: FetchRun,
        event_type: EventType = EventType.PROGRESS,
        message: str | None = None,
    ) -> None:
        self._broadcaster.publish(run.to_event(event_type, message))
