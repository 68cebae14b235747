"""Per-dataset fetch-and-store pipelines.

A pipeline drives one dataset for one run: it asks the exchange client for
a streaming batch fetch over all symbols and stores each symbol's points as
soon as they arrive. Per-symbol failures are recorded on the run and still
advance the store counter; a ban ends the pipeline early.
"""

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, ClassVar

from perpdata.concurrency import TokenBucketLimiter
from perpdata.data.repositories import (
    FundingRateRepository,
    LongShortRatioRepository,
    OHLCVRepository,
    OpenInterestRepository,
    SeriesRepository,
)
from perpdata.exceptions import AssetNotFoundError, ExchangeBannedError
from perpdata.exchange.client import ExchangeClient
from perpdata.ingestion.progress import FetchRun
from perpdata.logging import get_logger
from perpdata.models import Asset, Dataset, FetchKind, StageKey, StageStatus

logger = get_logger(__name__)


@dataclass
class PipelineContext:
    """Everything a pipeline needs from the orchestrating service."""

    run: FetchRun
    client: ExchangeClient
    limiter: TokenBucketLimiter
    assets: dict[str, Asset]  # keyed by symbol
    emit: Callable[[], None]

    @property
    def platform(self) -> str:
        return self.run.platform

    @property
    def incremental(self) -> bool:
        return self.run.kind is FetchKind.INCREMENTAL


class DatasetPipeline(ABC):
    """Fetch-then-store flow shared by all datasets."""

    dataset: ClassVar[Dataset]
    label: ClassVar[str]
    fetch_stage: ClassVar[StageKey]
    store_stage: ClassVar[StageKey]

    def __init__(self, repository: SeriesRepository[Any]) -> None:
        self._repository = repository

    @abstractmethod
    def _batch(self, client: ExchangeClient) -> Callable[..., Awaitable[dict[str, list[Any]]]]:
        """Return the client's batch fetch method for this dataset."""
        ...

    @abstractmethod
    def _count(self, run: FetchRun, inserted: int) -> None:
        """Add newly inserted rows to the run's counter for this dataset."""
        ...

    async def run(self, ctx: PipelineContext) -> None:
        profile = ctx.client.profile
        tracker = ctx.run.tracker
        if not profile.supports(self.dataset):
            logger.debug("pipeline_skipped", dataset=self.dataset.value, platform=ctx.platform)
            return

        interval = profile.interval_for(self.dataset)
        symbols = list(ctx.assets)
        latest: dict[int, int] = {}
        if ctx.incremental:
            latest = await self._repository.find_latest_timestamps(
                [asset.id for asset in ctx.assets.values()], ctx.platform, interval
            )

        tracker.update_stage(self.fetch_stage, status=StageStatus.ACTIVE, total=len(symbols))
        tracker.update_stage(self.store_stage, status=StageStatus.ACTIVE, total=len(symbols))
        ctx.run.current_stage = self.fetch_stage
        ctx.emit()

        stored = 0

        def advance_store(symbol: str) -> None:
            nonlocal stored
            stored += 1
            tracker.update_stage(self.store_stage, completed=stored, current_item=symbol)
            ctx.run.current_stage = self.store_stage
            ctx.run.processed_assets = max(ctx.run.processed_assets, stored)
            ctx.emit()

        def on_progress(symbol: str, processed: int) -> None:
            tracker.update_stage(self.fetch_stage, completed=processed, current_item=symbol)
            ctx.run.current_stage = self.fetch_stage
            ctx.run.current_asset = symbol
            ctx.emit()

        async def on_item(symbol: str, points: list[Any]) -> None:
            try:
                asset = ctx.assets.get(symbol)
                if asset is None:
                    raise AssetNotFoundError(symbol)
                boundary = latest.get(asset.id)
                if boundary is not None:
                    points = [p for p in points if p.timestamp_ms > boundary]
                inserted = await self._repository.bulk_upsert(
                    asset.id, ctx.platform, interval, points
                )
                self._count(ctx.run, inserted)
                ctx.run.stored_symbols += 1
            except Exception as e:
                self._record_error(ctx.run, "store", symbol, e)
            finally:
                advance_store(symbol)

        async def on_error(symbol: str, exc: Exception) -> None:
            self._record_error(ctx.run, "fetch", symbol, exc)
            advance_store(symbol)

        fetch_batch = self._batch(ctx.client)
        try:
            await fetch_batch(
                symbols,
                concurrency=profile.concurrency_for(self.dataset),
                delay=profile.delay_for(self.dataset),
                rate_limiter=ctx.limiter,
                on_progress=on_progress,
                on_item=on_item,
                on_error=on_error,
            )
        except ExchangeBannedError as e:
            ctx.run.errors.append(f"{self.label} aborted: {e}")
            logger.error(
                "pipeline_aborted_on_ban",
                dataset=self.dataset.value,
                platform=ctx.platform,
                stored=stored,
                total=len(symbols),
            )

        tracker.update_stage(self.fetch_stage, status=StageStatus.COMPLETE)
        tracker.update_stage(self.store_stage, status=StageStatus.COMPLETE)
        ctx.emit()
        logger.info(
            "pipeline_completed",
            dataset=self.dataset.value,
            platform=ctx.platform,
            symbols=len(symbols),
            stored=stored,
        )

    def _record_error(self, run: FetchRun, step: str, symbol: str, exc: Exception) -> None:
        run.errors.append(f"{self.label} {step} error for {symbol}: {exc}")
        logger.warning(
            "pipeline_symbol_failed",
            dataset=self.dataset.value,
            step=step,
            symbol=symbol,
            error=str(exc),
        )


class FundingPipeline(DatasetPipeline):
    dataset = Dataset.FUNDING
    label = "Funding"
    fetch_stage = StageKey.FUNDING_FETCH
    store_stage = StageKey.FUNDING_STORE

    def __init__(self, repository: FundingRateRepository) -> None:
        super().__init__(repository)

    def _batch(self, client: ExchangeClient) -> Callable[..., Awaitable[dict[str, list[Any]]]]:
        return client.fetch_funding_history_batch

    def _count(self, run: FetchRun, inserted: int) -> None:
        run.records_fetched += inserted


class CandlePipeline(DatasetPipeline):
    dataset = Dataset.OHLCV
    label = "OHLCV"
    fetch_stage = StageKey.OHLCV_FETCH
    store_stage = StageKey.OHLCV_STORE

    def __init__(self, repository: OHLCVRepository) -> None:
        super().__init__(repository)

    def _batch(self, client: ExchangeClient) -> Callable[..., Awaitable[dict[str, list[Any]]]]:
        return client.fetch_candles_batch

    def _count(self, run: FetchRun, inserted: int) -> None:
        run.ohlcv_records_fetched += inserted


class OpenInterestPipeline(DatasetPipeline):
    dataset = Dataset.OPEN_INTEREST
    label = "Open interest"
    fetch_stage = StageKey.OI_FETCH
    store_stage = StageKey.OI_STORE

    def __init__(self, repository: OpenInterestRepository) -> None:
        super().__init__(repository)

    def _batch(self, client: ExchangeClient) -> Callable[..., Awaitable[dict[str, list[Any]]]]:
        return client.fetch_open_interest_batch

    def _count(self, run: FetchRun, inserted: int) -> None:
        run.oi_records_fetched += inserted


class RatioPipeline(DatasetPipeline):
    dataset = Dataset.RATIO
    label = "Long/short ratio"
    fetch_stage = StageKey.RATIO_FETCH
    store_stage = StageKey.RATIO_STORE

    def __init__(self, repository: LongShortRatioRepository) -> None:
        super().__init__(repository)

    def _batch(self, client: ExchangeClient) -> Callable[..., Awaitable[dict[str, list[Any]]]]:
        return client.fetch_long_short_ratio_batch

    def _count(self, run: FetchRun, inserted: int) -> None:
        run.ratio_records_fetched += inserted
