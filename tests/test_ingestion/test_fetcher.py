"""Tests for DataFetcherService run orchestration against a fake exchange."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from fakes import BASE_TS, HOUR_MS, candle_points, funding_points, make_profile
from perpdata.data import Repositories
from perpdata.exceptions import (
    ExchangeBannedError,
    FetchAlreadyRunningError,
    NoAssetsRegisteredError,
)
from perpdata.ingestion.fetcher import DataFetcherService
from perpdata.ingestion.progress import ProgressSubscription
from perpdata.models import (
    Dataset,
    EventType,
    ExchangeAsset,
    FetchKind,
    FetchStatus,
    ProgressEvent,
    ProgressPhase,
    StageKey,
    StageStatus,
)

SYMBOLS = ["BTCUSDT", "ETHUSDT", "SOLUSDT"]


async def drain(subscription: ProgressSubscription) -> list[ProgressEvent]:
    return [event async for event in subscription]


def _stage(event: ProgressEvent, key: StageKey):  # type: ignore[no-untyped-def]
    return next(s for s in event.stages if s.key is key)


def _full_data() -> dict[Dataset, dict[str, list]]:
    return {
        Dataset.FUNDING: {s: funding_points(s, BASE_TS, 3) for s in SYMBOLS},
        Dataset.OHLCV: {s: candle_points(s, BASE_TS, 2) for s in SYMBOLS},
    }


# ---------------------------------------------------------------------------
# Initial runs
# ---------------------------------------------------------------------------


class TestInitialFetch:
    @pytest.mark.asyncio
    async def test_success_stores_everything(
        self, fake_client_factory, repositories: Repositories
    ) -> None:
        service = DataFetcherService(fake_client_factory(data=_full_data()), repositories)
        subscription = service.subscribe()

        result = await service.fetch_initial_data()
        events = await drain(subscription)

        assert result.status is FetchStatus.SUCCESS
        assert result.kind is FetchKind.INITIAL
        assert result.assets_processed == 3
        assert result.records_fetched == 9
        assert result.ohlcv_records_fetched == 6
        assert result.errors == []
        assert await repositories.assets.count("binance") == 3
        assert await repositories.funding.count("binance", "8h") == 9

        assert events[0].type is EventType.START
        assert events[-1].type is EventType.COMPLETE
        assert events[-1].percentage == 100
        assert [s.key for s in events[-1].stages] == [
            StageKey.ASSET_DISCOVERY,
            StageKey.FUNDING_FETCH,
            StageKey.FUNDING_STORE,
            StageKey.OHLCV_FETCH,
            StageKey.OHLCV_STORE,
        ]
        assert all(s.status is StageStatus.COMPLETE for s in events[-1].stages)
        assert not service.is_running

    @pytest.mark.asyncio
    async def test_symbol_fetch_error_gives_partial(
        self, fake_client_factory, repositories: Repositories
    ) -> None:
        client = fake_client_factory(
            data=_full_data(),
            failures={(Dataset.FUNDING, "ETHUSDT"): RuntimeError("boom")},
        )
        service = DataFetcherService(client, repositories)
        subscription = service.subscribe()

        result = await service.fetch_initial_data()
        final = (await drain(subscription))[-1]

        assert result.status is FetchStatus.PARTIAL
        assert result.errors == ["Funding fetch error for ETHUSDT: boom"]
        assert result.records_fetched == 6
        funding_store = _stage(final, StageKey.FUNDING_STORE)
        assert (funding_store.completed, funding_store.total) == (3, 3)
        assert funding_store.status is StageStatus.COMPLETE

    @pytest.mark.asyncio
    async def test_store_error_advances_store_counter(
        self, fake_client_factory, repositories: Repositories
    ) -> None:
        repositories.ohlcv.bulk_upsert = AsyncMock(side_effect=RuntimeError("disk full"))
        service = DataFetcherService(fake_client_factory(data=_full_data()), repositories)
        subscription = service.subscribe()

        result = await service.fetch_initial_data()
        final = (await drain(subscription))[-1]

        assert result.status is FetchStatus.PARTIAL
        assert sorted(result.errors) == [
            f"OHLCV store error for {s}: disk full" for s in sorted(SYMBOLS)
        ]
        assert _stage(final, StageKey.OHLCV_STORE).completed == 3

    @pytest.mark.asyncio
    async def test_discovery_failure_fails_run(
        self, fake_client_factory, repositories: Repositories
    ) -> None:
        client = fake_client_factory()
        client.list_assets_error = RuntimeError("exchange down")
        service = DataFetcherService(client, repositories)
        subscription = service.subscribe()

        result = await service.fetch_initial_data()
        events = await drain(subscription)

        assert result.status is FetchStatus.FAILED
        assert result.errors == ["Fetch failed: exchange down"]
        assert events[-1].type is EventType.ERROR
        assert await repositories.fetch_logs.get_last_successful("binance") is None
        assert not service.is_running

    @pytest.mark.asyncio
    async def test_ban_aborts_pipeline(
        self, fake_client_factory, repositories: Repositories
    ) -> None:
        client = fake_client_factory(
            data=_full_data(),
            failures={(Dataset.FUNDING, "BTCUSDT"): ExchangeBannedError("binance", "HTTP 418")},
            profile=make_profile(concurrency=1),
        )
        service = DataFetcherService(client, repositories)

        result = await service.fetch_initial_data()

        assert result.status is not FetchStatus.SUCCESS
        assert any(e.startswith("Funding aborted:") for e in result.errors)
        assert [c for c in client.calls if c[0] is Dataset.FUNDING] == [
            (Dataset.FUNDING, "BTCUSDT")
        ]
        assert client.is_banned
        assert not service.is_running

    @pytest.mark.asyncio
    async def test_next_run_after_ban_reaches_exchange(
        self, fake_client_factory, repositories: Repositories
    ) -> None:
        client = fake_client_factory(
            data=_full_data(),
            failures={(Dataset.FUNDING, "ETHUSDT"): ExchangeBannedError("binance", "HTTP 418")},
            profile=make_profile(concurrency=1),
        )
        service = DataFetcherService(client, repositories)

        first = await service.fetch_initial_data()
        assert first.status is not FetchStatus.SUCCESS
        assert client.is_banned

        client.failures.clear()
        client.calls.clear()
        second = await service.fetch_initial_data()

        assert second.status is FetchStatus.SUCCESS
        assert second.errors == []
        assert not client.is_banned
        assert (Dataset.FUNDING, "ETHUSDT") in client.calls
        assert (Dataset.OHLCV, "SOLUSDT") in client.calls

    @pytest.mark.asyncio
    async def test_fetch_log_records_outcome(
        self, fake_client_factory, repositories: Repositories
    ) -> None:
        service = DataFetcherService(fake_client_factory(data=_full_data()), repositories)

        await service.fetch_initial_data()
        status = await service.status()

        assert status["last_fetch"]["status"] == "success"
        assert status["last_fetch"]["records_fetched"] == 15
        assert status["asset_count"] == 3
        assert status["funding_rate_count"] == 9
        assert status["fetch_in_progress"] is False
        assert status["progress"] is None


# ---------------------------------------------------------------------------
# Incremental runs
# ---------------------------------------------------------------------------


class TestIncrementalFetch:
    @pytest.mark.asyncio
    async def test_requires_registered_assets(
        self, fake_client_factory, repositories: Repositories
    ) -> None:
        service = DataFetcherService(fake_client_factory(), repositories)
        subscription = service.subscribe()

        with pytest.raises(NoAssetsRegisteredError):
            await service.fetch_incremental_data()

        events = await drain(subscription)
        assert [e.type for e in events] == [EventType.ERROR]
        assert not service.is_running

    @pytest.mark.asyncio
    async def test_only_newer_records_stored(
        self, fake_client_factory, repositories: Repositories
    ) -> None:
        latest = BASE_TS + 10 * HOUR_MS
        await repositories.assets.bulk_upsert("binance", [ExchangeAsset("BTCUSDT", "BTC")])
        asset = (await repositories.assets.find_by_platform("binance"))[0]
        await repositories.funding.bulk_upsert(
            asset.id, "binance", "8h", funding_points("BTCUSDT", latest, 1)
        )
        client = fake_client_factory(
            assets=["BTCUSDT"],
            data={Dataset.FUNDING: {"BTCUSDT": funding_points("BTCUSDT", latest - 2 * HOUR_MS, 5)}},
        )
        service = DataFetcherService(client, repositories)

        result = await service.fetch_incremental_data()

        assert result.status is FetchStatus.SUCCESS
        assert result.kind is FetchKind.INCREMENTAL
        assert result.records_fetched == 2
        stored = await repositories.funding.find(asset.id, "binance", "8h")
        assert [p.timestamp_ms for p in stored] == [latest, latest + HOUR_MS, latest + 2 * HOUR_MS]

    @pytest.mark.asyncio
    async def test_incremental_has_no_discovery_stage(
        self, fake_client_factory, repositories: Repositories
    ) -> None:
        await repositories.assets.bulk_upsert("binance", [ExchangeAsset("BTCUSDT", "BTC")])
        service = DataFetcherService(fake_client_factory(assets=["BTCUSDT"]), repositories)
        subscription = service.subscribe()

        await service.fetch_incremental_data()
        final = (await drain(subscription))[-1]

        assert StageKey.ASSET_DISCOVERY not in [s.key for s in final.stages]
        assert final.type is EventType.COMPLETE

    @pytest.mark.asyncio
    async def test_failed_pipeline_stages_complete_on_join(
        self, fake_client_factory, repositories: Repositories
    ) -> None:
        await repositories.assets.bulk_upsert("binance", [ExchangeAsset("BTCUSDT", "BTC")])
        repositories.ohlcv.find_latest_timestamps = AsyncMock(  # type: ignore[method-assign]
            side_effect=RuntimeError("disk I/O error")
        )
        client = fake_client_factory(
            assets=["BTCUSDT"],
            data={Dataset.FUNDING: {"BTCUSDT": funding_points("BTCUSDT", BASE_TS, 2)}},
        )
        service = DataFetcherService(client, repositories)
        subscription = service.subscribe()

        result = await service.fetch_incremental_data()
        final = (await drain(subscription))[-1]

        assert result.status is FetchStatus.PARTIAL
        assert any("pipeline failed: disk I/O error" in e for e in result.errors)
        assert final.type is EventType.COMPLETE
        assert [s.status for s in final.stages] == [StageStatus.COMPLETE] * 4
        assert _stage(final, StageKey.FUNDING_STORE).completed == 1


# ---------------------------------------------------------------------------
# Hourly platforms
# ---------------------------------------------------------------------------


class TestResampleStage:
    @pytest.mark.asyncio
    async def test_hourly_funding_resampled_after_fetch(
        self, fake_client_factory, repositories: Repositories
    ) -> None:
        client = fake_client_factory(
            assets=["BTC"],
            data={Dataset.FUNDING: {"BTC": funding_points("BTC", BASE_TS, 8)}},
            profile=make_profile(sampling_interval="1h"),
        )
        service = DataFetcherService(client, repositories)
        subscription = service.subscribe()

        result = await service.fetch_initial_data()
        final = (await drain(subscription))[-1]

        assert result.records_fetched == 8
        assert result.resample_records_created == 1
        assert final.phase is ProgressPhase.RESAMPLE
        assert final.stages[-1].key is StageKey.RESAMPLE
        assert final.stages[-1].status is StageStatus.COMPLETE
        assert await repositories.funding.count("binance", "1h") == 8
        assert await repositories.funding.count("binance", "8h") == 1

    @pytest.mark.asyncio
    async def test_stage_order(
        self, fake_client_factory, repositories: Repositories
    ) -> None:
        hourly = DataFetcherService(
            fake_client_factory(profile=make_profile(sampling_interval="1h")), repositories
        )

        assert hourly.stage_order(FetchKind.INCREMENTAL) == [
            StageKey.FUNDING_FETCH,
            StageKey.FUNDING_STORE,
            StageKey.OHLCV_FETCH,
            StageKey.OHLCV_STORE,
            StageKey.RESAMPLE,
        ]


# ---------------------------------------------------------------------------
# Run exclusivity
# ---------------------------------------------------------------------------


class TestRunControl:
    @pytest.mark.asyncio
    async def test_second_start_rejected_while_running(
        self, fake_client_factory, repositories: Repositories
    ) -> None:
        service = DataFetcherService(fake_client_factory(data=_full_data()), repositories)

        task = await service.start_initial()
        assert service.is_running
        assert service.current_progress() is not None

        with pytest.raises(FetchAlreadyRunningError):
            await service.start_initial()
        with pytest.raises(FetchAlreadyRunningError):
            await service.fetch_incremental_data()

        result = await task
        assert result.status is FetchStatus.SUCCESS
        assert not service.is_running
        assert service.last_result is result

    @pytest.mark.asyncio
    async def test_new_run_allowed_after_completion(
        self, fake_client_factory, repositories: Repositories
    ) -> None:
        service = DataFetcherService(fake_client_factory(data=_full_data()), repositories)

        await service.fetch_initial_data()
        result = await asyncio.wait_for(service.fetch_incremental_data(), timeout=5)

        # everything already stored
        assert result.records_fetched == 0
        assert result.status is FetchStatus.SUCCESS
