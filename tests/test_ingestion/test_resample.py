"""Tests for hourly to 8h funding aggregation."""

from decimal import Decimal

import pytest

from fakes import BASE_TS, HOUR_MS, funding_points
from perpdata.data import Repositories
from perpdata.ingestion.resample import FundingResampler, bucket_start, resample_hourly_to_8h
from perpdata.models import ExchangeAsset, FundingPoint


class TestResampleHourlyTo8h:
    def test_complete_bucket_sums_rates(self) -> None:
        points = funding_points("BTC", BASE_TS, 8, rate="0.0000125")

        buckets = resample_hourly_to_8h(points)

        assert len(buckets) == 1
        assert buckets[0].timestamp_ms == BASE_TS
        assert buckets[0].funding_rate == Decimal("0.0001000")
        assert buckets[0].symbol == "BTC"

    def test_incomplete_bucket_skipped(self) -> None:
        assert resample_hourly_to_8h(funding_points("BTC", BASE_TS, 7)) == []

    def test_misaligned_hours_skipped(self) -> None:
        points = funding_points("BTC", BASE_TS, 7)
        # duplicate hour instead of the missing eighth slot
        points.append(FundingPoint("BTC", BASE_TS + HOUR_MS, Decimal("0.0001")))

        assert resample_hourly_to_8h(points) == []

    def test_only_complete_buckets_emitted(self) -> None:
        # 00:00..19:00, so the third bucket (16:00) holds only 4 hours
        points = funding_points("BTC", BASE_TS, 20)

        buckets = resample_hourly_to_8h(points)

        assert [b.timestamp_ms for b in buckets] == [BASE_TS, BASE_TS + 8 * HOUR_MS]

    def test_bucket_starting_mid_window_is_not_shifted(self) -> None:
        points = funding_points("BTC", BASE_TS + 4 * HOUR_MS, 8)

        assert resample_hourly_to_8h(points) == []

    def test_premium_mean_ignores_missing(self) -> None:
        points = funding_points("BTC", BASE_TS, 8)
        points[0].premium = Decimal("0.002")
        points[1].premium = Decimal("0.004")

        bucket = resample_hourly_to_8h(points)[0]

        assert bucket.premium == Decimal("0.003")

    def test_bucket_start_alignment(self) -> None:
        assert bucket_start(BASE_TS + 7 * HOUR_MS + 59_999) == BASE_TS
        assert bucket_start(BASE_TS + 8 * HOUR_MS) == BASE_TS + 8 * HOUR_MS


class TestFundingResampler:
    @pytest.mark.asyncio
    async def test_resample_is_idempotent(self, repositories: Repositories) -> None:
        await repositories.assets.bulk_upsert("hyperliquid", [ExchangeAsset("BTC", "BTC")])
        asset = (await repositories.assets.find_by_platform("hyperliquid"))[0]
        await repositories.funding.bulk_upsert(
            asset.id, "hyperliquid", "1h", funding_points("BTC", BASE_TS, 16)
        )
        resampler = FundingResampler(repositories.funding)

        first = await resampler.resample("hyperliquid", [asset], "1h")
        second = await resampler.resample("hyperliquid", [asset], "1h")

        assert first.records_created == 2
        assert first.assets_processed == 1
        assert second.records_created == 0
        assert await repositories.funding.count("hyperliquid", "8h") == 2

    @pytest.mark.asyncio
    async def test_later_hours_extend_buckets(self, repositories: Repositories) -> None:
        await repositories.assets.bulk_upsert("aster", [ExchangeAsset("BTCUSDT", "BTC")])
        asset = (await repositories.assets.find_by_platform("aster"))[0]
        resampler = FundingResampler(repositories.funding)
        await repositories.funding.bulk_upsert(
            asset.id, "aster", "1h", funding_points("BTCUSDT", BASE_TS, 12)
        )
        assert (await resampler.resample("aster", [asset], "1h")).records_created == 1

        await repositories.funding.bulk_upsert(
            asset.id, "aster", "1h", funding_points("BTCUSDT", BASE_TS + 12 * HOUR_MS, 4)
        )

        assert (await resampler.resample("aster", [asset], "1h")).records_created == 1
        stored = await repositories.funding.find(asset.id, "aster", "8h")
        assert [p.timestamp_ms for p in stored] == [BASE_TS, BASE_TS + 8 * HOUR_MS]
