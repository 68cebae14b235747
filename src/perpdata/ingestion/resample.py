"""Aggregation of hourly funding rates into canonical 8-hour buckets.

Buckets are aligned to 00:00, 08:00 and 16:00 UTC. A bucket is only
materialized when all eight of its hourly slots are present, so partial
buckets never understate the 8h rate. The bucket rate is the sum of the
hourly rates; the premium is their mean.
"""

from collections import defaultdict
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from decimal import Decimal

from perpdata.data.repositories import FundingRateRepository
from perpdata.logging import get_logger
from perpdata.models import Asset, FundingPoint
from perpdata.platforms import CANONICAL_FUNDING_INTERVAL

logger = get_logger(__name__)

HOUR_MS = 3_600_000
BUCKET_HOURS = 8
BUCKET_MS = BUCKET_HOURS * HOUR_MS


def bucket_start(timestamp_ms: int) -> int:
    return timestamp_ms - timestamp_ms % BUCKET_MS


def resample_hourly_to_8h(points: Iterable[FundingPoint]) -> list[FundingPoint]:
    """Aggregate hourly points into complete 8h buckets, ascending by bucket start."""
    buckets: dict[int, list[FundingPoint]] = defaultdict(list)
    for point in points:
        buckets[bucket_start(point.timestamp_ms)].append(point)

    resampled: list[FundingPoint] = []
    for start in sorted(buckets):
        group = buckets[start]
        if len(group) != BUCKET_HOURS:
            continue
        hours = {p.timestamp_ms - p.timestamp_ms % HOUR_MS for p in group}
        if hours != {start + i * HOUR_MS for i in range(BUCKET_HOURS)}:
            continue

        premiums = [p.premium for p in group if p.premium is not None]
        resampled.append(
            FundingPoint(
                symbol=group[0].symbol,
                timestamp_ms=start,
                funding_rate=sum((p.funding_rate for p in group), Decimal(0)),
                premium=sum(premiums, Decimal(0)) / len(premiums) if premiums else None,
            )
        )
    return resampled


@dataclass
class ResampleResult:
    records_created: int = 0
    assets_processed: int = 0
    errors: list[str] = field(default_factory=list)


class FundingResampler:
    """Materializes 8h funding rows from stored hourly rows, insert-if-absent."""

    def __init__(self, funding: FundingRateRepository) -> None:
        self._funding = funding

    async def resample_asset(self, asset: Asset, platform: str, source_interval: str) -> int:
        """Resample one asset starting after its latest stored 8h bucket."""
        latest = await self._funding.find_latest_timestamp(
            asset.id, platform, CANONICAL_FUNDING_INTERVAL
        )
        start_ms = latest + BUCKET_MS if latest is not None else None
        hourly = await self._funding.find(asset.id, platform, source_interval, start_ms=start_ms)
        buckets = resample_hourly_to_8h(hourly)
        return await self._funding.bulk_upsert(
            asset.id, platform, CANONICAL_FUNDING_INTERVAL, buckets
        )

    async def resample(
        self,
        platform: str,
        assets: Sequence[Asset],
        source_interval: str,
        on_asset: Callable[[Asset, int], None] | None = None,
    ) -> ResampleResult:
        """Resample every asset in turn; per-asset failures are collected, not raised."""
        result = ResampleResult()
        for asset in assets:
            try:
                result.records_created += await self.resample_asset(
                    asset, platform, source_interval
                )
            except Exception as e:
                logger.warning(
                    "resample_asset_failed",
                    platform=platform,
                    symbol=asset.symbol,
                    error=str(e),
                )
                result.errors.append(f"Resample error for {asset.symbol}: {e}")
            result.assets_processed += 1
            if on_asset is not None:
                on_asset(asset, result.assets_processed)

        logger.info(
            "resample_completed",
            platform=platform,
            assets=result.assets_processed,
            records_created=result.records_created,
        )
        return result
