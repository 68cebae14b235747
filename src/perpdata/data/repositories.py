"""Typed SQLite repositories for assets, time series and fetch logs.

All SQL is isolated behind these classes. Time series writes use
INSERT OR IGNORE on the natural key, so re-inserting an identical record
is a no-op and every bulk_upsert returns only the rows actually inserted.

CRITICAL: All rate/price/volume values stored as TEXT in SQLite, restored as Decimal on read.
"""

import time
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, ClassVar, Generic, TypeVar

from perpdata.data.database import Database
from perpdata.exceptions import StorageError
from perpdata.logging import get_logger
from perpdata.models import (
    Asset,
    CandlePoint,
    ExchangeAsset,
    FundingPoint,
    OpenInterestPoint,
    RatioPoint,
)

logger = get_logger(__name__)

P = TypeVar("P")

# SQLite's default host parameter limit is 999
_IN_CHUNK_SIZE = 500


def _now_ms() -> int:
    return int(time.time() * 1000)


def _text(value: Decimal | None) -> str | None:
    return str(value) if value is not None else None


def _dec(value: str | None) -> Decimal | None:
    return Decimal(value) if value is not None else None


def _chunks(values: Sequence[int], size: int = _IN_CHUNK_SIZE) -> Iterable[Sequence[int]]:
    for i in range(0, len(values), size):
        yield values[i : i + size]


# ──────────────────────────────────────────────
# Assets
# ──────────────────────────────────────────────


class AssetRepository:
    """Registry of tradable assets per platform."""

    def __init__(self, database: Database) -> None:
        self._database = database

    async def bulk_upsert(self, platform: str, assets: Sequence[ExchangeAsset]) -> int:
        """Insert new assets and reactivate/rename existing ones. Returns rows touched."""
        if not assets:
            return 0
        now = _now_ms()
        cursor = await self._database.db.executemany(
            "INSERT INTO assets (platform, symbol, name, is_active, created_at, updated_at) "
            "VALUES (?, ?, ?, 1, ?, ?) "
            "ON CONFLICT(platform, symbol) DO UPDATE SET "
            "name = excluded.name, is_active = 1, updated_at = excluded.updated_at",
            [(platform, a.symbol, a.name, now, now) for a in assets],
        )
        await self._database.db.commit()
        logger.debug("assets_upserted", platform=platform, total=len(assets))
        return cursor.rowcount

    async def deactivate_missing(self, platform: str, active_symbols: Sequence[str]) -> int:
        """Mark assets of ``platform`` that are not in ``active_symbols`` inactive."""
        keep = set(active_symbols)
        cursor = await self._database.db.execute(
            "SELECT symbol FROM assets WHERE platform = ? AND is_active = 1",
            (platform,),
        )
        stale = [row[0] for row in await cursor.fetchall() if row[0] not in keep]
        if not stale:
            return 0

        await self._database.db.executemany(
            "UPDATE assets SET is_active = 0, updated_at = ? WHERE platform = ? AND symbol = ?",
            [(_now_ms(), platform, symbol) for symbol in stale],
        )
        await self._database.db.commit()
        logger.info("assets_deactivated", platform=platform, count=len(stale))
        return len(stale)

    async def find_by_platform(self, platform: str, active_only: bool = True) -> list[Asset]:
        sql = "SELECT id, platform, symbol, name, is_active FROM assets WHERE platform = ?"
        if active_only:
            sql += " AND is_active = 1"
        cursor = await self._database.db.execute(sql + " ORDER BY symbol", (platform,))
        return [
            Asset(id=row[0], platform=row[1], symbol=row[2], name=row[3], is_active=bool(row[4]))
            for row in await cursor.fetchall()
        ]

    async def count(self, platform: str, active_only: bool = True) -> int:
        sql = "SELECT COUNT(*) FROM assets WHERE platform = ?"
        if active_only:
            sql += " AND is_active = 1"
        cursor = await self._database.db.execute(sql, (platform,))
        row = await cursor.fetchone()
        return row[0] if row else 0


# ──────────────────────────────────────────────
# Time series
# ──────────────────────────────────────────────


class SeriesRepository(Generic[P]):
    """Shared queries for per-asset time series tables.

    Subclasses set the table name, the column holding the interval key and
    the INSERT statement, and map a point to its row tuple.
    """

    table: ClassVar[str]
    interval_column: ClassVar[str]
    insert_sql: ClassVar[str]

    def __init__(self, database: Database) -> None:
        self._database = database

    def _to_row(self, asset_id: int, platform: str, interval: str, point: P) -> tuple[Any, ...]:
        raise NotImplementedError

    async def bulk_upsert(
        self, asset_id: int, platform: str, interval: str, points: Sequence[P]
    ) -> int:
        """Insert points, ignoring existing keys. Returns the number of new rows."""
        if not points:
            return 0
        cursor = await self._database.db.executemany(
            self.insert_sql,
            [self._to_row(asset_id, platform, interval, p) for p in points],
        )
        await self._database.db.commit()
        inserted = cursor.rowcount
        logger.debug(
            "series_inserted",
            table=self.table,
            asset_id=asset_id,
            total=len(points),
            inserted=inserted,
        )
        return inserted

    async def find_latest_timestamp(
        self, asset_id: int, platform: str, interval: str
    ) -> int | None:
        cursor = await self._database.db.execute(
            f"SELECT MAX(timestamp_ms) FROM {self.table} "
            f"WHERE asset_id = ? AND platform = ? AND {self.interval_column} = ?",
            (asset_id, platform, interval),
        )
        row = await cursor.fetchone()
        return row[0] if row else None

    async def find_latest_timestamps(
        self, asset_ids: Sequence[int], platform: str, interval: str
    ) -> dict[int, int]:
        """Latest stored timestamp per asset, in one query per 500 ids.

        Assets with no stored rows are absent from the result.
        """
        latest: dict[int, int] = {}
        for chunk in _chunks(list(asset_ids)):
            placeholders = ", ".join("?" for _ in chunk)
            cursor = await self._database.db.execute(
                f"SELECT asset_id, MAX(timestamp_ms) FROM {self.table} "
                f"WHERE platform = ? AND {self.interval_column} = ? "
                f"AND asset_id IN ({placeholders}) GROUP BY asset_id",
                (platform, interval, *chunk),
            )
            for asset_id, ts in await cursor.fetchall():
                latest[asset_id] = ts
        return latest

    async def count(self, platform: str, interval: str | None = None) -> int:
        sql = f"SELECT COUNT(*) FROM {self.table} WHERE platform = ?"
        params: tuple[Any, ...] = (platform,)
        if interval is not None:
            sql += f" AND {self.interval_column} = ?"
            params = (platform, interval)
        cursor = await self._database.db.execute(sql, params)
        row = await cursor.fetchone()
        return row[0] if row else 0


class FundingRateRepository(SeriesRepository[FundingPoint]):
    table = "funding_rates"
    interval_column = "sampling_interval"
    insert_sql = (
        "INSERT OR IGNORE INTO funding_rates "
        "(asset_id, platform, timestamp_ms, sampling_interval, funding_rate, premium, fetched_at) "
        "VALUES (?, ?, ?, ?, ?, ?, ?)"
    )

    def _to_row(
        self, asset_id: int, platform: str, interval: str, point: FundingPoint
    ) -> tuple[Any, ...]:
        return (
            asset_id,
            platform,
            point.timestamp_ms,
            interval,
            str(point.funding_rate),
            _text(point.premium),
            _now_ms(),
        )

    async def find(
        self,
        asset_id: int,
        platform: str,
        interval: str,
        start_ms: int | None = None,
        end_ms: int | None = None,
    ) -> list[FundingPoint]:
        """Stored funding points for one asset, ascending by timestamp."""
        sql = (
            "SELECT a.symbol, f.timestamp_ms, f.funding_rate, f.premium "
            "FROM funding_rates f JOIN assets a ON a.id = f.asset_id "
            "WHERE f.asset_id = ? AND f.platform = ? AND f.sampling_interval = ?"
        )
        params: list[Any] = [asset_id, platform, interval]
        if start_ms is not None:
            sql += " AND f.timestamp_ms >= ?"
            params.append(start_ms)
        if end_ms is not None:
            sql += " AND f.timestamp_ms <= ?"
            params.append(end_ms)
        cursor = await self._database.db.execute(sql + " ORDER BY f.timestamp_ms ASC", params)
        return [
            FundingPoint(
                symbol=row[0],
                timestamp_ms=row[1],
                funding_rate=Decimal(row[2]),
                premium=_dec(row[3]),
            )
            for row in await cursor.fetchall()
        ]


class OHLCVRepository(SeriesRepository[CandlePoint]):
    table = "ohlcv"
    interval_column = "timeframe"
    insert_sql = (
        "INSERT OR IGNORE INTO ohlcv "
        "(asset_id, platform, timeframe, timestamp_ms, open, high, low, close, volume, "
        "quote_volume, trades_count) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)"
    )

    def _to_row(
        self, asset_id: int, platform: str, interval: str, point: CandlePoint
    ) -> tuple[Any, ...]:
        return (
            asset_id,
            platform,
            interval,
            point.timestamp_ms,
            str(point.open),
            str(point.high),
            str(point.low),
            str(point.close),
            str(point.volume),
            _text(point.quote_volume),
            point.trades_count,
        )


class OpenInterestRepository(SeriesRepository[OpenInterestPoint]):
    table = "open_interest"
    interval_column = "timeframe"
    insert_sql = (
        "INSERT OR IGNORE INTO open_interest "
        "(asset_id, platform, timeframe, timestamp_ms, open_interest, open_interest_value) "
        "VALUES (?, ?, ?, ?, ?, ?)"
    )

    def _to_row(
        self, asset_id: int, platform: str, interval: str, point: OpenInterestPoint
    ) -> tuple[Any, ...]:
        return (
            asset_id,
            platform,
            interval,
            point.timestamp_ms,
            str(point.open_interest),
            _text(point.open_interest_value),
        )


class LongShortRatioRepository(SeriesRepository[RatioPoint]):
    table = "long_short_ratios"
    interval_column = "period"
    insert_sql = (
        "INSERT OR IGNORE INTO long_short_ratios "
        "(asset_id, platform, ratio_type, period, timestamp_ms, long_ratio, short_ratio, "
        "long_short_ratio) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?)"
    )

    def _to_row(
        self, asset_id: int, platform: str, interval: str, point: RatioPoint
    ) -> tuple[Any, ...]:
        return (
            asset_id,
            platform,
            point.ratio_type,
            interval,
            point.timestamp_ms,
            str(point.long_ratio),
            str(point.short_ratio),
            _text(point.long_short_ratio),
        )


# ──────────────────────────────────────────────
# Fetch logs
# ──────────────────────────────────────────────


class FetchLogRepository:
    """Persisted metadata of fetch runs."""

    def __init__(self, database: Database) -> None:
        self._database = database

    async def create(self, platform: str, fetch_type: str) -> int:
        cursor = await self._database.db.execute(
            "INSERT INTO fetch_logs (platform, fetch_type, status, started_at) "
            "VALUES (?, ?, 'in_progress', ?)",
            (platform, fetch_type, _now_ms()),
        )
        await self._database.db.commit()
        if cursor.lastrowid is None:
            raise StorageError(f"fetch_logs insert for {platform} returned no row id")
        return cursor.lastrowid

    async def complete(
        self,
        log_id: int,
        status: str,
        assets_processed: int,
        records_fetched: int,
        error_message: str | None = None,
    ) -> None:
        await self._database.db.execute(
            "UPDATE fetch_logs SET status = ?, completed_at = ?, assets_processed = ?, "
            "records_fetched = ?, error_message = ? WHERE id = ?",
            (status, _now_ms(), assets_processed, records_fetched, error_message, log_id),
        )
        await self._database.db.commit()

    async def get_last_successful(self, platform: str) -> dict[str, Any] | None:
        """Most recent run that stored data (status success or partial)."""
        cursor = await self._database.db.execute(
            "SELECT id, platform, fetch_type, status, started_at, completed_at, "
            "assets_processed, records_fetched, error_message FROM fetch_logs "
            "WHERE platform = ? AND status IN ('success', 'partial') "
            "ORDER BY started_at DESC, id DESC LIMIT 1",
            (platform,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        columns = [
            "id",
            "platform",
            "fetch_type",
            "status",
            "started_at",
            "completed_at",
            "assets_processed",
            "records_fetched",
            "error_message",
        ]
        return dict(zip(columns, row))


@dataclass
class Repositories:
    """Bundle of all repositories over one database, passed to fetcher services."""

    assets: AssetRepository
    funding: FundingRateRepository
    ohlcv: OHLCVRepository
    open_interest: OpenInterestRepository
    ratios: LongShortRatioRepository
    fetch_logs: FetchLogRepository

    @classmethod
    def for_database(cls, database: Database) -> "Repositories":
        return cls(
            assets=AssetRepository(database),
            funding=FundingRateRepository(database),
            ohlcv=OHLCVRepository(database),
            open_interest=OpenInterestRepository(database),
            ratios=LongShortRatioRepository(database),
            fetch_logs=FetchLogRepository(database),
        )
