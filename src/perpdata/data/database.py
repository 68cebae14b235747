"""Async SQLite database manager for ingested market data.

Uses aiosqlite for non-blocking database operations with WAL mode
so that readers (status endpoints) never block the ingestion writers.
"""

import os
from typing import Self

import aiosqlite

from perpdata.logging import get_logger

logger = get_logger(__name__)

SCHEMA_VERSION = 1

_CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS assets (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    platform TEXT NOT NULL,
    symbol TEXT NOT NULL,
    name TEXT,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL,
    UNIQUE (platform, symbol)
);

CREATE TABLE IF NOT EXISTS funding_rates (
    asset_id INTEGER NOT NULL REFERENCES assets(id),
    platform TEXT NOT NULL,
    timestamp_ms INTEGER NOT NULL,
    sampling_interval TEXT NOT NULL,
    funding_rate TEXT NOT NULL,
    premium TEXT,
    fetched_at INTEGER NOT NULL,
    PRIMARY KEY (asset_id, platform, timestamp_ms, sampling_interval)
);

CREATE TABLE IF NOT EXISTS ohlcv (
    asset_id INTEGER NOT NULL REFERENCES assets(id),
    platform TEXT NOT NULL,
    timeframe TEXT NOT NULL,
    timestamp_ms INTEGER NOT NULL,
    open TEXT NOT NULL,
    high TEXT NOT NULL,
    low TEXT NOT NULL,
    close TEXT NOT NULL,
    volume TEXT NOT NULL,
    quote_volume TEXT,
    trades_count INTEGER,
    PRIMARY KEY (asset_id, platform, timeframe, timestamp_ms)
);

CREATE TABLE IF NOT EXISTS open_interest (
    asset_id INTEGER NOT NULL REFERENCES assets(id),
    platform TEXT NOT NULL,
    timeframe TEXT NOT NULL,
    timestamp_ms INTEGER NOT NULL,
    open_interest TEXT NOT NULL,
    open_interest_value TEXT,
    PRIMARY KEY (asset_id, platform, timeframe, timestamp_ms)
);

CREATE TABLE IF NOT EXISTS long_short_ratios (
    asset_id INTEGER NOT NULL REFERENCES assets(id),
    platform TEXT NOT NULL,
    ratio_type TEXT NOT NULL,
    period TEXT NOT NULL,
    timestamp_ms INTEGER NOT NULL,
    long_ratio TEXT NOT NULL,
    short_ratio TEXT NOT NULL,
    long_short_ratio TEXT,
    PRIMARY KEY (asset_id, platform, ratio_type, period, timestamp_ms)
);

CREATE TABLE IF NOT EXISTS fetch_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    platform TEXT NOT NULL,
    fetch_type TEXT NOT NULL,
    status TEXT NOT NULL,
    started_at INTEGER NOT NULL,
    completed_at INTEGER,
    assets_processed INTEGER NOT NULL DEFAULT 0,
    records_fetched INTEGER NOT NULL DEFAULT 0,
    error_message TEXT
);
"""

_CREATE_INDEXES_SQL = """
CREATE INDEX IF NOT EXISTS idx_assets_platform_active
    ON assets(platform, is_active);

CREATE INDEX IF NOT EXISTS idx_funding_platform_interval_ts
    ON funding_rates(platform, sampling_interval, asset_id, timestamp_ms);

CREATE INDEX IF NOT EXISTS idx_fetch_logs_platform_started
    ON fetch_logs(platform, started_at);
"""


class Database:
    """Async SQLite connection manager.

    Usage:
        async with Database("data/perpdata.db") as database:
            await database.db.execute("SELECT ...")
    """

    def __init__(self, db_path: str = "data/perpdata.db") -> None:
        self._db_path = db_path
        self._connection: aiosqlite.Connection | None = None

    @property
    def db(self) -> aiosqlite.Connection:
        """Access the raw aiosqlite connection.

        Raises RuntimeError if not connected.
        """
        if self._connection is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._connection

    async def connect(self) -> None:
        """Open the connection, configure pragmas and create the schema."""
        db_dir = os.path.dirname(self._db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

        self._connection = await aiosqlite.connect(self._db_path)

        await self._connection.execute("PRAGMA journal_mode=WAL")
        await self._connection.execute("PRAGMA synchronous=NORMAL")
        await self._connection.execute("PRAGMA foreign_keys=ON")

        await self._create_tables()
        await self._ensure_schema_version()

        logger.info("database_connected", db_path=self._db_path)

    async def close(self) -> None:
        """Close the database connection if open."""
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            logger.info("database_closed", db_path=self._db_path)

    async def _create_tables(self) -> None:
        assert self._connection is not None
        await self._connection.executescript(_CREATE_TABLES_SQL)
        await self._connection.executescript(_CREATE_INDEXES_SQL)
        await self._connection.commit()

    async def _ensure_schema_version(self) -> None:
        assert self._connection is not None
        cursor = await self._connection.execute("SELECT version FROM schema_version LIMIT 1")
        row = await cursor.fetchone()
        if row is None:
            await self._connection.execute(
                "INSERT INTO schema_version (version) VALUES (?)",
                (SCHEMA_VERSION,),
            )
            await self._connection.commit()
            logger.info("schema_version_set", version=SCHEMA_VERSION)

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        await self.close()
