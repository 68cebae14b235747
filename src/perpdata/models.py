"""Shared data models for the ingestion service.

CRITICAL: All rates, prices and volumes use Decimal. Never use float for market values.
Timestamps are integer Unix milliseconds (UTC) everywhere.
"""

from dataclasses import asdict, dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any


class Platform(str, Enum):
    """Supported perpetual-futures venues."""

    HYPERLIQUID = "hyperliquid"
    BINANCE = "binance"
    BYBIT = "bybit"
    OKX = "okx"
    DYDX = "dydx"
    ASTER = "aster"


class Dataset(str, Enum):
    """Time series fetched per symbol."""

    FUNDING = "funding"
    OHLCV = "ohlcv"
    OPEN_INTEREST = "oi"
    RATIO = "ratio"


class StageKey(str, Enum):
    """Progress stages of a fetch run, in display order."""

    ASSET_DISCOVERY = "asset_discovery"
    FUNDING_FETCH = "funding_fetch"
    FUNDING_STORE = "funding_store"
    OHLCV_FETCH = "ohlcv_fetch"
    OHLCV_STORE = "ohlcv_store"
    OI_FETCH = "oi_fetch"
    OI_STORE = "oi_store"
    RATIO_FETCH = "ratio_fetch"
    RATIO_STORE = "ratio_store"
    RESAMPLE = "resample"

    @property
    def label(self) -> str:
        return STAGE_LABELS[self]


STAGE_LABELS: dict[StageKey, str] = {
    StageKey.ASSET_DISCOVERY: "Discovering assets",
    StageKey.FUNDING_FETCH: "Fetching funding rates",
    StageKey.FUNDING_STORE: "Storing funding rates",
    StageKey.OHLCV_FETCH: "Fetching OHLCV data",
    StageKey.OHLCV_STORE: "Storing OHLCV data",
    StageKey.OI_FETCH: "Fetching open interest",
    StageKey.OI_STORE: "Storing open interest",
    StageKey.RATIO_FETCH: "Fetching long/short ratios",
    StageKey.RATIO_STORE: "Storing long/short ratios",
    StageKey.RESAMPLE: "Resampling to 8h intervals",
}


class StageStatus(str, Enum):
    """Lifecycle of a single progress stage."""

    PENDING = "pending"
    ACTIVE = "active"
    COMPLETE = "complete"


class FetchKind(str, Enum):
    """Type of fetch run."""

    INITIAL = "initial"
    INCREMENTAL = "incremental"


class FetchStatus(str, Enum):
    """Final outcome of a fetch run."""

    RUNNING = "running"
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class ProgressPhase(str, Enum):
    """Coarse phase of a fetch run."""

    FETCH = "fetch"
    RESAMPLE = "resample"


class EventType(str, Enum):
    """Kind of progress event published to subscribers."""

    START = "start"
    PROGRESS = "progress"
    COMPLETE = "complete"
    ERROR = "error"


# ──────────────────────────────────────────────
# Market data points
# ──────────────────────────────────────────────


@dataclass
class FundingPoint:
    """A single funding rate observation.

    ``premium`` is the venue-reported premium index where available.
    """

    symbol: str
    timestamp_ms: int
    funding_rate: Decimal
    premium: Decimal | None = None


@dataclass
class CandlePoint:
    """A single OHLCV candle. ``quote_volume`` and ``trades_count`` are optional."""

    symbol: str
    timestamp_ms: int
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal
    quote_volume: Decimal | None = None
    trades_count: int | None = None


@dataclass
class OpenInterestPoint:
    """Open interest at a point in time, in contracts and optionally in quote value."""

    symbol: str
    timestamp_ms: int
    open_interest: Decimal
    open_interest_value: Decimal | None = None


@dataclass
class RatioPoint:
    """Long/short account ratio split into its long and short shares."""

    symbol: str
    timestamp_ms: int
    long_ratio: Decimal
    short_ratio: Decimal
    ratio_type: str = "accounts"
    period: str = "1h"

    @property
    def long_short_ratio(self) -> Decimal | None:
        if self.short_ratio == 0:
            return None
        return self.long_ratio / self.short_ratio


# ──────────────────────────────────────────────
# Assets
# ──────────────────────────────────────────────


@dataclass(frozen=True)
class ExchangeAsset:
    """A tradable perpetual as listed by an exchange."""

    symbol: str
    name: str | None = None


@dataclass
class Asset:
    """A registered asset row."""

    id: int
    platform: str
    symbol: str
    name: str | None = None
    is_active: bool = True


# ──────────────────────────────────────────────
# Progress and results
# ──────────────────────────────────────────────


@dataclass
class StageSnapshot:
    """Point-in-time view of one progress stage."""

    key: StageKey
    label: str
    status: StageStatus
    completed: int
    total: int
    percentage: int
    current_item: str | None = None
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key.value,
            "label": self.label,
            "status": self.status.value,
            "completed": self.completed,
            "total": self.total,
            "percentage": self.percentage,
            "current_item": self.current_item,
            "message": self.message,
        }


@dataclass
class ProgressEvent:
    """Progress notification published on every stage update of a fetch run."""

    type: EventType
    phase: ProgressPhase
    stage: StageKey | None
    stages: list[StageSnapshot]
    total_assets: int
    processed_assets: int
    records_fetched: int
    percentage: int
    errors: list[str] = field(default_factory=list)
    current_asset: str | None = None
    ohlcv_records_fetched: int = 0
    oi_records_fetched: int = 0
    ratio_records_fetched: int = 0
    resample_records_created: int = 0
    resample_assets_processed: int = 0
    message: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.type in (EventType.COMPLETE, EventType.ERROR)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dict for the progress stream."""
        return {
            "type": self.type.value,
            "phase": self.phase.value,
            "stage": self.stage.value if self.stage is not None else None,
            "stages": [s.to_dict() for s in self.stages],
            "total_assets": self.total_assets,
            "processed_assets": self.processed_assets,
            "current_asset": self.current_asset,
            "records_fetched": self.records_fetched,
            "ohlcv_records_fetched": self.ohlcv_records_fetched,
            "oi_records_fetched": self.oi_records_fetched,
            "ratio_records_fetched": self.ratio_records_fetched,
            "resample_records_created": self.resample_records_created,
            "resample_assets_processed": self.resample_assets_processed,
            "errors": list(self.errors),
            "percentage": self.percentage,
            "message": self.message,
        }


@dataclass
class FetchResult:
    """Summary of a finished fetch run."""

    platform: str
    kind: FetchKind
    status: FetchStatus
    assets_processed: int = 0
    records_fetched: int = 0
    ohlcv_records_fetched: int = 0
    oi_records_fetched: int = 0
    ratio_records_fetched: int = 0
    resample_records_created: int = 0
    errors: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        data["status"] = self.status.value
        return data
