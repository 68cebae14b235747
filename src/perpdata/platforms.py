"""Per-platform configuration data driving the generic exchange client.

Every venue differs only in numbers: interval tokens, request budget,
worker ceilings, page sizes and pagination style. These live in one
immutable PlatformProfile per platform so that a single pagination and
retry engine can serve all six exchanges.
"""

from dataclasses import dataclass, field, replace
from enum import Enum

from perpdata.config import FetchSettings
from perpdata.models import Dataset, Platform

CANONICAL_FUNDING_INTERVAL = "8h"


class PaginationStyle(str, Enum):
    """How successive pages of a time series are requested."""

    WINDOW = "window"  # one [start, end] request, optional forward cursor
    CURSOR_BACKWARD = "cursor_backward"  # newest first, walk "before" cursor


@dataclass(frozen=True)
class PagingSpec:
    """Pagination style and maximum page size for one dataset endpoint."""

    style: PaginationStyle
    page_limit: int


@dataclass(frozen=True)
class PlatformProfile:
    """Immutable per-platform fetch configuration."""

    platform: Platform
    sampling_interval: str  # native funding cadence, "1h" or "8h"
    ohlcv_interval: str
    oi_interval: str
    ratio_interval: str
    limiter_capacity: int
    limiter_interval: float  # seconds
    concurrency: int
    paging: dict[Dataset, PagingSpec]
    ratio_concurrency: int | None = None
    ratio_delay: float = 0.0  # seconds between ratio requests
    request_weight: int = 1
    funding_weight: int | None = None
    throttle_statuses: frozenset[int] = field(default_factory=lambda: frozenset({429}))
    ban_statuses: frozenset[int] = field(default_factory=lambda: frozenset({403, 418}))

    def supports(self, dataset: Dataset) -> bool:
        return dataset in self.paging

    @property
    def needs_resample(self) -> bool:
        return self.sampling_interval != CANONICAL_FUNDING_INTERVAL

    def interval_for(self, dataset: Dataset) -> str:
        """Storage interval key for a dataset on this platform."""
        if dataset is Dataset.FUNDING:
            return self.sampling_interval
        if dataset is Dataset.OHLCV:
            return self.ohlcv_interval
        if dataset is Dataset.OPEN_INTEREST:
            return self.oi_interval
        return self.ratio_interval

    def weight_for(self, dataset: Dataset) -> int:
        if dataset is Dataset.FUNDING and self.funding_weight is not None:
            return self.funding_weight
        return self.request_weight

    def concurrency_for(self, dataset: Dataset) -> int:
        if dataset is Dataset.RATIO and self.ratio_concurrency is not None:
            return self.ratio_concurrency
        return self.concurrency

    def delay_for(self, dataset: Dataset) -> float:
        if dataset is Dataset.RATIO:
            return self.ratio_delay
        return 0.0


def _window(limit: int) -> PagingSpec:
    return PagingSpec(PaginationStyle.WINDOW, limit)


def _backward(limit: int) -> PagingSpec:
    return PagingSpec(PaginationStyle.CURSOR_BACKWARD, limit)


PROFILES: dict[Platform, PlatformProfile] = {
    Platform.HYPERLIQUID: PlatformProfile(
        platform=Platform.HYPERLIQUID,
        sampling_interval="1h",
        ohlcv_interval="1h",
        oi_interval="1h",
        ratio_interval="1h",
        limiter_capacity=1200,
        limiter_interval=60.0,
        concurrency=5,
        request_weight=20,
        funding_weight=44,  # fundingHistory is weighted 20 + 1 per 20 items
        paging={
            Dataset.FUNDING: _window(500),
            Dataset.OHLCV: _window(5000),
        },
    ),
    Platform.BINANCE: PlatformProfile(
        platform=Platform.BINANCE,
        sampling_interval="8h",
        ohlcv_interval="1h",
        oi_interval="1h",
        ratio_interval="5m",
        limiter_capacity=2400,
        limiter_interval=60.0,
        concurrency=1,
        request_weight=5,
        paging={
            Dataset.FUNDING: _window(1000),
            Dataset.OHLCV: _window(1500),
            Dataset.OPEN_INTEREST: _window(500),
            Dataset.RATIO: _window(500),
        },
    ),
    Platform.BYBIT: PlatformProfile(
        platform=Platform.BYBIT,
        sampling_interval="8h",
        ohlcv_interval="60",
        oi_interval="1h",
        ratio_interval="5min",
        limiter_capacity=7200,
        limiter_interval=60.0,
        concurrency=10,
        paging={
            Dataset.FUNDING: _backward(200),
            Dataset.OHLCV: _backward(1000),
            Dataset.OPEN_INTEREST: _window(200),
            Dataset.RATIO: _window(500),
        },
    ),
    Platform.OKX: PlatformProfile(
        platform=Platform.OKX,
        sampling_interval="8h",
        ohlcv_interval="1H",
        oi_interval="1H",
        ratio_interval="1H",
        limiter_capacity=600,
        limiter_interval=60.0,
        concurrency=2,
        ratio_concurrency=1,
        ratio_delay=0.6,
        paging={
            Dataset.FUNDING: _backward(100),
            Dataset.OHLCV: _backward(100),
            Dataset.OPEN_INTEREST: _backward(100),
            Dataset.RATIO: _backward(100),
        },
    ),
    Platform.DYDX: PlatformProfile(
        platform=Platform.DYDX,
        sampling_interval="1h",
        ohlcv_interval="1HOUR",
        oi_interval="1HOUR",
        ratio_interval="1h",
        limiter_capacity=100,
        limiter_interval=60.0,
        concurrency=1,
        paging={
            Dataset.FUNDING: _backward(100),
            Dataset.OHLCV: _backward(100),
            Dataset.OPEN_INTEREST: _backward(100),
        },
    ),
    Platform.ASTER: PlatformProfile(
        platform=Platform.ASTER,
        sampling_interval="1h",
        ohlcv_interval="1h",
        oi_interval="1h",
        ratio_interval="1h",
        limiter_capacity=600,
        limiter_interval=60.0,
        concurrency=2,
        request_weight=5,
        paging={
            Dataset.FUNDING: _window(1000),
            Dataset.OHLCV: _window(1500),
        },
    ),
}


def resolve_profile(platform: Platform | str, settings: FetchSettings) -> PlatformProfile:
    """Return the profile for a platform with concurrency overrides applied.

    A per-platform override wins over the global FETCH_CONCURRENCY value.
    Non-positive overrides are ignored.
    """
    profile = PROFILES[Platform(platform)]
    override = settings.concurrency_overrides.get(profile.platform.value)
    if override is None:
        override = settings.concurrency
    if override is not None and override > 0:
        profile = replace(profile, concurrency=override)
    return profile
