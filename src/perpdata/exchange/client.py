"""Abstract exchange client.

Defines the uniform contract every exchange implementation follows and
implements the parts they share: the retry/ban policy around every HTTP
request, lookback windows, pagination, result normalization and the
bounded-concurrency batch fetch. Concrete clients only implement asset
discovery and one page fetcher per dataset they support.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Sequence
from decimal import Decimal, InvalidOperation
from functools import partial
from typing import Any, TypeVar

from perpdata.concurrency import TokenBucketLimiter, run_worker_pool
from perpdata.config import FetchSettings
from perpdata.exceptions import (
    ExchangeBannedError,
    ExchangeResponseError,
    ExchangeThrottledError,
    HttpStatusError,
    TransportError,
    UnsupportedDatasetError,
)
from perpdata.exchange.pagination import Page, PageFetcher, PageRequest, paginate
from perpdata.exchange.transport import HttpTransport
from perpdata.logging import get_logger
from perpdata.models import (
    CandlePoint,
    Dataset,
    ExchangeAsset,
    FundingPoint,
    OpenInterestPoint,
    RatioPoint,
)
from perpdata.platforms import PlatformProfile

logger = get_logger(__name__)

P = TypeVar("P")

HOUR_MS = 3_600_000

ProgressCallback = Callable[[str, int], None]
ItemCallback = Callable[[str, list[Any]], Awaitable[None]]
ErrorCallback = Callable[[str, Exception], Awaitable[None]]


def to_decimal(value: Any) -> Decimal | None:
    """Convert an API number or numeric string to Decimal; None/"" stay None."""
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation as e:
        raise ExchangeResponseError(f"Not a number: {value!r}") from e


def require_decimal(value: Any) -> Decimal:
    result = to_decimal(value)
    if result is None:
        raise ExchangeResponseError("Missing numeric field in exchange payload")
    return result


class ExchangeClient(ABC):
    """Base class for exchange API clients.

    One instance serves one platform for the lifetime of the process. Once a
    ban status is seen the instance stays banned until reset_ban() is called:
    every request in between raises ExchangeBannedError without touching the
    network.
    """

    def __init__(
        self,
        transport: HttpTransport,
        profile: PlatformProfile,
        settings: FetchSettings,
        base_url: str,
    ) -> None:
        self._transport = transport
        self._profile = profile
        self._settings = settings
        self._base_url = base_url.rstrip("/")
        self._banned = False

    @property
    def platform(self) -> str:
        return self._profile.platform.value

    @property
    def profile(self) -> PlatformProfile:
        return self._profile

    @property
    def is_banned(self) -> bool:
        return self._banned

    def reset_ban(self) -> None:
        if self._banned:
            logger.info("exchange_ban_reset", platform=self.platform)
        self._banned = False

    # ──────────────────────────────────────────────
    # Exchange-specific hooks
    # ──────────────────────────────────────────────

    @abstractmethod
    async def list_assets(self) -> list[ExchangeAsset]:
        """Return all active perpetual instruments listed on the exchange."""
        ...

    @abstractmethod
    async def _funding_page(self, symbol: str, request: PageRequest) -> Page[FundingPoint]:
        """Fetch one page of funding history."""
        ...

    @abstractmethod
    async def _candle_page(
        self, symbol: str, interval: str, request: PageRequest
    ) -> Page[CandlePoint]:
        """Fetch one page of candles."""
        ...

    async def _open_interest_page(
        self, symbol: str, interval: str, request: PageRequest
    ) -> Page[OpenInterestPoint]:
        """Fetch one page of open interest history. Override where supported."""
        raise UnsupportedDatasetError(f"{self.platform} has no open interest history")

    async def _ratio_page(
        self, symbol: str, interval: str, request: PageRequest
    ) -> Page[RatioPoint]:
        """Fetch one page of long/short ratios. Override where supported."""
        raise UnsupportedDatasetError(f"{self.platform} has no long/short ratio history")

    def _unwrap(self, data: Any) -> Any:
        """Validate an exchange response envelope and return its payload.

        Raise ExchangeThrottledError for venue-level throttle codes (they are
        retried like HTTP 429) and ExchangeResponseError for other error codes.
        """
        return data

    # ──────────────────────────────────────────────
    # Request layer
    # ──────────────────────────────────────────────

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        return await self._request("GET", path, params=params)

    async def _post(self, path: str, payload: dict[str, Any]) -> Any:
        return await self._request("POST", path, json=payload)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> Any:
        """Send a request with exponential backoff on throttling and network errors.

        Ban statuses are never retried. Other HTTP errors and error envelopes
        fail immediately with ExchangeResponseError.
        """
        url = f"{self._base_url}{path}"
        max_retries = self._settings.max_retries

        for attempt in range(max_retries + 1):
            if self._banned:
                raise ExchangeBannedError(self.platform)

            try:
                data = await self._transport.request(method, url, params=params, json=json)
                return self._unwrap(data)
            except HttpStatusError as e:
                if e.status in self._profile.ban_statuses:
                    self._banned = True
                    logger.error(
                        "exchange_banned",
                        platform=self.platform,
                        status=e.status,
                        path=path,
                    )
                    raise ExchangeBannedError(self.platform, f"HTTP {e.status}") from e
                if e.status not in self._profile.throttle_statuses:
                    raise ExchangeResponseError(str(e)) from e
                error: Exception = ExchangeThrottledError(
                    f"{self.platform} throttled request to {path} (HTTP {e.status})"
                )
            except ExchangeThrottledError as e:
                error = e
            except TransportError as e:
                error = e

            if attempt >= max_retries:
                logger.error(
                    "exchange_request_failed_permanently",
                    platform=self.platform,
                    path=path,
                    attempts=attempt + 1,
                    error=str(error),
                )
                raise error

            delay = self._settings.retry_base_delay * (2**attempt)
            logger.warning(
                "exchange_request_retry",
                platform=self.platform,
                path=path,
                attempt=attempt + 1,
                max_retries=max_retries,
                delay=delay,
                error=str(error),
            )
            await asyncio.sleep(delay)

        raise AssertionError("unreachable")  # pragma: no cover

    # ──────────────────────────────────────────────
    # Single-symbol fetches
    # ──────────────────────────────────────────────

    def now_ms(self) -> int:
        return int(time.time() * 1000)

    async def fetch_funding_history(self, symbol: str) -> list[FundingPoint]:
        """Funding rate history over the lookback window, ascending by time."""
        return await self._fetch_series(
            Dataset.FUNDING, symbol, partial(self._funding_page, symbol)
        )

    async def fetch_candles(self, symbol: str, interval: str | None = None) -> list[CandlePoint]:
        """OHLCV candles over the lookback window, ascending by time."""
        interval = interval or self._profile.ohlcv_interval
        return await self._fetch_series(
            Dataset.OHLCV, symbol, partial(self._candle_page, symbol, interval)
        )

    async def fetch_open_interest(
        self, symbol: str, interval: str | None = None
    ) -> list[OpenInterestPoint]:
        """Open interest history over the lookback window, ascending by time."""
        interval = interval or self._profile.oi_interval
        return await self._fetch_series(
            Dataset.OPEN_INTEREST, symbol, partial(self._open_interest_page, symbol, interval)
        )

    async def fetch_long_short_ratio(
        self, symbol: str, interval: str | None = None
    ) -> list[RatioPoint]:
        """Long/short account ratios over the lookback window, ascending by time."""
        interval = interval or self._profile.ratio_interval
        return await self._fetch_series(
            Dataset.RATIO, symbol, partial(self._ratio_page, symbol, interval)
        )

    async def _fetch_series(
        self, dataset: Dataset, symbol: str, fetch_page: PageFetcher[Any]
    ) -> list[Any]:
        spec = self._profile.paging.get(dataset)
        if spec is None:
            raise UnsupportedDatasetError(f"{self.platform} does not serve {dataset.value}")

        end_ms = self.now_ms()
        start_ms = end_ms - self._settings.lookback_hours * HOUR_MS
        points = await paginate(
            fetch_page,
            spec,
            start_ms=start_ms,
            end_ms=end_ms,
            page_delay=self._settings.page_delay,
            context={"platform": self.platform, "symbol": symbol, "dataset": dataset.value},
        )
        return _sorted_unique(points)

    # ──────────────────────────────────────────────
    # Batch fetches
    # ──────────────────────────────────────────────

    async def fetch_funding_history_batch(
        self, symbols: Sequence[str], **kwargs: Any
    ) -> dict[str, list[FundingPoint]]:
        return await self._fetch_batch(
            Dataset.FUNDING, symbols, self.fetch_funding_history, **kwargs
        )

    async def fetch_candles_batch(
        self, symbols: Sequence[str], **kwargs: Any
    ) -> dict[str, list[CandlePoint]]:
        return await self._fetch_batch(Dataset.OHLCV, symbols, self.fetch_candles, **kwargs)

    async def fetch_open_interest_batch(
        self, symbols: Sequence[str], **kwargs: Any
    ) -> dict[str, list[OpenInterestPoint]]:
        return await self._fetch_batch(
            Dataset.OPEN_INTEREST, symbols, self.fetch_open_interest, **kwargs
        )

    async def fetch_long_short_ratio_batch(
        self, symbols: Sequence[str], **kwargs: Any
    ) -> dict[str, list[RatioPoint]]:
        return await self._fetch_batch(
            Dataset.RATIO, symbols, self.fetch_long_short_ratio, **kwargs
        )

    async def _fetch_batch(
        self,
        dataset: Dataset,
        symbols: Sequence[str],
        fetch: Callable[[str], Awaitable[list[Any]]],
        *,
        concurrency: int | None = None,
        delay: float | None = None,
        rate_limiter: TokenBucketLimiter | None = None,
        on_progress: ProgressCallback | None = None,
        on_item: ItemCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> dict[str, list[Any]]:
        """Fetch many symbols through a bounded worker pool.

        When ``on_item`` is given, each symbol's points are handed to it as
        soon as they arrive and nothing is buffered; otherwise the points are
        collected into the returned dict. Per-symbol failures go to
        ``on_error`` (or the log) and do not stop the batch. A ban aborts the
        batch with ExchangeBannedError.
        """
        results: dict[str, list[Any]] = {}
        processed = 0

        async def worker(symbol: str, index: int) -> None:
            nonlocal processed
            try:
                points = await fetch(symbol)
            except ExchangeBannedError:
                raise
            except Exception as e:
                processed += 1
                logger.warning(
                    "symbol_fetch_failed",
                    platform=self.platform,
                    dataset=dataset.value,
                    symbol=symbol,
                    error=str(e),
                )
                if on_progress is not None:
                    on_progress(symbol, processed)
                if on_error is not None:
                    await on_error(symbol, e)
                return

            processed += 1
            if on_progress is not None:
                on_progress(symbol, processed)
            if on_item is not None:
                await on_item(symbol, points)
            else:
                results[symbol] = points

        await run_worker_pool(
            list(symbols),
            worker,
            concurrency=(
                concurrency if concurrency is not None else self._profile.concurrency_for(dataset)
            ),
            delay=delay if delay is not None else self._profile.delay_for(dataset),
            rate_limiter=rate_limiter,
            weight=self._profile.weight_for(dataset),
        )
        return results


def _sorted_unique(points: list[P]) -> list[P]:
    """Sort ascending by timestamp, keeping the last point seen per timestamp."""
    by_ts = {p.timestamp_ms: p for p in points}  # type: ignore[attr-defined]
    return [by_ts[ts] for ts in sorted(by_ts)]
