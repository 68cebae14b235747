"""Tests for the shared retry, ban and batch contract of ExchangeClient."""

from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from perpdata.config import FetchSettings
from perpdata.exceptions import (
    ExchangeBannedError,
    ExchangeResponseError,
    ExchangeThrottledError,
    HttpStatusError,
    TransportError,
    UnsupportedDatasetError,
)
from perpdata.exchange.binance import BinanceClient
from perpdata.exchange.bybit import BybitClient
from perpdata.models import Platform
from perpdata.platforms import PROFILES

HOUR_MS = 3_600_000
NOW_MS = 1_704_067_200_000


@pytest.fixture
def transport() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def binance(transport: AsyncMock, fetch_settings: FetchSettings) -> BinanceClient:
    client = BinanceClient(transport, PROFILES[Platform.BINANCE], fetch_settings, "https://fapi.test")
    client.now_ms = lambda: NOW_MS  # type: ignore[method-assign]
    return client


@pytest.fixture
def bybit(transport: AsyncMock, fetch_settings: FetchSettings) -> BybitClient:
    client = BybitClient(transport, PROFILES[Platform.BYBIT], fetch_settings, "https://bybit.test")
    client.now_ms = lambda: NOW_MS  # type: ignore[method-assign]
    return client


def _funding_rows(count: int, start_ms: int = NOW_MS - 400 * HOUR_MS) -> list[dict]:
    return [
        {"symbol": "BTCUSDT", "fundingTime": start_ms + i * 8 * HOUR_MS, "fundingRate": "0.0001"}
        for i in range(count)
    ]


def _bybit_envelope(rows: list[dict], ret_code: int = 0) -> dict:
    return {"retCode": ret_code, "retMsg": "OK", "result": {"list": rows}}


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------


class TestRetryPolicy:
    @pytest.mark.asyncio
    async def test_throttle_retried_then_succeeds(
        self, binance: BinanceClient, transport: AsyncMock
    ) -> None:
        transport.request.side_effect = [
            HttpStatusError(429),
            HttpStatusError(429),
            _funding_rows(3),
        ]

        points = await binance.fetch_funding_history("BTCUSDT")

        assert len(points) == 3
        assert transport.request.await_count == 3
        assert not binance.is_banned

    @pytest.mark.asyncio
    async def test_throttle_exhausts_retries(
        self, binance: BinanceClient, transport: AsyncMock, fetch_settings: FetchSettings
    ) -> None:
        transport.request.side_effect = HttpStatusError(429)

        with pytest.raises(ExchangeThrottledError):
            await binance.fetch_funding_history("BTCUSDT")

        assert transport.request.await_count == fetch_settings.max_retries + 1

    @pytest.mark.asyncio
    async def test_network_error_retried(
        self, binance: BinanceClient, transport: AsyncMock
    ) -> None:
        transport.request.side_effect = [TransportError("reset"), _funding_rows(2)]

        points = await binance.fetch_funding_history("BTCUSDT")

        assert len(points) == 2

    @pytest.mark.asyncio
    async def test_other_http_errors_fail_immediately(
        self, binance: BinanceClient, transport: AsyncMock
    ) -> None:
        transport.request.side_effect = HttpStatusError(500, "oops")

        with pytest.raises(ExchangeResponseError):
            await binance.fetch_funding_history("BTCUSDT")

        assert transport.request.await_count == 1

    @pytest.mark.asyncio
    async def test_envelope_throttle_code_retried(
        self, bybit: BybitClient, transport: AsyncMock
    ) -> None:
        rows = [
            {"symbol": "BTCUSDT", "fundingRateTimestamp": str(NOW_MS - 8 * HOUR_MS), "fundingRate": "0.0002"}
        ]
        transport.request.side_effect = [_bybit_envelope([], ret_code=10006), _bybit_envelope(rows)]

        points = await bybit.fetch_funding_history("BTCUSDT")

        assert [p.funding_rate for p in points] == [Decimal("0.0002")]
        assert transport.request.await_count == 2


# ---------------------------------------------------------------------------
# Ban handling
# ---------------------------------------------------------------------------


class TestBan:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [403, 418])
    async def test_ban_status_is_sticky(
        self, binance: BinanceClient, transport: AsyncMock, status: int
    ) -> None:
        transport.request.side_effect = HttpStatusError(status)

        with pytest.raises(ExchangeBannedError):
            await binance.fetch_funding_history("BTCUSDT")
        assert binance.is_banned
        assert transport.request.await_count == 1

        with pytest.raises(ExchangeBannedError):
            await binance.fetch_candles("ETHUSDT")
        assert transport.request.await_count == 1

    @pytest.mark.asyncio
    async def test_ban_mid_pagination_aborts_series(
        self, bybit: BybitClient, transport: AsyncMock
    ) -> None:
        full_page = [
            {"symbol": "BTCUSDT", "fundingRateTimestamp": str(NOW_MS - (i + 1) * HOUR_MS), "fundingRate": "0.0001"}
            for i in range(200)
        ]
        transport.request.side_effect = [_bybit_envelope(full_page), HttpStatusError(403)]

        with pytest.raises(ExchangeBannedError):
            await bybit.fetch_funding_history("BTCUSDT")

        assert transport.request.await_count == 2
        assert bybit.is_banned

    @pytest.mark.asyncio
    async def test_reset_ban_allows_requests_again(
        self, binance: BinanceClient, transport: AsyncMock
    ) -> None:
        transport.request.side_effect = [HttpStatusError(418), _funding_rows(2)]

        with pytest.raises(ExchangeBannedError):
            await binance.fetch_funding_history("BTCUSDT")

        binance.reset_ban()
        points = await binance.fetch_funding_history("BTCUSDT")

        assert not binance.is_banned
        assert len(points) == 2
        assert transport.request.await_count == 2


# ---------------------------------------------------------------------------
# Series fetch
# ---------------------------------------------------------------------------


class TestSeriesFetch:
    @pytest.mark.asyncio
    async def test_results_sorted_and_deduplicated(
        self, bybit: BybitClient, transport: AsyncMock
    ) -> None:
        rows = [
            {"symbol": "BTCUSDT", "fundingRateTimestamp": str(NOW_MS - HOUR_MS), "fundingRate": "0.3"},
            {"symbol": "BTCUSDT", "fundingRateTimestamp": str(NOW_MS - 9 * HOUR_MS), "fundingRate": "0.2"},
            {"symbol": "BTCUSDT", "fundingRateTimestamp": str(NOW_MS - 9 * HOUR_MS), "fundingRate": "0.2"},
        ]
        transport.request.return_value = _bybit_envelope(rows)

        points = await bybit.fetch_funding_history("BTCUSDT")

        assert [p.timestamp_ms for p in points] == [NOW_MS - 9 * HOUR_MS, NOW_MS - HOUR_MS]

    @pytest.mark.asyncio
    async def test_window_requests_lookback(
        self, binance: BinanceClient, transport: AsyncMock, fetch_settings: FetchSettings
    ) -> None:
        transport.request.return_value = []

        await binance.fetch_funding_history("BTCUSDT")

        params = transport.request.await_args.kwargs["params"]
        assert params["endTime"] == NOW_MS
        assert params["startTime"] == NOW_MS - fetch_settings.lookback_hours * HOUR_MS
        assert params["limit"] == 1000

    @pytest.mark.asyncio
    async def test_unsupported_dataset(
        self, transport: AsyncMock, fetch_settings: FetchSettings
    ) -> None:
        from perpdata.exchange.hyperliquid import HyperliquidClient

        client = HyperliquidClient(
            transport, PROFILES[Platform.HYPERLIQUID], fetch_settings, "https://hl.test"
        )

        with pytest.raises(UnsupportedDatasetError):
            await client.fetch_open_interest("BTC")
        transport.request.assert_not_called()


# ---------------------------------------------------------------------------
# Batch fetch
# ---------------------------------------------------------------------------


class TestBatch:
    @pytest.mark.asyncio
    async def test_per_symbol_failure_reported_and_batch_continues(
        self, binance: BinanceClient, transport: AsyncMock
    ) -> None:
        async def respond(method, url, params=None, json=None):  # type: ignore[no-untyped-def]
            if params["symbol"] == "BAD":
                raise HttpStatusError(400, "invalid symbol")
            return _funding_rows(2)

        transport.request.side_effect = respond
        errors: list[str] = []
        stored: dict[str, int] = {}
        progress: list[int] = []

        async def on_item(symbol: str, points: list) -> None:
            stored[symbol] = len(points)

        async def on_error(symbol: str, exc: Exception) -> None:
            errors.append(symbol)

        result = await binance.fetch_funding_history_batch(
            ["BTCUSDT", "BAD", "ETHUSDT"],
            on_progress=lambda symbol, processed: progress.append(processed),
            on_item=on_item,
            on_error=on_error,
        )

        assert result == {}
        assert stored == {"BTCUSDT": 2, "ETHUSDT": 2}
        assert errors == ["BAD"]
        assert progress == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_results_collected_without_on_item(
        self, binance: BinanceClient, transport: AsyncMock
    ) -> None:
        transport.request.return_value = _funding_rows(1)

        result = await binance.fetch_funding_history_batch(["BTCUSDT", "ETHUSDT"])

        assert set(result) == {"BTCUSDT", "ETHUSDT"}

    @pytest.mark.asyncio
    async def test_ban_aborts_batch(self, binance: BinanceClient, transport: AsyncMock) -> None:
        transport.request.side_effect = HttpStatusError(418)
        on_error = AsyncMock()

        with pytest.raises(ExchangeBannedError):
            await binance.fetch_candles_batch(["BTCUSDT", "ETHUSDT", "SOLUSDT"], on_error=on_error)

        on_error.assert_not_called()
        assert transport.request.await_count == 1
