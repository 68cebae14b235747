"""Binance USD-M futures client.

All endpoints accept a [startTime, endTime] window and return records in
ascending order, so pagination moves forward from one millisecond after
the newest record of a full page.
"""

from typing import Any

from perpdata.exchange.client import ExchangeClient, require_decimal, to_decimal
from perpdata.exchange.pagination import Page, PageRequest
from perpdata.exceptions import ExchangeResponseError
from perpdata.models import (
    CandlePoint,
    ExchangeAsset,
    FundingPoint,
    OpenInterestPoint,
    RatioPoint,
)


class BinanceClient(ExchangeClient):
    """Binance futures public REST API (also spoken by Binance-compatible venues)."""

    api_prefix = "/fapi/v1"
    data_prefix = "/futures/data"

    async def list_assets(self) -> list[ExchangeAsset]:
        data = await self._get(f"{self.api_prefix}/exchangeInfo")
        symbols = data.get("symbols") if isinstance(data, dict) else None
        if symbols is None:
            raise ExchangeResponseError(f"{self.platform} exchangeInfo has no symbols")
        return [
            ExchangeAsset(symbol=s["symbol"], name=s.get("baseAsset"))
            for s in symbols
            if s.get("contractType") == "PERPETUAL" and s.get("status") == "TRADING"
        ]

    def _window_params(self, symbol: str, request: PageRequest) -> dict[str, Any]:
        return {
            "symbol": symbol,
            "startTime": request.cursor or request.start_ms,
            "endTime": request.end_ms,
            "limit": request.limit,
        }

    async def _funding_page(self, symbol: str, request: PageRequest) -> Page[FundingPoint]:
        rows = await self._get(
            f"{self.api_prefix}/fundingRate", self._window_params(symbol, request)
        )
        points = [
            FundingPoint(
                symbol=symbol,
                timestamp_ms=int(row["fundingTime"]),
                funding_rate=require_decimal(row["fundingRate"]),
            )
            for row in _as_list(rows)
        ]
        return Page(points, _next_start(points))

    async def _candle_page(
        self, symbol: str, interval: str, request: PageRequest
    ) -> Page[CandlePoint]:
        params = self._window_params(symbol, request)
        params["interval"] = interval
        rows = await self._get(f"{self.api_prefix}/klines", params)
        # [openTime, open, high, low, close, volume, closeTime, quoteVolume, trades, ...]
        points = [
            CandlePoint(
                symbol=symbol,
                timestamp_ms=int(row[0]),
                open=require_decimal(row[1]),
                high=require_decimal(row[2]),
                low=require_decimal(row[3]),
                close=require_decimal(row[4]),
                volume=require_decimal(row[5]),
                quote_volume=to_decimal(row[7]) if len(row) > 7 else None,
                trades_count=int(row[8]) if len(row) > 8 else None,
            )
            for row in _as_list(rows)
        ]
        return Page(points, _next_start(points))

    async def _open_interest_page(
        self, symbol: str, interval: str, request: PageRequest
    ) -> Page[OpenInterestPoint]:
        params = self._window_params(symbol, request)
        params["period"] = interval
        rows = await self._get(f"{self.data_prefix}/openInterestHist", params)
        points = [
            OpenInterestPoint(
                symbol=symbol,
                timestamp_ms=int(row["timestamp"]),
                open_interest=require_decimal(row["sumOpenInterest"]),
                open_interest_value=to_decimal(row.get("sumOpenInterestValue")),
            )
            for row in _as_list(rows)
        ]
        return Page(points, _next_start(points))

    async def _ratio_page(
        self, symbol: str, interval: str, request: PageRequest
    ) -> Page[RatioPoint]:
        params = self._window_params(symbol, request)
        params["period"] = interval
        rows = await self._get(f"{self.data_prefix}/globalLongShortAccountRatio", params)
        points = [
            RatioPoint(
                symbol=symbol,
                timestamp_ms=int(row["timestamp"]),
                long_ratio=require_decimal(row["longAccount"]),
                short_ratio=require_decimal(row["shortAccount"]),
                ratio_type="accounts",
                period=interval,
            )
            for row in _as_list(rows)
        ]
        return Page(points, _next_start(points))


def _as_list(rows: Any) -> list[Any]:
    if not isinstance(rows, list):
        raise ExchangeResponseError(f"Expected a list, got {type(rows).__name__}: {rows!r:.200}")
    return rows


def _next_start(points: list[Any]) -> int | None:
    if not points:
        return None
    return max(p.timestamp_ms for p in points) + 1
