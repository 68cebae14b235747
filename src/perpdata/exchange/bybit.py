"""Bybit V5 linear perpetuals client.

Responses are wrapped in ``{"retCode", "retMsg", "result"}``. Funding
history and klines come back newest first and are paged backwards through
``endTime``; open interest and account ratios carry a ``nextPageCursor``.
"""

from typing import Any

from perpdata.exchange.client import ExchangeClient, require_decimal, to_decimal
from perpdata.exchange.pagination import Page, PageRequest
from perpdata.exceptions import ExchangeResponseError, ExchangeThrottledError
from perpdata.models import (
    CandlePoint,
    ExchangeAsset,
    FundingPoint,
    OpenInterestPoint,
    RatioPoint,
)

THROTTLE_RET_CODES = {10006, 10018}
CATEGORY = "linear"


class BybitClient(ExchangeClient):
    """Bybit V5 public market API."""

    def _unwrap(self, data: Any) -> Any:
        if not isinstance(data, dict) or "retCode" not in data:
            raise ExchangeResponseError(f"Unexpected Bybit response: {data!r:.200}")
        code = data["retCode"]
        if code in THROTTLE_RET_CODES:
            raise ExchangeThrottledError(f"Bybit rate limit: {data.get('retMsg')}")
        if code != 0:
            raise ExchangeResponseError(f"Bybit error {code}: {data.get('retMsg')}")
        return data.get("result") or {}

    async def list_assets(self) -> list[ExchangeAsset]:
        assets: list[ExchangeAsset] = []
        cursor: str | None = None
        while True:
            result = await self._get(
                "/v5/market/instruments-info",
                {"category": CATEGORY, "limit": 1000, "cursor": cursor},
            )
            for item in result.get("list", []):
                if item.get("contractType") != "LinearPerpetual" or item.get("status") != "Trading":
                    continue
                assets.append(ExchangeAsset(symbol=item["symbol"], name=item.get("baseCoin")))
            cursor = result.get("nextPageCursor") or None
            if cursor is None:
                return assets

    async def _funding_page(self, symbol: str, request: PageRequest) -> Page[FundingPoint]:
        result = await self._get(
            "/v5/market/funding/history",
            {
                "category": CATEGORY,
                "symbol": symbol,
                "startTime": request.start_ms,
                "endTime": request.cursor - 1,
                "limit": request.limit,
            },
        )
        points = [
            FundingPoint(
                symbol=symbol,
                timestamp_ms=int(row["fundingRateTimestamp"]),
                funding_rate=require_decimal(row["fundingRate"]),
            )
            for row in result.get("list", [])
        ]
        return Page(points)

    async def _candle_page(
        self, symbol: str, interval: str, request: PageRequest
    ) -> Page[CandlePoint]:
        result = await self._get(
            "/v5/market/kline",
            {
                "category": CATEGORY,
                "symbol": symbol,
                "interval": interval,
                "start": request.start_ms,
                "end": request.cursor - 1,
                "limit": request.limit,
            },
        )
        # [startTime, open, high, low, close, volume, turnover], newest first
        points = [
            CandlePoint(
                symbol=symbol,
                timestamp_ms=int(row[0]),
                open=require_decimal(row[1]),
                high=require_decimal(row[2]),
                low=require_decimal(row[3]),
                close=require_decimal(row[4]),
                volume=require_decimal(row[5]),
                quote_volume=to_decimal(row[6]) if len(row) > 6 else None,
            )
            for row in result.get("list", [])
        ]
        return Page(points)

    async def _open_interest_page(
        self, symbol: str, interval: str, request: PageRequest
    ) -> Page[OpenInterestPoint]:
        result = await self._get(
            "/v5/market/open-interest",
            {
                "category": CATEGORY,
                "symbol": symbol,
                "intervalTime": interval,
                "startTime": request.start_ms,
                "endTime": request.end_ms,
                "limit": request.limit,
                "cursor": request.cursor,
            },
        )
        points = [
            OpenInterestPoint(
                symbol=symbol,
                timestamp_ms=int(row["timestamp"]),
                open_interest=require_decimal(row["openInterest"]),
            )
            for row in result.get("list", [])
        ]
        return Page(points, result.get("nextPageCursor") or None)

    async def _ratio_page(
        self, symbol: str, interval: str, request: PageRequest
    ) -> Page[RatioPoint]:
        result = await self._get(
            "/v5/market/account-ratio",
            {
                "category": CATEGORY,
                "symbol": symbol,
                "period": interval,
                "startTime": request.start_ms,
                "endTime": request.end_ms,
                "limit": request.limit,
                "cursor": request.cursor,
            },
        )
        points = [
            RatioPoint(
                symbol=symbol,
                timestamp_ms=int(row["timestamp"]),
                long_ratio=require_decimal(row["buyRatio"]),
                short_ratio=require_decimal(row["sellRatio"]),
                ratio_type="accounts",
                period=interval,
            )
            for row in result.get("list", [])
        ]
        return Page(points, result.get("nextPageCursor") or None)
