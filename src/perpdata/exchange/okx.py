"""OKX V5 swap client.

Responses are wrapped in ``{"code", "msg", "data"}`` with string codes.
Every history endpoint returns newest records first and pages backwards:
``after`` on market endpoints and ``end`` on rubik statistics endpoints
both mean "records older than this timestamp".
"""

from decimal import Decimal
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

THROTTLE_CODES = {"50011", "50061"}


class OKXClient(ExchangeClient):
    """OKX public market and rubik statistics API."""

    def _unwrap(self, data: Any) -> Any:
        if not isinstance(data, dict) or "code" not in data:
            raise ExchangeResponseError(f"Unexpected OKX response: {data!r:.200}")
        code = str(data["code"])
        if code in THROTTLE_CODES:
            raise ExchangeThrottledError(f"OKX rate limit: {data.get('msg')}")
        if code != "0":
            raise ExchangeResponseError(f"OKX error {code}: {data.get('msg')}")
        return data.get("data") or []

    async def list_assets(self) -> list[ExchangeAsset]:
        rows = await self._get("/api/v5/public/instruments", {"instType": "SWAP"})
        return [
            ExchangeAsset(symbol=row["instId"], name=row.get("ctValCcy"))
            for row in rows
            if row.get("state") == "live"
            and row.get("ctType") == "linear"
            and row.get("settleCcy") == "USDT"
        ]

    async def _funding_page(self, symbol: str, request: PageRequest) -> Page[FundingPoint]:
        rows = await self._get(
            "/api/v5/public/funding-rate-history",
            {"instId": symbol, "after": request.cursor, "limit": request.limit},
        )
        points = [
            FundingPoint(
                symbol=symbol,
                timestamp_ms=int(row["fundingTime"]),
                funding_rate=require_decimal(row.get("realizedRate") or row["fundingRate"]),
            )
            for row in rows
        ]
        return Page(points)

    async def _candle_page(
        self, symbol: str, interval: str, request: PageRequest
    ) -> Page[CandlePoint]:
        rows = await self._get(
            "/api/v5/market/history-candles",
            {"instId": symbol, "bar": interval, "after": request.cursor, "limit": request.limit},
        )
        # [ts, open, high, low, close, vol, volCcy, volCcyQuote, confirm]
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
            )
            for row in rows
        ]
        return Page(points)

    async def _open_interest_page(
        self, symbol: str, interval: str, request: PageRequest
    ) -> Page[OpenInterestPoint]:
        rows = await self._get(
            "/api/v5/rubik/stat/contracts/open-interest-history",
            {
                "instId": symbol,
                "period": interval,
                "end": request.cursor - 1,
                "limit": request.limit,
            },
        )
        # [ts, oi (contracts), oiCcy, oiUsd]
        points = [
            OpenInterestPoint(
                symbol=symbol,
                timestamp_ms=int(row[0]),
                open_interest=require_decimal(row[1]),
                open_interest_value=to_decimal(row[3]) if len(row) > 3 else None,
            )
            for row in rows
        ]
        return Page(points)

    async def _ratio_page(
        self, symbol: str, interval: str, request: PageRequest
    ) -> Page[RatioPoint]:
        rows = await self._get(
            "/api/v5/rubik/stat/contracts/long-short-account-ratio-contract",
            {
                "instId": symbol,
                "period": interval,
                "end": request.cursor - 1,
                "limit": request.limit,
            },
        )
        points = []
        for row in rows:
            long_ratio, short_ratio = split_long_short(require_decimal(row[1]))
            points.append(
                RatioPoint(
                    symbol=symbol,
                    timestamp_ms=int(row[0]),
                    long_ratio=long_ratio,
                    short_ratio=short_ratio,
                    ratio_type="accounts",
                    period=interval,
                )
            )
        return Page(points)


def split_long_short(ratio: Decimal) -> tuple[Decimal, Decimal]:
    """Turn a long/short ratio r into (long share, short share) summing to 1."""
    total = ratio + 1
    return ratio / total, 1 / total
