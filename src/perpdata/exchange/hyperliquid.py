"""Hyperliquid client: every query is a POST to /info with a ``type`` field.

Funding is hourly. Funding history and candle snapshots are window
queries capped per response; the next page starts one millisecond after
the last record returned.
"""

from typing import Any

from perpdata.exchange.client import ExchangeClient, require_decimal, to_decimal
from perpdata.exchange.pagination import Page, PageRequest
from perpdata.exceptions import ExchangeResponseError
from perpdata.models import CandlePoint, ExchangeAsset, FundingPoint


class HyperliquidClient(ExchangeClient):
    """Hyperliquid public info API."""

    async def list_assets(self) -> list[ExchangeAsset]:
        data = await self._post("/info", {"type": "meta"})
        universe = data.get("universe") if isinstance(data, dict) else None
        if universe is None:
            raise ExchangeResponseError("Hyperliquid meta response has no universe")
        return [
            ExchangeAsset(symbol=coin["name"], name=coin["name"])
            for coin in universe
            if not coin.get("isDelisted", False)
        ]

    async def _funding_page(self, symbol: str, request: PageRequest) -> Page[FundingPoint]:
        rows = await self._post(
            "/info",
            {
                "type": "fundingHistory",
                "coin": symbol,
                "startTime": request.cursor or request.start_ms,
                "endTime": request.end_ms,
            },
        )
        points = [
            FundingPoint(
                symbol=symbol,
                timestamp_ms=int(row["time"]),
                funding_rate=require_decimal(row["fundingRate"]),
                premium=to_decimal(row.get("premium")),
            )
            for row in _as_list(rows)
        ]
        return Page(points, _next_start(points))

    async def _candle_page(
        self, symbol: str, interval: str, request: PageRequest
    ) -> Page[CandlePoint]:
        rows = await self._post(
            "/info",
            {
                "type": "candleSnapshot",
                "req": {
                    "coin": symbol,
                    "interval": interval,
                    "startTime": request.cursor or request.start_ms,
                    "endTime": request.end_ms,
                },
            },
        )
        points = [
            CandlePoint(
                symbol=symbol,
                timestamp_ms=int(row["t"]),
                open=require_decimal(row["o"]),
                high=require_decimal(row["h"]),
                low=require_decimal(row["l"]),
                close=require_decimal(row["c"]),
                volume=require_decimal(row["v"]),
                trades_count=int(row["n"]) if row.get("n") is not None else None,
            )
            for row in _as_list(rows)
        ]
        return Page(points, _next_start(points))


def _as_list(rows: Any) -> list[dict]:
    if not isinstance(rows, list):
        raise ExchangeResponseError(f"Expected a list from Hyperliquid, got {type(rows).__name__}")
    return rows


def _next_start(points: list[Any]) -> int | None:
    if not points:
        return None
    return max(p.timestamp_ms for p in points) + 1
