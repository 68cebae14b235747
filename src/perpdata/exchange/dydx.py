"""dYdX v4 indexer client.

The indexer speaks ISO-8601 timestamps and returns newest records first.
Funding is hourly. There is no dedicated open interest history endpoint;
each hourly candle carries ``startingOpenInterest``, which is used instead.
"""

from datetime import datetime, timezone
from typing import Any

from perpdata.exchange.client import ExchangeClient, require_decimal, to_decimal
from perpdata.exchange.pagination import Page, PageRequest
from perpdata.exceptions import ExchangeResponseError
from perpdata.models import CandlePoint, ExchangeAsset, FundingPoint, OpenInterestPoint


def ms_to_iso(timestamp_ms: int) -> str:
    dt = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def iso_to_ms(value: str) -> int:
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return int(dt.timestamp() * 1000)


class DydxClient(ExchangeClient):
    """dYdX v4 indexer public API."""

    async def list_assets(self) -> list[ExchangeAsset]:
        data = await self._get("/v4/perpetualMarkets")
        markets = data.get("markets") if isinstance(data, dict) else None
        if markets is None:
            raise ExchangeResponseError("dYdX perpetualMarkets response has no markets")
        return [
            ExchangeAsset(symbol=ticker, name=ticker.split("-")[0])
            for ticker, market in markets.items()
            if market.get("status") == "ACTIVE"
        ]

    async def _funding_page(self, symbol: str, request: PageRequest) -> Page[FundingPoint]:
        data = await self._get(
            f"/v4/historicalFunding/{symbol}",
            {
                "limit": request.limit,
                "effectiveBeforeOrAt": ms_to_iso(request.cursor - 1),
            },
        )
        points = [
            FundingPoint(
                symbol=symbol,
                timestamp_ms=iso_to_ms(row["effectiveAt"]),
                funding_rate=require_decimal(row["rate"]),
            )
            for row in data.get("historicalFunding", [])
        ]
        return Page(points)

    async def _candle_rows(
        self, symbol: str, interval: str, request: PageRequest
    ) -> list[dict[str, Any]]:
        data = await self._get(
            f"/v4/candles/perpetualMarkets/{symbol}",
            {
                "resolution": interval,
                "limit": request.limit,
                "fromISO": ms_to_iso(request.start_ms),
                "toISO": ms_to_iso(request.cursor - 1),
            },
        )
        return data.get("candles", [])

    async def _candle_page(
        self, symbol: str, interval: str, request: PageRequest
    ) -> Page[CandlePoint]:
        rows = await self._candle_rows(symbol, interval, request)
        points = [
            CandlePoint(
                symbol=symbol,
                timestamp_ms=iso_to_ms(row["startedAt"]),
                open=require_decimal(row["open"]),
                high=require_decimal(row["high"]),
                low=require_decimal(row["low"]),
                close=require_decimal(row["close"]),
                volume=require_decimal(row["baseTokenVolume"]),
                quote_volume=to_decimal(row.get("usdVolume")),
                trades_count=int(row["trades"]) if row.get("trades") is not None else None,
            )
            for row in rows
        ]
        return Page(points)

    async def _open_interest_page(
        self, symbol: str, interval: str, request: PageRequest
    ) -> Page[OpenInterestPoint]:
        rows = await self._candle_rows(symbol, interval, request)
        points = []
        for row in rows:
            open_interest = require_decimal(row["startingOpenInterest"])
            price = to_decimal(row.get("open"))
            points.append(
                OpenInterestPoint(
                    symbol=symbol,
                    timestamp_ms=iso_to_ms(row["startedAt"]),
                    open_interest=open_interest,
                    open_interest_value=open_interest * price if price is not None else None,
                )
            )
        return Page(points)
