"""Aster client. Aster exposes a Binance-compatible futures API.

Funding settles hourly. Open interest history and long/short ratios are
not served, so the Aster profile has no paging entry for those datasets.
"""

from perpdata.exchange.binance import BinanceClient


class AsterClient(BinanceClient):
    """Aster perpetuals public REST API."""

    api_prefix = "/fapi/v1"
