"""Exchange client layer: one uniform client per supported venue."""

from perpdata.config import AppSettings
from perpdata.exchange.aster import AsterClient
from perpdata.exchange.binance import BinanceClient
from perpdata.exchange.bybit import BybitClient
from perpdata.exchange.client import ExchangeClient
from perpdata.exchange.dydx import DydxClient
from perpdata.exchange.hyperliquid import HyperliquidClient
from perpdata.exchange.okx import OKXClient
from perpdata.exchange.transport import HttpTransport
from perpdata.models import Platform
from perpdata.platforms import resolve_profile

_CLIENT_CLASSES: dict[Platform, type[ExchangeClient]] = {
    Platform.HYPERLIQUID: HyperliquidClient,
    Platform.BINANCE: BinanceClient,
    Platform.BYBIT: BybitClient,
    Platform.OKX: OKXClient,
    Platform.DYDX: DydxClient,
    Platform.ASTER: AsterClient,
}


def create_exchange_client(
    platform: Platform | str,
    transport: HttpTransport,
    settings: AppSettings,
) -> ExchangeClient:
    """Build the client for ``platform`` with its resolved profile and base URL."""
    platform = Platform(platform)
    base_url = getattr(settings.exchange, f"{platform.value}_url")
    return _CLIENT_CLASSES[platform](
        transport,
        resolve_profile(platform, settings.fetch),
        settings.fetch,
        base_url,
    )


__all__ = [
    "AsterClient",
    "BinanceClient",
    "BybitClient",
    "DydxClient",
    "ExchangeClient",
    "HttpTransport",
    "HyperliquidClient",
    "OKXClient",
    "create_exchange_client",
]
