"""Custom exceptions for the ingestion service.

Exchange, transport and run-control errors live here to avoid circular
imports between the exchange clients, the pipelines and the API layer.
"""


class IngestError(Exception):
    """Base exception for all ingestion errors."""


# ──────────────────────────────────────────────
# Transport
# ──────────────────────────────────────────────


class TransportError(IngestError):
    """Raised when an HTTP request cannot be completed (connection, timeout)."""


class HttpStatusError(TransportError):
    """Raised when an exchange answers with a non-2xx HTTP status."""

    def __init__(self, status: int, body: str = "", url: str = "") -> None:
        self.status = status
        self.body = body
        self.url = url
        super().__init__(f"HTTP {status} from {url or 'exchange'}: {body[:200]}")


# ──────────────────────────────────────────────
# Exchange contract
# ──────────────────────────────────────────────


class ExchangeError(IngestError):
    """Base exception for errors reported by an exchange client."""


class ExchangeThrottledError(ExchangeError):
    """Raised when an exchange keeps throttling after all retries are spent."""


class ExchangeBannedError(ExchangeError):
    """Raised when an exchange signals an IP ban; fatal for the client instance."""

    def __init__(self, platform: str, detail: str = "") -> None:
        self.platform = platform
        message = f"{platform} banned this client"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class ExchangeResponseError(ExchangeError):
    """Raised when an exchange returns an error envelope or an unusable payload."""


class UnsupportedDatasetError(ExchangeError):
    """Raised when a dataset is requested from a platform that does not serve it."""


# ──────────────────────────────────────────────
# Run control
# ──────────────────────────────────────────────


class FetchAlreadyRunningError(IngestError):
    """Raised when a fetch run is started while another is active for the platform."""

    def __init__(self, platform: str) -> None:
        self.platform = platform
        super().__init__(f"A fetch is already running for {platform}")


class NoAssetsRegisteredError(IngestError):
    """Raised when an incremental run finds no registered assets for the platform."""

    def __init__(self, platform: str) -> None:
        self.platform = platform
        super().__init__(
            f"No assets registered for {platform}; run an initial fetch first"
        )


class AssetNotFoundError(IngestError):
    """Raised when fetched data refers to a symbol missing from the asset registry."""

    def __init__(self, symbol: str) -> None:
        self.symbol = symbol
        super().__init__(f"Asset not found: {symbol}")


class UnknownStageError(IngestError):
    """Raised when a progress update names a stage that was never initialized."""


class UnknownPlatformError(IngestError):
    """Raised when a platform name does not match any configured platform."""


class StorageError(IngestError):
    """Raised when the database does not return an expected write result."""
