"""SQLite persistence layer: connection management and typed repositories."""

from perpdata.data.database import Database
from perpdata.data.repositories import (
    AssetRepository,
    FetchLogRepository,
    FundingRateRepository,
    LongShortRatioRepository,
    OHLCVRepository,
    OpenInterestRepository,
    Repositories,
)

__all__ = [
    "AssetRepository",
    "Database",
    "FetchLogRepository",
    "FundingRateRepository",
    "LongShortRatioRepository",
    "OHLCVRepository",
    "OpenInterestRepository",
    "Repositories",
]
