"""Shared test fixtures for the ingestion service."""

from collections.abc import AsyncIterator

import pytest
import pytest_asyncio

from fakes import FakeExchangeClient, make_profile
from perpdata.config import ApiSettings, AppSettings, FetchSettings
from perpdata.data import Database, Repositories
from perpdata.models import Dataset
from perpdata.platforms import PlatformProfile


@pytest.fixture
def fetch_settings() -> FetchSettings:
    """Fast retry/paging settings so tests never sleep for real."""
    return FetchSettings(max_retries=3, retry_base_delay=0.0, page_delay=0.0)


@pytest.fixture
def mock_settings(fetch_settings: FetchSettings) -> AppSettings:
    return AppSettings(
        log_level="DEBUG",
        fetch=fetch_settings,
        api=ApiSettings(heartbeat_interval=0.05, subscriber_queue_size=1000),
    )


@pytest_asyncio.fixture
async def database(tmp_path) -> AsyncIterator[Database]:
    async with Database(str(tmp_path / "test.db")) as db:
        yield db


@pytest.fixture
def repositories(database: Database) -> Repositories:
    return Repositories.for_database(database)


@pytest.fixture
def fake_client_factory(fetch_settings: FetchSettings):
    """Build a FakeExchangeClient; keyword arguments override the defaults."""

    def _factory(
        assets: list[str] | None = None,
        data: dict[Dataset, dict[str, list]] | None = None,
        failures: dict[tuple[Dataset, str], Exception] | None = None,
        profile: PlatformProfile | None = None,
    ) -> FakeExchangeClient:
        return FakeExchangeClient(
            profile or make_profile(),
            fetch_settings,
            assets if assets is not None else ["BTCUSDT", "ETHUSDT", "SOLUSDT"],
            data=data,
            failures=failures,
        )

    return _factory
