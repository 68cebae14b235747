"""Registry of per-platform fetcher services.

Owned by the application root and handed to the API and the scheduler,
so there is exactly one DataFetcherService (and one rate limiter) per
platform for the lifetime of the process.
"""

import asyncio
from collections.abc import Callable, Iterable
from typing import Any

from perpdata.config import AppSettings
from perpdata.data.repositories import Repositories
from perpdata.exceptions import UnknownPlatformError
from perpdata.exchange import HttpTransport, create_exchange_client
from perpdata.exchange.client import ExchangeClient
from perpdata.ingestion.fetcher import DataFetcherService
from perpdata.logging import get_logger
from perpdata.models import FetchResult, Platform, ProgressEvent

logger = get_logger(__name__)

ClientFactory = Callable[[Platform, HttpTransport, AppSettings], ExchangeClient]


def parse_platform(value: Platform | str) -> Platform:
    try:
        return Platform(value)
    except ValueError as e:
        raise UnknownPlatformError(f"Unknown platform: {value}") from e


class FetcherRegistry:
    """Lazily builds and caches one DataFetcherService per platform."""

    def __init__(
        self,
        settings: AppSettings,
        repositories: Repositories,
        transport: HttpTransport,
        platforms: Iterable[Platform] | None = None,
        client_factory: ClientFactory = create_exchange_client,
    ) -> None:
        self._settings = settings
        self._repositories = repositories
        self._transport = transport
        self._platforms = list(platforms) if platforms is not None else list(Platform)
        self._client_factory = client_factory
        self._services: dict[Platform, DataFetcherService] = {}
        self._tasks: set[asyncio.Task[FetchResult]] = set()

    def platforms(self) -> list[Platform]:
        return list(self._platforms)

    def register(self, service: DataFetcherService) -> None:
        """Install a prebuilt service, replacing any existing one for its platform."""
        platform = parse_platform(service.platform)
        if platform not in self._platforms:
            self._platforms.append(platform)
        self._services[platform] = service

    def get(self, platform: Platform | str) -> DataFetcherService:
        key = parse_platform(platform)
        if key not in self._platforms:
            raise UnknownPlatformError(f"Platform not enabled: {key.value}")
        service = self._services.get(key)
        if service is None:
            client = self._client_factory(key, self._transport, self._settings)
            service = DataFetcherService(
                client,
                self._repositories,
                subscriber_queue_size=self._settings.api.subscriber_queue_size,
            )
            self._services[key] = service
            logger.info("fetcher_service_created", platform=key.value)
        return service

    async def start_initial(self, platform: Platform | str) -> asyncio.Task[FetchResult]:
        """Start an initial fetch; raises FetchAlreadyRunningError if one is active."""
        return self._track(await self.get(platform).start_initial())

    async def start_incremental(self, platform: Platform | str) -> asyncio.Task[FetchResult]:
        """Start an incremental fetch; raises FetchAlreadyRunningError or NoAssetsRegisteredError."""
        return self._track(await self.get(platform).start_incremental())

    def is_running(self, platform: Platform | str) -> bool:
        return self.get(platform).is_running

    def current_progress(self, platform: Platform | str) -> ProgressEvent | None:
        return self.get(platform).current_progress()

    async def statuses(self) -> dict[str, dict[str, Any]]:
        return {p.value: await self.get(p).status() for p in self._platforms}

    async def shutdown(self) -> None:
        """Cancel background runs still in flight."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("fetcher_registry_shutdown", cancelled=len(tasks))

    def _track(self, task: asyncio.Task[FetchResult]) -> asyncio.Task[FetchResult]:
        # Keep a strong reference until the task finishes
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
