"""Application entry point: wire components and serve run control over HTTP.

The ingestion services and the API share a single asyncio event loop via
uvicorn's programmatic API and FastAPI's lifespan context manager.

Component wiring order:
1. AppSettings (configuration)
2. Logging
3. Database (aiosqlite, WAL)
4. Repositories
5. HttpTransport (one aiohttp session for all exchanges)
6. FetcherRegistry (one DataFetcherService + rate limiter per platform)
7. IncrementalScheduler
8. FastAPI app (when API_ENABLED)
"""

import asyncio
import signal
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from fastapi import FastAPI

from perpdata.config import AppSettings
from perpdata.data import Database, Repositories
from perpdata.exchange import HttpTransport
from perpdata.ingestion import FetcherRegistry, IncrementalScheduler
from perpdata.logging import get_logger, setup_logging

logger = get_logger(__name__)


async def _build_components(settings: AppSettings) -> dict[str, Any]:
    """Create and connect all long-lived components."""
    database = Database(settings.database.path)
    await database.connect()

    repositories = Repositories.for_database(database)
    transport = HttpTransport(timeout=settings.exchange.request_timeout)
    registry = FetcherRegistry(settings, repositories, transport)
    scheduler = IncrementalScheduler(registry, settings.scheduler)

    return {
        "database": database,
        "repositories": repositories,
        "transport": transport,
        "registry": registry,
        "scheduler": scheduler,
    }


async def _start_components(settings: AppSettings, components: dict[str, Any]) -> None:
    if settings.scheduler.enabled:
        await components["scheduler"].start()


async def _shutdown_components(components: dict[str, Any]) -> None:
    """Stop background work and release connections, in reverse wiring order."""
    await components["scheduler"].stop()
    await components["registry"].shutdown()
    await components["transport"].close()
    await components["database"].close()
    logger.info("components_shut_down")


@asynccontextmanager
async def lifespan(app: FastAPI):  # type: ignore[no-untyped-def]
    """Start the scheduler with the server and tear everything down on exit."""
    settings: AppSettings = app.state.settings
    components: dict[str, Any] = app.state.components

    app.state.registry = components["registry"]
    app.state.scheduler = components["scheduler"]

    await _start_components(settings, components)
    logger.info("lifespan_started", scheduler_enabled=settings.scheduler.enabled)
    try:
        yield
    finally:
        await _shutdown_components(components)


async def run() -> None:
    """Async main: build components, then serve the API or run headless."""
    settings = AppSettings()
    setup_logging(settings.log_level, settings.log_format)

    components = await _build_components(settings)

    if settings.api.enabled:
        from perpdata.api.app import create_api_app

        app = create_api_app(
            lifespan=lifespan, heartbeat_interval=settings.api.heartbeat_interval
        )
        app.state.settings = settings
        app.state.components = components

        logger.info("starting_with_api", host=settings.api.host, port=settings.api.port)
        config = uvicorn.Config(
            app,
            host=settings.api.host,
            port=settings.api.port,
            log_level="warning",
        )
        server = uvicorn.Server(config)
        await server.serve()
        return

    # Headless: only the scheduler drives fetches
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    logger.info("starting_headless", scheduler_enabled=settings.scheduler.enabled)
    try:
        await _start_components(settings, components)
        await stop_event.wait()
        logger.info("graceful_shutdown_signal")
    finally:
        await _shutdown_components(components)


def main() -> None:
    """Synchronous entry point."""
    asyncio.run(run())


if __name__ == "__main__":
    main()
