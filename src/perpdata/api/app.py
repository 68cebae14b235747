"""FastAPI application factory for run control and progress streaming."""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI

from perpdata.api.routes import fetch, stream


def create_api_app(lifespan: Any = None, heartbeat_interval: float = 15.0) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        lifespan: Optional async context manager for application lifespan events.
                  Used by main.py to wire the registry and scheduler onto app.state.
        heartbeat_interval: Seconds between SSE keep-alive comments.

    Returns:
        Configured FastAPI application with all routers under /api.
    """
    app = FastAPI(title="Perpetual Futures Data Ingestion", lifespan=lifespan)

    # Wired by main.py lifespan (or directly by tests)
    app.state.registry = None
    app.state.scheduler = None
    app.state.heartbeat_interval = heartbeat_interval

    app.include_router(fetch.router, prefix="/api")
    app.include_router(stream.router, prefix="/api")

    return app
