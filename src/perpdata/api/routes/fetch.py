"""JSON endpoints for starting fetch runs and inspecting their state."""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from perpdata.exceptions import (
    FetchAlreadyRunningError,
    NoAssetsRegisteredError,
    UnknownPlatformError,
)
from perpdata.ingestion.registry import FetcherRegistry

log = structlog.get_logger(__name__)

router = APIRouter()


def _registry(request: Request) -> FetcherRegistry:
    return request.app.state.registry


async def _start(request: Request, platform: str, kind: str) -> JSONResponse:
    registry = _registry(request)
    try:
        if kind == "initial":
            await registry.start_initial(platform)
        else:
            await registry.start_incremental(platform)
    except UnknownPlatformError as e:
        return JSONResponse(content={"error": str(e)}, status_code=404)
    except FetchAlreadyRunningError as e:
        progress = registry.current_progress(platform)
        return JSONResponse(
            content={
                "error": str(e),
                "progress": progress.to_dict() if progress is not None else None,
            },
            status_code=409,
        )
    except NoAssetsRegisteredError as e:
        return JSONResponse(content={"error": str(e)}, status_code=400)

    log.info("fetch_started_via_api", platform=platform, kind=kind)
    return JSONResponse(
        content={"status": "started", "platform": platform, "kind": kind},
        status_code=202,
    )


@router.post("/fetch/{platform}/initial")
async def start_initial_fetch(platform: str, request: Request) -> JSONResponse:
    """Start an initial backfill for a platform; 409 if a run is already active."""
    return await _start(request, platform, "initial")


@router.post("/fetch/{platform}/incremental")
async def start_incremental_fetch(platform: str, request: Request) -> JSONResponse:
    """Start an incremental update for a platform; 409 if a run is already active."""
    return await _start(request, platform, "incremental")


@router.get("/fetch/status")
async def get_fetch_status(request: Request) -> JSONResponse:
    """Stored data counts, last run and in-progress state for every platform."""
    return JSONResponse(content=await _registry(request).statuses())


@router.get("/fetch/{platform}/progress")
async def get_fetch_progress(platform: str, request: Request) -> JSONResponse:
    """Current progress snapshot of a platform, or idle state."""
    registry = _registry(request)
    try:
        progress = registry.current_progress(platform)
    except UnknownPlatformError as e:
        return JSONResponse(content={"error": str(e)}, status_code=404)
    return JSONResponse(
        content={
            "platform": platform,
            "is_running": progress is not None,
            "progress": progress.to_dict() if progress is not None else None,
        }
    )


@router.get("/scheduler")
async def get_scheduler_status(request: Request) -> JSONResponse:
    """State of the periodic incremental scheduler and its last tick."""
    scheduler = request.app.state.scheduler
    if scheduler is None:
        return JSONResponse(content={"enabled": False})
    return JSONResponse(content=scheduler.status())
