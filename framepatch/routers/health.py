"""
Health check endpoints for the patch and render service.
"""

import os

from fastapi import APIRouter, Request

from framepatch.schemas.responses import HealthResponse, ReadinessResponse

router = APIRouter()

VERSION = "1.0.0"


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """
    Basic health check endpoint.

    Returns 200 if the service is running.
    """
    return HealthResponse(
        status="healthy",
        version=VERSION,
    )


@router.get("/health/ready", response_model=ReadinessResponse)
async def readiness_check(request: Request):
    """
    Readiness check endpoint.

    Ready when ffmpeg and ffprobe are installed and the state ledger
    directory is writable. The image provider is optional.
    """
    tools = getattr(request.app.state, "tools", None)
    store = getattr(request.app.state, "store", None)
    image_provider = getattr(request.app.state, "image_provider", None)

    available = tools.tools_available() if tools else {}
    ffmpeg_ready = available.get("ffmpeg", False)
    ffprobe_ready = available.get("ffprobe", False)

    store_ready = False
    if store is not None:
        state_dir = os.path.dirname(os.path.abspath(store.path))
        store_ready = os.path.isdir(state_dir) and os.access(state_dir, os.W_OK)

    return ReadinessResponse(
        ready=ffmpeg_ready and ffprobe_ready and store_ready,
        ffmpeg="available" if ffmpeg_ready else "missing",
        ffprobe="available" if ffprobe_ready else "missing",
        state_store="ready" if store_ready else "unavailable",
        image_provider=(
            "configured" if image_provider is not None and image_provider.is_configured
            else "not_configured"
        ),
    )
