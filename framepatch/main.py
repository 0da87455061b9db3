"""
FastAPI application entry point for FramePatch Studio.

FramePatch applies localized, AI-generated edits to single video frames and
re-renders only the time ranges those edits touch:
1. Patch layers (plan, composite, store original/edited/diff assets)
2. Render plans (changed vs unchanged ranges)
3. Differential renders (re-encode changed segments, stream-copy the rest)
"""

import asyncio
import logging
import os
import shutil
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from framepatch.config import get_settings
from framepatch.errors import FramePatchError
from framepatch.routers import health, patches, renders
from framepatch.services.frame_patch_service import FramePatchService
from framepatch.services.image_provider import ImageProviderService
from framepatch.services.media_tools import MediaToolRunner
from framepatch.services.render_executor import RenderExecutor
from framepatch.services.render_pipeline import DifferentialRenderPipeline
from framepatch.services.source_resolver import SourceResolver
from framepatch.services.state_store import JsonStateStore

# Configure logging
logging.basicConfig(
    level=getattr(logging, get_settings().log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Lifespan context manager for startup and shutdown events.
    Creates storage directories and services on startup.
    """
    settings = get_settings()
    logger.info("Starting FramePatch Studio...")

    for directory in (
        settings.temp_directory,
        settings.patches_directory,
        settings.renders_directory,
        settings.logs_directory,
        os.path.dirname(settings.state_file_path),
    ):
        os.makedirs(directory, exist_ok=True)
    logger.info(f"Data root: {os.path.abspath(settings.data_root)}")

    # Limits how many patch/render jobs run simultaneously
    job_semaphore = asyncio.Semaphore(settings.max_concurrent_jobs)
    logger.info(f"Max concurrent jobs: {settings.max_concurrent_jobs}")

    store = JsonStateStore(settings.state_file_path)
    tools = MediaToolRunner()
    resolver = SourceResolver()
    image_provider = ImageProviderService(settings)

    patch_service = FramePatchService(
        store=store,
        tools=tools,
        resolver=resolver,
        image_provider=image_provider,
    )
    render_pipeline = DifferentialRenderPipeline(
        store=store,
        patch_service=patch_service,
        executor=RenderExecutor(
            tools=tools,
            resolver=resolver,
            progress_callback=renders.progress_callback,
        ),
        progress_callback=renders.progress_callback,
    )

    app.state.store = store
    app.state.tools = tools
    app.state.image_provider = image_provider
    app.state.patch_service = patch_service
    app.state.render_pipeline = render_pipeline
    app.state.job_semaphore = job_semaphore

    _verify_external_tools(tools)

    logger.info("FramePatch ready to accept requests.")

    yield

    logger.info("Shutting down FramePatch Studio...")

    if os.path.isdir(settings.temp_directory):
        try:
            shutil.rmtree(settings.temp_directory)
        except OSError as e:
            logger.warning(f"Failed to clean up temp directory: {e}")

    logger.info("Shutdown complete")


def _verify_external_tools(tools: MediaToolRunner) -> None:
    """Verify that required external tools are available."""
    descriptions = {
        "ffmpeg": "FFmpeg for frame extraction and rendering",
        "ffprobe": "FFprobe for media probing",
    }

    for tool, available in tools.tools_available().items():
        if available:
            logger.info(f"✓ {descriptions[tool]} available")
        else:
            logger.warning(f"✗ {descriptions[tool]} NOT FOUND - patch and render jobs will fail")


# Create FastAPI application
app = FastAPI(
    title="FramePatch Studio",
    description="""
FramePatch - localized frame edits with differential re-rendering.

## Features

### Patches (`/patches`)
- Plan patch layers on a frame region
- Apply patches: extract the frame, composite the edited region, store a visual diff
- Generate edited regions from an instruction via the image provider

### Renders (`/render-plans`, `/renders`)
- Compute which time ranges must be re-encoded
- Re-encode only those ranges with patches overlaid; stream-copy the rest
- Stitch everything into one output artifact

## Usage

1. Apply a patch: `POST /patches/apply`
2. Submit a render: `POST /renders` with the patch id
3. Poll status: `GET /renders/{job_id}`
    """,
    version=health.VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(FramePatchError)
async def framepatch_error_handler(request: Request, exc: FramePatchError) -> JSONResponse:
    """Translate pipeline errors into JSON responses with their HTTP status."""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(patches.router)
app.include_router(renders.router)


@app.get("/")
async def root():
    """Root endpoint with basic info."""
    return {
        "service": get_settings().app_name,
        "version": health.VERSION,
        "status": "running",
        "docs": "/docs",
    }
