"""
Render API Router - render plans and differential render jobs.
"""

import asyncio
import logging
import uuid
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, status

from framepatch.auth import verify_api_key
from framepatch.schemas.records import RenderPlan
from framepatch.schemas.requests import RenderPlanRequest, RenderRequest
from framepatch.schemas.responses import RenderJobStatusResponse, RenderJobSubmitResponse
from framepatch.services.render_executor import RenderProgress, RenderStage
from framepatch.services.render_pipeline import (
    DifferentialRenderPipeline,
    JobStatus,
    RenderJobOutcome,
)
from framepatch.services.state_store import JsonStateStore

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Renders"])


# ============================================================================
# In-Memory Job Storage
# ============================================================================

_job_store: dict[str, RenderProgress] = {}
_job_results: dict[str, RenderJobOutcome] = {}


def progress_callback(progress: RenderProgress) -> None:
    """Callback to store job progress."""
    _job_store[progress.job_id] = progress
    logger.debug(f"Job {progress.job_id}: {progress.stage.value} - {progress.progress_percent:.0f}%")


# ============================================================================
# Dependencies
# ============================================================================


async def get_render_pipeline(request: Request) -> DifferentialRenderPipeline:
    """Get the render pipeline from app state (initialized at startup)."""
    if not hasattr(request.app.state, "render_pipeline"):
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Render pipeline not initialized",
        )
    return request.app.state.render_pipeline


async def get_state_store(request: Request) -> JsonStateStore:
    if not hasattr(request.app.state, "store"):
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="State store not initialized",
        )
    return request.app.state.store


# ============================================================================
# Endpoints
# ============================================================================


@router.post("/render-plans", response_model=RenderPlan, status_code=status.HTTP_201_CREATED)
async def create_render_plan(
    body: RenderPlanRequest,
    pipeline: DifferentialRenderPipeline = Depends(get_render_pipeline),
    _: None = Depends(verify_api_key),
) -> RenderPlan:
    """Compute and store a render plan for a known duration (no media work)."""
    return await pipeline.plan(body)


@router.post("/renders", response_model=RenderJobSubmitResponse, status_code=status.HTTP_202_ACCEPTED)
async def submit_render_job(
    body: RenderRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    pipeline: DifferentialRenderPipeline = Depends(get_render_pipeline),
    _: None = Depends(verify_api_key),
) -> RenderJobSubmitResponse:
    """
    Submit a differential render job.

    The job runs in the background. Use GET /renders/{job_id} to check status.
    """
    job_id = str(uuid.uuid4())

    _job_store[job_id] = RenderProgress(
        job_id=job_id,
        stage=RenderStage.PROBING,
        progress_percent=0,
        current_step="Queued for processing",
    )

    background_tasks.add_task(
        _process_render_background,
        pipeline,
        body,
        job_id,
        request.app.state.job_semaphore,
    )

    logger.info(f"Render job {job_id} submitted for {body.source.describe()[:100]}")

    return RenderJobSubmitResponse(
        job_id=job_id,
        status=JobStatus.PENDING.value,
        message="Job queued for processing",
    )


@router.get("/renders/{job_id}", response_model=RenderJobStatusResponse)
async def get_render_status(job_id: str) -> RenderJobStatusResponse:
    """
    Get the status of a render job.

    Returns progress while running and the RenderJobResult once completed.
    """
    if job_id in _job_results:
        outcome = _job_results[job_id]
        completed = outcome.status == JobStatus.COMPLETED
        segments = len(outcome.result.segments) if outcome.result else 0
        return RenderJobStatusResponse(
            job_id=job_id,
            status=outcome.status.value,
            stage=RenderStage.DONE.value if completed else RenderStage.FAILED.value,
            progress_percent=100 if completed else 0,
            current_step="Completed" if completed else "Failed",
            segments_completed=segments,
            total_segments=segments,
            error=outcome.error,
            output=outcome.result.to_dict() if outcome.result else None,
        )

    if job_id in _job_store:
        progress = _job_store[job_id]
        return RenderJobStatusResponse(
            job_id=job_id,
            status=JobStatus.RUNNING.value if progress.progress_percent > 0 else JobStatus.PENDING.value,
            stage=progress.stage.value,
            progress_percent=progress.progress_percent,
            current_step=progress.current_step,
            segments_completed=progress.segments_completed,
            total_segments=progress.total_segments,
        )

    raise HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Job not found: {job_id}",
    )


@router.get("/state")
async def state_snapshot(store: JsonStateStore = Depends(get_state_store)) -> dict[str, Any]:
    """Recent patch layers, motion jobs and render plans."""
    return await store.snapshot()


# ============================================================================
# Background Processing
# ============================================================================


async def _process_render_background(
    pipeline: DifferentialRenderPipeline,
    request: RenderRequest,
    job_id: str,
    semaphore: asyncio.Semaphore,
) -> None:
    """Run a render job with concurrency control and record its outcome."""
    async with semaphore:
        outcome = await pipeline.run_job(request, job_id)

    _job_results[job_id] = outcome
    _job_store.pop(job_id, None)
