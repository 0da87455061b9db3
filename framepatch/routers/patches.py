"""
Patch API Router - planned and executed patch layers, motion jobs.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status

from framepatch.auth import verify_api_key
from framepatch.schemas.records import MotionJob, PatchLayer
from framepatch.schemas.requests import MotionJobRequest, PatchRequest
from framepatch.schemas.responses import ErrorResponse
from framepatch.services.frame_patch_service import FramePatchService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Patches"])


async def get_patch_service(request: Request) -> FramePatchService:
    """Get the patch service from app state (initialized at startup)."""
    if not hasattr(request.app.state, "patch_service"):
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Patch service not initialized",
        )
    return request.app.state.patch_service


@router.post("/patches", response_model=PatchLayer, status_code=status.HTTP_201_CREATED)
async def create_patch(
    body: PatchRequest,
    service: FramePatchService = Depends(get_patch_service),
    _: None = Depends(verify_api_key),
) -> PatchLayer:
    """
    Create (or replace by patch_id) a planned patch layer.

    No media is touched; apply it with POST /patches/apply.
    """
    return await service.create_patch_layer(body)


@router.post(
    "/patches/apply",
    response_model=PatchLayer,
    responses={400: {"model": ErrorResponse}, 422: {"model": ErrorResponse}, 502: {"model": ErrorResponse}},
)
async def apply_patch(
    body: PatchRequest,
    request: Request,
    service: FramePatchService = Depends(get_patch_service),
    _: None = Depends(verify_api_key),
) -> PatchLayer:
    """
    Extract the frame, composite the edited region and store the assets.

    Runs inline, bounded by the job semaphore shared with render jobs.
    """
    async with request.app.state.job_semaphore:
        return await service.apply_patch(body)


@router.get("/patches", response_model=list[PatchLayer])
async def list_patches(
    limit: int = 30,
    service: FramePatchService = Depends(get_patch_service),
) -> list[PatchLayer]:
    """List the most recent patch layers."""
    return await service.list_patches(max(0, limit))


@router.get("/patches/{patch_id}", response_model=PatchLayer, responses={404: {"model": ErrorResponse}})
async def get_patch(
    patch_id: str,
    service: FramePatchService = Depends(get_patch_service),
) -> PatchLayer:
    return await service.get_patch(patch_id)


@router.post("/motion-jobs", response_model=MotionJob, status_code=status.HTTP_201_CREATED)
async def create_motion_job(
    body: MotionJobRequest,
    service: FramePatchService = Depends(get_patch_service),
    _: None = Depends(verify_api_key),
) -> MotionJob:
    """Queue motion reconstruction stages around a patch anchor."""
    return await service.create_motion_job(body)
