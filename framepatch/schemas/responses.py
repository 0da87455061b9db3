"""
Response schemas for the HTTP API.
"""

from typing import Any, Optional

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(..., description="Service status")
    version: str = Field(..., description="Service version")


class ReadinessResponse(BaseModel):
    """Readiness check response."""

    ready: bool = Field(..., description="Whether the service can accept render jobs")
    ffmpeg: str = Field(..., description="ffmpeg availability")
    ffprobe: str = Field(..., description="ffprobe availability")
    state_store: str = Field(..., description="State ledger status")
    image_provider: str = Field(..., description="Image generation provider status")


class ErrorResponse(BaseModel):
    """Body returned for any pipeline error."""

    error: str
    message: str
    stage: Optional[str] = None
    detail: Optional[str] = None


class RenderJobSubmitResponse(BaseModel):
    """Response after submitting a render job."""

    job_id: str
    status: str
    message: str


class RenderJobStatusResponse(BaseModel):
    """Response for a render job status query."""

    job_id: str
    status: str
    stage: Optional[str] = None
    progress_percent: float = 0
    current_step: str = ""
    segments_completed: int = 0
    total_segments: int = 0
    error: Optional[dict[str, Any]] = None
    output: Optional[dict[str, Any]] = None
