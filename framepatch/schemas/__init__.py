"""
Pydantic schemas for records and API responses.

Request schemas live in framepatch.schemas.requests; they depend on the
normalizer and are imported from there directly.
"""

from framepatch.schemas.records import (
    MotionJob,
    PatchLayer,
    PatchStatus,
    PlanSegment,
    Region,
    RenderPlan,
    TimeRange,
)
from framepatch.schemas.responses import (
    ErrorResponse,
    HealthResponse,
    ReadinessResponse,
    RenderJobStatusResponse,
    RenderJobSubmitResponse,
)

__all__ = [
    "Region",
    "TimeRange",
    "PlanSegment",
    "PatchStatus",
    "PatchLayer",
    "RenderPlan",
    "MotionJob",
    "HealthResponse",
    "ReadinessResponse",
    "ErrorResponse",
    "RenderJobSubmitResponse",
    "RenderJobStatusResponse",
]
