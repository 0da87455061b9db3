"""
Persisted record schemas: patch layers, render plans and motion jobs.

These are the JSON documents written to the state ledger and returned by the
API. Records are plain data; all clamping happens in the normalizer before a
record is built.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, Field


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Region(BaseModel):
    """Normalized rectangle inside the unit square."""

    x: float = Field(..., ge=0.0, le=1.0, description="Left edge as a fraction of frame width")
    y: float = Field(..., ge=0.0, le=1.0, description="Top edge as a fraction of frame height")
    width: float = Field(..., ge=0.0, le=1.0, description="Width as a fraction of frame width")
    height: float = Field(..., ge=0.0, le=1.0, description="Height as a fraction of frame height")


class TimeRange(BaseModel):
    """Half-open time range [start, end) in seconds."""

    start: float
    end: float

    @property
    def duration(self) -> float:
        return self.end - self.start


SegmentMode = Literal["reencode", "copy"]


class PlanSegment(TimeRange):
    """One contiguous range of a render plan with its execution mode."""

    mode: SegmentMode


# ============================================================
# Patch layers
# ============================================================


class PatchStatus(str, Enum):
    """Lifecycle of a patch layer."""

    PLANNED = "planned"
    EXECUTED = "executed"


class FrameRef(BaseModel):
    """The frame a patch was drawn on."""

    timestamp_sec: float = Field(..., ge=0.0)
    frame_index: int = Field(..., ge=0)
    fps: float


class PatchAssets(BaseModel):
    """Paths of the images produced for a patch (empty until executed)."""

    original: str = ""
    edited: str = ""
    diff: str = ""


class Propagation(BaseModel):
    """Time radius around the patch timestamp during which the edit is active."""

    method: str = "optical_flow_reprojection"
    window_sec: float = Field(0.6, ge=0.1, le=3.0)


class PatchLayer(BaseModel):
    """One localized, timestamped edit to a frame region."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    video_id: str = "session-video"
    frame: FrameRef
    region: Region
    instruction: str = ""
    provider: str = "openai"
    model: str = "gpt-image-1"
    status: PatchStatus = PatchStatus.PLANNED
    assets: PatchAssets = Field(default_factory=PatchAssets)
    propagation: Propagation = Field(default_factory=Propagation)
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: Optional[str] = None
    notes: str = ""

    @property
    def is_executed(self) -> bool:
        return self.status == PatchStatus.EXECUTED


# ============================================================
# Render plans
# ============================================================


class PreserveFlags(BaseModel):
    """What the differential render keeps identical to the source timeline."""

    audio: bool = True
    captions: bool = True
    cuts: bool = True
    compression_consistency: bool = True


class CacheHints(BaseModel):
    keyframe_stride: int
    reencode_ratio: float


class RenderPlan(BaseModel):
    """
    Partition of [0, duration) into ranges to re-encode and ranges to copy.

    Segments are sorted by start, contiguous, and are exactly the union of
    changed_ranges (reencode) and unchanged_ranges (copy). A plan is never
    modified after creation; a new edit produces a new plan.
    """

    render_plan_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    duration_sec: float
    fps: float
    changed_ranges: list[TimeRange] = Field(default_factory=list)
    unchanged_ranges: list[TimeRange] = Field(default_factory=list)
    segments: list[PlanSegment] = Field(default_factory=list)
    render_profiles: list[str] = Field(default_factory=list)
    preserve: PreserveFlags = Field(default_factory=PreserveFlags)
    cache_hints: CacheHints
    created_at: str = Field(default_factory=utc_now_iso)


# ============================================================
# Motion reconstruction jobs
# ============================================================


class MotionStage(BaseModel):
    step: str
    engine: str
    status: str = "queued"


class MotionJob(BaseModel):
    """Queued motion-continuity work around a patch anchor (executed externally)."""

    motion_job_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    method: str
    anchor: float
    window: TimeRange
    stages: list[MotionStage] = Field(default_factory=list)
    patch_id: Optional[str] = None
    created_at: str = Field(default_factory=utc_now_iso)
