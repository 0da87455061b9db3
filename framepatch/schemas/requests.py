"""
Request schemas for patch and render operations.

Defaults and clamping are applied by the geometry normalizer in field
validators, so a request that validates is always safe to plan with.
"""

from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from framepatch.schemas.records import PatchLayer, Region, TimeRange
from framepatch.services.geometry import (
    clamp_fps,
    clamp_propagation_window,
    clamp_timestamp,
    normalize_duration,
    normalize_region,
)


class SourceReference(BaseModel):
    """Where the source media lives: a local path or a remote URL (http(s) or s3://)."""

    local_path: Optional[str] = Field(None, description="Path to a readable local media file")
    remote_url: Optional[str] = Field(None, description="http(s):// or s3:// URL of the media")

    @model_validator(mode="after")
    def validate_location(self) -> "SourceReference":
        """Ensure exactly one location is provided."""
        if not self.local_path and not self.remote_url:
            raise ValueError("Either local_path or remote_url must be provided")
        if self.local_path and self.remote_url:
            raise ValueError("Provide only one of local_path or remote_url")
        return self

    def describe(self) -> str:
        return self.local_path or self.remote_url or ""


class PatchRequest(BaseModel):
    """Request to create or apply a localized frame patch."""

    source: Optional[SourceReference] = Field(
        None, description="Source media. Required to apply a patch, optional to plan one."
    )
    patch_id: Optional[str] = Field(
        None, description="Existing patch id to re-apply in place; a new id is generated if omitted"
    )
    video_id: str = Field("session-video", description="Logical video identifier")
    timestamp_sec: float = Field(0.0, description="Frame timestamp in seconds")
    fps: Optional[float] = Field(None, description="Frame rate used for frame indexing (probed if omitted)")
    region: Region = Field(
        default_factory=lambda: normalize_region(None),
        description="Normalized region to edit",
    )
    instruction: str = Field("", description="Edit instruction, also the generation prompt")
    provider: Optional[str] = Field(None, description="Image provider identifier")
    model: Optional[str] = Field(None, description="Image model identifier")
    edited_image: Optional[str] = Field(
        None,
        description="Edited region image as base64, a data URL, or a local file path. "
        "Generated from the instruction when omitted.",
    )
    propagation_window_sec: float = Field(0.6, description="Seconds around the timestamp affected by the edit")
    motion_method: Optional[str] = Field(None, description="Motion continuity method identifier")
    notes: Optional[str] = None

    @field_validator("region", mode="before")
    @classmethod
    def normalize_region_input(cls, value: Any) -> Region:
        return normalize_region(value, min_size=0.02)

    @field_validator("timestamp_sec", mode="before")
    @classmethod
    def clamp_timestamp_input(cls, value: Any) -> float:
        return clamp_timestamp(value)

    @field_validator("fps", mode="before")
    @classmethod
    def clamp_fps_input(cls, value: Any) -> Optional[float]:
        return None if value is None else clamp_fps(value)

    @field_validator("propagation_window_sec", mode="before")
    @classmethod
    def clamp_window_input(cls, value: Any) -> float:
        return clamp_propagation_window(value)

    @field_validator("instruction", mode="before")
    @classmethod
    def strip_instruction(cls, value: Any) -> str:
        return str(value or "").strip()

    class Config:
        json_schema_extra = {
            "example": {
                "source": {"local_path": "/media/source.mp4"},
                "video_id": "campaign-01",
                "timestamp_sec": 12.5,
                "region": {"x": 0.6, "y": 0.1, "width": 0.3, "height": 0.25},
                "instruction": "Replace the logo on the mug with a red star",
                "propagation_window_sec": 0.6,
            }
        }


class MotionJobRequest(BaseModel):
    """Request to queue motion reconstruction around a patch anchor."""

    timestamp_sec: float = 0.0
    method: Optional[str] = None
    radius_sec: float = 0.6
    patch_id: Optional[str] = None

    @field_validator("timestamp_sec", mode="before")
    @classmethod
    def clamp_timestamp_input(cls, value: Any) -> float:
        return clamp_timestamp(value)

    @field_validator("radius_sec", mode="before")
    @classmethod
    def clamp_radius_input(cls, value: Any) -> float:
        return clamp_propagation_window(value)


class RenderPlanRequest(BaseModel):
    """Request to compute a render plan for a known duration, without media work."""

    duration_sec: float = Field(60.0, description="Video duration in seconds")
    fps: float = Field(30.0, description="Video frame rate")
    patch_ids: list[str] = Field(default_factory=list, description="Stored patch layers to plan around")
    patch_layers: list[PatchLayer] = Field(default_factory=list, description="Inline patch layers")
    changed_ranges: list[TimeRange] = Field(default_factory=list, description="Explicit time ranges to regenerate")
    changed_frames: list[int] = Field(default_factory=list, description="Frame indices to regenerate")
    output_profiles: list[str] = Field(default_factory=list, description="Target aspect identifiers")

    @field_validator("duration_sec", mode="before")
    @classmethod
    def normalize_duration_input(cls, value: Any) -> float:
        return normalize_duration(value)

    @field_validator("fps", mode="before")
    @classmethod
    def clamp_fps_input(cls, value: Any) -> float:
        return clamp_fps(value)


class RenderRequest(BaseModel):
    """Request to plan and execute a differential render against a source."""

    source: SourceReference
    patch_ids: list[str] = Field(default_factory=list)
    patch_layers: list[PatchLayer] = Field(default_factory=list)
    changed_ranges: list[TimeRange] = Field(default_factory=list)
    changed_frames: list[int] = Field(default_factory=list)
    output_profiles: list[str] = Field(default_factory=list)
    output_path: Optional[str] = Field(None, description="Final artifact path (defaults under the renders directory)")

    # Quality profile overrides
    preset: Optional[str] = Field(None, description="x264 encoder preset")
    crf: Optional[int] = Field(None, ge=0, le=51, description="Constant rate factor")
    audio_bitrate: Optional[str] = Field(None, description="Audio bitrate used when audio must be re-encoded")

    class Config:
        json_schema_extra = {
            "example": {
                "source": {"remote_url": "https://cdn.example.com/ads/ugc-01.mp4"},
                "patch_ids": ["6f1c2a9e-8f0a-4a7e-9d7a-1e2b3c4d5e6f"],
                "changed_ranges": [{"start": 30.0, "end": 31.5}],
            }
        }
