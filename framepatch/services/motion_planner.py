"""
Motion planner - queues motion-continuity work around a patch anchor.

The reconstruction itself runs in an external engine; this module only
builds the job record with its ordered stages.
"""

from typing import Optional

from framepatch.config import get_settings
from framepatch.schemas.records import MotionJob, MotionStage, TimeRange
from framepatch.services.geometry import clamp_propagation_window, clamp_timestamp


def _optical_flow_engine(method: str) -> str:
    return "kling_3.0" if method == "kling_3" else "raft"


def build_motion_plan(
    timestamp_sec: float = 0.0,
    method: Optional[str] = None,
    radius_sec: float = 0.6,
    patch_id: Optional[str] = None,
) -> MotionJob:
    """Build a queued motion job for the window [ts - radius, ts + radius]."""
    timestamp = clamp_timestamp(timestamp_sec)
    radius = clamp_propagation_window(radius_sec)
    method = (method or "").strip().lower() or get_settings().default_motion_method

    return MotionJob(
        method=method,
        anchor=round(timestamp, 3),
        window=TimeRange(
            start=round(max(0.0, timestamp - radius), 3),
            end=round(timestamp + radius, 3),
        ),
        stages=[
            MotionStage(step="depth_estimation", engine="depth-anything-v2"),
            MotionStage(step="pose_tracking", engine="kling_pose"),
            MotionStage(step="optical_flow", engine=_optical_flow_engine(method)),
            MotionStage(step="temporal_blend", engine="motion_consistency"),
        ],
        patch_id=patch_id,
    )
