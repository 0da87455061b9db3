"""
Range Planner - computes which time ranges of a video must be re-encoded.

Pure functions, no I/O. Given a duration and the time windows touched by
patches and explicit edits, produces a gapless partition of [0, duration)
into changed (re-encode) and unchanged (copy) ranges.
"""

import logging
import math
from typing import Iterable, Optional, Sequence

from framepatch.config import DEFAULT_RENDER_PROFILES
from framepatch.schemas.records import (
    CacheHints,
    PatchLayer,
    PlanSegment,
    RenderPlan,
    TimeRange,
)
from framepatch.services.geometry import clamp, clamp_fps, clamp_propagation_window

logger = logging.getLogger(__name__)


DEFAULT_MERGE_PADDING = 0.04

# Two windows closer than this are considered touching
MERGE_TOLERANCE = 0.001

# Changed ranges at or below this length are planner noise
MIN_CHANGED_LENGTH = 0.01


def _round_ms(value: float) -> float:
    return round(value, 3)


def _is_finite(*values: float) -> bool:
    return all(isinstance(v, (int, float)) and math.isfinite(v) for v in values)


def patch_window(patch: PatchLayer, duration_sec: float) -> Optional[TimeRange]:
    """Time window a patch affects, clamped to [0, duration]."""
    timestamp = patch.frame.timestamp_sec
    if not _is_finite(timestamp):
        return None
    radius = clamp_propagation_window(patch.propagation.window_sec)
    return TimeRange(
        start=max(0.0, timestamp - radius),
        end=min(duration_sec, timestamp + radius),
    )


def frames_to_ranges(frames: Iterable[float], fps: float) -> list[TimeRange]:
    """
    Group frame indices into consecutive runs and convert them to seconds.

    Each run [first, last] becomes [first / fps, (last + 1) / fps].
    Negative and non-finite indices are ignored; duplicates collapse.
    """
    if fps <= 0:
        return []

    indices = sorted({
        int(math.floor(frame))
        for frame in frames
        if _is_finite(frame) and frame >= 0
    })
    if not indices:
        return []

    ranges = []
    run_start = indices[0]
    previous = indices[0]
    for index in indices[1:]:
        if index == previous + 1:
            previous = index
            continue
        ranges.append(TimeRange(start=run_start / fps, end=(previous + 1) / fps))
        run_start = index
        previous = index
    ranges.append(TimeRange(start=run_start / fps, end=(previous + 1) / fps))
    return ranges


def merge_ranges(ranges: Iterable[TimeRange], padding: float = 0.0) -> list[TimeRange]:
    """
    Pad, sort and merge overlapping or touching windows.

    Reversed bounds are accepted. The result is sorted, non-overlapping and
    rounded to millisecond precision. Touching windows always merge, trading
    a little extra re-encoding for fewer segments.
    """
    padded = []
    for item in ranges:
        if not _is_finite(item.start, item.end):
            continue
        start = min(item.start, item.end) - padding
        end = max(item.start, item.end) + padding
        padded.append([max(0.0, start), max(0.0, end)])

    if not padded:
        return []

    padded.sort(key=lambda pair: pair[0])

    merged = [padded[0]]
    for start, end in padded[1:]:
        last = merged[-1]
        if start <= last[1] + MERGE_TOLERANCE:
            last[1] = max(last[1], end)
        else:
            merged.append([start, end])

    return [TimeRange(start=_round_ms(start), end=_round_ms(end)) for start, end in merged]


def invert_ranges(duration_sec: float, changed_ranges: Sequence[TimeRange]) -> list[TimeRange]:
    """Gaps of [0, duration) not covered by the sorted changed ranges."""
    end = _round_ms(duration_sec)
    gaps = []
    cursor = 0.0
    for changed in changed_ranges:
        if changed.start > cursor:
            gaps.append(TimeRange(start=_round_ms(cursor), end=_round_ms(changed.start)))
        cursor = max(cursor, changed.end)
    if _round_ms(cursor) < end:
        gaps.append(TimeRange(start=_round_ms(cursor), end=end))
    return gaps


def compute_plan(
    duration_sec: float,
    fps: float,
    patch_layers: Iterable[PatchLayer] = (),
    explicit_ranges: Iterable[TimeRange] = (),
    changed_frames: Iterable[float] = (),
    padding: float = DEFAULT_MERGE_PADDING,
    render_profiles: Optional[Sequence[str]] = None,
) -> RenderPlan:
    """
    Compute a differential render plan.

    Args:
        duration_sec: Source duration. Non-finite or negative values plan an
            empty video.
        fps: Source frame rate (clamped to 12-120)
        patch_layers: Patches whose propagation windows must be regenerated
        explicit_ranges: Additional time ranges to regenerate
        changed_frames: Frame indices to regenerate
        padding: Seconds added to both sides of every window before merging
        render_profiles: Target aspect identifiers carried by the plan

    Returns:
        RenderPlan whose segments partition [0, duration) exactly
    """
    duration = duration_sec if _is_finite(duration_sec) and duration_sec > 0 else 0.0
    fps = clamp_fps(fps)

    windows: list[TimeRange] = []
    for patch in patch_layers:
        window = patch_window(patch, duration)
        if window is not None:
            windows.append(window)
    windows.extend(explicit_ranges)
    windows.extend(frames_to_ranges(changed_frames, fps))

    changed_ranges = []
    for merged in merge_ranges(windows, padding):
        start = _round_ms(clamp(merged.start, 0.0, duration))
        end = _round_ms(clamp(merged.end, 0.0, duration))
        if end - start > MIN_CHANGED_LENGTH:
            changed_ranges.append(TimeRange(start=start, end=end))

    unchanged_ranges = invert_ranges(duration, changed_ranges)

    segments = [PlanSegment(start=r.start, end=r.end, mode="reencode") for r in changed_ranges]
    segments.extend(PlanSegment(start=r.start, end=r.end, mode="copy") for r in unchanged_ranges)
    segments.sort(key=lambda segment: segment.start)

    changed_total = sum(r.end - r.start for r in changed_ranges)
    planned_duration = _round_ms(duration)
    reencode_ratio = round(min(1.0, changed_total / planned_duration), 4) if planned_duration > 0 else 0.0

    plan = RenderPlan(
        duration_sec=planned_duration,
        fps=fps,
        changed_ranges=changed_ranges,
        unchanged_ranges=unchanged_ranges,
        segments=segments,
        render_profiles=list(render_profiles) if render_profiles else list(DEFAULT_RENDER_PROFILES),
        cache_hints=CacheHints(
            keyframe_stride=int(round(fps * 2)),
            reencode_ratio=reencode_ratio,
        ),
    )

    logger.debug(
        f"Render plan {plan.render_plan_id}: duration={plan.duration_sec}s, "
        f"changed={len(changed_ranges)}, unchanged={len(unchanged_ranges)}, "
        f"reencode_ratio={reencode_ratio}"
    )
    return plan
