"""
Region and timing normalization.

Converts user-supplied, resolution-independent regions and timestamps into
validated, clamped values. Nothing in here raises on bad numbers: invalid
input falls back to defaults. The only failure is a pixel rectangle that
degenerates to zero area.
"""

import math
from dataclasses import dataclass
from typing import Any, Optional

from framepatch.errors import InvalidPatchInput
from framepatch.schemas.records import Region

DEFAULT_REGION = {"x": 0.1, "y": 0.1, "width": 0.4, "height": 0.4}

DEFAULT_DURATION_SECONDS = 60.0
MAX_DURATION_SECONDS = 60 * 60 * 3

MIN_FPS = 12.0
MAX_FPS = 120.0
DEFAULT_FPS = 30.0

MIN_PROPAGATION_SECONDS = 0.1
MAX_PROPAGATION_SECONDS = 3.0

# Smallest patch rectangle, in pixels, along either axis
MIN_PATCH_PIXELS = 2


@dataclass
class PixelRect:
    """Absolute pixel rectangle inside a frame."""

    x: int
    y: int
    width: int
    height: int

    @property
    def area(self) -> int:
        return self.width * self.height


def clamp(value: float, minimum: float, maximum: float) -> float:
    return max(minimum, min(maximum, value))


def to_finite(value: Any, default: float) -> float:
    """Coerce value to a finite float, or return default."""
    if value is None or isinstance(value, bool):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(number):
        return default
    return number


def normalize_region(raw: Any, min_size: float = 0.01) -> Region:
    """
    Normalize a region into the unit square.

    Args:
        raw: Mapping (or Region) with x, y, width, height fractions. Anything
            missing or non-numeric takes the default region value.
        min_size: Floor for width and height before capping to the frame edge

    Returns:
        Region with x+width <= 1 and y+height <= 1
    """
    if isinstance(raw, Region):
        raw = raw.model_dump()
    source = raw if isinstance(raw, dict) else {}

    x = clamp(to_finite(source.get("x"), DEFAULT_REGION["x"]), 0.0, 1.0)
    y = clamp(to_finite(source.get("y"), DEFAULT_REGION["y"]), 0.0, 1.0)
    width = clamp(to_finite(source.get("width"), DEFAULT_REGION["width"]), min_size, 1.0)
    height = clamp(to_finite(source.get("height"), DEFAULT_REGION["height"]), min_size, 1.0)

    return Region(
        x=x,
        y=y,
        width=min(width, 1.0 - x),
        height=min(height, 1.0 - y),
    )


def normalize_duration(raw: Any) -> float:
    """Invalid or non-positive durations become 60s; clamp to [1s, 3h]."""
    value = to_finite(raw, -1.0)
    if value <= 0:
        return DEFAULT_DURATION_SECONDS
    return clamp(value, 1.0, MAX_DURATION_SECONDS)


def clamp_fps(raw: Any, default: float = DEFAULT_FPS) -> float:
    value = to_finite(raw, default)
    if value <= 0:
        value = default
    return clamp(value, MIN_FPS, MAX_FPS)


def clamp_timestamp(raw: Any, duration_sec: Optional[float] = None) -> float:
    upper = MAX_DURATION_SECONDS if duration_sec is None else max(0.0, duration_sec)
    return clamp(to_finite(raw, 0.0), 0.0, upper)


def last_frame_time(duration_sec: float, fps: float) -> float:
    """Start time of the last decodable frame; seeking to duration itself yields nothing."""
    return max(0.0, duration_sec - 1.0 / clamp_fps(fps))


def clamp_propagation_window(raw: Any, default: float = 0.6) -> float:
    value = to_finite(raw, default)
    if value <= 0:
        value = default
    return clamp(value, MIN_PROPAGATION_SECONDS, MAX_PROPAGATION_SECONDS)


def region_to_pixels(
    region: Region,
    frame_width: int,
    frame_height: int,
    min_pixels: int = MIN_PATCH_PIXELS,
) -> PixelRect:
    """
    Convert a normalized region into an absolute pixel rectangle.

    Each dimension is floored at min_pixels and then re-capped so the
    rectangle stays inside the frame.

    Raises:
        InvalidPatchInput: If the frame is empty or the rectangle has zero area
    """
    if frame_width <= 0 or frame_height <= 0:
        raise InvalidPatchInput(
            f"Invalid frame size {frame_width}x{frame_height}", stage="compositing"
        )

    x = min(int(round(region.x * frame_width)), frame_width)
    y = min(int(round(region.y * frame_height)), frame_height)
    width = max(min_pixels, int(round(region.width * frame_width)))
    height = max(min_pixels, int(round(region.height * frame_height)))
    width = min(width, frame_width - x)
    height = min(height, frame_height - y)

    if width <= 0 or height <= 0:
        raise InvalidPatchInput(
            f"Patch region degenerates to zero area at {x},{y} in {frame_width}x{frame_height}",
            stage="compositing",
        )

    return PixelRect(x=x, y=y, width=width, height=height)
