"""
Patch Compositor - places an edited region image onto an extracted frame.

Uses OpenCV for decode/resize/encode and numpy for alpha blending. The edited
image is fit inside the patch rectangle preserving its aspect ratio, centered
on a transparent canvas of the rectangle's size, and alpha-composited over the
original frame. A contrast-boosted absolute difference is produced alongside.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import cv2
import numpy as np

from framepatch.config import get_settings
from framepatch.errors import InvalidPatchInput
from framepatch.schemas.records import Propagation, Region
from framepatch.services.geometry import (
    PixelRect,
    clamp_propagation_window,
    region_to_pixels,
)

logger = logging.getLogger(__name__)


# Contrast gain applied to the raw absolute difference
DIFF_GAIN = 4.0


@dataclass
class CompositeResult:
    """Encoded outputs of one composite operation."""

    edited_frame_png: bytes
    diff_png: bytes
    rect: PixelRect
    frame_width: int
    frame_height: int


def decode_image(data: bytes, label: str = "image") -> np.ndarray:
    """
    Decode encoded image bytes (PNG, JPEG, WebP) keeping any alpha channel.

    Raises:
        InvalidPatchInput: If the bytes are empty or not a decodable image
    """
    if not data:
        raise InvalidPatchInput(f"Empty {label}", stage="compositing")

    buffer = np.frombuffer(data, dtype=np.uint8)
    image = cv2.imdecode(buffer, cv2.IMREAD_UNCHANGED)
    if image is None or image.size == 0:
        raise InvalidPatchInput(f"Could not decode {label}", stage="compositing")
    return image


def to_bgra(image: np.ndarray) -> np.ndarray:
    """Convert grayscale, BGR or BGRA images to BGRA uint8."""
    if image.dtype != np.uint8:
        # 16-bit PNGs
        image = cv2.convertScaleAbs(image, alpha=255.0 / max(float(image.max()), 1.0))

    if image.ndim == 2:
        return cv2.cvtColor(image, cv2.COLOR_GRAY2BGRA)
    channels = image.shape[2]
    if channels == 4:
        return image
    if channels == 3:
        return cv2.cvtColor(image, cv2.COLOR_BGR2BGRA)
    if channels == 1:
        return cv2.cvtColor(image[:, :, 0], cv2.COLOR_GRAY2BGRA)
    raise InvalidPatchInput(f"Unsupported channel count: {channels}", stage="compositing")


def encode_png(image: np.ndarray) -> bytes:
    ok, buffer = cv2.imencode(".png", image)
    if not ok:
        raise InvalidPatchInput("PNG encoding failed", stage="compositing")
    return buffer.tobytes()


def fit_to_rect(patch: np.ndarray, width: int, height: int) -> np.ndarray:
    """
    Scale a BGRA patch to fit inside width x height, preserving aspect ratio,
    and center it on a transparent canvas of exactly that size.
    """
    patch_h, patch_w = patch.shape[:2]
    scale = min(width / patch_w, height / patch_h)
    new_w = max(1, min(width, int(round(patch_w * scale))))
    new_h = max(1, min(height, int(round(patch_h * scale))))

    interpolation = cv2.INTER_AREA if scale < 1.0 else cv2.INTER_LINEAR
    resized = cv2.resize(patch, (new_w, new_h), interpolation=interpolation)

    canvas = np.zeros((height, width, 4), dtype=np.uint8)
    offset_x = (width - new_w) // 2
    offset_y = (height - new_h) // 2
    canvas[offset_y:offset_y + new_h, offset_x:offset_x + new_w] = resized
    return canvas


def alpha_over(base: np.ndarray, overlay: np.ndarray, x: int, y: int) -> np.ndarray:
    """Alpha-composite a BGRA overlay onto a BGR base at (x, y). Returns a new image."""
    result = base.copy()
    h, w = overlay.shape[:2]

    region = result[y:y + h, x:x + w].astype(np.float32)
    colors = overlay[:, :, :3].astype(np.float32)
    alpha = overlay[:, :, 3:4].astype(np.float32) / 255.0

    blended = colors * alpha + region * (1.0 - alpha)
    result[y:y + h, x:x + w] = np.clip(blended + 0.5, 0, 255).astype(np.uint8)
    return result


def visual_diff(original: np.ndarray, edited: np.ndarray, gain: float = DIFF_GAIN) -> np.ndarray:
    """Absolute per-pixel difference with boosted contrast."""
    diff = cv2.absdiff(original, edited)
    return cv2.convertScaleAbs(diff, alpha=gain, beta=0)


def propagation_window(
    window_sec: Optional[float] = None,
    method: Optional[str] = None,
) -> Propagation:
    """Propagation descriptor for a patch; window clamped to [0.1, 3] seconds."""
    settings = get_settings()
    window = clamp_propagation_window(
        window_sec, default=settings.default_propagation_window_seconds
    )
    return Propagation(
        method=(method or "").strip() or settings.default_motion_method,
        window_sec=window,
    )


class PatchCompositor:
    """
    Composites edited region images onto frames.

    Stateless; safe to share across jobs.
    """

    def composite(
        self,
        original_bytes: bytes,
        edited_region_bytes: bytes,
        region: Region,
    ) -> CompositeResult:
        """
        Composite an edited region onto the original frame.

        Args:
            original_bytes: Encoded original frame
            edited_region_bytes: Encoded edited region image (any size)
            region: Normalized target rectangle

        Returns:
            CompositeResult with edited frame PNG, diff PNG and pixel rect.
            The edited frame has the original's dimensions.

        Raises:
            InvalidPatchInput: Undecodable image or zero-area rectangle
        """
        original = np.ascontiguousarray(to_bgra(decode_image(original_bytes, "original frame"))[:, :, :3])
        edited_patch = to_bgra(decode_image(edited_region_bytes, "edited region"))

        frame_h, frame_w = original.shape[:2]
        rect = region_to_pixels(region, frame_w, frame_h)

        canvas = fit_to_rect(edited_patch, rect.width, rect.height)
        edited_frame = alpha_over(original, canvas, rect.x, rect.y)
        diff = visual_diff(original, edited_frame)

        logger.debug(
            f"Composited {edited_patch.shape[1]}x{edited_patch.shape[0]} patch into "
            f"{rect.width}x{rect.height} at ({rect.x},{rect.y}) on {frame_w}x{frame_h} frame"
        )

        return CompositeResult(
            edited_frame_png=encode_png(edited_frame),
            diff_png=encode_png(diff),
            rect=rect,
            frame_width=frame_w,
            frame_height=frame_h,
        )
