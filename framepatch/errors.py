"""
Error types for the patch and differential render pipeline.

All errors inherit from FramePatchError for easy catching. Each carries the
pipeline stage where it happened and, when available, the diagnostic output
of the external tool or provider that failed.
"""

from typing import Optional


class FramePatchError(Exception):
    """Base exception for all patch/render failures."""

    status_code: int = 500

    def __init__(
        self,
        message: str,
        stage: Optional[str] = None,
        detail: Optional[str] = None,
    ):
        self.message = message
        self.stage = stage
        self.detail = detail
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "stage": self.stage,
            "detail": self.detail,
        }


class InvalidInput(FramePatchError):
    """Caller error: bad region, timestamp, prompt or source reference."""

    status_code = 400


class NotFound(FramePatchError):
    """Raised when a stored record cannot be found."""

    status_code = 404


class SourceUnavailable(FramePatchError):
    """Raised when the source media cannot be resolved to a readable local file."""

    status_code = 422


class ProbeFailed(FramePatchError):
    """Raised when ffprobe cannot read the source media."""

    status_code = 422


class FrameExtractionFailed(FramePatchError):
    """Raised when a still frame cannot be extracted from the source."""

    status_code = 422


class PatchCompositionFailed(FramePatchError):
    """Raised when a patch cannot be composited onto its frame."""

    status_code = 422


class InvalidPatchInput(PatchCompositionFailed):
    """Undecodable image or a region that degenerates to zero area."""


class SegmentRenderFailed(FramePatchError):
    """Raised when a segment cannot be re-encoded. Fatal for the render job."""


class ConcatenationFailed(FramePatchError):
    """Raised when both the stream-copy and re-encode concatenation fail."""


class EmptyRenderPlan(FramePatchError):
    """Raised when a render plan produced no usable segments."""

    status_code = 422


# ============================================================
# Image provider errors
# ============================================================


class ProviderError(FramePatchError):
    """Image generation provider failure."""

    status_code = 502

    def __init__(
        self,
        message: str,
        stage: Optional[str] = "generating",
        detail: Optional[str] = None,
        upstream_status: Optional[int] = None,
    ):
        self.upstream_status = upstream_status
        super().__init__(message, stage=stage, detail=detail)


class ProviderAuthError(ProviderError):
    """Missing or rejected provider credentials."""

    status_code = 401


class ProviderRateLimited(ProviderError):
    """Provider refused the request because of rate limiting."""

    status_code = 429


class ProviderNoImage(ProviderError):
    """Provider answered successfully but returned no image."""


# ============================================================
# External tool errors (wrapped by callers into the taxonomy above)
# ============================================================


class ToolExecutionError(Exception):
    """Base exception for an external tool invocation (ffmpeg, ffprobe)."""

    def __init__(self, tool: str, message: str, stderr: str = ""):
        self.tool = tool
        self.stderr = stderr
        super().__init__(message)


class ToolNotFound(ToolExecutionError):
    """The external tool binary is not installed (configuration problem)."""


class ToolTimeout(ToolExecutionError):
    """The external tool exceeded its timeout budget and was killed."""


class ToolFailed(ToolExecutionError):
    """The external tool exited with a non-zero status (usually a data problem)."""

    def __init__(self, tool: str, message: str, stderr: str = "", returncode: int = 1):
        self.returncode = returncode
        super().__init__(tool, message, stderr)


class StreamCopyUnsafe(ToolExecutionError):
    """A stream copy would start between keyframes and duplicate footage."""


class CorruptOutput(ToolExecutionError):
    """The tool exited cleanly but its output does not decode without errors."""
