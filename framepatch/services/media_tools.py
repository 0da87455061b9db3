"""
Media tools - FFmpeg/FFprobe invocations with per-call timeouts.

Every external process runs through MediaToolRunner.run, which waits on the
child in the default executor and kills it on timeout or when the awaiting
task is cancelled. These calls are the only points where a render or patch
job yields besides network I/O.
"""

import asyncio
import json
import logging
import os
import shutil
import subprocess
from dataclasses import dataclass
from typing import Optional

from framepatch.config import get_settings
from framepatch.errors import (
    FrameExtractionFailed,
    ProbeFailed,
    ToolExecutionError,
    ToolFailed,
    ToolNotFound,
    ToolTimeout,
)
from framepatch.services.geometry import clamp_fps

logger = logging.getLogger(__name__)


# Bytes of stderr kept on failure for diagnostics
STDERR_TAIL = 1000


@dataclass
class ToolResult:
    """Output of a successful tool invocation."""

    returncode: int
    stdout: bytes
    stderr: bytes


@dataclass
class SourceMetadata:
    """Probed properties of a source media file."""

    duration_sec: float
    width: int
    height: int
    fps: float
    codec: str = "unknown"
    pix_fmt: str = "unknown"
    has_audio: bool = False


def _parse_frame_rate(raw: Optional[str]) -> Optional[float]:
    """Parse ffprobe's r_frame_rate ("30000/1001" -> 29.97)."""
    if not raw:
        return None
    try:
        if "/" in raw:
            num, den = raw.split("/")
            return float(num) / float(den) if float(den) != 0 else None
        return float(raw)
    except ValueError:
        return None


def _communicate(process: subprocess.Popen, timeout: float) -> tuple[bytes, bytes]:
    """Wait for the process; on timeout kill it and re-raise with its stderr."""
    try:
        return process.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        process.kill()
        _, stderr = process.communicate()
        raise subprocess.TimeoutExpired(process.args, timeout, stderr=stderr)


class MediaToolRunner:
    """
    Runs ffmpeg/ffprobe as cancellable, time-bounded tasks.

    Features:
    - Per-call timeout budgets (the child is killed on expiry)
    - Distinguishes a missing binary, a timeout, and a failing exit code
    - Keeps the tail of stderr for error reporting
    """

    def __init__(self, ffmpeg_path: str = "ffmpeg", ffprobe_path: str = "ffprobe"):
        self.settings = get_settings()
        self.ffmpeg_path = ffmpeg_path
        self.ffprobe_path = ffprobe_path

    def tools_available(self) -> dict[str, bool]:
        return {
            "ffmpeg": shutil.which(self.ffmpeg_path) is not None,
            "ffprobe": shutil.which(self.ffprobe_path) is not None,
        }

    async def run(self, cmd: list[str], timeout: float) -> ToolResult:
        """
        Run a command asynchronously with a timeout.

        Raises:
            ToolNotFound: The binary is not installed
            ToolTimeout: The command exceeded its timeout
            ToolFailed: The command exited with a non-zero status
        """
        tool = os.path.basename(cmd[0])
        logger.debug(f"Running: {' '.join(cmd[:12])}...")

        try:
            process = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
        except FileNotFoundError:
            raise ToolNotFound(tool, f"{tool} not found in PATH")

        # Use run_in_executor for Windows compatibility
        loop = asyncio.get_event_loop()
        try:
            stdout, stderr = await loop.run_in_executor(
                None,
                lambda: _communicate(process, timeout),
            )
        except asyncio.CancelledError:
            # The executor thread cannot be cancelled; stop the child instead
            process.kill()
            logger.debug(f"Killed cancelled {tool} process {process.pid}")
            raise
        except subprocess.TimeoutExpired as e:
            tail = e.stderr.decode(errors="replace")[-STDERR_TAIL:] if e.stderr else ""
            raise ToolTimeout(tool, f"{tool} timed out after {timeout:.0f}s", tail)

        if process.returncode != 0:
            tail = stderr.decode(errors="replace")[-STDERR_TAIL:] if stderr else ""
            raise ToolFailed(
                tool,
                f"{tool} failed with exit code {process.returncode}",
                tail or "Unknown error",
                returncode=process.returncode,
            )

        return ToolResult(returncode=process.returncode, stdout=stdout, stderr=stderr)

    async def keyframe_times(self, video_path: str) -> list[float]:
        """
        Presentation times of the video keyframes, sorted.

        Only keyframes are decoded (-skip_frame nokey), so this is much
        cheaper than a full decode.

        Raises:
            ToolExecutionError: ffprobe is missing, times out or fails
        """
        cmd = [
            self.ffprobe_path,
            "-v", "error",
            "-select_streams", "v:0",
            "-skip_frame", "nokey",
            "-show_entries", "frame=pts_time",
            "-of", "csv=p=0",
            video_path,
        ]
        result = await self.run(cmd, timeout=self.settings.keyframe_probe_timeout_seconds)

        times = []
        for line in result.stdout.decode(errors="replace").splitlines():
            value = line.strip().strip(",")
            try:
                times.append(float(value))
            except ValueError:
                continue
        times.sort()
        logger.debug(f"Found {len(times)} keyframes in {os.path.basename(video_path)}")
        return times

    async def decode_errors(self, video_path: str) -> str:
        """
        Decode the whole file and return whatever the decoder reported as errors.

        An empty string means the file decoded cleanly.
        """
        cmd = [
            self.ffmpeg_path,
            "-hide_banner",
            "-v", "error",
            "-i", video_path,
            "-f", "null",
            "-",
        ]
        result = await self.run(cmd, timeout=self.settings.concat_timeout_seconds)
        return result.stderr.decode(errors="replace").strip()[-STDERR_TAIL:]

    async def probe(self, video_path: str) -> SourceMetadata:
        """
        Read width, height, fps and duration of a media file.

        Raises:
            ProbeFailed: ffprobe is missing, times out, fails, or returns no video stream
        """
        cmd = [
            self.ffprobe_path,
            "-v", "quiet",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            video_path,
        ]

        try:
            result = await self.run(cmd, timeout=self.settings.probe_timeout_seconds)
        except ToolExecutionError as e:
            raise ProbeFailed(f"Probe failed for {video_path}: {e}", stage="probing", detail=e.stderr)

        try:
            info = json.loads(result.stdout.decode())
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ProbeFailed(f"Unreadable ffprobe output: {e}", stage="probing")

        streams = info.get("streams", [])
        video_stream = next((s for s in streams if s.get("codec_type") == "video"), None)
        if video_stream is None:
            raise ProbeFailed(f"No video stream in {video_path}", stage="probing")

        format_info = info.get("format", {})
        try:
            duration = float(format_info.get("duration") or video_stream.get("duration") or 0)
            width = int(video_stream.get("width", 0))
            height = int(video_stream.get("height", 0))
        except (TypeError, ValueError) as e:
            raise ProbeFailed(f"Invalid ffprobe values: {e}", stage="probing")

        if width <= 0 or height <= 0:
            raise ProbeFailed(f"Invalid video dimensions {width}x{height}", stage="probing")

        fps = _parse_frame_rate(video_stream.get("avg_frame_rate")) or _parse_frame_rate(
            video_stream.get("r_frame_rate")
        )

        metadata = SourceMetadata(
            duration_sec=max(0.0, duration),
            width=width,
            height=height,
            fps=clamp_fps(fps),
            codec=video_stream.get("codec_name", "unknown"),
            pix_fmt=video_stream.get("pix_fmt", "unknown"),
            has_audio=any(s.get("codec_type") == "audio" for s in streams),
        )
        logger.info(
            f"Probed {os.path.basename(video_path)}: {metadata.width}x{metadata.height}, "
            f"{metadata.duration_sec:.3f}s, {metadata.fps:.2f}fps, codec={metadata.codec}"
        )
        return metadata

    async def extract_frame(self, video_path: str, timestamp_sec: float, output_path: str) -> str:
        """
        Extract a single still frame as PNG.

        Raises:
            FrameExtractionFailed: ffmpeg fails or produces no image
        """
        os.makedirs(os.path.dirname(output_path) or ".", exist_ok=True)
        cmd = [
            self.ffmpeg_path,
            "-hide_banner",
            "-y",
            "-ss", f"{timestamp_sec:.3f}",
            "-i", video_path,
            "-frames:v", "1",
            output_path,
        ]

        try:
            await self.run(cmd, timeout=self.settings.frame_extract_timeout_seconds)
        except ToolExecutionError as e:
            raise FrameExtractionFailed(
                f"Frame extraction at {timestamp_sec:.3f}s failed: {e}",
                stage="extracting",
                detail=e.stderr,
            )

        if not os.path.isfile(output_path) or os.path.getsize(output_path) == 0:
            raise FrameExtractionFailed(
                f"No frame produced at {timestamp_sec:.3f}s", stage="extracting"
            )
        return output_path
