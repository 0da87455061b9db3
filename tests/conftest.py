"""
Pytest configuration and fixtures.
"""

import os
from typing import Callable, Optional

import cv2
import numpy as np
import pytest

from framepatch.config import get_settings
from framepatch.errors import ToolExecutionError
from framepatch.services.media_tools import SourceMetadata, ToolResult


@pytest.fixture(autouse=True)
def settings(tmp_path, monkeypatch):
    """Settings rooted in a per-test data directory, without credentials."""
    monkeypatch.setenv("DATA_ROOT", str(tmp_path / "data"))
    monkeypatch.delenv("FRAMEPATCH_API_KEY", raising=False)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    get_settings.cache_clear()
    yield get_settings()
    get_settings.cache_clear()


@pytest.fixture(scope="session")
def sample_frame():
    """A 64x48 BGR frame with a horizontal gradient."""
    gradient = np.tile(np.linspace(0, 255, 64, dtype=np.uint8), (48, 1))
    return cv2.merge([gradient, gradient, np.full_like(gradient, 80)])


@pytest.fixture(scope="session")
def sample_frame_png(sample_frame):
    ok, buffer = cv2.imencode(".png", sample_frame)
    assert ok
    return buffer.tobytes()


@pytest.fixture(scope="session")
def red_patch_png():
    """An opaque 20x10 pure red BGRA image."""
    patch = np.zeros((10, 20, 4), dtype=np.uint8)
    patch[:, :] = (0, 0, 255, 255)
    ok, buffer = cv2.imencode(".png", patch)
    assert ok
    return buffer.tobytes()


@pytest.fixture
def source_video(tmp_path):
    """A placeholder source file (the fake tool runner never decodes it)."""
    path = tmp_path / "source.mp4"
    path.write_bytes(b"\x00" * 256)
    return str(path)


class FakeToolRunner:
    """
    Stand-in for MediaToolRunner.

    Records every command, writes a non-empty file at the command's output
    path, and raises configured errors for commands matching a predicate.

    keyframes defaults to every frame of the source being a keyframe; set it
    to a sparse list to model a long-GOP source. decode_report is what the
    full-decode check of a concatenated file returns.
    """

    def __init__(self, metadata: SourceMetadata, frame_png: bytes = b""):
        self.ffmpeg_path = "ffmpeg"
        self.ffprobe_path = "ffprobe"
        self.metadata = metadata
        self.frame_png = frame_png
        self.keyframes: Optional[list[float]] = None
        self.decode_report = ""
        self.calls: list[list[str]] = []
        self.failures: list[tuple[Callable[[list[str]], bool], ToolExecutionError]] = []

    def fail_when(self, predicate: Callable[[list[str]], bool], error: ToolExecutionError) -> None:
        self.failures.append((predicate, error))

    def tools_available(self) -> dict[str, bool]:
        return {"ffmpeg": True, "ffprobe": True}

    async def run(self, cmd: list[str], timeout: float) -> ToolResult:
        self.calls.append(cmd)
        for predicate, error in self.failures:
            if predicate(cmd):
                raise error
        with open(cmd[-1], "wb") as f:
            f.write(b"\x00" * 128)
        return ToolResult(returncode=0, stdout=b"", stderr=b"")

    async def keyframe_times(self, video_path: str) -> list[float]:
        cmd = ["ffprobe", "-skip_frame", "nokey", video_path]
        self.calls.append(cmd)
        for predicate, error in self.failures:
            if predicate(cmd):
                raise error
        if self.keyframes is not None:
            return list(self.keyframes)
        frames = int(self.metadata.duration_sec * self.metadata.fps)
        return [i / self.metadata.fps for i in range(frames)]

    async def decode_errors(self, video_path: str) -> str:
        self.calls.append(["ffmpeg", "-v", "error", "-i", video_path, "-f", "null", "-"])
        return self.decode_report

    async def probe(self, video_path: str) -> SourceMetadata:
        self.calls.append(["ffprobe", video_path])
        return self.metadata

    async def extract_frame(self, video_path: str, timestamp_sec: float, output_path: str) -> str:
        self.calls.append(["ffmpeg", "-ss", f"{timestamp_sec:.3f}", "-i", video_path, output_path])
        os.makedirs(os.path.dirname(output_path), exist_ok=True)
        with open(output_path, "wb") as f:
            f.write(self.frame_png)
        return output_path


def _has_concat_filter(cmd: list[str]) -> bool:
    return any("concat=n=" in arg for arg in cmd)


def is_copy_segment(cmd: list[str]) -> bool:
    return "-c" in cmd and "concat" not in cmd


def is_reencode_segment(cmd: list[str]) -> bool:
    return "libx264" in cmd and not _has_concat_filter(cmd)


def is_stream_concat(cmd: list[str]) -> bool:
    return "concat" in cmd and "-c" in cmd


def is_reencode_concat(cmd: list[str]) -> bool:
    return "libx264" in cmd and _has_concat_filter(cmd)


def is_keyframe_probe(cmd: list[str]) -> bool:
    return "-skip_frame" in cmd


def is_decode_check(cmd: list[str]) -> bool:
    return cmd[-3:] == ["-f", "null", "-"]


@pytest.fixture
def source_metadata():
    return SourceMetadata(
        duration_sec=60.0,
        width=64,
        height=48,
        fps=30.0,
        codec="h264",
        pix_fmt="yuv420p",
        has_audio=True,
    )


@pytest.fixture
def fake_tools(source_metadata, sample_frame_png):
    return FakeToolRunner(source_metadata, sample_frame_png)
