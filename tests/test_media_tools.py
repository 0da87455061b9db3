"""
Tests for the ffmpeg/ffprobe runner.
"""

import asyncio
import json
import subprocess
import threading

import pytest

from framepatch.errors import (
    FrameExtractionFailed,
    ProbeFailed,
    ToolFailed,
    ToolNotFound,
    ToolTimeout,
)
from framepatch.services.media_tools import MediaToolRunner, _parse_frame_rate

POPEN = "framepatch.services.media_tools.subprocess.Popen"


class FakeProcess:
    """Popen stand-in. expire makes the first communicate() time out."""

    def __init__(self, returncode=0, stdout=b"", stderr=b"", expire=False, on_communicate=None):
        self.args = ["ffmpeg"]
        self.pid = 4242
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.expire = expire
        self.on_communicate = on_communicate
        self.killed = threading.Event()
        self.timeouts = []

    def communicate(self, timeout=None):
        self.timeouts.append(timeout)
        if self.expire and not self.killed.is_set():
            raise subprocess.TimeoutExpired(self.args, timeout)
        if self.on_communicate:
            self.on_communicate(self)
        return self.stdout, self.stderr

    def kill(self):
        self.killed.set()
        self.returncode = -9


class BlockingProcess(FakeProcess):
    """A process that runs until it is killed."""

    def __init__(self):
        super().__init__()
        self.started = threading.Event()

    def communicate(self, timeout=None):
        self.started.set()
        self.killed.wait(timeout=5)
        return b"", b""


def probe_output(**overrides):
    info = {
        "streams": [
            {
                "codec_type": "video",
                "codec_name": "h264",
                "pix_fmt": "yuv420p",
                "width": 1920,
                "height": 1080,
                "avg_frame_rate": "30000/1001",
            },
            {"codec_type": "audio", "codec_name": "aac"},
        ],
        "format": {"duration": "12.5"},
    }
    info.update(overrides)
    return json.dumps(info).encode()


class TestRun:
    """Tests for MediaToolRunner.run error mapping."""

    def test_success(self, mocker):
        popen = mocker.patch(POPEN, return_value=FakeProcess(stdout=b"ok"))
        result = asyncio.run(MediaToolRunner().run(["ffmpeg", "-version"], timeout=5))
        assert result.stdout == b"ok"
        assert popen.call_args.kwargs["stdout"] == subprocess.PIPE

    def test_missing_binary(self, mocker):
        mocker.patch(POPEN, side_effect=FileNotFoundError())
        with pytest.raises(ToolNotFound) as exc_info:
            asyncio.run(MediaToolRunner().run(["ffmpeg"], timeout=5))
        assert exc_info.value.tool == "ffmpeg"

    def test_timeout_kills_process(self, mocker):
        process = FakeProcess(stderr=b"partial", expire=True)
        mocker.patch(POPEN, return_value=process)
        with pytest.raises(ToolTimeout) as exc_info:
            asyncio.run(MediaToolRunner().run(["ffmpeg"], timeout=5))
        assert process.killed.is_set()
        assert exc_info.value.stderr == "partial"

    def test_non_zero_exit_keeps_stderr_tail(self, mocker):
        stderr = b"x" * 5000 + b"Invalid data found"
        mocker.patch(POPEN, return_value=FakeProcess(returncode=1, stderr=stderr))
        with pytest.raises(ToolFailed) as exc_info:
            asyncio.run(MediaToolRunner().run(["ffmpeg"], timeout=5))
        assert exc_info.value.returncode == 1
        assert len(exc_info.value.stderr) == 1000
        assert exc_info.value.stderr.endswith("Invalid data found")

    def test_timeout_is_passed_to_communicate(self, mocker):
        process = FakeProcess()
        mocker.patch(POPEN, return_value=process)
        asyncio.run(MediaToolRunner().run(["ffprobe"], timeout=7.5))
        assert process.timeouts == [7.5]

    def test_cancel_kills_process(self, mocker):
        process = BlockingProcess()
        mocker.patch(POPEN, return_value=process)

        async def cancel_while_running():
            task = asyncio.create_task(MediaToolRunner().run(["ffmpeg"], timeout=60))
            while not process.started.is_set():
                await asyncio.sleep(0.01)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(cancel_while_running())
        assert process.killed.is_set()


class TestKeyframeTimes:
    """Tests for MediaToolRunner.keyframe_times."""

    def test_parses_sorted_times(self, mocker):
        output = b"4.000000\n0.000000\nN/A\n2.002000,\n\n"
        popen = mocker.patch(POPEN, return_value=FakeProcess(stdout=output))

        times = asyncio.run(MediaToolRunner().keyframe_times("in.mp4"))

        assert times == [0.0, 2.002, 4.0]
        cmd = popen.call_args.args[0]
        assert cmd[cmd.index("-skip_frame") + 1] == "nokey"
        assert cmd[-1] == "in.mp4"

    def test_failure_propagates(self, mocker):
        mocker.patch(POPEN, return_value=FakeProcess(returncode=1, stderr=b"Invalid data"))
        with pytest.raises(ToolFailed):
            asyncio.run(MediaToolRunner().keyframe_times("broken.mp4"))


class TestDecodeErrors:
    """Tests for MediaToolRunner.decode_errors."""

    def test_clean_decode(self, mocker):
        popen = mocker.patch(POPEN, return_value=FakeProcess())
        assert asyncio.run(MediaToolRunner().decode_errors("out.mp4")) == ""
        assert popen.call_args.args[0][-3:] == ["-f", "null", "-"]

    def test_reports_decoder_errors(self, mocker):
        stderr = b"[h264 @ 0x55] Invalid NAL unit size\n[h264 @ 0x55] Error splitting the input\n"
        mocker.patch(POPEN, return_value=FakeProcess(stderr=stderr))
        errors = asyncio.run(MediaToolRunner().decode_errors("out.mp4"))
        assert errors.startswith("[h264 @ 0x55] Invalid NAL unit size")
        assert errors.endswith("Error splitting the input")


class TestProbe:
    """Tests for MediaToolRunner.probe."""

    def test_parses_metadata(self, mocker):
        mocker.patch(POPEN, return_value=FakeProcess(stdout=probe_output()))
        metadata = asyncio.run(MediaToolRunner().probe("/media/in.mp4"))

        assert metadata.duration_sec == 12.5
        assert (metadata.width, metadata.height) == (1920, 1080)
        assert metadata.fps == pytest.approx(29.97, abs=0.01)
        assert metadata.codec == "h264"
        assert metadata.pix_fmt == "yuv420p"
        assert metadata.has_audio is True

    def test_fps_clamped(self, mocker):
        output = probe_output(streams=[
            {"codec_type": "video", "width": 10, "height": 10, "avg_frame_rate": "1000/1"},
        ])
        mocker.patch(POPEN, return_value=FakeProcess(stdout=output))
        metadata = asyncio.run(MediaToolRunner().probe("in.mp4"))
        assert metadata.fps == 120
        assert metadata.pix_fmt == "unknown"

    def test_no_video_stream(self, mocker):
        output = probe_output(streams=[{"codec_type": "audio"}])
        mocker.patch(POPEN, return_value=FakeProcess(stdout=output))
        with pytest.raises(ProbeFailed):
            asyncio.run(MediaToolRunner().probe("in.mp3"))

    def test_tool_failure_wrapped(self, mocker):
        mocker.patch(POPEN, return_value=FakeProcess(returncode=1, stderr=b"moov atom not found"))
        with pytest.raises(ProbeFailed) as exc_info:
            asyncio.run(MediaToolRunner().probe("broken.mp4"))
        assert exc_info.value.stage == "probing"
        assert "moov atom not found" in exc_info.value.detail


class TestExtractFrame:
    """Tests for MediaToolRunner.extract_frame."""

    def test_writes_frame(self, mocker, tmp_path):
        output = tmp_path / "frame.png"
        process = FakeProcess(on_communicate=lambda p: output.write_bytes(b"png"))
        popen = mocker.patch(POPEN, return_value=process)

        asyncio.run(MediaToolRunner().extract_frame("in.mp4", 3.25, str(output)))

        cmd = popen.call_args.args[0]
        assert cmd[cmd.index("-ss") + 1] == "3.250"
        assert cmd[-1] == str(output)

    def test_no_output_raises(self, mocker, tmp_path):
        mocker.patch(POPEN, return_value=FakeProcess())
        with pytest.raises(FrameExtractionFailed) as exc_info:
            asyncio.run(MediaToolRunner().extract_frame("in.mp4", 1.0, str(tmp_path / "f.png")))
        assert exc_info.value.stage == "extracting"


@pytest.mark.parametrize("raw,expected", [
    ("30/1", 30.0),
    ("24000/1001", pytest.approx(23.976, abs=0.001)),
    ("25", 25.0),
    ("0/0", None),
    ("", None),
    ("abc", None),
])
def test_parse_frame_rate(raw, expected):
    assert _parse_frame_rate(raw) == expected
