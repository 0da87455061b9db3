"""
Tests for the render executor, mostly with ffmpeg replaced by a fake tool runner.
"""

import asyncio
import json
import logging
import os
import shutil
import subprocess

import pytest

from conftest import (
    is_copy_segment,
    is_decode_check,
    is_keyframe_probe,
    is_reencode_concat,
    is_reencode_segment,
    is_stream_concat,
)
from framepatch.errors import (
    ConcatenationFailed,
    EmptyRenderPlan,
    SegmentRenderFailed,
    ToolFailed,
    ToolTimeout,
)
from framepatch.schemas.records import (
    CacheHints,
    FrameRef,
    PatchAssets,
    PatchLayer,
    PatchStatus,
    PlanSegment,
    Propagation,
    Region,
    RenderPlan,
    TimeRange,
)
from framepatch.services.media_tools import MediaToolRunner
from framepatch.services.range_planner import compute_plan
from framepatch.services.render_executor import QualityProfile, RenderExecutor, RenderStage


def executed_patch(timestamp_sec: float, edited_path: str, status=PatchStatus.EXECUTED) -> PatchLayer:
    return PatchLayer(
        frame=FrameRef(timestamp_sec=timestamp_sec, frame_index=int(timestamp_sec * 30), fps=30),
        region=Region(x=0.1, y=0.1, width=0.4, height=0.4),
        status=status,
        assets=PatchAssets(edited=edited_path),
        propagation=Propagation(window_sec=0.6),
    )


def ffmpeg_failure(stderr="Conversion failed!"):
    return ToolFailed("ffmpeg", "ffmpeg failed with exit code 1", stderr, returncode=1)


def segment_start(cmd):
    return cmd[cmd.index("-ss") + 1]


@pytest.fixture
def edited_asset(tmp_path):
    path = tmp_path / "patches" / "p1" / "edited.png"
    path.parent.mkdir(parents=True)
    path.write_bytes(b"png")
    return str(path)


@pytest.fixture
def render(fake_tools, source_video, source_metadata, tmp_path):
    """Run RenderExecutor.render with the fake tools and return the result."""
    executor = RenderExecutor(tools=fake_tools)
    output_path = str(tmp_path / "renders" / "final.mp4")
    work_dir = str(tmp_path / "work")

    def _render(plan, patches=(), **kwargs):
        return asyncio.run(executor.render(
            plan=plan,
            source_path=source_video,
            metadata=source_metadata,
            patch_layers=list(patches),
            output_path=output_path,
            work_dir=work_dir,
            **kwargs,
        ))

    _render.output_path = output_path
    _render.work_dir = work_dir
    _render.executor = executor
    return _render


class TestRenderExecutor:
    """Tests for RenderExecutor.render."""

    def test_no_changes_copies_whole_video(self, render, fake_tools):
        plan = compute_plan(duration_sec=60, fps=30)

        result = render(plan)

        assert [s.mode for s in result.segments] == ["copy"]
        assert result.concat_mode == "stream_concat"
        assert os.path.getsize(result.output_path) > 0
        assert result.file_size_bytes == os.path.getsize(render.output_path)
        assert not any(is_reencode_segment(cmd) for cmd in fake_tools.calls)

    def test_result_is_json_serializable(self, render):
        result = render(compute_plan(duration_sec=60, fps=30))
        payload = json.loads(json.dumps(result.to_dict()))
        assert payload["plan"]["duration_sec"] == 60
        assert payload["segments"][0]["planned_mode"] == "copy"
        assert payload["source"]["width"] == 64

    def test_mixed_plan_reencodes_changed_range(self, render, fake_tools, edited_asset):
        patch = executed_patch(10, edited_asset)
        plan = compute_plan(duration_sec=60, fps=30, patch_layers=[patch])

        result = render(plan, [patch])

        assert [(s.planned_mode, s.mode) for s in result.segments] == [
            ("copy", "copy"), ("reencode", "reencode"), ("copy", "copy"),
        ]
        assert result.segments[1].patch_count == 1
        assert [s.index for s in result.segments] == [0, 1, 2]

    def test_copy_failure_falls_back_to_reencode(self, render, fake_tools, caplog):
        fake_tools.fail_when(
            lambda cmd: is_copy_segment(cmd) and segment_start(cmd) == "0.000",
            ffmpeg_failure(),
        )
        plan = compute_plan(duration_sec=60, fps=30, patch_layers=[executed_patch(10, "")])

        with caplog.at_level(logging.WARNING, logger="framepatch.services.render_executor"):
            result = render(plan)

        first, _, last = result.segments
        assert first.planned_mode == "copy"
        assert first.mode == "reencode"
        assert last.mode == "copy"
        assert "falling back to reencode" in caplog.text

    def test_reencode_failure_fails_job(self, render, fake_tools):
        fake_tools.fail_when(is_reencode_segment, ffmpeg_failure("Error while opening encoder"))
        plan = compute_plan(duration_sec=60, fps=30, patch_layers=[executed_patch(10, "")])

        with pytest.raises(SegmentRenderFailed) as exc_info:
            render(plan)

        assert exc_info.value.stage == RenderStage.ENCODING.value
        assert "opening encoder" in exc_info.value.detail
        assert not os.path.exists(render.output_path)
        assert not any(is_stream_concat(cmd) for cmd in fake_tools.calls)

    def test_empty_plan_rejected(self, render, fake_tools):
        plan = compute_plan(duration_sec=0, fps=30)

        with pytest.raises(EmptyRenderPlan):
            render(plan)
        assert fake_tools.calls == []

    def test_short_segments_skipped(self, render):
        plan = RenderPlan(
            duration_sec=5.02,
            fps=30,
            segments=[
                PlanSegment(start=0.0, end=0.02, mode="copy"),
                PlanSegment(start=0.02, end=5.02, mode="reencode"),
            ],
            cache_hints=CacheHints(keyframe_stride=60, reencode_ratio=1.0),
        )

        result = render(plan)

        assert len(result.segments) == 1
        assert result.segments[0].index == 1

    def test_only_short_segments_is_empty(self, render):
        plan = RenderPlan(
            duration_sec=0.03,
            fps=30,
            segments=[PlanSegment(start=0.0, end=0.03, mode="copy")],
            cache_hints=CacheHints(keyframe_stride=60, reencode_ratio=0.0),
        )
        with pytest.raises(EmptyRenderPlan):
            render(plan)

    def test_stream_concat_failure_falls_back(self, render, fake_tools):
        fake_tools.fail_when(is_stream_concat, ffmpeg_failure("Non-monotonous DTS"))

        result = render(compute_plan(duration_sec=60, fps=30, patch_layers=[executed_patch(10, "")]))

        assert result.concat_mode == "reencode_concat"
        assert os.path.exists(render.output_path)

    def test_both_concat_strategies_fail(self, render, fake_tools):
        fake_tools.fail_when(is_stream_concat, ffmpeg_failure())
        fake_tools.fail_when(is_reencode_concat, ffmpeg_failure("disk full"))

        with pytest.raises(ConcatenationFailed) as exc_info:
            render(compute_plan(duration_sec=60, fps=30))

        assert exc_info.value.stage == "concatenating"
        assert exc_info.value.detail == "disk full"
        assert not os.path.exists(render.output_path)

    def test_concat_list_in_start_order(self, render):
        plan = compute_plan(
            duration_sec=60, fps=30,
            patch_layers=[executed_patch(10, ""), executed_patch(40, "")],
        )

        render(plan)

        with open(os.path.join(render.work_dir, "concat.txt")) as f:
            lines = f.read().splitlines()
        assert [line.split("seg_")[1][:4] for line in lines] == ["0000", "0001", "0002", "0003", "0004"]

    def test_overlay_only_for_executed_patches_with_assets(self, render, fake_tools, edited_asset):
        patches = [
            executed_patch(10, edited_asset),
            executed_patch(10.2, edited_asset, status=PatchStatus.PLANNED),
            executed_patch(10.3, "/nonexistent/edited.png"),
        ]
        plan = compute_plan(duration_sec=60, fps=30, patch_layers=patches)

        result = render(plan, patches)

        reencode_cmds = [cmd for cmd in fake_tools.calls if is_reencode_segment(cmd)]
        assert len(reencode_cmds) == 1
        cmd = reencode_cmds[0]
        assert cmd.count(edited_asset) == 1
        filter_graph = cmd[cmd.index("-filter_complex") + 1]
        assert "scale=64:48" in filter_graph
        assert "enable='between(t,0.640000,0.673333)'" in filter_graph
        assert filter_graph.endswith("fps=30,format=yuv420p[vout]")
        assert result.segments[1].patch_count == 1

    def test_reencode_uses_quality_profile(self, render, fake_tools):
        plan = compute_plan(duration_sec=60, fps=25, patch_layers=[executed_patch(10, "")])

        render(plan, quality=QualityProfile(preset="slow", crf=18, audio_bitrate="128k"))

        cmd = next(cmd for cmd in fake_tools.calls if is_reencode_segment(cmd))
        assert cmd[cmd.index("-preset") + 1] == "slow"
        assert cmd[cmd.index("-crf") + 1] == "18"
        assert cmd[cmd.index("-g") + 1] == "50"
        assert cmd[cmd.index("-c:a") + 1] == "copy"

    def test_progress_reported(self, render):
        updates = []
        render.executor.progress_callback = updates.append

        render(compute_plan(duration_sec=60, fps=30), job_id="job-1")

        stages = [u.stage for u in updates]
        assert stages[0] == RenderStage.EXTRACTING
        assert RenderStage.CONCATENATING in stages
        assert stages[-1] == RenderStage.DONE
        assert all(u.job_id == "job-1" for u in updates)

    def test_copy_between_keyframes_falls_back_to_reencode(self, render, fake_tools, caplog):
        fake_tools.keyframes = [float(t) for t in range(0, 60, 2)]
        plan = compute_plan(duration_sec=60, fps=30, patch_layers=[executed_patch(10, "")])

        with caplog.at_level(logging.WARNING, logger="framepatch.services.render_executor"):
            result = render(plan)

        first, _, last = result.segments
        assert last.start == pytest.approx(10.64)
        assert first.mode == "copy"
        assert (last.planned_mode, last.mode) == ("copy", "reencode")
        assert "not on a keyframe" in caplog.text
        copy_starts = [segment_start(cmd) for cmd in fake_tools.calls if is_copy_segment(cmd)]
        assert copy_starts == ["0.000"]

    def test_copy_on_keyframe_stays_copy(self, render, fake_tools):
        fake_tools.keyframes = [0.0, 4.0, 10.64, 20.0]
        plan = compute_plan(duration_sec=60, fps=30, patch_layers=[executed_patch(10, "")])

        result = render(plan)

        assert [s.mode for s in result.segments] == ["copy", "reencode", "copy"]
        assert sum(1 for cmd in fake_tools.calls if is_keyframe_probe(cmd)) == 1

    def test_keyframe_probe_failure_disables_copy_after_start(self, render, fake_tools):
        fake_tools.fail_when(is_keyframe_probe, ToolTimeout("ffprobe", "ffprobe timed out after 120s"))
        plan = compute_plan(duration_sec=60, fps=30, patch_layers=[executed_patch(10, "")])

        result = render(plan)

        assert [s.mode for s in result.segments] == ["copy", "reencode", "reencode"]

    def test_all_reencode_plan_skips_keyframe_probe(self, render, fake_tools):
        plan = compute_plan(duration_sec=5, fps=30, explicit_ranges=[TimeRange(start=0, end=5)])

        render(plan)

        assert not any(is_keyframe_probe(cmd) for cmd in fake_tools.calls)

    def test_mixed_plan_with_other_codec_uses_reencode_concat(
        self, render, fake_tools, source_metadata, caplog
    ):
        source_metadata.codec = "mpeg4"
        plan = compute_plan(duration_sec=60, fps=30, patch_layers=[executed_patch(10, "")])

        with caplog.at_level(logging.INFO, logger="framepatch.services.render_executor"):
            result = render(plan)

        assert result.concat_mode == "reencode_concat"
        assert not any(is_stream_concat(cmd) for cmd in fake_tools.calls)
        assert sum(1 for cmd in fake_tools.calls if is_reencode_concat(cmd)) == 1
        assert "mpeg4/yuv420p" in caplog.text

    def test_mixed_plan_with_other_pixel_format_uses_reencode_concat(
        self, render, fake_tools, source_metadata
    ):
        source_metadata.pix_fmt = "yuv422p10le"
        plan = compute_plan(duration_sec=60, fps=30, patch_layers=[executed_patch(10, "")])

        result = render(plan)

        assert result.concat_mode == "reencode_concat"

    def test_copy_only_plan_with_other_codec_keeps_stream_concat(
        self, render, fake_tools, source_metadata
    ):
        source_metadata.codec = "hevc"

        result = render(compute_plan(duration_sec=60, fps=30))

        assert result.concat_mode == "stream_concat"
        assert not any(is_decode_check(cmd) for cmd in fake_tools.calls)

    def test_mixed_stream_concat_is_decode_checked(self, render, fake_tools):
        plan = compute_plan(duration_sec=60, fps=30, patch_layers=[executed_patch(10, "")])

        result = render(plan)

        assert result.concat_mode == "stream_concat"
        assert sum(1 for cmd in fake_tools.calls if is_decode_check(cmd)) == 1

    def test_decode_errors_fall_back_to_reencode_concat(self, render, fake_tools, caplog):
        fake_tools.decode_report = "[h264 @ 0x5581] Invalid NAL unit size (1187 > 412)."
        plan = compute_plan(duration_sec=60, fps=30, patch_layers=[executed_patch(10, "")])

        with caplog.at_level(logging.WARNING, logger="framepatch.services.render_executor"):
            result = render(plan)

        assert result.concat_mode == "reencode_concat"
        assert "decode errors" in caplog.text
        assert os.path.exists(render.output_path)

    def test_reencode_concat_decodes_each_segment_separately(self, render, fake_tools):
        fake_tools.fail_when(is_stream_concat, ffmpeg_failure())
        plan = compute_plan(duration_sec=60, fps=30, patch_layers=[executed_patch(10, "")])

        result = render(plan)

        cmd = next(cmd for cmd in fake_tools.calls if is_reencode_concat(cmd))
        inputs = [cmd[i + 1] for i, arg in enumerate(cmd) if arg == "-i"]
        assert inputs == [os.path.abspath(s.file_path) for s in result.segments]
        assert cmd[cmd.index("-filter_complex") + 1] == (
            "[0:v][0:a][1:v][1:a][2:v][2:a]concat=n=3:v=1:a=1[vout][aout]"
        )
        assert cmd[cmd.index("-b:a") + 1] == "192k"

    def test_reencode_concat_without_audio(self, render, fake_tools, source_metadata):
        source_metadata.has_audio = False
        fake_tools.fail_when(is_stream_concat, ffmpeg_failure())

        render(compute_plan(duration_sec=60, fps=30, patch_layers=[executed_patch(10, "")]))

        cmd = next(cmd for cmd in fake_tools.calls if is_reencode_concat(cmd))
        assert cmd[cmd.index("-filter_complex") + 1] == "[0:v][1:v][2:v]concat=n=3:v=1:a=0[vout]"
        assert "-c:a" not in cmd


def ffmpeg(*args):
    subprocess.run(["ffmpeg", "-hide_banner", "-v", "error", "-y", *args], check=True)


def count_frames(path):
    result = subprocess.run(
        [
            "ffprobe", "-v", "error",
            "-select_streams", "v:0",
            "-count_frames",
            "-show_entries", "stream=nb_read_frames",
            "-of", "csv=p=0",
            path,
        ],
        capture_output=True,
        check=True,
        text=True,
    )
    return int(result.stdout.strip().strip(","))


@pytest.fixture
def real_render(tmp_path):
    """Render a 10s, 30fps test pattern with the real ffmpeg binaries."""
    tools = MediaToolRunner()
    executor = RenderExecutor(tools=tools)

    def _render(codec_args, changed):
        source = str(tmp_path / "testsrc.mp4")
        ffmpeg(
            "-f", "lavfi", "-i", "testsrc=duration=10:size=160x120:rate=30",
            *codec_args,
            "-g", "60", "-keyint_min", "60", "-sc_threshold", "0",
            "-pix_fmt", "yuv420p",
            source,
        )

        async def run():
            metadata = await tools.probe(source)
            plan = compute_plan(
                duration_sec=metadata.duration_sec,
                fps=metadata.fps,
                explicit_ranges=[changed],
                padding=0.0,
            )
            result = await executor.render(
                plan=plan,
                source_path=source,
                metadata=metadata,
                patch_layers=[],
                output_path=str(tmp_path / "out.mp4"),
                work_dir=str(tmp_path / "work"),
            )
            return result, await tools.decode_errors(result.output_path)

        return asyncio.run(run())

    return _render


@pytest.mark.ffmpeg
@pytest.mark.skipif(
    shutil.which("ffmpeg") is None or shutil.which("ffprobe") is None,
    reason="ffmpeg and ffprobe are not installed",
)
class TestRenderExecutorWithFfmpeg:
    """End-to-end renders of a generated test pattern."""

    def test_output_keeps_every_source_frame(self, real_render):
        result, decode_errors = real_render(
            ["-c:v", "libx264", "-bf", "0"], TimeRange(start=3.0, end=4.5),
        )

        last = result.segments[-1]
        assert (last.start, last.planned_mode, last.mode) == (4.5, "copy", "reencode")
        assert count_frames(result.output_path) == 300
        assert decode_errors == ""

    def test_mixed_mpeg4_source_is_reencoded_at_concat(self, real_render):
        result, decode_errors = real_render(
            ["-c:v", "mpeg4", "-q:v", "3"], TimeRange(start=2.0, end=4.0),
        )

        assert [s.mode for s in result.segments] == ["copy", "reencode", "copy"]
        assert result.concat_mode == "reencode_concat"
        assert count_frames(result.output_path) == 300
        assert decode_errors == ""
