"""
Render Executor - executes a render plan against source media with FFmpeg.

Pipeline per job:
1. Probe the source (resolve + ffprobe)
2. Render every planned segment into the job work dir:
   - copy segments are stream-copied when they start on a source keyframe,
     falling back to a re-encode
   - reencode segments are re-encoded with the executed patch frames overlaid
3. Concatenate the segment files (stream copy, checked by a full decode when
   copy and re-encoded segments are mixed, falling back to a re-encode)
4. Move the finished artifact to its final path

Segments are rendered concurrently, bounded by max_render_workers. The output
is written inside the work dir first so a failed job never leaves a partial
artifact at the destination.
"""

import asyncio
import logging
import os
import shutil
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Callable, Optional, Sequence

from framepatch.config import Settings, get_settings
from framepatch.errors import (
    ConcatenationFailed,
    CorruptOutput,
    EmptyRenderPlan,
    SegmentRenderFailed,
    StreamCopyUnsafe,
    ToolExecutionError,
    ToolFailed,
)
from framepatch.schemas.records import PatchLayer, RenderPlan, SegmentMode
from framepatch.schemas.requests import SourceReference
from framepatch.services.media_tools import MediaToolRunner, SourceMetadata
from framepatch.services.source_resolver import SourceResolver

logger = logging.getLogger(__name__)


class RenderStage(str, Enum):
    """Stage of a render job. FAILED is reachable from any stage."""

    PROBING = "probing"
    EXTRACTING = "extracting"
    OVERLAYING = "overlaying"
    ENCODING = "encoding"
    CONCATENATING = "concatenating"
    DONE = "done"
    FAILED = "failed"


# Ordered fallbacks, first success wins
SEGMENT_STRATEGIES: dict[str, tuple[SegmentMode, ...]] = {
    "copy": ("copy", "reencode"),
    "reencode": ("reencode",),
}

CONCAT_STRATEGIES = ("stream_concat", "reencode_concat")

# Re-encoded segments are always H.264 yuv420p; stream-copied ones keep the source format
REENCODE_CODEC = "h264"
REENCODE_PIX_FMT = "yuv420p"


@dataclass
class QualityProfile:
    """Fixed encoder settings shared by every re-encoded segment of a job."""

    preset: str
    crf: int
    audio_bitrate: str

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        preset: Optional[str] = None,
        crf: Optional[int] = None,
        audio_bitrate: Optional[str] = None,
    ) -> "QualityProfile":
        return cls(
            preset=preset or settings.ffmpeg_preset,
            crf=settings.ffmpeg_crf if crf is None else crf,
            audio_bitrate=audio_bitrate or settings.audio_bitrate,
        )


@dataclass
class ExecutionSegment:
    """One plan segment as executed. mode differs from planned_mode after a fallback."""

    index: int
    start: float
    end: float
    duration: float
    mode: SegmentMode
    planned_mode: SegmentMode
    patch_count: int = 0
    file_path: str = ""


@dataclass
class RenderProgress:
    """Progress update for a render job."""

    job_id: str
    stage: RenderStage
    progress_percent: float
    current_step: str
    segments_completed: int = 0
    total_segments: int = 0


@dataclass
class RenderJobResult:
    """Final artifact of a differential render."""

    job_id: str
    output_path: str
    file_size_bytes: int
    plan: RenderPlan
    segments: list[ExecutionSegment] = field(default_factory=list)
    concat_mode: str = "stream_concat"
    source: Optional[SourceMetadata] = None

    def to_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "output_path": self.output_path,
            "file_size_bytes": self.file_size_bytes,
            "concat_mode": self.concat_mode,
            "plan": self.plan.model_dump(mode="json"),
            "segments": [asdict(segment) for segment in self.segments],
            "source": asdict(self.source) if self.source else None,
        }


@dataclass
class _Overlay:
    path: str
    relative_sec: float


class RenderExecutor:
    """
    Executes render plans with FFmpeg.

    Holds no per-job state; one instance serves concurrent jobs.
    """

    def __init__(
        self,
        tools: Optional[MediaToolRunner] = None,
        resolver: Optional[SourceResolver] = None,
        settings: Optional[Settings] = None,
        progress_callback: Optional[Callable[[RenderProgress], None]] = None,
    ):
        self.settings = settings or get_settings()
        self.tools = tools or MediaToolRunner()
        self.resolver = resolver or SourceResolver()
        self.progress_callback = progress_callback

    async def probe(self, source: SourceReference, work_dir: str) -> tuple[str, SourceMetadata]:
        """
        Resolve the source to a local file and probe it.

        Raises:
            SourceUnavailable: Source cannot be resolved
            ProbeFailed: ffprobe cannot read it
        """
        source_path = await self.resolver.resolve(source, work_dir)
        metadata = await self.tools.probe(source_path)
        return source_path, metadata

    async def render(
        self,
        plan: RenderPlan,
        source_path: str,
        metadata: SourceMetadata,
        patch_layers: Sequence[PatchLayer],
        output_path: str,
        work_dir: str,
        quality: Optional[QualityProfile] = None,
        job_id: Optional[str] = None,
    ) -> RenderJobResult:
        """
        Render every plan segment and concatenate them into output_path.

        Args:
            plan: Render plan computed against the probed source
            source_path: Readable local source media
            metadata: Probed source properties (frame size for overlays)
            patch_layers: Candidate patches; only executed ones with an edited
                asset are overlaid
            output_path: Final artifact path
            work_dir: Job-owned scratch directory (removed by the caller)
            quality: Encoder settings for re-encoded segments
            job_id: Identifier used in logs and progress updates

        Returns:
            RenderJobResult

        Raises:
            EmptyRenderPlan: No segment long enough to render
            SegmentRenderFailed: A segment could not be produced by any strategy
            ConcatenationFailed: Both concatenation strategies failed
        """
        job_id = job_id or plan.render_plan_id
        quality = quality or QualityProfile.from_settings(self.settings)
        min_length = self.settings.min_segment_seconds

        segments = []
        for index, planned in enumerate(plan.segments):
            duration = planned.end - planned.start
            if duration < min_length:
                logger.debug(
                    f"Skipping segment {index} [{planned.start:.3f}, {planned.end:.3f}): "
                    f"{duration:.3f}s is below {min_length}s"
                )
                continue
            segments.append(ExecutionSegment(
                index=index,
                start=planned.start,
                end=planned.end,
                duration=round(duration, 3),
                mode=planned.mode,
                planned_mode=planned.mode,
            ))

        if not segments:
            raise EmptyRenderPlan(
                f"Render plan {plan.render_plan_id} has no renderable segments",
                stage=RenderStage.ENCODING.value,
            )

        self._update_progress(job_id, RenderStage.EXTRACTING, 10, "Collecting patch assets...")
        executed_patches = self._renderable_patches(patch_layers)
        keyframes: list[float] = []
        if any(s.planned_mode == "copy" for s in segments):
            keyframes = await self._keyframe_times(source_path)

        segments_dir = os.path.join(work_dir, "segments")
        os.makedirs(segments_dir, exist_ok=True)

        logger.info(
            f"Rendering {len(segments)} segments for job {job_id} "
            f"({sum(1 for s in segments if s.planned_mode == 'reencode')} re-encoded, "
            f"{len(executed_patches)} patches available)"
        )
        self._update_progress(
            job_id, RenderStage.ENCODING, 20,
            f"Rendering {len(segments)} segments...",
            total_segments=len(segments),
        )

        semaphore = asyncio.Semaphore(self.settings.max_concurrent_renders)
        completed = 0

        async def render_one(segment: ExecutionSegment) -> ExecutionSegment:
            nonlocal completed
            async with semaphore:
                await self._render_segment(
                    segment, plan, source_path, metadata, executed_patches, quality,
                    segments_dir, keyframes,
                )
            completed += 1
            self._update_progress(
                job_id, RenderStage.ENCODING, 20 + 60 * completed / len(segments),
                f"Rendered segment {segment.index}",
                segments_completed=completed,
                total_segments=len(segments),
            )
            return segment

        tasks = [asyncio.create_task(render_one(segment)) for segment in segments]
        try:
            rendered = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        rendered = sorted(rendered, key=lambda s: s.index)

        self._update_progress(job_id, RenderStage.CONCATENATING, 85, "Concatenating segments...")
        partial_path = os.path.join(
            work_dir, "output.partial" + (os.path.splitext(output_path)[1] or ".mp4")
        )
        concat_mode = await self._concatenate(
            rendered, partial_path, work_dir, plan, metadata, quality,
        )

        os.makedirs(os.path.dirname(os.path.abspath(output_path)), exist_ok=True)
        shutil.move(partial_path, output_path)
        file_size = os.path.getsize(output_path)

        self._update_progress(job_id, RenderStage.DONE, 100, "Render complete")
        logger.info(
            f"Render {job_id} finished: {output_path} ({file_size / 1024 / 1024:.1f} MB, "
            f"concat={concat_mode})"
        )

        return RenderJobResult(
            job_id=job_id,
            output_path=output_path,
            file_size_bytes=file_size,
            plan=plan,
            segments=rendered,
            concat_mode=concat_mode,
            source=metadata,
        )

    # ------------------------------------------------------------------
    # Segments
    # ------------------------------------------------------------------

    def _renderable_patches(self, patch_layers: Sequence[PatchLayer]) -> list[PatchLayer]:
        patches = []
        for patch in patch_layers:
            if not patch.is_executed or not patch.assets.edited:
                continue
            if not os.path.isfile(patch.assets.edited):
                logger.warning(f"Patch {patch.id} edited asset missing: {patch.assets.edited}")
                continue
            patches.append(patch)
        return patches

    async def _keyframe_times(self, source_path: str) -> list[float]:
        """Source keyframe times; empty when they cannot be read, which disables stream copy."""
        try:
            return await self.tools.keyframe_times(source_path)
        except ToolExecutionError as e:
            logger.warning(f"Keyframe probe failed, copy segments will be re-encoded: {e}")
            return []

    def _select_overlays(
        self,
        segment: ExecutionSegment,
        patches: Sequence[PatchLayer],
        fps: float,
    ) -> list[_Overlay]:
        """Patches whose timestamp falls within the segment, one frame of slack either side."""
        frame = 1.0 / fps
        overlays = []
        for patch in patches:
            timestamp = patch.frame.timestamp_sec
            if segment.start - frame <= timestamp <= segment.end + frame:
                overlays.append(_Overlay(
                    path=patch.assets.edited,
                    relative_sec=max(0.0, timestamp - segment.start),
                ))
        overlays.sort(key=lambda o: o.relative_sec)
        return overlays

    async def _render_segment(
        self,
        segment: ExecutionSegment,
        plan: RenderPlan,
        source_path: str,
        metadata: SourceMetadata,
        patches: Sequence[PatchLayer],
        quality: QualityProfile,
        segments_dir: str,
        keyframes: Sequence[float] = (),
    ) -> None:
        segment.file_path = os.path.join(segments_dir, f"seg_{segment.index:04d}.mp4")
        strategies = SEGMENT_STRATEGIES[segment.planned_mode]
        last_error: Optional[ToolExecutionError] = None

        for attempt, strategy in enumerate(strategies):
            try:
                if strategy == "copy":
                    await self._copy_segment(segment, source_path, keyframes, metadata.fps)
                else:
                    overlays = self._select_overlays(segment, patches, plan.fps)
                    segment.patch_count = len(overlays)
                    await self._reencode_segment(
                        segment, source_path, metadata, overlays, plan, quality,
                    )
                segment.mode = strategy
                return
            except ToolExecutionError as e:
                last_error = e
                if os.path.exists(segment.file_path):
                    os.remove(segment.file_path)
                if attempt + 1 < len(strategies):
                    logger.warning(
                        f"Segment {segment.index} {strategy} failed, falling back to "
                        f"{strategies[attempt + 1]}: {e}"
                    )

        raise SegmentRenderFailed(
            f"Segment {segment.index} [{segment.start:.3f}, {segment.end:.3f}) failed: {last_error}",
            stage=RenderStage.ENCODING.value,
            detail=last_error.stderr if last_error else None,
        )

    async def _copy_segment(
        self,
        segment: ExecutionSegment,
        source_path: str,
        keyframes: Sequence[float],
        fps: float,
    ) -> None:
        # A stream copy starts at the keyframe at or before -ss, so a start
        # between keyframes would repeat footage already in the previous segment
        tolerance = 0.5 / fps
        if segment.start > tolerance and not any(
            abs(keyframe - segment.start) <= tolerance for keyframe in keyframes
        ):
            raise StreamCopyUnsafe(
                "ffmpeg",
                f"segment start {segment.start:.3f}s is not on a keyframe",
            )

        cmd = [
            self.tools.ffmpeg_path,
            "-hide_banner",
            "-y",
            "-ss", f"{segment.start:.3f}",
            "-i", source_path,
            "-t", f"{segment.duration:.3f}",
            "-map", "0:v:0",
            "-map", "0:a?",
            "-c", "copy",
            "-avoid_negative_ts", "make_zero",
            segment.file_path,
        ]
        await self.tools.run(cmd, timeout=self.settings.segment_timeout_seconds)
        self._ensure_output(segment.file_path)

    async def _reencode_segment(
        self,
        segment: ExecutionSegment,
        source_path: str,
        metadata: SourceMetadata,
        overlays: Sequence[_Overlay],
        plan: RenderPlan,
        quality: QualityProfile,
    ) -> None:
        if overlays:
            logger.info(f"Segment {segment.index}: overlaying {len(overlays)} patch frame(s)")

        input_args = ["-ss", f"{segment.start:.3f}", "-i", source_path]
        for overlay in overlays:
            input_args.extend(["-i", overlay.path])

        filter_complex = self._build_overlay_filter(overlays, metadata, plan.fps)

        cmd = [
            self.tools.ffmpeg_path,
            "-hide_banner",
            "-y",
            *input_args,
            "-t", f"{segment.duration:.3f}",
            "-filter_complex", filter_complex,
            "-map", "[vout]",
            "-map", "0:a?",
            "-c:v", "libx264",
            "-preset", quality.preset,
            "-crf", str(quality.crf),
            "-g", str(plan.cache_hints.keyframe_stride),
            "-c:a", "copy",
            "-avoid_negative_ts", "make_zero",
            segment.file_path,
        ]
        await self.tools.run(cmd, timeout=self.settings.segment_timeout_seconds)
        self._ensure_output(segment.file_path)

    def _build_overlay_filter(
        self,
        overlays: Sequence[_Overlay],
        metadata: SourceMetadata,
        fps: float,
    ) -> str:
        """
        Build the filter graph for a re-encoded segment.

        Each patch frame is scaled to the source size and shown only during
        its own frame interval [rel, rel + 1/fps].
        """
        frame = 1.0 / fps
        parts = ["[0:v]setpts=PTS-STARTPTS[base]"]
        current = "base"

        for i, overlay in enumerate(overlays, start=1):
            start = overlay.relative_sec
            end = start + frame
            parts.append(f"[{i}:v]scale={metadata.width}:{metadata.height},format=rgba[p{i}]")
            parts.append(
                f"[{current}][p{i}]overlay=0:0:enable='between(t,{start:.6f},{end:.6f})'[v{i}]"
            )
            current = f"v{i}"

        parts.append(f"[{current}]fps={fps:g},format=yuv420p[vout]")
        return ";".join(parts)

    def _ensure_output(self, path: str) -> None:
        if not os.path.isfile(path) or os.path.getsize(path) == 0:
            raise ToolFailed("ffmpeg", f"ffmpeg produced no output at {path}")

    # ------------------------------------------------------------------
    # Concatenation
    # ------------------------------------------------------------------

    def _write_concat_list(self, segments: Sequence[ExecutionSegment], work_dir: str) -> str:
        list_path = os.path.join(work_dir, "concat.txt")
        with open(list_path, "w", encoding="utf-8") as f:
            for segment in segments:
                escaped = os.path.abspath(segment.file_path).replace("'", "'\\''")
                f.write(f"file '{escaped}'\n")
        return list_path

    async def _concatenate(
        self,
        segments: Sequence[ExecutionSegment],
        output_path: str,
        work_dir: str,
        plan: RenderPlan,
        metadata: SourceMetadata,
        quality: QualityProfile,
    ) -> str:
        list_path = self._write_concat_list(segments, work_dir)
        last_error: Optional[ToolExecutionError] = None

        mixed = len({segment.mode for segment in segments}) > 1
        strategies = CONCAT_STRATEGIES
        if mixed and not (
            metadata.codec == REENCODE_CODEC and metadata.pix_fmt == REENCODE_PIX_FMT
        ):
            logger.info(
                f"Source is {metadata.codec}/{metadata.pix_fmt}, mixed segments cannot be "
                f"stream-concatenated, using reencode_concat"
            )
            strategies = ("reencode_concat",)

        for attempt, strategy in enumerate(strategies):
            if strategy == "stream_concat":
                cmd = [
                    self.tools.ffmpeg_path,
                    "-hide_banner",
                    "-y",
                    "-f", "concat",
                    "-safe", "0",
                    "-i", list_path,
                    "-c", "copy",
                ]
            else:
                cmd = self._filter_concat_command(segments, metadata, plan, quality)
            cmd.extend(["-movflags", "+faststart", output_path])

            try:
                await self.tools.run(cmd, timeout=self.settings.concat_timeout_seconds)
                self._ensure_output(output_path)
                if strategy == "stream_concat" and mixed:
                    await self._verify_decodes(output_path)
                return strategy
            except ToolExecutionError as e:
                last_error = e
                if os.path.exists(output_path):
                    os.remove(output_path)
                if attempt + 1 < len(strategies):
                    logger.warning(
                        f"Concatenation {strategy} failed, falling back to "
                        f"{strategies[attempt + 1]}: {e}"
                    )

        raise ConcatenationFailed(
            f"Concatenation of {len(segments)} segments failed: {last_error}",
            stage=RenderStage.CONCATENATING.value,
            detail=last_error.stderr if last_error else None,
        )

    def _filter_concat_command(
        self,
        segments: Sequence[ExecutionSegment],
        metadata: SourceMetadata,
        plan: RenderPlan,
        quality: QualityProfile,
    ) -> list[str]:
        """
        Re-encoding concat through the concat filter.

        Every segment is opened as its own input, so copied segments in the
        source codec and re-encoded H.264 segments each get their own decoder.
        """
        cmd = [self.tools.ffmpeg_path, "-hide_banner", "-y"]
        for segment in segments:
            cmd.extend(["-i", os.path.abspath(segment.file_path)])

        with_audio = metadata.has_audio
        pads = "".join(
            f"[{i}:v][{i}:a]" if with_audio else f"[{i}:v]" for i in range(len(segments))
        )
        outputs = "[vout][aout]" if with_audio else "[vout]"
        cmd.extend([
            "-filter_complex",
            f"{pads}concat=n={len(segments)}:v=1:a={1 if with_audio else 0}{outputs}",
            "-map", "[vout]",
        ])
        if with_audio:
            cmd.extend(["-map", "[aout]", "-c:a", "aac", "-b:a", quality.audio_bitrate])

        cmd.extend([
            "-c:v", "libx264",
            "-preset", quality.preset,
            "-crf", str(quality.crf),
            "-g", str(plan.cache_hints.keyframe_stride),
            "-pix_fmt", "yuv420p",
        ])
        return cmd

    async def _verify_decodes(self, path: str) -> None:
        """Stream concat exits 0 on mismatched parameter sets; only a decode shows it."""
        errors = await self.tools.decode_errors(path)
        if errors:
            raise CorruptOutput("ffmpeg", "concatenated output has decode errors", errors)

    def _update_progress(
        self,
        job_id: str,
        stage: RenderStage,
        progress: float,
        step: str,
        segments_completed: int = 0,
        total_segments: int = 0,
    ) -> None:
        if not self.progress_callback:
            return
        try:
            self.progress_callback(RenderProgress(
                job_id=job_id,
                stage=stage,
                progress_percent=round(progress, 1),
                current_step=step,
                segments_completed=segments_completed,
                total_segments=total_segments,
            ))
        except Exception as e:
            logger.warning(f"Progress callback failed: {e}")
