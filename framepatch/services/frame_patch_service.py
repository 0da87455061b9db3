"""
Frame Patch Service - creates, applies and stores patch layers.

A patch layer starts as a planned record (region + instruction on a frame).
Applying it extracts the frame from the source, obtains the edited region
image (supplied by the caller or generated by the image provider),
composites it, and stores the original/edited/diff assets under
<patches_directory>/<patch_id>/.
"""

import asyncio
import base64
import binascii
import logging
import math
import os
import shutil
import uuid
from typing import Optional

from framepatch.config import get_settings
from framepatch.errors import InvalidInput, NotFound
from framepatch.schemas.records import (
    FrameRef,
    MotionJob,
    PatchAssets,
    PatchLayer,
    PatchStatus,
    utc_now_iso,
)
from framepatch.schemas.requests import MotionJobRequest, PatchRequest
from framepatch.services.geometry import DEFAULT_FPS, clamp_timestamp, last_frame_time
from framepatch.services.image_provider import ImageProviderService
from framepatch.services.media_tools import MediaToolRunner
from framepatch.services.motion_planner import build_motion_plan
from framepatch.services.patch_compositor import PatchCompositor, propagation_window
from framepatch.services.source_resolver import SourceResolver, confine_to_data_root
from framepatch.services.state_store import JsonStateStore

logger = logging.getLogger(__name__)


PATCH_AREA = "patch_layers"
MOTION_AREA = "motion_jobs"

# Absorbs float error when a timestamp sits exactly on a frame boundary
FRAME_EPSILON = 1e-6

PLANNED_NOTE = "Patch layer created. An image worker can apply the edit and update the visual diff."


class FramePatchService:
    """Orchestrates patch layers: planning, execution and storage."""

    def __init__(
        self,
        store: JsonStateStore,
        tools: Optional[MediaToolRunner] = None,
        resolver: Optional[SourceResolver] = None,
        compositor: Optional[PatchCompositor] = None,
        image_provider: Optional[ImageProviderService] = None,
    ):
        self.settings = get_settings()
        self.store = store
        self.tools = tools or MediaToolRunner()
        self.resolver = resolver or SourceResolver()
        self.compositor = compositor or PatchCompositor()
        self.image_provider = image_provider or ImageProviderService()

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    async def get_patch(self, patch_id: str) -> PatchLayer:
        record = await self.store.get(PATCH_AREA, patch_id)
        if record is None:
            raise NotFound(f"Patch layer not found: {patch_id}")
        return PatchLayer.model_validate(record)

    async def get_patches(self, patch_ids: list[str]) -> list[PatchLayer]:
        return [await self.get_patch(patch_id) for patch_id in patch_ids]

    async def list_patches(self, limit: Optional[int] = None) -> list[PatchLayer]:
        records = await self.store.list_recent(PATCH_AREA, limit)
        return [PatchLayer.model_validate(record) for record in records]

    def _build_layer(
        self,
        request: PatchRequest,
        patch_id: str,
        timestamp_sec: float,
        fps: float,
    ) -> PatchLayer:
        return PatchLayer(
            id=patch_id,
            video_id=request.video_id or "session-video",
            frame=FrameRef(
                timestamp_sec=round(timestamp_sec, 3),
                frame_index=int(math.floor(timestamp_sec * fps + FRAME_EPSILON)),
                fps=fps,
            ),
            region=request.region,
            instruction=request.instruction,
            provider=(request.provider or self.settings.default_image_provider).strip().lower(),
            model=(request.model or self.settings.default_image_model).strip(),
            propagation=propagation_window(request.propagation_window_sec, request.motion_method),
            notes=request.notes or "",
        )

    async def _upsert(self, layer: PatchLayer) -> PatchLayer:
        existing = await self.store.get(PATCH_AREA, layer.id)
        if existing:
            layer.created_at = existing.get("created_at") or layer.created_at
            layer.updated_at = utc_now_iso()
        await self.store.put(PATCH_AREA, layer.model_dump(mode="json"))
        return layer

    async def create_patch_layer(self, request: PatchRequest) -> PatchLayer:
        """Store a planned patch layer without touching any media."""
        layer = self._build_layer(
            request,
            patch_id=request.patch_id or str(uuid.uuid4()),
            timestamp_sec=request.timestamp_sec,
            fps=request.fps or DEFAULT_FPS,
        )
        layer.notes = layer.notes or PLANNED_NOTE
        layer = await self._upsert(layer)
        logger.info(f"Planned patch layer {layer.id} at {layer.frame.timestamp_sec}s")
        return layer

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def apply_patch(self, request: PatchRequest) -> PatchLayer:
        """
        Execute a patch against its source and store the resulting assets.

        Raises:
            InvalidInput: No source, or neither an edited image nor an instruction
            SourceUnavailable, ProbeFailed, FrameExtractionFailed: Source problems
            InvalidPatchInput: Undecodable edited image or degenerate region
            ProviderError: Image generation failed
        """
        if request.source is None:
            raise InvalidInput("A source is required to apply a patch", stage="probing")
        if not request.edited_image and not request.instruction:
            raise InvalidInput(
                "Provide an edited_image or an instruction to generate one", stage="generating"
            )

        patch_id = request.patch_id or str(uuid.uuid4())
        work_dir = os.path.join(
            self.settings.temp_directory, f"patch_{patch_id}_{uuid.uuid4().hex[:8]}"
        )

        try:
            os.makedirs(work_dir, exist_ok=True)
            logger.info(f"Applying patch {patch_id} on {request.source.describe()}")

            source_path = await self.resolver.resolve(request.source, work_dir)
            metadata = await self.tools.probe(source_path)

            timestamp = clamp_timestamp(
                request.timestamp_sec, last_frame_time(metadata.duration_sec, metadata.fps)
            )
            fps = request.fps or metadata.fps

            frame_path = os.path.join(work_dir, "frame.png")
            await self.tools.extract_frame(source_path, timestamp, frame_path)
            with open(frame_path, "rb") as f:
                original_bytes = f.read()

            edited_region_bytes = await self._edited_region(request)

            loop = asyncio.get_event_loop()
            result = await loop.run_in_executor(
                None,
                lambda: self.compositor.composite(original_bytes, edited_region_bytes, request.region),
            )

            staging_dir = os.path.join(work_dir, "assets")
            os.makedirs(staging_dir, exist_ok=True)
            shutil.copyfile(frame_path, os.path.join(staging_dir, "original.png"))
            with open(os.path.join(staging_dir, "edited.png"), "wb") as f:
                f.write(result.edited_frame_png)
            with open(os.path.join(staging_dir, "diff.png"), "wb") as f:
                f.write(result.diff_png)

            final_dir = os.path.join(self.settings.patches_directory, patch_id)
            os.makedirs(self.settings.patches_directory, exist_ok=True)
            if os.path.isdir(final_dir):
                shutil.rmtree(final_dir)
            shutil.move(staging_dir, final_dir)
            final_dir = os.path.abspath(final_dir)

            layer = self._build_layer(request, patch_id, timestamp, fps)
            layer.status = PatchStatus.EXECUTED
            layer.assets = PatchAssets(
                original=os.path.join(final_dir, "original.png"),
                edited=os.path.join(final_dir, "edited.png"),
                diff=os.path.join(final_dir, "diff.png"),
            )
            layer = await self._upsert(layer)

            logger.info(
                f"Patch {patch_id} applied at {timestamp:.3f}s "
                f"({result.rect.width}x{result.rect.height} px at {result.rect.x},{result.rect.y})"
            )
            return layer

        finally:
            if os.path.isdir(work_dir):
                shutil.rmtree(work_dir, ignore_errors=True)

    async def _edited_region(self, request: PatchRequest) -> bytes:
        if request.edited_image:
            return self._decode_supplied_image(request.edited_image)

        provider = (request.provider or self.settings.default_image_provider).strip().lower()
        if provider != "openai":
            raise InvalidInput(
                f"Image provider '{provider}' cannot generate images; supply edited_image",
                stage="generating",
            )
        return await self.image_provider.generate(request.instruction, model=request.model)

    def _decode_supplied_image(self, value: str) -> bytes:
        """Accept a data URL, a file under DATA_ROOT, or raw base64."""
        value = value.strip()
        if value.startswith("data:"):
            _, _, value = value.partition(",")
        elif os.path.isfile(value):
            with open(confine_to_data_root(value, "edited_image"), "rb") as f:
                return f.read()

        try:
            return base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError):
            raise InvalidInput("edited_image is not valid base64, a data URL, or a file path")

    # ------------------------------------------------------------------
    # Motion jobs
    # ------------------------------------------------------------------

    async def create_motion_job(self, request: MotionJobRequest) -> MotionJob:
        job = build_motion_plan(
            timestamp_sec=request.timestamp_sec,
            method=request.method,
            radius_sec=request.radius_sec,
            patch_id=request.patch_id,
        )
        await self.store.put(MOTION_AREA, job.model_dump(mode="json"), id_field="motion_job_id")
        logger.info(f"Queued motion job {job.motion_job_id} ({job.method}) at {job.anchor}s")
        return job
