"""
Differential Render Pipeline - plans and runs render jobs end to end.

Orchestrates:
- Loading stored patch layers referenced by id
- Planning changed/unchanged ranges (pure range planner)
- Probing the source and executing the plan (render executor)
- Persisting plans to the state store
- Per-job file logging and work dir cleanup
"""

import logging
import os
import shutil
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from framepatch.config import get_settings
from framepatch.errors import FramePatchError
from framepatch.schemas.records import PatchLayer, RenderPlan
from framepatch.schemas.requests import RenderPlanRequest, RenderRequest
from framepatch.services.frame_patch_service import FramePatchService
from framepatch.services.range_planner import compute_plan
from framepatch.services.render_executor import (
    QualityProfile,
    RenderExecutor,
    RenderJobResult,
    RenderProgress,
    RenderStage,
)
from framepatch.services.source_resolver import confine_to_data_root
from framepatch.services.state_store import JsonStateStore

logger = logging.getLogger(__name__)


PLAN_AREA = "render_plans"

SERVICE_LOGGERS = [
    "framepatch.services.render_pipeline",
    "framepatch.services.render_executor",
    "framepatch.services.media_tools",
    "framepatch.services.source_resolver",
]


class JobStatus(str, Enum):
    """Status of a render job."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class RenderJobOutcome:
    """Final state of a render job, successful or not."""

    job_id: str
    status: JobStatus
    result: Optional[RenderJobResult] = None
    error: Optional[dict] = None
    processing_time_seconds: float = 0


class DifferentialRenderPipeline:
    """
    Plans and executes differential renders.

    One instance serves all jobs; per-job state lives in local variables
    and the job's work dir.
    """

    def __init__(
        self,
        store: JsonStateStore,
        patch_service: FramePatchService,
        executor: Optional[RenderExecutor] = None,
        progress_callback: Optional[Callable[[RenderProgress], None]] = None,
    ):
        self.settings = get_settings()
        self.store = store
        self.patch_service = patch_service
        self.executor = executor or RenderExecutor(
            tools=patch_service.tools,
            resolver=patch_service.resolver,
            progress_callback=progress_callback,
        )
        self.progress_callback = progress_callback

    def _setup_job_logging(self, job_id: str) -> Optional[logging.FileHandler]:
        """
        Attach a job-specific log file for the render services.

        Returns:
            The file handler (to be removed later) or None if setup fails
        """
        try:
            os.makedirs(self.settings.logs_directory, exist_ok=True)
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            log_filename = os.path.join(self.settings.logs_directory, f"job_{job_id}_{timestamp}.log")

            file_handler = logging.FileHandler(log_filename, encoding="utf-8")
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            ))

            for logger_name in SERVICE_LOGGERS:
                logging.getLogger(logger_name).addHandler(file_handler)

            logger.info(f"Job logging initialized: {log_filename}")
            return file_handler

        except OSError as e:
            logger.warning(f"Failed to setup job logging: {e}")
            return None

    def _cleanup_job_logging(self, file_handler: Optional[logging.FileHandler]) -> None:
        if file_handler is None:
            return
        for logger_name in SERVICE_LOGGERS:
            logging.getLogger(logger_name).removeHandler(file_handler)
        file_handler.close()

    async def _collect_patches(
        self,
        patch_ids: list[str],
        inline_layers: list[PatchLayer],
    ) -> list[PatchLayer]:
        """
        Stored layers by id (NotFound if missing) followed by inline layers.

        Inline layers may only point their edited asset inside DATA_ROOT.
        """
        patches = await self.patch_service.get_patches(patch_ids)
        for layer in inline_layers:
            if layer.assets.edited:
                layer.assets.edited = confine_to_data_root(
                    layer.assets.edited, f"patch_layers[{layer.id}].assets.edited"
                )
        return patches + list(inline_layers)

    async def _store_plan(self, plan: RenderPlan) -> None:
        await self.store.put(PLAN_AREA, plan.model_dump(mode="json"), id_field="render_plan_id")

    async def plan(self, request: RenderPlanRequest) -> RenderPlan:
        """Compute and store a plan for a known duration without touching media."""
        patches = await self._collect_patches(request.patch_ids, request.patch_layers)
        plan = compute_plan(
            duration_sec=request.duration_sec,
            fps=request.fps,
            patch_layers=patches,
            explicit_ranges=request.changed_ranges,
            changed_frames=request.changed_frames,
            padding=self.settings.merge_padding_seconds,
            render_profiles=request.output_profiles or None,
        )
        await self._store_plan(plan)
        logger.info(
            f"Render plan {plan.render_plan_id}: {len(plan.changed_ranges)} changed ranges, "
            f"reencode_ratio={plan.cache_hints.reencode_ratio}"
        )
        return plan

    async def run(self, request: RenderRequest, job_id: Optional[str] = None) -> RenderJobResult:
        """
        Probe the source, plan against its real duration and execute.

        The work dir is removed whether the job succeeds or fails.

        Raises:
            FramePatchError: Any pipeline failure, with its stage set
        """
        job_id = job_id or str(uuid.uuid4())
        work_dir = os.path.join(self.settings.temp_directory, f"render_{job_id}")
        output_path = request.output_path or os.path.join(
            self.settings.renders_directory, f"render_{job_id}.mp4"
        )
        job_log_handler = self._setup_job_logging(job_id)
        start_time = time.time()

        try:
            os.makedirs(work_dir, exist_ok=True)
            logger.info(f"Starting render job {job_id}: {request.source.describe()}")

            patches = await self._collect_patches(request.patch_ids, request.patch_layers)

            self._update_progress(job_id, RenderStage.PROBING, 5, "Probing source...")
            source_path, metadata = await self.executor.probe(request.source, work_dir)

            plan = compute_plan(
                duration_sec=metadata.duration_sec,
                fps=metadata.fps,
                patch_layers=patches,
                explicit_ranges=request.changed_ranges,
                changed_frames=request.changed_frames,
                padding=self.settings.merge_padding_seconds,
                render_profiles=request.output_profiles or None,
            )
            await self._store_plan(plan)
            logger.info(
                f"Job {job_id} plan {plan.render_plan_id}: {len(plan.segments)} segments, "
                f"reencode_ratio={plan.cache_hints.reencode_ratio}"
            )

            quality = QualityProfile.from_settings(
                self.settings,
                preset=request.preset,
                crf=request.crf,
                audio_bitrate=request.audio_bitrate,
            )
            result = await self.executor.render(
                plan=plan,
                source_path=source_path,
                metadata=metadata,
                patch_layers=patches,
                output_path=output_path,
                work_dir=work_dir,
                quality=quality,
                job_id=job_id,
            )

            logger.info(f"Render job {job_id} completed in {time.time() - start_time:.1f}s")
            return result

        except FramePatchError as e:
            logger.error(f"Render job {job_id} failed at {e.stage or 'unknown'}: {e.message}")
            self._update_progress(job_id, RenderStage.FAILED, 0, e.message)
            raise

        finally:
            if os.path.isdir(work_dir):
                shutil.rmtree(work_dir, ignore_errors=True)
            self._cleanup_job_logging(job_log_handler)

    async def run_job(self, request: RenderRequest, job_id: str) -> RenderJobOutcome:
        """Run a job and capture its outcome instead of raising (background tasks)."""
        start_time = time.time()
        try:
            result = await self.run(request, job_id=job_id)
        except FramePatchError as e:
            return RenderJobOutcome(
                job_id=job_id,
                status=JobStatus.FAILED,
                error=e.to_dict(),
                processing_time_seconds=time.time() - start_time,
            )
        except Exception as e:
            logger.exception(f"Render job {job_id} crashed: {e}")
            return RenderJobOutcome(
                job_id=job_id,
                status=JobStatus.FAILED,
                error={"error": type(e).__name__, "message": str(e), "stage": None, "detail": None},
                processing_time_seconds=time.time() - start_time,
            )
        return RenderJobOutcome(
            job_id=job_id,
            status=JobStatus.COMPLETED,
            result=result,
            processing_time_seconds=time.time() - start_time,
        )

    def _update_progress(self, job_id: str, stage: RenderStage, progress: float, step: str) -> None:
        if not self.progress_callback:
            return
        try:
            self.progress_callback(RenderProgress(
                job_id=job_id,
                stage=stage,
                progress_percent=progress,
                current_step=step,
            ))
        except Exception as e:
            logger.warning(f"Progress callback failed: {e}")
