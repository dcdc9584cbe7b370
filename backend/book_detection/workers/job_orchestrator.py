"""Job orchestrator driving one detection job through the stage pipeline"""

import asyncio
import logging
import math
import time
from typing import Optional, Tuple
from uuid import UUID

from book_detection.config import settings
from book_detection.models.detection_job import (
    DetectionJob,
    JobStage,
    JobStatus,
    STAGE_ORDER,
    STAGE_PROGRESS,
    failed_stage,
)
from book_detection.models.error_codes import ErrorCode, error_definition, normalize_error_code
from book_detection.monitoring.metrics import metrics_collector
from book_detection.services.detection_job_service import DetectionJobService
from book_detection.services.engine_client import DetectionEngineClient
from book_detection.services.image_storage_service import (
    CorruptImageError,
    ImageStorageService,
    StorageError,
    UnsupportedImageError,
)

logger = logging.getLogger(__name__)

# Stages the orchestrator owns; the engine may not report them
ORCHESTRATOR_STAGES = (JobStage.UPLOADING, JobStage.FINALIZING)


class RunSuperseded(Exception):
    """A conditional write matched no row: the run was failed or replaced"""

    def __init__(self, job_id: UUID, run: int, operation: str):
        self.job_id = job_id
        self.run = run
        self.operation = operation
        super().__init__(f"Run {run} of job {job_id} superseded during {operation}")


class _RunState:
    """Last persisted position of the run this orchestrator is driving"""

    def __init__(self, job_id: UUID, run: int, progress: int):
        self.job_id = job_id
        self.run = run
        self.stage = JobStage.UPLOADING
        self.progress = progress
        self.last_write = 0.0


class JobOrchestrator:
    """
    Drives a single detection job run from upload to a terminal state.

    The orchestrator is the only writer of stage and progress while a run
    is active. Each write opens its own session and is conditional on the
    job still being ``processing`` at the same run generation, so a run
    that was force-failed by the timeout reaper, or replaced by a retry,
    stops at its next write instead of overwriting newer state.
    """

    def __init__(
        self,
        session_factory,
        storage: ImageStorageService,
        engine: DetectionEngineClient,
        detection_timeout_seconds: Optional[float] = None,
        progress_throttle_seconds: Optional[float] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            session_factory: Callable returning an AsyncSession context manager
            storage: Image storage service
            engine: Detection engine client
            detection_timeout_seconds: Upper bound on one engine call
            progress_throttle_seconds: Minimum spacing of same-stage progress writes
        """
        self.session_factory = session_factory
        self.storage = storage
        self.engine = engine
        self.detection_timeout_seconds = (
            detection_timeout_seconds
            if detection_timeout_seconds is not None
            else settings.detection_timeout_seconds
        )
        self.progress_throttle_seconds = (
            progress_throttle_seconds
            if progress_throttle_seconds is not None
            else settings.progress_throttle_seconds
        )

    async def process(
        self, job_id: UUID, run: int, image_bytes: Optional[bytes] = None
    ) -> Optional[str]:
        """
        Run the pipeline for one job run.

        Args:
            job_id: Detection job ID
            run: Run generation (the job's retry_count when the run started)
            image_bytes: Uploaded bytes for a first run; retries re-fetch the stored image

        Returns:
            Terminal status written by this run, or None if the run was abandoned
        """
        start_time = time.time()

        job = await self._load_job(job_id)
        if job is None or job.status != JobStatus.PROCESSING.value or job.retry_count != run:
            logger.info(f"Skipping job {job_id} run {run}: no longer the active run")
            return None

        state = _RunState(job_id, run, job.progress)
        logger.info(f"Starting detection job {job_id} run {run}")

        try:
            status, error_code = await self._run_pipeline(job, state, image_bytes)
        except RunSuperseded as e:
            logger.info(f"Abandoning job {job_id} run {run}: {e}")
            metrics_collector.record_discarded_write(e.operation)
            return None

        metrics_collector.record_job_outcome(
            status=status,
            duration_seconds=time.time() - start_time,
            error_code=error_code,
        )
        return status

    async def _run_pipeline(
        self, job: DetectionJob, state: _RunState, image_bytes: Optional[bytes]
    ) -> Tuple[str, Optional[str]]:
        failure: Optional[Tuple[ErrorCode, Optional[str]]] = None
        metadata = None

        try:
            image_bytes = await self._prepare_image(job, state, image_bytes)

            outcome = await asyncio.wait_for(
                self.engine.detect(
                    image_bytes,
                    on_progress=lambda stage, progress: self._on_progress(state, stage, progress),
                    mime_type=job.mime_type or "image/jpeg",
                ),
                timeout=self.detection_timeout_seconds,
            )
            metadata = outcome.metadata

            if not outcome.succeeded:
                failure = (normalize_error_code(outcome.error_code), outcome.message)
            elif not outcome.items:
                failure = (ErrorCode.NO_BOOKS_DETECTED, None)

        except RunSuperseded:
            raise
        except asyncio.TimeoutError:
            logger.warning(
                f"Detection for job {job.id} exceeded {self.detection_timeout_seconds}s"
            )
            failure = (ErrorCode.TIMEOUT, None)
        except CorruptImageError as e:
            logger.info(f"Job {job.id} image could not be decoded: {e}")
            failure = (ErrorCode.CORRUPT_IMAGE, None)
        except UnsupportedImageError as e:
            logger.info(f"Job {job.id} image format rejected: {e}")
            failure = (ErrorCode.INVALID_IMAGE, None)
        except StorageError as e:
            logger.error(f"Storage failure for job {job.id}: {e}")
            failure = (ErrorCode.SERVICE_UNAVAILABLE, None)
        except Exception as e:
            logger.error(f"Unexpected failure processing job {job.id}: {e}", exc_info=True)
            failure = (ErrorCode.UNEXPECTED_ERROR, None)

        if failure is not None:
            error_code, message = failure
            await self._fail(state, error_code, message, metadata)
            return JobStatus.FAILED.value, error_code.value

        await self._advance(state, JobStage.FINALIZING, STAGE_PROGRESS[JobStage.FINALIZING])
        async with self.session_factory() as db:
            completed = await DetectionJobService.complete_job(
                db, state.job_id, state.run, outcome.items, metadata
            )
        if not completed:
            raise RunSuperseded(state.job_id, state.run, "complete")

        return JobStatus.COMPLETED.value, None

    async def _prepare_image(
        self, job: DetectionJob, state: _RunState, image_bytes: Optional[bytes]
    ) -> bytes:
        """Store the upload on a first run, or re-fetch the stored original on a retry"""
        upload_progress = STAGE_PROGRESS[JobStage.UPLOADING]

        if job.storage_path:
            if image_bytes is None:
                image_bytes = await asyncio.to_thread(self.storage.fetch, job.storage_path)
                logger.info(f"Re-using stored image {job.storage_path} for job {job.id}")
            await self._advance(state, JobStage.UPLOADING, upload_progress)
            return image_bytes

        if image_bytes is None:
            raise StorageError(f"No image available for job {job.id}")

        stored = await asyncio.to_thread(
            self.storage.store, job.owner_id, job.id, image_bytes, job.mime_type
        )

        storage_url = None
        expires_at = None
        try:
            signed = await asyncio.to_thread(self.storage.signed_url, stored.storage_path)
            storage_url, expires_at = signed.url, signed.expires_at
        except StorageError as e:
            # Job API signs on read when the URL is missing
            logger.warning(f"Could not sign URL for job {job.id}: {e}")

        async with self.session_factory() as db:
            attached = await DetectionJobService.attach_image(
                db,
                state.job_id,
                state.run,
                storage_path=stored.storage_path,
                thumbnail=stored.thumbnail,
                storage_url=storage_url,
                storage_url_expires_at=expires_at,
                progress=upload_progress,
            )
        if not attached:
            raise RunSuperseded(state.job_id, state.run, "attach_image")

        self._remember(state, JobStage.UPLOADING, upload_progress)
        return image_bytes

    async def _on_progress(self, state: _RunState, raw_stage, raw_progress) -> None:
        """
        Relay an engine progress event.

        Unknown, orchestrator-owned and backwards stages are ignored. The
        value is clamped between the last persisted progress and the
        stage's target, and same-stage updates are throttled.
        """
        if not isinstance(raw_stage, str):
            logger.debug(f"Ignoring malformed stage {raw_stage!r} for job {state.job_id}")
            return
        try:
            stage = JobStage(raw_stage.replace("-", "_"))
        except ValueError:
            logger.debug(f"Ignoring unknown stage '{raw_stage}' for job {state.job_id}")
            return

        if stage in ORCHESTRATOR_STAGES:
            return

        if STAGE_ORDER.index(stage) < STAGE_ORDER.index(state.stage):
            logger.debug(f"Ignoring backwards stage {stage.value} for job {state.job_id}")
            return

        target = STAGE_PROGRESS[stage]
        try:
            value = float(raw_progress) if raw_progress is not None else float(target)
        except (TypeError, ValueError):
            value = float(target)
        # NaN and Infinity decode from JSON but have no integer value
        progress = int(value) if math.isfinite(value) else target
        progress = max(state.progress, min(progress, target))

        if stage == state.stage:
            if progress <= state.progress:
                return
            if time.monotonic() - state.last_write < self.progress_throttle_seconds:
                return

        await self._advance(state, stage, progress)

    async def _advance(self, state: _RunState, stage: JobStage, progress: int) -> None:
        async with self.session_factory() as db:
            advanced = await DetectionJobService.advance_stage(
                db, state.job_id, state.run, stage, progress
            )
        if not advanced:
            raise RunSuperseded(state.job_id, state.run, f"advance:{stage.value}")

        if stage != state.stage:
            metrics_collector.record_stage_transition(stage.value)
        self._remember(state, stage, progress)

    @staticmethod
    def _remember(state: _RunState, stage: JobStage, progress: int) -> None:
        state.stage = stage
        state.progress = progress
        state.last_write = time.monotonic()

    async def _fail(
        self,
        state: _RunState,
        error_code: ErrorCode,
        message: Optional[str],
        metadata: Optional[dict],
    ) -> None:
        if message:
            logger.info(f"Job {state.job_id} failed with {error_code.value}: {message}")
        error_message = error_definition(error_code).message
        async with self.session_factory() as db:
            failed = await DetectionJobService.fail_job(
                db,
                state.job_id,
                state.run,
                error_code,
                error_message,
                failed_stage(state.stage.value),
                analysis_metadata=metadata,
            )
        if not failed:
            raise RunSuperseded(state.job_id, state.run, "fail")

    async def _load_job(self, job_id: UUID) -> Optional[DetectionJob]:
        async with self.session_factory() as db:
            return await DetectionJobService.get_job(db, job_id)
