"""Retry controller for re-driving failed detection jobs"""

import enum
import logging
from typing import Optional
from uuid import UUID
from sqlalchemy.ext.asyncio import AsyncSession

from book_detection.models.detection_job import DetectionJob, JobStatus
from book_detection.models.error_codes import can_retry
from book_detection.monitoring.metrics import metrics_collector
from book_detection.services.detection_job_service import DetectionJobService
from book_detection.workers.job_orchestrator import JobOrchestrator

logger = logging.getLogger(__name__)


class RetryRejectionReason(str, enum.Enum):
    """Why a retry request was refused"""
    NOT_FOUND = "not_found"
    NOT_FAILED = "not_failed"
    NOT_RETRYABLE = "not_retryable"
    IMAGE_UNAVAILABLE = "image_unavailable"
    CONFLICT = "conflict"


class RetryRejected(Exception):
    """Retry preconditions were not met; nothing was changed"""

    def __init__(self, job_id: UUID, reason: RetryRejectionReason, detail: str):
        self.job_id = job_id
        self.reason = reason
        self.detail = detail
        super().__init__(detail)


class RetryController:
    """
    Re-enters failed, retryable jobs into the pipeline using the stored image.

    Retries are user-initiated only. The reset is a single conditional
    update, so two concurrent retry requests open at most one new run.
    """

    def __init__(self, orchestrator: JobOrchestrator):
        self.orchestrator = orchestrator

    async def retry(self, db: AsyncSession, job_id: UUID, owner_id: UUID) -> DetectionJob:
        """
        Reset a failed job for a new run.

        Args:
            db: Database session
            job_id: Detection job ID
            owner_id: Requesting owner

        Returns:
            The reset job; its retry_count is the new run generation

        Raises:
            RetryRejected: If the job is missing, not owned, not failed,
                not retryable, has no stored image, or changed concurrently
        """
        job = await DetectionJobService.get_job(db, job_id, owner_id)
        rejection = self._check_preconditions(job)
        if rejection is not None:
            reason, detail = rejection
            metrics_collector.record_retry(reason.value)
            logger.info(f"Rejected retry of job {job_id}: {detail}")
            raise RetryRejected(job_id, reason, detail)

        reset_job = await DetectionJobService.reset_for_retry(db, job_id, owner_id)
        if reset_job is None:
            metrics_collector.record_retry(RetryRejectionReason.CONFLICT.value)
            raise RetryRejected(
                job_id, RetryRejectionReason.CONFLICT, "Job changed while the retry was applied"
            )

        metrics_collector.record_retry("accepted")
        return reset_job

    async def rerun(self, job_id: UUID, run: int) -> Optional[str]:
        """Drive the new run; bytes are re-fetched from storage by the orchestrator"""
        return await self.orchestrator.process(job_id, run)

    @staticmethod
    def _check_preconditions(job: Optional[DetectionJob]):
        if job is None or job.is_deleted:
            return RetryRejectionReason.NOT_FOUND, "Detection job not found"

        if job.status != JobStatus.FAILED.value:
            return (
                RetryRejectionReason.NOT_FAILED,
                f"Only failed jobs can be retried (status is {job.status})",
            )

        if not can_retry(job.error_code):
            return (
                RetryRejectionReason.NOT_RETRYABLE,
                f"Jobs failed with {job.error_code} cannot be retried; submit a new image",
            )

        if not job.storage_path:
            return (
                RetryRejectionReason.IMAGE_UNAVAILABLE,
                "The stored image is no longer available; submit a new image",
            )

        return None
