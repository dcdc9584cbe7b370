"""Detection job service for database operations.

Every pipeline write is a single conditional UPDATE keyed by job id. Writes
issued on behalf of a pipeline run also match on ``status='processing'``
and on the run generation (``retry_count``), so a run that has been
force-failed by the reaper or superseded by a retry cannot overwrite the
row. A write that matches nothing returns False.
"""

import logging
from datetime import datetime
from typing import Any, Optional
from uuid import UUID
from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from book_detection.models.detection_job import (
    DetectionJob,
    JobStage,
    JobStatus,
    TIMEOUT_STAGE,
)
from book_detection.models.error_codes import ErrorCode, RETRYABLE_ERROR_CODES

logger = logging.getLogger(__name__)


class DetectionJobService:
    """Service for managing detection job database operations"""

    @staticmethod
    async def create_job(
        db: AsyncSession,
        owner_id: UUID,
        original_filename: Optional[str],
        mime_type: str,
        size_bytes: int,
    ) -> DetectionJob:
        """
        Create a new detection job record in its initial processing state.

        Args:
            db: Database session
            owner_id: UUID of the submitting user
            original_filename: Filename as uploaded
            mime_type: Validated MIME type
            size_bytes: Upload size in bytes

        Returns:
            Created DetectionJob instance
        """
        now = datetime.utcnow()
        job = DetectionJob(
            owner_id=owner_id,
            status=JobStatus.PROCESSING.value,
            stage=JobStage.UPLOADING.value,
            progress=0,
            retry_count=0,
            is_deleted=False,
            original_filename=original_filename,
            mime_type=mime_type,
            size_bytes=size_bytes,
            uploaded_at=now,
            created_at=now,
            updated_at=now,
        )
        db.add(job)
        await db.commit()
        await db.refresh(job)

        logger.info(f"Created detection job {job.id} for owner {owner_id}")
        return job

    @staticmethod
    async def get_job(
        db: AsyncSession, job_id: UUID, owner_id: Optional[UUID] = None
    ) -> Optional[DetectionJob]:
        """
        Get a job by ID, optionally scoped to its owner.

        Args:
            db: Database session
            job_id: Detection job ID
            owner_id: When given, jobs owned by anyone else are not returned

        Returns:
            DetectionJob or None if not found
        """
        query = select(DetectionJob).where(DetectionJob.id == job_id)
        if owner_id is not None:
            query = query.where(DetectionJob.owner_id == owner_id)

        result = await db.execute(query.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    @staticmethod
    async def list_jobs(
        db: AsyncSession,
        owner_id: UUID,
        limit: int = 50,
        include_deleted: bool = False,
    ) -> list[DetectionJob]:
        """Get an owner's jobs, newest first"""
        query = select(DetectionJob).where(DetectionJob.owner_id == owner_id)
        if not include_deleted:
            query = query.where(DetectionJob.is_deleted.is_(False))

        query = query.order_by(DetectionJob.created_at.desc()).limit(limit)
        result = await db.execute(query.execution_options(populate_existing=True))
        return list(result.scalars().all())

    @staticmethod
    async def _conditional_update(
        db: AsyncSession,
        job_id: UUID,
        criteria: tuple,
        values: dict[str, Any],
        touch: bool = True,
    ) -> bool:
        """Apply a single-row UPDATE guarded by ``criteria``"""
        if touch:
            values.setdefault("updated_at", datetime.utcnow())
        else:
            # Keep updated_at as is so the reaper's staleness clock is not reset
            values.setdefault("updated_at", DetectionJob.updated_at)

        statement = (
            update(DetectionJob)
            .where(DetectionJob.id == job_id, *criteria)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(statement)
        await db.commit()
        return result.rowcount == 1

    @staticmethod
    def _active_run(run: int) -> tuple:
        return (
            DetectionJob.status == JobStatus.PROCESSING.value,
            DetectionJob.retry_count == run,
        )

    @staticmethod
    async def advance_stage(
        db: AsyncSession,
        job_id: UUID,
        run: int,
        stage: JobStage,
        progress: int,
    ) -> bool:
        """
        Persist a stage/progress transition for an active run.

        The row is only updated while the run is current and the stored
        progress does not exceed ``progress``.

        Returns:
            True if the transition was written
        """
        updated = await DetectionJobService._conditional_update(
            db,
            job_id,
            DetectionJobService._active_run(run) + (DetectionJob.progress <= progress,),
            {"stage": stage.value, "progress": progress},
        )
        if updated:
            logger.debug(f"Job {job_id} run {run} advanced to {stage.value} ({progress}%)")
        else:
            logger.info(f"Discarded stage write {stage.value} for job {job_id} run {run}")
        return updated

    @staticmethod
    async def attach_image(
        db: AsyncSession,
        job_id: UUID,
        run: int,
        storage_path: str,
        thumbnail: Optional[str],
        storage_url: Optional[str],
        storage_url_expires_at: Optional[datetime],
        progress: int,
    ) -> bool:
        """Record the stored image and complete the uploading stage"""
        updated = await DetectionJobService._conditional_update(
            db,
            job_id,
            DetectionJobService._active_run(run) + (DetectionJob.progress <= progress,),
            {
                "stage": JobStage.UPLOADING.value,
                "progress": progress,
                "storage_path": storage_path,
                "thumbnail": thumbnail,
                "storage_url": storage_url,
                "storage_url_expires_at": storage_url_expires_at,
            },
        )
        if updated:
            logger.info(f"Attached stored image {storage_path} to job {job_id}")
        return updated

    @staticmethod
    async def complete_job(
        db: AsyncSession,
        job_id: UUID,
        run: int,
        items: list[Any],
        analysis_metadata: Optional[dict[str, Any]] = None,
    ) -> bool:
        """Store the detected items and mark the job completed"""
        updated = await DetectionJobService._conditional_update(
            db,
            job_id,
            DetectionJobService._active_run(run),
            {
                "status": JobStatus.COMPLETED.value,
                "stage": JobStage.FINALIZING.value,
                "progress": 100,
                "result": items,
                "analysis_metadata": analysis_metadata,
                "error_code": None,
                "error_message": None,
            },
        )
        if updated:
            logger.info(f"Completed detection job {job_id} with {len(items)} items")
        return updated

    @staticmethod
    async def fail_job(
        db: AsyncSession,
        job_id: UUID,
        run: int,
        error_code: ErrorCode,
        error_message: str,
        stage: str,
        analysis_metadata: Optional[dict[str, Any]] = None,
    ) -> bool:
        """
        Mark an active run failed. Progress is left at its last value.

        Args:
            db: Database session
            job_id: Detection job ID
            run: Run generation the failure belongs to
            error_code: Normalized error code
            error_message: Human-readable failure description
            stage: Terminal ``failed_<cause>`` stage marker

        Returns:
            True if the failure was written
        """
        values = {
            "status": JobStatus.FAILED.value,
            "stage": stage,
            "error_code": error_code.value,
            "error_message": error_message,
            "result": None,
        }
        if analysis_metadata is not None:
            values["analysis_metadata"] = analysis_metadata

        updated = await DetectionJobService._conditional_update(
            db, job_id, DetectionJobService._active_run(run), values
        )
        if updated:
            logger.info(f"Detection job {job_id} failed with {error_code.value} at {stage}")
        return updated

    @staticmethod
    async def reset_for_retry(
        db: AsyncSession, job_id: UUID, owner_id: UUID
    ) -> Optional[DetectionJob]:
        """
        Atomically move a failed, retryable job back to the start of the
        pipeline and open a new run generation.

        Returns:
            The reset job, or None if the job was not eligible at write time
        """
        updated = await DetectionJobService._conditional_update(
            db,
            job_id,
            (
                DetectionJob.owner_id == owner_id,
                DetectionJob.status == JobStatus.FAILED.value,
                DetectionJob.error_code.in_(sorted(RETRYABLE_ERROR_CODES)),
                DetectionJob.is_deleted.is_(False),
                DetectionJob.storage_path.is_not(None),
            ),
            {
                "status": JobStatus.PROCESSING.value,
                "stage": JobStage.UPLOADING.value,
                "progress": 0,
                "error_code": None,
                "error_message": None,
                "result": None,
                "retry_count": DetectionJob.retry_count + 1,
            },
        )
        if not updated:
            return None

        job = await DetectionJobService.get_job(db, job_id, owner_id)
        logger.info(f"Reset detection job {job_id} for retry #{job.retry_count}")
        return job

    @staticmethod
    async def update_signed_url(
        db: AsyncSession, job_id: UUID, storage_url: str, expires_at: datetime
    ) -> bool:
        """Replace an expired signed URL without touching the pipeline clock"""
        return await DetectionJobService._conditional_update(
            db,
            job_id,
            (DetectionJob.storage_path.is_not(None),),
            {"storage_url": storage_url, "storage_url_expires_at": expires_at},
            touch=False,
        )

    @staticmethod
    async def request_delete(db: AsyncSession, job_id: UUID, owner_id: UUID) -> bool:
        """Flag a job for grace-period cleanup by the retention cleaner"""
        updated = await DetectionJobService._conditional_update(
            db,
            job_id,
            (
                DetectionJob.owner_id == owner_id,
                DetectionJob.is_deleted.is_(False),
                DetectionJob.delete_requested_at.is_(None),
            ),
            {"delete_requested_at": datetime.utcnow()},
            touch=False,
        )
        if updated:
            logger.info(f"Delete requested for detection job {job_id}")
        return updated

    @staticmethod
    async def cancel_delete_request(db: AsyncSession, job_id: UUID, owner_id: UUID) -> bool:
        """Withdraw a delete request that the cleaner has not acted on yet"""
        updated = await DetectionJobService._conditional_update(
            db,
            job_id,
            (
                DetectionJob.owner_id == owner_id,
                DetectionJob.is_deleted.is_(False),
                DetectionJob.delete_requested_at.is_not(None),
            ),
            {"delete_requested_at": None},
            touch=False,
        )
        if updated:
            logger.info(f"Delete request withdrawn for detection job {job_id}")
        return updated

    @staticmethod
    async def mark_consumed(db: AsyncSession, job_id: UUID, owner_id: UUID) -> bool:
        """Record that a completed job's results were accepted into the catalog"""
        updated = await DetectionJobService._conditional_update(
            db,
            job_id,
            (
                DetectionJob.owner_id == owner_id,
                DetectionJob.status == JobStatus.COMPLETED.value,
                DetectionJob.is_deleted.is_(False),
                DetectionJob.consumed_at.is_(None),
            ),
            {"consumed_at": datetime.utcnow()},
            touch=False,
        )
        if updated:
            logger.info(f"Detection job {job_id} marked consumed")
        return updated

    @staticmethod
    async def find_stale_jobs(
        db: AsyncSession, cutoff: datetime, limit: int
    ) -> list[DetectionJob]:
        """Processing jobs whose last write is older than ``cutoff``"""
        result = await db.execute(
            select(DetectionJob)
            .where(
                DetectionJob.status == JobStatus.PROCESSING.value,
                DetectionJob.updated_at < cutoff,
            )
            .order_by(DetectionJob.updated_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    @staticmethod
    async def force_timeout(
        db: AsyncSession, job_id: UUID, cutoff: datetime, error_message: str
    ) -> bool:
        """
        Force-fail a stuck job. The staleness predicate is re-checked in
        the UPDATE so a job that advanced since it was selected is skipped.
        """
        return await DetectionJobService._conditional_update(
            db,
            job_id,
            (
                DetectionJob.status == JobStatus.PROCESSING.value,
                DetectionJob.updated_at < cutoff,
            ),
            {
                "status": JobStatus.FAILED.value,
                "stage": TIMEOUT_STAGE,
                "error_code": ErrorCode.TIMEOUT.value,
                "error_message": error_message,
                "result": None,
            },
        )

    @staticmethod
    async def find_cleanup_candidates(
        db: AsyncSession,
        consumed_before: datetime,
        delete_requested_before: datetime,
        limit: int,
    ) -> list[DetectionJob]:
        """
        Jobs eligible for retention cleanup: consumed before
        ``consumed_before`` or flagged for deletion before
        ``delete_requested_before``.
        """
        result = await db.execute(
            select(DetectionJob)
            .where(
                DetectionJob.is_deleted.is_(False),
                or_(
                    and_(
                        DetectionJob.consumed_at.is_not(None),
                        DetectionJob.consumed_at < consumed_before,
                    ),
                    and_(
                        DetectionJob.delete_requested_at.is_not(None),
                        DetectionJob.delete_requested_at < delete_requested_before,
                    ),
                ),
            )
            .order_by(DetectionJob.created_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    @staticmethod
    async def soft_delete(db: AsyncSession, job_id: UUID) -> bool:
        """Mark a job deleted and scrub its image references"""
        updated = await DetectionJobService._conditional_update(
            db,
            job_id,
            (DetectionJob.is_deleted.is_(False),),
            {
                "is_deleted": True,
                "deleted_at": datetime.utcnow(),
                "storage_path": None,
                "storage_url": None,
                "storage_url_expires_at": None,
                "thumbnail": None,
            },
        )
        if updated:
            logger.info(f"Soft-deleted detection job {job_id}")
        return updated
