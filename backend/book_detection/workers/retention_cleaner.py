"""Retention cleaner for consumed and delete-requested detection jobs"""

import asyncio
import logging
import time
from datetime import datetime, timedelta
from typing import Callable, Optional

from book_detection.config import settings
from book_detection.database import get_session_factory
from book_detection.monitoring.metrics import metrics_collector
from book_detection.schemas.detection_job import SweepSummary
from book_detection.services.detection_job_service import DetectionJobService
from book_detection.services.image_storage_service import ImageStorageService

logger = logging.getLogger(__name__)


class RetentionCleaner:
    """
    Removes stored images for expired jobs and soft-deletes the records.

    Eligible jobs were either consumed longer ago than the retention window
    or flagged for deletion longer ago than the grace period. Failed jobs
    without a delete request are never selected. Storage removal is best
    effort: the record is soft-deleted even if the object could not be
    removed.
    """

    SWEEPER_NAME = "retention_cleaner"

    def __init__(
        self,
        session_factory=None,
        storage: Optional[ImageStorageService] = None,
        consumed_retention_days: Optional[int] = None,
        delete_grace_days: Optional[int] = None,
        batch_size: Optional[int] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.session_factory = session_factory or get_session_factory()
        self.storage = storage or ImageStorageService()
        self.consumed_retention_days = (
            consumed_retention_days
            if consumed_retention_days is not None
            else settings.consumed_retention_days
        )
        self.delete_grace_days = (
            delete_grace_days
            if delete_grace_days is not None
            else settings.delete_grace_days
        )
        self.batch_size = batch_size if batch_size is not None else settings.cleaner_batch_size
        self.clock = clock

    async def run(self) -> SweepSummary:
        """
        Clean up one batch of eligible jobs.

        Returns:
            SweepSummary with processed, errored and storage_errors counts
        """
        start_time = time.time()
        now = self.clock()
        processed = 0
        errored = 0
        storage_errors = 0

        async with self.session_factory() as db:
            candidates = await DetectionJobService.find_cleanup_candidates(
                db,
                consumed_before=now - timedelta(days=self.consumed_retention_days),
                delete_requested_before=now - timedelta(days=self.delete_grace_days),
                limit=self.batch_size,
            )

        if candidates:
            logger.info(f"Found {len(candidates)} detection jobs to clean up")

        for job in candidates:
            if job.storage_path:
                try:
                    await asyncio.to_thread(self.storage.remove, job.storage_path)
                except Exception as e:
                    logger.warning(f"Storage delete failed for job {job.id}: {e}")
                    metrics_collector.record_storage_cleanup_failure()
                    storage_errors += 1

            try:
                async with self.session_factory() as db:
                    deleted = await DetectionJobService.soft_delete(db, job.id)
            except Exception as e:
                logger.error(f"Failed to soft-delete job {job.id}: {e}", exc_info=True)
                errored += 1
                continue

            if deleted:
                processed += 1

        duration = time.time() - start_time
        metrics_collector.record_sweeper_run(self.SWEEPER_NAME, processed, errored, duration)
        logger.info(
            f"Cleanup complete: {processed} jobs soft-deleted, {errored} errors, "
            f"{storage_errors} storage failures"
        )

        return SweepSummary(
            processed=processed,
            errored=errored,
            storage_errors=storage_errors,
            duration_ms=int(duration * 1000),
        )
