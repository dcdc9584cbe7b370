"""Timeout reaper for detection jobs stuck in processing"""

import logging
import time
from datetime import datetime, timedelta
from typing import Callable, Optional

from book_detection.config import settings
from book_detection.database import get_session_factory
from book_detection.monitoring.metrics import metrics_collector
from book_detection.schemas.detection_job import SweepSummary
from book_detection.services.detection_job_service import DetectionJobService

logger = logging.getLogger(__name__)


class TimeoutReaper:
    """
    Force-fails jobs whose last write is older than the timeout threshold.

    Stateless between runs; a job that is no longer processing is excluded
    by the query, so repeated runs are no-ops for jobs already reaped.
    """

    SWEEPER_NAME = "timeout_reaper"

    def __init__(
        self,
        session_factory=None,
        timeout_minutes: Optional[int] = None,
        batch_size: Optional[int] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.session_factory = session_factory or get_session_factory()
        self.timeout_minutes = (
            timeout_minutes
            if timeout_minutes is not None
            else settings.job_timeout_minutes
        )
        self.batch_size = batch_size if batch_size is not None else settings.reaper_batch_size
        self.clock = clock

    async def run(self) -> SweepSummary:
        """
        Reap one batch of stale jobs.

        Returns:
            SweepSummary with processed and errored counts
        """
        start_time = time.time()
        now = self.clock()
        cutoff = now - timedelta(minutes=self.timeout_minutes)
        processed = 0
        errored = 0

        async with self.session_factory() as db:
            stale_jobs = await DetectionJobService.find_stale_jobs(db, cutoff, self.batch_size)

        if stale_jobs:
            logger.info(f"Found {len(stale_jobs)} stale detection jobs")

        for job in stale_jobs:
            stuck_minutes = int((now - job.updated_at).total_seconds() // 60)
            message = (
                f"Processing timeout: job stuck in '{job.stage}' for {stuck_minutes} minutes"
            )
            try:
                async with self.session_factory() as db:
                    reaped = await DetectionJobService.force_timeout(db, job.id, cutoff, message)
            except Exception as e:
                logger.error(f"Failed to mark job {job.id} as timed out: {e}", exc_info=True)
                errored += 1
                continue

            if reaped:
                logger.info(f"Marked job {job.id} as TIMEOUT ({stuck_minutes}m in {job.stage})")
                processed += 1
            else:
                logger.info(f"Job {job.id} advanced before it could be reaped")

        duration = time.time() - start_time
        metrics_collector.record_sweeper_run(self.SWEEPER_NAME, processed, errored, duration)
        logger.info(f"Timeout check complete: {processed} marked as failed, {errored} errors")

        return SweepSummary(processed=processed, errored=errored, duration_ms=int(duration * 1000))
