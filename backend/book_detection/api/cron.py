"""Scheduler-triggered sweeper endpoints"""

import logging
from fastapi import APIRouter, Depends

from book_detection.api.dependencies import (
    get_retention_cleaner,
    get_timeout_reaper,
    verify_cron_secret,
)
from book_detection.schemas.detection_job import SweepSummary
from book_detection.workers.retention_cleaner import RetentionCleaner
from book_detection.workers.timeout_reaper import TimeoutReaper

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/v1/cron",
    tags=["cron"],
    dependencies=[Depends(verify_cron_secret)],
)


@router.api_route("/check-job-timeouts", methods=["GET", "POST"], response_model=SweepSummary)
async def check_job_timeouts(
    reaper: TimeoutReaper = Depends(get_timeout_reaper),
) -> SweepSummary:
    """Fail detection jobs stuck in processing past the timeout threshold"""
    logger.info("Checking for stale processing jobs")
    return await reaper.run()


@router.api_route("/cleanup-detection-jobs", methods=["GET", "POST"], response_model=SweepSummary)
async def cleanup_detection_jobs(
    cleaner: RetentionCleaner = Depends(get_retention_cleaner),
) -> SweepSummary:
    """Remove images of expired jobs and soft-delete the records"""
    logger.info("Starting detection job cleanup")
    return await cleaner.run()
