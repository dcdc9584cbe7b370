"""Tests for the retry controller"""

import uuid
import pytest
from unittest.mock import AsyncMock, Mock, patch

from book_detection.models.detection_job import JobStage, JobStatus
from book_detection.workers.retry_controller import (
    RetryController,
    RetryRejected,
    RetryRejectionReason,
)


@pytest.fixture
def orchestrator():
    orchestrator = Mock()
    orchestrator.process = AsyncMock(return_value=JobStatus.COMPLETED.value)
    return orchestrator


@pytest.mark.asyncio
class TestRetryAccepted:
    """Test retries that reset the job"""

    async def test_retry_resets_failed_job(
        self, orchestrator, db_session, make_failed_job, owner_id
    ):
        """Test retry resets failed job"""
        job = await make_failed_job("TIMEOUT", progress=70)

        reset = await RetryController(orchestrator).retry(db_session, job.id, owner_id)

        assert reset.status == JobStatus.PROCESSING.value
        assert reset.stage == JobStage.UPLOADING.value
        assert reset.progress == 0
        assert reset.retry_count == 1
        assert reset.error_code is None
        assert reset.error_message is None
        assert reset.storage_path == job.storage_path
        orchestrator.process.assert_not_called()

    async def test_each_retry_opens_a_new_run(
        self, orchestrator, db_session, make_failed_job, owner_id
    ):
        """Test each retry opens a new run"""
        job = await make_failed_job("OCR_FAILED", retry_count=2)

        reset = await RetryController(orchestrator).retry(db_session, job.id, owner_id)

        assert reset.retry_count == 3

    async def test_rerun_drives_orchestrator_with_new_run(self, orchestrator):
        """Test rerun drives orchestrator with new run"""
        job_id = uuid.uuid4()

        status = await RetryController(orchestrator).rerun(job_id, 1)

        assert status == JobStatus.COMPLETED.value
        orchestrator.process.assert_awaited_once_with(job_id, 1)

    async def test_accepted_retry_is_counted(
        self, orchestrator, db_session, make_failed_job, owner_id
    ):
        """Test accepted retry is counted"""
        job = await make_failed_job("SERVICE_UNAVAILABLE")

        with patch("book_detection.workers.retry_controller.metrics_collector") as mock_metrics:
            await RetryController(orchestrator).retry(db_session, job.id, owner_id)

        mock_metrics.record_retry.assert_called_once_with("accepted")


@pytest.mark.asyncio
class TestRetryRejected:
    """Test that rejected retries leave the job untouched"""

    async def assert_rejected(self, orchestrator, db_session, job_id, owner_id, reason):
        with pytest.raises(RetryRejected) as exc_info:
            await RetryController(orchestrator).retry(db_session, job_id, owner_id)
        assert exc_info.value.reason == reason
        orchestrator.process.assert_not_called()

    async def test_missing_job(self, orchestrator, db_session, owner_id):
        """Test missing job"""
        await self.assert_rejected(
            orchestrator, db_session, uuid.uuid4(), owner_id, RetryRejectionReason.NOT_FOUND
        )

    async def test_other_owners_job(self, orchestrator, db_session, make_failed_job):
        """Test other owners job"""
        job = await make_failed_job("TIMEOUT")

        await self.assert_rejected(
            orchestrator, db_session, job.id, uuid.uuid4(), RetryRejectionReason.NOT_FOUND
        )

    async def test_deleted_job(self, orchestrator, db_session, make_failed_job, owner_id):
        """Test deleted job"""
        job = await make_failed_job("TIMEOUT", is_deleted=True, storage_path=None)

        await self.assert_rejected(
            orchestrator, db_session, job.id, owner_id, RetryRejectionReason.NOT_FOUND
        )

    async def test_processing_job(self, orchestrator, db_session, make_job, load_job, owner_id):
        """Test processing job"""
        job = await make_job(progress=40, stage=JobStage.EXTRACTING.value)

        await self.assert_rejected(
            orchestrator, db_session, job.id, owner_id, RetryRejectionReason.NOT_FAILED
        )
        stored = await load_job(job.id)
        assert stored.retry_count == 0
        assert stored.progress == 40

    async def test_completed_job(self, orchestrator, db_session, make_job, owner_id):
        """Test completed job"""
        job = await make_job(
            status=JobStatus.COMPLETED.value,
            stage=JobStage.FINALIZING.value,
            progress=100,
            result=[{"title": "Dune"}],
        )

        await self.assert_rejected(
            orchestrator, db_session, job.id, owner_id, RetryRejectionReason.NOT_FAILED
        )

    @pytest.mark.parametrize(
        "error_code", ["INVALID_IMAGE", "IMAGE_TOO_LARGE", "CORRUPT_IMAGE"]
    )
    async def test_non_retryable_error(
        self, orchestrator, db_session, make_failed_job, load_job, owner_id, error_code
    ):
        """Test non retryable error"""
        job = await make_failed_job(error_code)

        await self.assert_rejected(
            orchestrator, db_session, job.id, owner_id, RetryRejectionReason.NOT_RETRYABLE
        )
        stored = await load_job(job.id)
        assert stored.status == JobStatus.FAILED.value
        assert stored.error_code == error_code
        assert stored.retry_count == 0

    async def test_image_no_longer_stored(
        self, orchestrator, db_session, make_failed_job, owner_id
    ):
        """Test image no longer stored"""
        job = await make_failed_job("TIMEOUT", storage_path=None)

        await self.assert_rejected(
            orchestrator, db_session, job.id, owner_id, RetryRejectionReason.IMAGE_UNAVAILABLE
        )

    async def test_second_concurrent_retry_conflicts(
        self, orchestrator, session_factory, make_failed_job, owner_id
    ):
        """Test second concurrent retry conflicts"""
        job = await make_failed_job("TIMEOUT")
        controller = RetryController(orchestrator)

        async with session_factory() as stale_db:
            # Another request resets the job between the read and the write
            with patch(
                "book_detection.workers.retry_controller.DetectionJobService.reset_for_retry",
                new=AsyncMock(return_value=None),
            ):
                with pytest.raises(RetryRejected) as exc_info:
                    await controller.retry(stale_db, job.id, owner_id)

        assert exc_info.value.reason == RetryRejectionReason.CONFLICT

    async def test_retry_after_retry_is_rejected(
        self, orchestrator, session_factory, make_failed_job, load_job, owner_id
    ):
        """Test retry after retry is rejected"""
        job = await make_failed_job("TIMEOUT")
        controller = RetryController(orchestrator)

        async with session_factory() as db:
            await controller.retry(db, job.id, owner_id)
        async with session_factory() as db:
            with pytest.raises(RetryRejected) as exc_info:
                await controller.retry(db, job.id, owner_id)

        assert exc_info.value.reason == RetryRejectionReason.NOT_FAILED
        assert (await load_job(job.id)).retry_count == 1
