"""Unit tests for Detection Job Service"""

import pytest
from datetime import datetime, timedelta
from uuid import uuid4

from book_detection.models.detection_job import JobStage, JobStatus
from book_detection.models.error_codes import ErrorCode
from book_detection.services.detection_job_service import DetectionJobService


@pytest.mark.asyncio
class TestJobLifecycle:
    """Test job creation and reads"""

    async def test_create_job(self, db_session, owner_id):
        """Test create job"""
        job = await DetectionJobService.create_job(
            db_session,
            owner_id=owner_id,
            original_filename="shelf.jpg",
            mime_type="image/jpeg",
            size_bytes=2 * 1024 * 1024,
        )

        assert job.id is not None
        assert job.owner_id == owner_id
        assert job.status == JobStatus.PROCESSING.value
        assert job.stage == JobStage.UPLOADING.value
        assert job.progress == 0
        assert job.retry_count == 0
        assert job.is_deleted is False
        assert job.uploaded_at is not None
        assert job.result is None
        assert job.error_code is None

    async def test_get_job_scoped_to_owner(self, db_session, make_job, owner_id):
        """Test get job scoped to owner"""
        job = await make_job()

        assert (await DetectionJobService.get_job(db_session, job.id, owner_id)).id == job.id
        assert await DetectionJobService.get_job(db_session, job.id, uuid4()) is None
        assert await DetectionJobService.get_job(db_session, uuid4()) is None

    async def test_list_jobs_newest_first_without_deleted(self, db_session, make_job, owner_id, past):
        """Test list jobs newest first without deleted"""
        older = await make_job(created_at=past(hours=2))
        newer = await make_job(created_at=past(hours=1))
        await make_job(is_deleted=True, deleted_at=past(minutes=5))
        await make_job(owner_id=uuid4())

        jobs = await DetectionJobService.list_jobs(db_session, owner_id)

        assert [job.id for job in jobs] == [newer.id, older.id]

    async def test_list_jobs_include_deleted_and_limit(self, db_session, make_job, owner_id, past):
        """Test list jobs include deleted and limit"""
        await make_job(created_at=past(hours=3))
        await make_job(created_at=past(hours=2), is_deleted=True)
        latest = await make_job(created_at=past(hours=1))

        all_jobs = await DetectionJobService.list_jobs(db_session, owner_id, include_deleted=True)
        limited = await DetectionJobService.list_jobs(db_session, owner_id, limit=1)

        assert len(all_jobs) == 3
        assert [job.id for job in limited] == [latest.id]


@pytest.mark.asyncio
class TestPipelineWrites:
    """Test run-guarded stage, completion and failure writes"""

    async def test_advance_stage(self, db_session, make_job, load_job):
        """Test advance stage"""
        job = await make_job(progress=15)

        assert await DetectionJobService.advance_stage(db_session, job.id, 0, JobStage.EXTRACTING, 40)

        stored = await load_job(job.id)
        assert stored.stage == JobStage.EXTRACTING.value
        assert stored.progress == 40

    async def test_advance_stage_never_lowers_progress(self, db_session, make_job, load_job):
        """Test advance stage never lowers progress"""
        job = await make_job(stage=JobStage.ANALYZING.value, progress=70)

        assert not await DetectionJobService.advance_stage(
            db_session, job.id, 0, JobStage.EXTRACTING, 40
        )
        assert (await load_job(job.id)).progress == 70

    async def test_advance_stage_rejects_other_run(self, db_session, make_job, load_job):
        """Test advance stage rejects other run"""
        job = await make_job(retry_count=2)

        assert not await DetectionJobService.advance_stage(
            db_session, job.id, 1, JobStage.EXTRACTING, 40
        )
        assert (await load_job(job.id)).stage == JobStage.UPLOADING.value

    async def test_advance_stage_rejects_terminal_job(self, db_session, make_failed_job):
        """Test advance stage rejects terminal job"""
        job = await make_failed_job()

        assert not await DetectionJobService.advance_stage(
            db_session, job.id, 0, JobStage.ENRICHING, 85
        )

    async def test_attach_image(self, db_session, make_job, load_job, owner_id):
        """Test attach image"""
        job = await make_job()
        expires_at = datetime.utcnow() + timedelta(days=7)

        attached = await DetectionJobService.attach_image(
            db_session,
            job.id,
            0,
            storage_path=f"{owner_id}/{job.id}/original.jpg",
            thumbnail="dGh1bWI=",
            storage_url="https://signed.example.com/x",
            storage_url_expires_at=expires_at,
            progress=15,
        )

        stored = await load_job(job.id)
        assert attached
        assert stored.progress == 15
        assert stored.storage_path == f"{owner_id}/{job.id}/original.jpg"
        assert stored.thumbnail == "dGh1bWI="
        assert stored.storage_url_expires_at == expires_at

    async def test_complete_job(self, db_session, make_job, load_job):
        """Test complete job"""
        job = await make_job(stage=JobStage.FINALIZING.value, progress=100)
        items = [{"title": "Dune", "author": "Frank Herbert"}]

        assert await DetectionJobService.complete_job(db_session, job.id, 0, items, {"model": "m"})

        stored = await load_job(job.id)
        assert stored.status == JobStatus.COMPLETED.value
        assert stored.progress == 100
        assert stored.result == items
        assert stored.analysis_metadata == {"model": "m"}
        assert stored.error_code is None
        assert stored.can_retry is False

    async def test_complete_job_only_once(self, db_session, make_job):
        """Test complete job only once"""
        job = await make_job(stage=JobStage.FINALIZING.value, progress=100)

        assert await DetectionJobService.complete_job(db_session, job.id, 0, [{"title": "A"}])
        assert not await DetectionJobService.complete_job(db_session, job.id, 0, [{"title": "B"}])

    async def test_fail_job_keeps_progress(self, db_session, make_job, load_job):
        """Test fail job keeps progress"""
        job = await make_job(stage=JobStage.ANALYZING.value, progress=70)

        assert await DetectionJobService.fail_job(
            db_session, job.id, 0, ErrorCode.AI_FAILED, "Failed to identify books.", "failed_analyzing"
        )

        stored = await load_job(job.id)
        assert stored.status == JobStatus.FAILED.value
        assert stored.stage == "failed_analyzing"
        assert stored.progress == 70
        assert stored.error_code == ErrorCode.AI_FAILED.value
        assert stored.result is None
        assert stored.can_retry is True


@pytest.mark.asyncio
class TestResetForRetry:
    """Test the atomic retry reset"""

    async def test_reset_failed_retryable_job(self, db_session, make_failed_job, owner_id):
        """Test reset failed retryable job"""
        job = await make_failed_job("TIMEOUT")

        reset = await DetectionJobService.reset_for_retry(db_session, job.id, owner_id)

        assert reset is not None
        assert reset.status == JobStatus.PROCESSING.value
        assert reset.stage == JobStage.UPLOADING.value
        assert reset.progress == 0
        assert reset.retry_count == 1
        assert reset.error_code is None
        assert reset.error_message is None
        assert reset.storage_path == job.storage_path

    async def test_reset_rejects_non_retryable(self, db_session, make_failed_job, owner_id):
        """Test reset rejects non retryable"""
        job = await make_failed_job("CORRUPT_IMAGE")

        assert await DetectionJobService.reset_for_retry(db_session, job.id, owner_id) is None

    async def test_reset_rejects_processing_job(self, db_session, make_job, owner_id):
        """Test reset rejects processing job"""
        job = await make_job(storage_path="x/y/original.jpg")

        assert await DetectionJobService.reset_for_retry(db_session, job.id, owner_id) is None

    async def test_reset_rejects_other_owner(self, db_session, make_failed_job):
        """Test reset rejects other owner"""
        job = await make_failed_job("TIMEOUT")

        assert await DetectionJobService.reset_for_retry(db_session, job.id, uuid4()) is None

    async def test_reset_rejects_missing_image(self, db_session, make_failed_job, owner_id):
        """Test reset rejects missing image"""
        job = await make_failed_job("TIMEOUT", storage_path=None)

        assert await DetectionJobService.reset_for_retry(db_session, job.id, owner_id) is None


@pytest.mark.asyncio
class TestOwnerActions:
    """Test signed URL refresh, delete requests and consumption"""

    async def test_update_signed_url_preserves_updated_at(self, db_session, make_job, load_job, past):
        """Test update signed url preserves updated at"""
        last_write = past(minutes=3)
        job = await make_job(storage_path="a/b/original.jpg", updated_at=last_write)
        expires_at = datetime.utcnow() + timedelta(days=7)

        assert await DetectionJobService.update_signed_url(
            db_session, job.id, "https://signed.example.com/new", expires_at
        )

        stored = await load_job(job.id)
        assert stored.storage_url == "https://signed.example.com/new"
        assert stored.storage_url_expires_at == expires_at
        assert stored.updated_at == last_write

    async def test_request_delete_keeps_first_request(self, db_session, make_job, load_job, owner_id):
        """Test request delete keeps first request"""
        job = await make_job()

        assert await DetectionJobService.request_delete(db_session, job.id, owner_id)
        first = (await load_job(job.id)).delete_requested_at
        assert not await DetectionJobService.request_delete(db_session, job.id, owner_id)

        assert first is not None
        assert (await load_job(job.id)).delete_requested_at == first

    async def test_request_delete_other_owner(self, db_session, make_job):
        """Test request delete other owner"""
        job = await make_job()

        assert not await DetectionJobService.request_delete(db_session, job.id, uuid4())

    async def test_cancel_delete_request(self, db_session, make_job, load_job, owner_id, past):
        """Test cancel delete request"""
        job = await make_job(delete_requested_at=past(hours=2))

        assert await DetectionJobService.cancel_delete_request(db_session, job.id, owner_id)
        assert (await load_job(job.id)).delete_requested_at is None
        assert not await DetectionJobService.cancel_delete_request(db_session, job.id, owner_id)

    async def test_mark_consumed_requires_completed(self, db_session, make_job, load_job, owner_id):
        """Test mark consumed requires completed"""
        processing = await make_job()
        completed = await make_job(
            status=JobStatus.COMPLETED.value,
            stage=JobStage.FINALIZING.value,
            progress=100,
            result=[{"title": "Dune"}],
        )

        assert not await DetectionJobService.mark_consumed(db_session, processing.id, owner_id)
        assert await DetectionJobService.mark_consumed(db_session, completed.id, owner_id)
        assert (await load_job(completed.id)).consumed_at is not None


@pytest.mark.asyncio
class TestSweeperQueries:
    """Test the reaper and cleaner queries and writes"""

    async def test_find_stale_jobs(self, db_session, make_job, make_failed_job, past):
        """Test find stale jobs"""
        stale = await make_job(stage=JobStage.ANALYZING.value, progress=70, updated_at=past(minutes=15))
        await make_job(updated_at=past(minutes=2))
        await make_failed_job(updated_at=past(hours=1))

        cutoff = datetime.utcnow() - timedelta(minutes=10)
        jobs = await DetectionJobService.find_stale_jobs(db_session, cutoff, limit=50)

        assert [job.id for job in jobs] == [stale.id]

    async def test_force_timeout(self, db_session, make_job, load_job, past):
        """Test force timeout"""
        job = await make_job(stage=JobStage.ANALYZING.value, progress=70, updated_at=past(minutes=15))
        cutoff = datetime.utcnow() - timedelta(minutes=10)

        assert await DetectionJobService.force_timeout(db_session, job.id, cutoff, "stuck")

        stored = await load_job(job.id)
        assert stored.status == JobStatus.FAILED.value
        assert stored.stage == "failed_timeout"
        assert stored.error_code == ErrorCode.TIMEOUT.value
        assert stored.can_retry is True

    async def test_force_timeout_skips_advanced_job(self, db_session, make_job, load_job, past):
        """Test force timeout skips advanced job"""
        job = await make_job(updated_at=past(minutes=15))
        cutoff = datetime.utcnow() - timedelta(minutes=10)

        # The run wrote progress after the reaper selected it
        await DetectionJobService.advance_stage(db_session, job.id, 0, JobStage.EXTRACTING, 40)

        assert not await DetectionJobService.force_timeout(db_session, job.id, cutoff, "stuck")
        assert (await load_job(job.id)).status == JobStatus.PROCESSING.value

    async def test_find_cleanup_candidates(self, db_session, make_job, make_failed_job, past):
        """Test find cleanup candidates"""
        consumed_old = await make_job(status=JobStatus.COMPLETED.value, consumed_at=past(days=8))
        await make_job(status=JobStatus.COMPLETED.value, consumed_at=past(days=2))
        delete_old = await make_job(delete_requested_at=past(days=2))
        await make_job(delete_requested_at=past(hours=12))
        await make_failed_job(created_at=past(days=60), updated_at=past(days=60))
        await make_job(consumed_at=past(days=30), is_deleted=True)

        now = datetime.utcnow()
        jobs = await DetectionJobService.find_cleanup_candidates(
            db_session,
            consumed_before=now - timedelta(days=7),
            delete_requested_before=now - timedelta(days=1),
            limit=100,
        )

        assert {job.id for job in jobs} == {consumed_old.id, delete_old.id}

    async def test_soft_delete_scrubs_image_fields(self, db_session, make_failed_job, load_job):
        """Test soft delete scrubs image fields"""
        job = await make_failed_job(
            "AI_FAILED",
            storage_url="https://signed.example.com/x",
            storage_url_expires_at=datetime.utcnow() + timedelta(days=1),
        )

        assert await DetectionJobService.soft_delete(db_session, job.id)
        assert not await DetectionJobService.soft_delete(db_session, job.id)

        stored = await load_job(job.id)
        assert stored.is_deleted is True
        assert stored.deleted_at is not None
        assert stored.storage_path is None
        assert stored.storage_url is None
        assert stored.storage_url_expires_at is None
        assert stored.thumbnail is None
        assert stored.error_code == "AI_FAILED"
        assert stored.error_message is not None
