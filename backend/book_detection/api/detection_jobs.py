"""Detection job API routes"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional, Tuple
from uuid import UUID
from fastapi import (
    APIRouter,
    BackgroundTasks,
    Depends,
    File,
    Query,
    Request,
    UploadFile,
    status,
)
from sqlalchemy.ext.asyncio import AsyncSession

from book_detection.api.dependencies import (
    get_current_owner_id,
    get_image_storage,
    get_orchestrator,
    get_retry_controller,
)
from book_detection.api.errors import conflict_error, detection_error, not_found_error
from book_detection.config import settings
from book_detection.database import get_db
from book_detection.models.detection_job import DetectionJob, JobStatus
from book_detection.models.error_codes import ErrorCode
from book_detection.schemas.detection_job import (
    DeleteRequestResponse,
    DetectionJobListResponse,
    DetectionJobResponse,
    DetectionJobSummary,
    JobSubmitResponse,
    RetryResponse,
)
from book_detection.services.detection_job_service import DetectionJobService
from book_detection.services.image_storage_service import (
    ImageStorageService,
    StorageError,
    UploadValidationError,
)
from book_detection.workers.job_orchestrator import JobOrchestrator
from book_detection.workers.retry_controller import (
    RetryController,
    RetryRejected,
    RetryRejectionReason,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/detection-jobs", tags=["detection-jobs"])

# Stored URLs this close to expiry are re-signed rather than handed out
URL_REFRESH_MARGIN = timedelta(minutes=5)


async def _fresh_image_url(
    db: AsyncSession, storage: ImageStorageService, job: DetectionJob
) -> Tuple[Optional[str], Optional[datetime]]:
    """
    Return a signed URL for the job's image that has not expired.

    A missing or expiring URL is re-signed and persisted. If signing fails
    no URL is returned.
    """
    if not job.storage_path:
        return None, None

    now = datetime.utcnow()
    if (
        job.storage_url
        and job.storage_url_expires_at
        and job.storage_url_expires_at > now + URL_REFRESH_MARGIN
    ):
        return job.storage_url, job.storage_url_expires_at

    try:
        ImageStorageService.assert_owner(job.storage_path, job.owner_id)
        signed = await asyncio.to_thread(storage.signed_url, job.storage_path)
    except StorageError as e:
        logger.warning(f"Could not refresh image URL for job {job.id}: {e}")
        return None, None

    await DetectionJobService.update_signed_url(db, job.id, signed.url, signed.expires_at)
    logger.info(f"Refreshed signed image URL for job {job.id}")
    return signed.url, signed.expires_at


async def _job_view(
    db: AsyncSession, storage: ImageStorageService, job: DetectionJob
) -> DetectionJobResponse:
    image_url, expires_at = await _fresh_image_url(db, storage, job)
    return DetectionJobResponse.from_job(job, image_url=image_url, url_expires_at=expires_at)


@router.post("", response_model=JobSubmitResponse, status_code=status.HTTP_202_ACCEPTED)
async def submit_detection_job(
    request: Request,
    background_tasks: BackgroundTasks,
    image: Optional[UploadFile] = File(None),
    owner_id: UUID = Depends(get_current_owner_id),
    db: AsyncSession = Depends(get_db),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
):
    """
    Submit an image for book detection.

    This endpoint:
    1. Validates MIME type and size; nothing is stored if validation fails
    2. Creates a detection job in the 'processing' state
    3. Hands the image to the job orchestrator in the background
    4. Returns the job ID immediately so the client can poll for status

    Raises:
        400 INVALID_IMAGE: Missing image or unsupported MIME type
        413 IMAGE_TOO_LARGE: Image exceeds the upload ceiling
    """
    if image is None:
        return detection_error(
            ErrorCode.INVALID_IMAGE, "No image provided", instance=request.url.path
        )

    # Read one byte past the ceiling so oversize uploads are detectable
    image_bytes = await image.read(settings.max_upload_bytes + 1)

    try:
        ImageStorageService.validate_upload(len(image_bytes), image.content_type)
    except UploadValidationError as e:
        logger.info(f"Rejected upload from owner {owner_id}: {e.message}")
        return detection_error(e.error_code, e.message, instance=request.url.path)

    job = await DetectionJobService.create_job(
        db,
        owner_id=owner_id,
        original_filename=image.filename,
        mime_type=image.content_type,
        size_bytes=len(image_bytes),
    )

    background_tasks.add_task(orchestrator.process, job.id, job.retry_count, image_bytes)

    return JobSubmitResponse(job_id=job.id, status=job.status)


@router.get("", response_model=DetectionJobListResponse)
async def list_detection_jobs(
    limit: int = Query(50, ge=1, le=100),
    include_deleted: bool = Query(False),
    owner_id: UUID = Depends(get_current_owner_id),
    db: AsyncSession = Depends(get_db),
) -> DetectionJobListResponse:
    """List the caller's detection jobs, newest first"""
    jobs = await DetectionJobService.list_jobs(
        db, owner_id, limit=limit, include_deleted=include_deleted
    )
    return DetectionJobListResponse(
        jobs=[DetectionJobSummary.from_job(job) for job in jobs],
        total=len(jobs),
    )


@router.get("/{job_id}", response_model=DetectionJobResponse)
async def get_detection_job(
    job_id: UUID,
    request: Request,
    owner_id: UUID = Depends(get_current_owner_id),
    db: AsyncSession = Depends(get_db),
    storage: ImageStorageService = Depends(get_image_storage),
):
    """
    Get the current state of a detection job.

    The image URL in the response is always unexpired: stored URLs that
    have lapsed are re-signed transparently.
    """
    job = await DetectionJobService.get_job(db, job_id, owner_id)
    if not job:
        return not_found_error(f"Detection job {job_id} not found", instance=request.url.path)

    return await _job_view(db, storage, job)


@router.post("/{job_id}/retry", response_model=RetryResponse, status_code=status.HTTP_202_ACCEPTED)
async def retry_detection_job(
    job_id: UUID,
    request: Request,
    background_tasks: BackgroundTasks,
    owner_id: UUID = Depends(get_current_owner_id),
    db: AsyncSession = Depends(get_db),
    retry_controller: RetryController = Depends(get_retry_controller),
):
    """
    Retry a failed job using its stored image.

    Raises:
        404: Job not found
        409: Job is not failed, not retryable, or has no stored image
    """
    try:
        job = await retry_controller.retry(db, job_id, owner_id)
    except RetryRejected as e:
        if e.reason == RetryRejectionReason.NOT_FOUND:
            return not_found_error(e.detail, instance=request.url.path)
        return conflict_error(e.detail, instance=request.url.path, extra={"reason": e.reason.value})

    background_tasks.add_task(retry_controller.rerun, job.id, job.retry_count)

    return RetryResponse(
        job_id=job.id,
        status=job.status,
        stage=job.stage,
        progress=job.progress,
        retry_count=job.retry_count,
    )


@router.delete("/{job_id}", response_model=DeleteRequestResponse, status_code=status.HTTP_202_ACCEPTED)
async def delete_detection_job(
    job_id: UUID,
    request: Request,
    owner_id: UUID = Depends(get_current_owner_id),
    db: AsyncSession = Depends(get_db),
):
    """
    Request deletion of a job.

    The job is only flagged here; the retention cleaner removes the image
    and soft-deletes the record once the grace period has passed. Repeated
    requests keep the original request time.
    """
    await DetectionJobService.request_delete(db, job_id, owner_id)

    job = await DetectionJobService.get_job(db, job_id, owner_id)
    if not job or job.is_deleted or job.delete_requested_at is None:
        return not_found_error(f"Detection job {job_id} not found", instance=request.url.path)

    return DeleteRequestResponse(
        job_id=job.id,
        delete_requested_at=job.delete_requested_at,
        purge_after=job.delete_requested_at + timedelta(days=settings.delete_grace_days),
    )


@router.post("/{job_id}/restore", response_model=DetectionJobResponse)
async def restore_detection_job(
    job_id: UUID,
    request: Request,
    owner_id: UUID = Depends(get_current_owner_id),
    db: AsyncSession = Depends(get_db),
    storage: ImageStorageService = Depends(get_image_storage),
):
    """Withdraw a pending delete request before the cleaner acts on it"""
    restored = await DetectionJobService.cancel_delete_request(db, job_id, owner_id)

    job = await DetectionJobService.get_job(db, job_id, owner_id)
    if not job or job.is_deleted:
        return not_found_error(f"Detection job {job_id} not found", instance=request.url.path)
    if not restored and job.delete_requested_at is not None:
        return conflict_error("Delete request could not be withdrawn", instance=request.url.path)

    return await _job_view(db, storage, job)


@router.post("/{job_id}/consume", response_model=DetectionJobResponse)
async def consume_detection_job(
    job_id: UUID,
    request: Request,
    owner_id: UUID = Depends(get_current_owner_id),
    db: AsyncSession = Depends(get_db),
    storage: ImageStorageService = Depends(get_image_storage),
):
    """
    Mark a completed job's results as accepted by the caller.

    Consumption starts the retention window after which the stored image
    is removed.
    """
    await DetectionJobService.mark_consumed(db, job_id, owner_id)

    job = await DetectionJobService.get_job(db, job_id, owner_id)
    if not job or job.is_deleted:
        return not_found_error(f"Detection job {job_id} not found", instance=request.url.path)
    if job.status != JobStatus.COMPLETED.value:
        return conflict_error(
            f"Only completed jobs can be consumed (status is {job.status})",
            instance=request.url.path,
        )

    return await _job_view(db, storage, job)
