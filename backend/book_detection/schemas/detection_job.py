"""Detection job schemas for API requests/responses"""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID
from pydantic import BaseModel, Field


class JobSubmitResponse(BaseModel):
    """Returned immediately after an upload is accepted"""
    job_id: UUID
    status: str
    message: str = "Detection started. Poll the job for status."


class DetectionJobImage(BaseModel):
    """Image information attached to a job view"""
    filename: Optional[str] = None
    mime_type: Optional[str] = None
    size_bytes: Optional[int] = None
    thumbnail: Optional[str] = Field(None, description="Base64 JPEG thumbnail")
    uploaded_at: Optional[datetime] = None
    url: Optional[str] = Field(None, description="Signed URL to the original image")
    expires_at: Optional[datetime] = None


class DetectionJobResponse(BaseModel):
    """Full job view returned to a polling client"""
    id: UUID
    status: str
    stage: str
    progress: int
    result: Optional[list[Any]] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    can_retry: bool = False
    retry_count: int = 0
    created_at: datetime
    updated_at: datetime
    consumed_at: Optional[datetime] = None
    delete_requested_at: Optional[datetime] = None
    is_deleted: bool = False
    deleted_at: Optional[datetime] = None
    image: DetectionJobImage
    analysis: Optional[dict[str, Any]] = None

    @classmethod
    def from_job(
        cls,
        job,
        image_url: Optional[str] = None,
        url_expires_at: Optional[datetime] = None,
    ) -> "DetectionJobResponse":
        """Build a response from a DetectionJob row and a fresh signed URL"""
        return cls(
            id=job.id,
            status=job.status,
            stage=job.stage,
            progress=job.progress,
            result=job.result,
            error_code=job.error_code,
            error_message=job.error_message,
            can_retry=job.can_retry,
            retry_count=job.retry_count,
            created_at=job.created_at,
            updated_at=job.updated_at,
            consumed_at=job.consumed_at,
            delete_requested_at=job.delete_requested_at,
            is_deleted=job.is_deleted,
            deleted_at=job.deleted_at,
            image=DetectionJobImage(
                filename=job.original_filename,
                mime_type=job.mime_type,
                size_bytes=job.size_bytes,
                thumbnail=job.thumbnail,
                uploaded_at=job.uploaded_at,
                url=image_url,
                expires_at=url_expires_at if image_url else None,
            ),
            analysis=job.analysis_metadata,
        )


class DetectionJobSummary(BaseModel):
    """Compact job entry for history listings"""
    id: UUID
    status: str
    stage: str
    progress: int
    error_code: Optional[str] = None
    can_retry: bool = False
    item_count: int = 0
    original_filename: Optional[str] = None
    thumbnail: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_job(cls, job) -> "DetectionJobSummary":
        return cls(
            id=job.id,
            status=job.status,
            stage=job.stage,
            progress=job.progress,
            error_code=job.error_code,
            can_retry=job.can_retry,
            item_count=len(job.result or []),
            original_filename=job.original_filename,
            thumbnail=job.thumbnail,
            created_at=job.created_at,
            updated_at=job.updated_at,
        )


class DetectionJobListResponse(BaseModel):
    """Owner's job history"""
    jobs: list[DetectionJobSummary]
    total: int


class RetryResponse(BaseModel):
    """Returned when a failed job is re-entered into the pipeline"""
    job_id: UUID
    status: str
    stage: str
    progress: int
    retry_count: int


class DeleteRequestResponse(BaseModel):
    """Returned when an owner flags a job for deletion"""
    job_id: UUID
    delete_requested_at: datetime
    purge_after: datetime


class SweepSummary(BaseModel):
    """Result of one Timeout Reaper or Retention Cleaner run"""
    processed: int = 0
    errored: int = 0
    storage_errors: int = 0
    duration_ms: int = 0


class EngineOutcome(BaseModel):
    """
    Normalized outcome of one detection engine call.

    Either ``items`` is set (success) or ``error_code`` carries the
    engine's raw failure vocabulary, which the orchestrator maps into
    the error taxonomy.
    """
    items: Optional[list[Any]] = None
    error_code: Optional[str] = None
    message: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None

    @property
    def succeeded(self) -> bool:
        return self.error_code is None and self.items is not None
