"""Detection job model for the asynchronous book detection pipeline"""

import enum
from sqlalchemy import Column, String, Integer, Text, DateTime, Boolean, JSON, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from book_detection.models.base import BaseModel
from book_detection.models.error_codes import can_retry


class JobStatus(str, enum.Enum):
    """Detection job status lifecycle"""
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobStage(str, enum.Enum):
    """Pipeline stages, in strict forward order while processing"""
    UPLOADING = "uploading"
    EXTRACTING = "extracting"
    ANALYZING = "analyzing"
    ENRICHING = "enriching"
    CROSS_REFERENCING = "cross_referencing"
    FINALIZING = "finalizing"


STAGE_ORDER = list(JobStage)

STAGE_PROGRESS = {
    JobStage.UPLOADING: 15,
    JobStage.EXTRACTING: 40,
    JobStage.ANALYZING: 70,
    JobStage.ENRICHING: 85,
    JobStage.CROSS_REFERENCING: 95,
    JobStage.FINALIZING: 100,
}

TIMEOUT_STAGE = "failed_timeout"


def failed_stage(cause: str) -> str:
    """Terminal stage marker recorded for diagnostics, e.g. ``failed_analyzing``"""
    return f"failed_{cause}"


JSONType = JSON().with_variant(JSONB(), "postgresql")


class DetectionJob(BaseModel):
    """
    Detection job model tracking one uploaded image through detection.
    The row is the only rendezvous between the API and the background
    pipeline: all reads and writes go through DetectionJobService.
    """

    __tablename__ = "detection_jobs"

    owner_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    status = Column(
        String(20), nullable=False, default=JobStatus.PROCESSING.value, index=True
    )
    stage = Column(String(50), nullable=False, default=JobStage.UPLOADING.value)
    progress = Column(Integer, nullable=False, default=0, server_default="0")

    # Outcome (result xor error once terminal)
    result = Column(JSONType, nullable=True)
    error_code = Column(String(50), nullable=True, index=True)
    error_message = Column(Text, nullable=True)
    analysis_metadata = Column(JSONType, nullable=True)

    # Image
    original_filename = Column(String(255), nullable=True)
    mime_type = Column(String(50), nullable=True)
    size_bytes = Column(Integer, nullable=True)
    thumbnail = Column(Text, nullable=True)  # base64 JPEG, <= 500KB
    storage_path = Column(String(500), nullable=True)
    storage_url = Column(Text, nullable=True)
    storage_url_expires_at = Column(DateTime, nullable=True)
    uploaded_at = Column(DateTime, nullable=True)

    # Lifecycle
    consumed_at = Column(DateTime, nullable=True, index=True)
    delete_requested_at = Column(DateTime, nullable=True, index=True)
    is_deleted = Column(
        Boolean, nullable=False, default=False, server_default="false", index=True
    )
    deleted_at = Column(DateTime, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0, server_default="0")

    @property
    def can_retry(self) -> bool:
        """Derived from error_code only"""
        return self.status == JobStatus.FAILED.value and can_retry(self.error_code)

    def __repr__(self):
        return f"<DetectionJob(id={self.id}, status={self.status}, stage={self.stage})>"
