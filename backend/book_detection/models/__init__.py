"""Database models package"""

from book_detection.models.base import BaseModel
from book_detection.models.detection_job import (
    DetectionJob,
    JobStatus,
    JobStage,
    STAGE_ORDER,
    STAGE_PROGRESS,
)
from book_detection.models.error_codes import ErrorCode, ERROR_TAXONOMY

# Export all models
__all__ = [
    "BaseModel",
    "DetectionJob",
    "JobStatus",
    "JobStage",
    "STAGE_ORDER",
    "STAGE_PROGRESS",
    "ErrorCode",
    "ERROR_TAXONOMY",
]
