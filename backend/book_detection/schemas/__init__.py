"""Pydantic schemas package"""

from book_detection.schemas.detection_job import (
    JobSubmitResponse,
    DetectionJobImage,
    DetectionJobResponse,
    DetectionJobSummary,
    DetectionJobListResponse,
    RetryResponse,
    DeleteRequestResponse,
    SweepSummary,
    EngineOutcome,
)

__all__ = [
    "JobSubmitResponse",
    "DetectionJobImage",
    "DetectionJobResponse",
    "DetectionJobSummary",
    "DetectionJobListResponse",
    "RetryResponse",
    "DeleteRequestResponse",
    "SweepSummary",
    "EngineOutcome",
]
