"""Services package"""

from .image_storage_service import ImageStorageService
from .engine_client import DetectionEngineClient
from .detection_job_service import DetectionJobService

__all__ = ["ImageStorageService", "DetectionEngineClient", "DetectionJobService"]
