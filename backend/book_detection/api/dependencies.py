"""API dependencies for authentication and pipeline collaborators"""

import hmac
from typing import Optional
from fastapi import Depends, HTTPException, status, Header
from uuid import UUID

from book_detection.api.errors import ERROR_TYPE_BASE
from book_detection.config import settings
from book_detection.database import get_session_factory
from book_detection.services.auth_service import AuthService
from book_detection.services.engine_client import DetectionEngineClient
from book_detection.services.image_storage_service import ImageStorageService
from book_detection.workers.job_orchestrator import JobOrchestrator
from book_detection.workers.retention_cleaner import RetentionCleaner
from book_detection.workers.retry_controller import RetryController
from book_detection.workers.timeout_reaper import TimeoutReaper


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={
            "type": f"{ERROR_TYPE_BASE}/unauthorized",
            "title": "Unauthorized",
            "status": 401,
            "detail": detail
        },
        headers={"WWW-Authenticate": "Bearer"},
    )


def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise _unauthorized("Authorization header missing")

    # Extract token from "Bearer <token>"
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise _unauthorized("Invalid authorization header format")

    return parts[1]


async def get_current_owner_id(
    authorization: Optional[str] = Header(None),
) -> UUID:
    """
    Resolve the calling owner from a JWT access token.

    Args:
        authorization: Authorization header with Bearer token

    Returns:
        Owner UUID taken from the token subject

    Raises:
        HTTPException: If the token is missing, invalid or has no owner subject
    """
    owner_id = AuthService.owner_id_from_token(_bearer_token(authorization))
    if owner_id is None:
        raise _unauthorized("Invalid or expired token")

    return owner_id


async def verify_cron_secret(
    authorization: Optional[str] = Header(None),
) -> None:
    """Allow only the external scheduler, identified by the shared cron secret"""
    if not settings.cron_secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "type": f"{ERROR_TYPE_BASE}/service_unavailable",
                "title": "Service Unavailable",
                "status": 503,
                "detail": "Scheduled jobs are not configured"
            },
        )

    token = _bearer_token(authorization)
    if not hmac.compare_digest(token, settings.cron_secret):
        raise _unauthorized("Invalid cron secret")


def get_image_storage() -> ImageStorageService:
    """Dependency to get ImageStorageService instance"""
    return ImageStorageService()


def get_detection_engine() -> DetectionEngineClient:
    """Dependency to get DetectionEngineClient instance"""
    return DetectionEngineClient()


def get_orchestrator(
    storage: ImageStorageService = Depends(get_image_storage),
    engine: DetectionEngineClient = Depends(get_detection_engine),
) -> JobOrchestrator:
    """Orchestrator whose writes use their own sessions, independent of the request"""
    return JobOrchestrator(get_session_factory(), storage, engine)


def get_retry_controller(
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> RetryController:
    return RetryController(orchestrator)


def get_timeout_reaper() -> TimeoutReaper:
    return TimeoutReaper(get_session_factory())


def get_retention_cleaner(
    storage: ImageStorageService = Depends(get_image_storage),
) -> RetentionCleaner:
    return RetentionCleaner(get_session_factory(), storage)
