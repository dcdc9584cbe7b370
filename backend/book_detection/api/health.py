"""Liveness and dependency health endpoints"""

import asyncio
from datetime import datetime
from fastapi import APIRouter, Depends, status
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from botocore.exceptions import ClientError

from book_detection.api.dependencies import get_image_storage
from book_detection.database import get_db
from book_detection.monitoring.metrics import metrics_collector
from book_detection.services.image_storage_service import ImageStorageService

router = APIRouter(tags=["Health"])

API_VERSION = "1.0.0"


def _timestamp() -> str:
    return datetime.utcnow().isoformat() + "Z"


async def _database_status(db: AsyncSession) -> str:
    try:
        await db.execute(text("SELECT 1"))
    except Exception as e:
        return f"disconnected: {e}"
    return "connected"


async def _storage_status(storage: ImageStorageService) -> str:
    try:
        await asyncio.to_thread(storage.s3_client.head_bucket, Bucket=storage.bucket)
    except ClientError as e:
        error_code = e.response.get("Error", {}).get("Code", "Unknown")
        if error_code in ImageStorageService.NOT_FOUND_CODES:
            return f"bucket_not_found: {storage.bucket}"
        return f"disconnected: {error_code}"
    except Exception as e:
        return f"disconnected: {e}"
    return "connected"


@router.get("/health", status_code=status.HTTP_200_OK)
async def basic_health_check():
    """Liveness probe (no authentication required)"""
    return {"status": "healthy", "timestamp": _timestamp()}


@router.get("/api/v1/health", status_code=status.HTTP_200_OK)
async def detailed_health_check(
    db: AsyncSession = Depends(get_db),
    storage: ImageStorageService = Depends(get_image_storage),
):
    """
    Dependency health (no authentication required)

    Reports the database and the image bucket, plus latency percentiles of
    recently finished detection jobs. Any unreachable dependency turns the
    overall status to "degraded"; the endpoint itself still answers 200.
    """
    services = {
        "database": await _database_status(db),
        "s3": await _storage_status(storage),
    }
    healthy = all(state == "connected" for state in services.values())

    return {
        "status": "healthy" if healthy else "degraded",
        "version": API_VERSION,
        "timestamp": _timestamp(),
        "services": services,
        "job_latency_ms": metrics_collector.get_latency_percentiles(),
    }
