"""Pytest configuration and shared fixtures"""

import io
import os
import uuid
from datetime import datetime, timedelta
from typing import AsyncGenerator

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("ENVIRONMENT", "test")

import pytest
import pytest_asyncio
from unittest.mock import Mock
from PIL import Image
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import NullPool

from book_detection.database import Base
from book_detection.models import DetectionJob, JobStatus, JobStage
from book_detection.schemas.detection_job import EngineOutcome
from book_detection.services.auth_service import AuthService
from book_detection.services.detection_job_service import DetectionJobService
from book_detection.services.image_storage_service import ImageStorageService


SAMPLE_ITEMS = [
    {"title": "Dune", "author": "Frank Herbert", "confidence": 0.94},
    {"title": "Emma", "author": "Jane Austen", "confidence": 0.88},
]


class FakeEngine:
    """Detection engine double replaying scripted progress events"""

    def __init__(self, outcome=None, events=(), observer=None, before_result=None):
        self.outcome = outcome or EngineOutcome(items=SAMPLE_ITEMS, metadata={"model": "test"})
        self.events = list(events)
        self.observer = observer
        self.before_result = before_result
        self.calls = []

    async def detect(self, image_bytes, on_progress=None, mime_type="image/jpeg"):
        self.calls.append(image_bytes)
        for stage, progress in self.events:
            await on_progress(stage, progress)
            if self.observer is not None:
                await self.observer(stage, progress)
        if self.before_result is not None:
            await self.before_result()
        return self.outcome


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """Create a test database engine backed by a temporary SQLite file"""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path}/test.db",
        echo=False,
        poolclass=NullPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    """Session factory matching the application's session settings"""
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for testing"""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def owner_id():
    return uuid.uuid4()


@pytest.fixture
def auth_headers(owner_id):
    """Authorization header for the default test owner"""
    return {"Authorization": f"Bearer {AuthService.create_access_token(owner_id)}"}


@pytest.fixture
def make_job(session_factory, owner_id):
    """Factory inserting a detection job with sensible defaults"""

    async def _make_job(**fields) -> DetectionJob:
        now = datetime.utcnow()
        values = {
            "id": uuid.uuid4(),
            "owner_id": owner_id,
            "status": JobStatus.PROCESSING.value,
            "stage": JobStage.UPLOADING.value,
            "progress": 0,
            "retry_count": 0,
            "is_deleted": False,
            "original_filename": "shelf.jpg",
            "mime_type": "image/jpeg",
            "size_bytes": 2048,
            "uploaded_at": now,
            "created_at": now,
            "updated_at": now,
        }
        values.update(fields)
        job = DetectionJob(**values)

        async with session_factory() as session:
            session.add(job)
            await session.commit()
            await session.refresh(job)
        return job

    return _make_job


@pytest.fixture
def make_failed_job(make_job, owner_id):
    """Factory for a failed job whose image is still stored"""

    async def _make_failed_job(error_code: str = "TIMEOUT", **fields) -> DetectionJob:
        job_id = fields.pop("id", uuid.uuid4())
        values = {
            "id": job_id,
            "status": JobStatus.FAILED.value,
            "stage": "failed_analyzing",
            "progress": 70,
            "error_code": error_code,
            "error_message": "Processing took too long. Please try again.",
            "storage_path": f"{owner_id}/{job_id}/original.jpg",
            "thumbnail": "dGh1bWJuYWls",
        }
        values.update(fields)
        return await make_job(**values)

    return _make_failed_job


@pytest.fixture
def load_job(session_factory):
    """Read a job's current row in a fresh session"""

    async def _load_job(job_id) -> DetectionJob:
        async with session_factory() as session:
            return await DetectionJobService.get_job(session, job_id)

    return _load_job


@pytest.fixture
def jpeg_bytes():
    """A real JPEG image"""
    image = Image.new("RGB", (800, 1200), color=(120, 80, 40))
    buffer = io.BytesIO()
    image.save(buffer, format="JPEG", quality=90)
    return buffer.getvalue()


@pytest.fixture
def mock_s3_client(jpeg_bytes):
    """S3 client double answering the calls the image storage service makes"""
    client = Mock()
    client.generate_presigned_url.return_value = "https://signed.example.com/original.jpg?sig=abc"
    client.get_object.side_effect = lambda **kwargs: {"Body": io.BytesIO(jpeg_bytes)}
    client.put_object.return_value = {"ETag": '"etag"'}
    client.delete_object.return_value = {}
    client.head_bucket.return_value = {}
    return client


@pytest.fixture
def image_storage(mock_s3_client):
    """Image storage service over the mocked S3 client"""
    return ImageStorageService(s3_client=mock_s3_client, bucket="test-bucket")


@pytest.fixture
def fake_engine():
    return FakeEngine()


@pytest.fixture
def past():
    """Helper producing naive UTC datetimes in the past"""

    def _past(**delta) -> datetime:
        return datetime.utcnow() - timedelta(**delta)

    return _past


@pytest.fixture
def make_engine():
    """Factory for scripted detection engine doubles"""
    return FakeEngine


@pytest_asyncio.fixture
async def api_client(session_factory, image_storage, fake_engine):
    """HTTP client for the app with pipeline collaborators pointed at test doubles"""
    from httpx import ASGITransport, AsyncClient

    from book_detection.api import dependencies
    from book_detection.database import get_db
    from book_detection.main import app
    from book_detection.workers.job_orchestrator import JobOrchestrator
    from book_detection.workers.retention_cleaner import RetentionCleaner
    from book_detection.workers.timeout_reaper import TimeoutReaper

    async def override_get_db():
        async with session_factory() as session:
            yield session
            await session.commit()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[dependencies.get_image_storage] = lambda: image_storage
    app.dependency_overrides[dependencies.get_detection_engine] = lambda: fake_engine
    app.dependency_overrides[dependencies.get_orchestrator] = lambda: JobOrchestrator(
        session_factory, image_storage, fake_engine, progress_throttle_seconds=0
    )
    app.dependency_overrides[dependencies.get_timeout_reaper] = lambda: TimeoutReaper(
        session_factory
    )
    app.dependency_overrides[dependencies.get_retention_cleaner] = lambda: RetentionCleaner(
        session_factory, image_storage
    )

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
