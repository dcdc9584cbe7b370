"""Application configuration using Pydantic Settings"""

from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Application
    environment: str = "development"
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Database
    database_url: str
    database_pool_size: int = 5
    database_max_overflow: int = 10

    # AWS / S3 (object storage for original images)
    aws_region: str = "us-east-1"
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None
    aws_endpoint_url: Optional[str] = None
    s3_bucket: str = "detection-job-images"

    # Detection engine
    detection_engine_url: str = "http://detection-engine:8010"
    detection_engine_model: str = "gemini-2.5-flash"
    detection_engine_timeout_seconds: float = 120.0

    # Detection pipeline
    detection_timeout_seconds: float = 300.0
    progress_throttle_seconds: float = 1.0
    max_upload_bytes: int = 10 * 1024 * 1024
    thumbnail_max_bytes: int = 500 * 1024
    signed_url_ttl_seconds: int = 7 * 24 * 60 * 60

    # Timeout reaper
    job_timeout_minutes: int = 10
    reaper_batch_size: int = 50

    # Retention cleaner
    consumed_retention_days: int = 7
    delete_grace_days: int = 1
    cleaner_batch_size: int = 100

    # Scheduler
    cron_secret: Optional[str] = None

    # Security
    secret_key: str
    jwt_secret: Optional[str] = None
    jwt_algorithm: str = "HS256"
    jwt_expiration_hours: int = 24

    # CORS
    cors_origins: str = "http://localhost:5173,http://localhost:3000"

    # Logging
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins into a list"""
        return [origin.strip() for origin in self.cors_origins.split(",")]


# Global settings instance
settings = Settings()
