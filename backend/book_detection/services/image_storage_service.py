"""Image storage service for detection job originals and thumbnails"""

import base64
import io
import logging
from datetime import datetime, timedelta
from typing import NamedTuple, Optional
from uuid import UUID
import boto3
from botocore.config import Config
from botocore.exceptions import ClientError
from PIL import Image, UnidentifiedImageError

from book_detection.config import settings
from book_detection.models.error_codes import ErrorCode

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Base exception for image storage errors"""
    pass


class StorageConnectionError(StorageError):
    """Object storage could not be reached or rejected the request"""
    pass


class StorageObjectNotFoundError(StorageError):
    """Stored object does not exist"""
    pass


class StorageOwnershipError(StorageError):
    """Storage path does not belong to the requesting owner"""
    pass


class ImageProcessingError(Exception):
    """Base exception for image decoding errors"""
    pass


class CorruptImageError(ImageProcessingError):
    """Image bytes could not be decoded"""
    pass


class UnsupportedImageError(ImageProcessingError):
    """Image decoded to a format outside the supported set"""
    pass


class UploadValidationError(Exception):
    """Upload rejected before a job is created"""

    def __init__(self, error_code: ErrorCode, message: str):
        self.error_code = error_code
        self.message = message
        super().__init__(message)


class StoredImage(NamedTuple):
    storage_path: str
    thumbnail: Optional[str]


class SignedUrl(NamedTuple):
    url: str
    expires_at: datetime


class ImageStorageService:
    """Service for persisting original images and producing thumbnails and signed URLs"""

    ALLOWED_MIME_TYPES = {
        "image/jpeg": "jpg",
        "image/png": "png",
        "image/gif": "gif",
        "image/webp": "webp",
    }
    SUPPORTED_FORMATS = {"JPEG", "MPO", "PNG", "GIF", "WEBP"}
    # (max width, max height, JPEG quality), tried in order until under the size ceiling
    THUMBNAIL_ATTEMPTS = ((400, 600, 70), (300, 450, 50), (250, 350, 40))
    NOT_FOUND_CODES = {"NoSuchKey", "404", "NotFound"}

    def __init__(self, s3_client=None, bucket: Optional[str] = None):
        """Initialize S3 client with retry configuration"""
        self.bucket = bucket or settings.s3_bucket

        if s3_client is not None:
            self.s3_client = s3_client
            return

        retry_config = Config(
            retries={
                "max_attempts": 3,
                "mode": "standard",
            },
            connect_timeout=5,
            read_timeout=30,
        )

        client_kwargs = {
            "region_name": settings.aws_region,
            "config": retry_config,
        }

        # Add credentials if provided (not needed for IAM roles)
        if settings.aws_access_key_id and settings.aws_secret_access_key:
            client_kwargs["aws_access_key_id"] = settings.aws_access_key_id
            client_kwargs["aws_secret_access_key"] = settings.aws_secret_access_key

        # Use custom endpoint for local development (MinIO)
        if settings.aws_endpoint_url:
            client_kwargs["endpoint_url"] = settings.aws_endpoint_url

        try:
            self.s3_client = boto3.client("s3", **client_kwargs)
            logger.info(f"Image storage initialized for bucket: {self.bucket}")
        except Exception as e:
            logger.error(f"Failed to initialize S3 client: {e}")
            raise StorageConnectionError(f"Failed to initialize S3 client: {e}")

    @classmethod
    def validate_upload(cls, size_bytes: int, mime_type: Optional[str]) -> None:
        """
        Validate an upload before a job is created.

        Args:
            size_bytes: Upload size in bytes
            mime_type: Declared MIME type

        Raises:
            UploadValidationError: With INVALID_IMAGE or IMAGE_TOO_LARGE
        """
        if size_bytes <= 0:
            raise UploadValidationError(ErrorCode.INVALID_IMAGE, "No image data provided")

        if mime_type not in cls.ALLOWED_MIME_TYPES:
            raise UploadValidationError(
                ErrorCode.INVALID_IMAGE,
                f"MIME type {mime_type} not allowed. Use JPEG, PNG, GIF, or WebP",
            )

        if size_bytes > settings.max_upload_bytes:
            raise UploadValidationError(
                ErrorCode.IMAGE_TOO_LARGE,
                f"File size {size_bytes} bytes exceeds maximum of {settings.max_upload_bytes} bytes",
            )

    @classmethod
    def build_storage_path(cls, owner_id: UUID, job_id: UUID, mime_type: str) -> str:
        """
        Storage key following the structure {owner_id}/{job_id}/original.{ext}
        """
        extension = cls.ALLOWED_MIME_TYPES.get(mime_type, "jpg")
        return f"{owner_id}/{job_id}/original.{extension}"

    @staticmethod
    def assert_owner(storage_path: str, owner_id: UUID) -> None:
        """Raise if a storage path is outside the owner's prefix"""
        if not storage_path.startswith(f"{owner_id}/"):
            raise StorageOwnershipError(
                f"Storage path {storage_path} does not belong to owner {owner_id}"
            )

    @classmethod
    def generate_thumbnail(cls, image_bytes: bytes) -> str:
        """
        Decode an image and produce a base64 JPEG thumbnail under the
        configured size ceiling.

        Args:
            image_bytes: Original image bytes

        Returns:
            Base64-encoded JPEG

        Raises:
            CorruptImageError: If the bytes cannot be decoded as an image
            UnsupportedImageError: If the decoded format is not supported
        """
        try:
            with Image.open(io.BytesIO(image_bytes)) as image:
                image_format = image.format
                if image_format not in cls.SUPPORTED_FORMATS:
                    raise UnsupportedImageError(f"Unsupported image format: {image_format}")

                image.load()
                source = image.convert("RGB")
        except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as e:
            raise CorruptImageError(f"Image could not be decoded: {e}")

        thumbnail_bytes = b""
        for max_width, max_height, quality in cls.THUMBNAIL_ATTEMPTS:
            candidate = source.copy()
            candidate.thumbnail((max_width, max_height))

            buffer = io.BytesIO()
            candidate.save(buffer, format="JPEG", quality=quality, progressive=True)
            thumbnail_bytes = buffer.getvalue()

            if len(thumbnail_bytes) <= settings.thumbnail_max_bytes:
                break

        logger.debug(f"Generated {len(thumbnail_bytes)} byte thumbnail")
        return base64.b64encode(thumbnail_bytes).decode("ascii")

    def store(
        self, owner_id: UUID, job_id: UUID, image_bytes: bytes, mime_type: str
    ) -> StoredImage:
        """
        Decode, thumbnail and upload an original image.

        The image is decoded first so undecodable bytes are never uploaded.

        Returns:
            StoredImage with the storage path and thumbnail

        Raises:
            CorruptImageError: If the image cannot be decoded
            UnsupportedImageError: If the decoded format is not supported
            StorageConnectionError: If the upload fails
        """
        thumbnail = self.generate_thumbnail(image_bytes)
        storage_path = self.build_storage_path(owner_id, job_id, mime_type)

        try:
            self.s3_client.put_object(
                Bucket=self.bucket,
                Key=storage_path,
                Body=image_bytes,
                ContentType=mime_type,
                CacheControl="max-age=86400",
            )
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "Unknown")
            logger.error(f"Error uploading image {storage_path}: {error_code} - {e}")
            raise StorageConnectionError(f"Failed to upload image: {error_code}")
        except Exception as e:
            logger.error(f"Unexpected error uploading image {storage_path}: {e}")
            raise StorageConnectionError(f"Failed to upload image: {str(e)}")

        logger.info(f"Stored {len(image_bytes)} bytes at {storage_path}")
        return StoredImage(storage_path=storage_path, thumbnail=thumbnail)

    def signed_url(self, storage_path: str, ttl_seconds: Optional[int] = None) -> SignedUrl:
        """
        Generate a time-limited read URL for a stored image.

        Raises:
            StorageConnectionError: If signing fails
        """
        if ttl_seconds is None:
            ttl_seconds = settings.signed_url_ttl_seconds

        try:
            url = self.s3_client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": storage_path},
                ExpiresIn=ttl_seconds,
            )
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "Unknown")
            logger.error(f"S3 ClientError signing URL for {storage_path}: {error_code} - {e}")
            raise StorageConnectionError(f"Failed to sign URL: {error_code}")
        except Exception as e:
            logger.error(f"Unexpected error signing URL for {storage_path}: {e}")
            raise StorageConnectionError(f"Failed to sign URL: {str(e)}")

        return SignedUrl(url=url, expires_at=datetime.utcnow() + timedelta(seconds=ttl_seconds))

    def fetch(self, storage_path: str) -> bytes:
        """
        Download a stored image.

        Raises:
            StorageObjectNotFoundError: If the object does not exist
            StorageConnectionError: If the download fails
        """
        try:
            response = self.s3_client.get_object(Bucket=self.bucket, Key=storage_path)
            image_bytes = response["Body"].read()
            logger.debug(f"Downloaded {len(image_bytes)} bytes from {storage_path}")
            return image_bytes
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "Unknown")
            if error_code in self.NOT_FOUND_CODES:
                raise StorageObjectNotFoundError(f"Stored image not found: {storage_path}")
            logger.error(f"Error downloading image {storage_path}: {error_code} - {e}")
            raise StorageConnectionError(f"Failed to download image: {error_code}")

    def remove(self, storage_path: str) -> bool:
        """
        Delete a stored image. A missing object counts as removed.

        Returns:
            True once the object is gone

        Raises:
            StorageConnectionError: If deletion fails for any other reason
        """
        try:
            self.s3_client.delete_object(Bucket=self.bucket, Key=storage_path)
            logger.info(f"Deleted image: {storage_path}")
            return True
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "Unknown")
            if error_code in self.NOT_FOUND_CODES:
                logger.info(f"Image already removed: {storage_path}")
                return True
            logger.error(f"Error deleting image {storage_path}: {error_code} - {e}")
            raise StorageConnectionError(f"Failed to delete image: {error_code}")
