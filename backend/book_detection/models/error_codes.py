"""Error taxonomy for detection job failures.

Every failure leaving the detection pipeline is folded into one of the
codes below. Whether a failed job may be retried is a property of its code
alone, so ``can_retry`` is never stored or set independently.
"""

import enum
import logging
import re
from typing import Dict, NamedTuple, Optional

logger = logging.getLogger(__name__)


class ErrorCode(str, enum.Enum):
    """Machine-readable failure codes surfaced to clients"""
    INVALID_IMAGE = "INVALID_IMAGE"
    CORRUPT_IMAGE = "CORRUPT_IMAGE"
    IMAGE_TOO_LARGE = "IMAGE_TOO_LARGE"
    OCR_FAILED = "OCR_FAILED"
    AI_FAILED = "AI_FAILED"
    NO_BOOKS_DETECTED = "NO_BOOKS_DETECTED"
    TIMEOUT = "TIMEOUT"
    RATE_LIMITED = "RATE_LIMITED"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    UNEXPECTED_ERROR = "UNEXPECTED_ERROR"


class ErrorDefinition(NamedTuple):
    """Retry policy, user-facing message and HTTP status for an error code"""
    can_retry: bool
    message: str
    status_code: int


ERROR_TAXONOMY: Dict[ErrorCode, ErrorDefinition] = {
    ErrorCode.INVALID_IMAGE: ErrorDefinition(
        False, "Invalid image format. Please upload a JPEG, PNG, GIF or WebP image.", 400
    ),
    ErrorCode.CORRUPT_IMAGE: ErrorDefinition(
        False, "Image file is corrupted or unreadable. Please try another image.", 400
    ),
    ErrorCode.IMAGE_TOO_LARGE: ErrorDefinition(
        False, "Image is too large. Maximum 10MB allowed.", 413
    ),
    ErrorCode.OCR_FAILED: ErrorDefinition(
        True, "Failed to extract text from image. Please try a clearer image.", 422
    ),
    ErrorCode.AI_FAILED: ErrorDefinition(
        True, "Failed to identify books. Please try another image.", 422
    ),
    ErrorCode.NO_BOOKS_DETECTED: ErrorDefinition(
        True,
        "No books detected in image. Please try an image with more visible book information.",
        422,
    ),
    ErrorCode.TIMEOUT: ErrorDefinition(
        True, "Processing took too long. Please try again.", 504
    ),
    ErrorCode.RATE_LIMITED: ErrorDefinition(
        True, "Processing limit reached. Please try again in a few minutes.", 429
    ),
    ErrorCode.SERVICE_UNAVAILABLE: ErrorDefinition(
        True, "Processing service is temporarily unavailable. Please try again later.", 503
    ),
    ErrorCode.UNEXPECTED_ERROR: ErrorDefinition(
        True, "An unexpected error occurred. Please try again.", 500
    ),
}

RETRYABLE_ERROR_CODES = frozenset(
    code.value for code, definition in ERROR_TAXONOMY.items() if definition.can_retry
)

# Raw vocabulary reported by detection engines and transports
RAW_ERROR_ALIASES: Dict[str, ErrorCode] = {
    "unsupported_format": ErrorCode.INVALID_IMAGE,
    "unsupported_image": ErrorCode.INVALID_IMAGE,
    "invalid_format": ErrorCode.INVALID_IMAGE,
    "corrupted_image": ErrorCode.CORRUPT_IMAGE,
    "decode_error": ErrorCode.CORRUPT_IMAGE,
    "unreadable_image": ErrorCode.CORRUPT_IMAGE,
    "payload_too_large": ErrorCode.IMAGE_TOO_LARGE,
    "file_too_large": ErrorCode.IMAGE_TOO_LARGE,
    "ocr_error": ErrorCode.OCR_FAILED,
    "text_extraction_failed": ErrorCode.OCR_FAILED,
    "no_text_found": ErrorCode.OCR_FAILED,
    "ai_error": ErrorCode.AI_FAILED,
    "inference_failed": ErrorCode.AI_FAILED,
    "classification_failed": ErrorCode.AI_FAILED,
    "parse_error": ErrorCode.AI_FAILED,
    "no_books": ErrorCode.NO_BOOKS_DETECTED,
    "no_items": ErrorCode.NO_BOOKS_DETECTED,
    "empty_result": ErrorCode.NO_BOOKS_DETECTED,
    "deadline_exceeded": ErrorCode.TIMEOUT,
    "timed_out": ErrorCode.TIMEOUT,
    "rate_limit": ErrorCode.RATE_LIMITED,
    "throttled": ErrorCode.RATE_LIMITED,
    "resource_exhausted": ErrorCode.RATE_LIMITED,
    "quota_exceeded": ErrorCode.RATE_LIMITED,
    "unavailable": ErrorCode.SERVICE_UNAVAILABLE,
    "upstream_unavailable": ErrorCode.SERVICE_UNAVAILABLE,
    "connection_error": ErrorCode.SERVICE_UNAVAILABLE,
}

HTTP_STATUS_ERROR_CODES: Dict[int, ErrorCode] = {
    400: ErrorCode.INVALID_IMAGE,
    408: ErrorCode.TIMEOUT,
    413: ErrorCode.IMAGE_TOO_LARGE,
    415: ErrorCode.INVALID_IMAGE,
    422: ErrorCode.AI_FAILED,
    429: ErrorCode.RATE_LIMITED,
    502: ErrorCode.SERVICE_UNAVAILABLE,
    503: ErrorCode.SERVICE_UNAVAILABLE,
    504: ErrorCode.TIMEOUT,
}

_HTTP_RAW_CODE = re.compile(r"^http_(\d{3})$")


def can_retry(error_code: Optional[str]) -> bool:
    """Whether a job failed with ``error_code`` may be re-driven without a new upload"""
    if error_code is None:
        return False
    return error_code in RETRYABLE_ERROR_CODES


def error_code_for_status(status_code: int) -> ErrorCode:
    """Map an upstream HTTP status to an error code"""
    return HTTP_STATUS_ERROR_CODES.get(status_code, ErrorCode.UNEXPECTED_ERROR)


def normalize_error_code(raw_code: Optional[str]) -> ErrorCode:
    """
    Fold a raw failure code into the taxonomy.

    Accepts taxonomy codes in any case, known engine aliases, and
    ``http_<status>`` transport codes. Anything unrecognized becomes
    UNEXPECTED_ERROR so callers never see a code outside the table.

    Args:
        raw_code: Code as reported by the detection engine or transport

    Returns:
        Normalized ErrorCode
    """
    if not raw_code:
        return ErrorCode.UNEXPECTED_ERROR

    key = raw_code.strip().lower().replace("-", "_").replace(" ", "_")

    try:
        return ErrorCode(key.upper())
    except ValueError:
        pass

    if key in RAW_ERROR_ALIASES:
        return RAW_ERROR_ALIASES[key]

    match = _HTTP_RAW_CODE.match(key)
    if match:
        return error_code_for_status(int(match.group(1)))

    logger.warning(f"Unrecognized detection error code '{raw_code}', using UNEXPECTED_ERROR")
    return ErrorCode.UNEXPECTED_ERROR


def error_definition(error_code: ErrorCode) -> ErrorDefinition:
    """Look up the taxonomy entry for a normalized code"""
    return ERROR_TAXONOMY[error_code]
