"""RFC 7807 problem documents for the detection job API"""

from typing import Any, Dict, Optional
from fastapi import status
from fastapi.responses import JSONResponse

from book_detection.models.error_codes import ErrorCode, error_definition

ERROR_TYPE_BASE = "https://api.bookdetection.app/errors"


def problem_response(
    status_code: int,
    title: str,
    detail: str,
    error_type: str,
    instance: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
    """
    Build an ``application/problem+json`` response

    Args:
        status_code: HTTP status code
        title: Short error title
        detail: Human-readable explanation
        error_type: Slug appended to ERROR_TYPE_BASE
        instance: Request path the problem occurred on
        extra: Extension members merged into the document
    """
    problem = {
        "type": f"{ERROR_TYPE_BASE}/{error_type}",
        "title": title,
        "status": status_code,
        "detail": detail,
    }
    if instance:
        problem["instance"] = instance
    if extra:
        problem.update(extra)

    return JSONResponse(
        status_code=status_code,
        content=problem,
        media_type="application/problem+json",
    )


def detection_error(
    error_code: ErrorCode,
    detail: Optional[str] = None,
    instance: Optional[str] = None,
) -> JSONResponse:
    """Problem for a taxonomy code; status and retryability come from the taxonomy"""
    definition = error_definition(error_code)
    return problem_response(
        definition.status_code,
        title=error_code.value.replace("_", " ").title(),
        detail=detail or definition.message,
        error_type=error_code.value.lower(),
        instance=instance,
        extra={"error_code": error_code.value, "can_retry": definition.can_retry},
    )


def not_found_error(detail: str, instance: Optional[str] = None) -> JSONResponse:
    return problem_response(
        status.HTTP_404_NOT_FOUND, "Not Found", detail, "not_found", instance=instance
    )


def conflict_error(
    detail: str,
    instance: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
    return problem_response(
        status.HTTP_409_CONFLICT, "Conflict", detail, "conflict", instance=instance, extra=extra
    )
