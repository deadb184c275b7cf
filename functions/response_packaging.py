# functions/response_packaging.py

"""
Packaging of API responses.

Responsibilities:
- Turn a CVRecord into the public camelCase JSON payload.
- Build standardized ErrorResponse objects, either directly
  (`build_error_response`) or from a domain exception
  (`error_response_for_exception`), together with the HTTP status the
  API layer should use.

The domain layer only raises; HTTP status decisions live here.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

import structlog

from functions.utils.errors import (
    CVSessionError,
    InvalidStepName,
    SessionExpiredOrNotFound,
    StepAlreadyRecorded,
    UnsafeInputError,
    UpstreamExtractionFailure,
)
from schemas.cv_record_schema import CVRecord
from schemas.output_schema import ErrorResponse

logger = structlog.get_logger(__name__).bind(module="response_packaging")

MAX_MESSAGE_CHARS = 500

# error_code → HTTP status
ERROR_STATUS: Dict[str, int] = {
    "SESSION_NOT_FOUND": 404,
    "STEP_ALREADY_RECORDED": 409,
    "INVALID_STEP_NAME": 422,
    "VALIDATION_ERROR": 422,
    "INVALID_INPUT": 400,
    "UNSAFE_INPUT": 400,
    "UNSUPPORTED_FILE_TYPE": 400,
    "EMPTY_DOCUMENT": 400,
    "EXTRACTION_FAILED": 502,
    "EXTRACTION_TIMEOUT": 504,
}

_SUGGESTIONS: Dict[str, list[str]] = {
    "SESSION_NOT_FOUND": ["Sessions expire after a while; create a new session and retry."],
    "UNSUPPORTED_FILE_TYPE": ["Upload the CV as PDF, DOCX or TXT."],
    "EMPTY_DOCUMENT": ["Make sure the file contains selectable text, not only scanned images."],
    "EXTRACTION_TIMEOUT": ["Retry later; the language model did not answer in time."],
}


def _generate_request_id() -> str:
    """Generate a simple request ID if upstream did not provide one."""
    now = datetime.now(timezone.utc)
    return f"REQ_{int(now.timestamp() * 1000)}"


def package_cv_record(record: CVRecord) -> Dict[str, Any]:
    return record.to_public_dict()


def build_error_response(
    *,
    error_code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    request_id: Optional[str] = None,
    suggestions: Optional[list[str]] = None,
    http_status: Optional[int] = None,
) -> Tuple[ErrorResponse, int]:
    """
    Build a standardized ErrorResponse for failed requests.

    The HTTP status defaults to the one registered for `error_code`
    (500 for unknown codes). The caller maps (ErrorResponse, http_status)
    into an HTTP response object.
    """
    status = http_status or ERROR_STATUS.get(error_code, 500)
    req_id = request_id or _generate_request_id()
    err = ErrorResponse(
        error_code=error_code,
        message=message[:MAX_MESSAGE_CHARS],
        details=details or {},
        request_id=req_id,
        suggestions=suggestions if suggestions is not None else _SUGGESTIONS.get(error_code, []),
    )

    log = logger.error if status >= 500 else logger.warning
    log(
        "cv_extraction_error",
        request_id=req_id,
        error_code=error_code,
        message=err.message,
        details=details or {},
        http_status=status,
    )

    return err, status


def error_response_for_exception(
    exc: CVSessionError,
    request_id: Optional[str] = None,
) -> Tuple[ErrorResponse, int]:
    details: Dict[str, Any] = {}
    if isinstance(exc, SessionExpiredOrNotFound):
        details["session_id"] = exc.session_id
    elif isinstance(exc, InvalidStepName):
        details["step_name"] = exc.step_name
        details["allowed"] = exc.allowed
    elif isinstance(exc, StepAlreadyRecorded):
        details["session_id"] = exc.session_id
        details["step_name"] = exc.step_name
    elif isinstance(exc, UpstreamExtractionFailure):
        details["step"] = exc.step
    elif isinstance(exc, UnsafeInputError):
        details["risk_score"] = exc.risk_score
        details["detected_patterns"] = exc.detected_patterns

    return build_error_response(
        error_code=exc.error_code,
        message=str(exc),
        details=details,
        request_id=request_id,
    )


__all__ = [
    "ERROR_STATUS",
    "package_cv_record",
    "build_error_response",
    "error_response_for_exception",
]
