# functions/utils/errors.py
"""
Exception types raised by the CV extraction session layer.

The domain code raises these; only the API layer maps them onto HTTP
status codes and ErrorResponse payloads.
"""

from __future__ import annotations


class CVSessionError(Exception):
    """Base class for every error raised by the extraction session layer."""

    error_code: str = "CV_SESSION_ERROR"


class SessionExpiredOrNotFound(CVSessionError):
    """Raised for any operation on a session that is missing, expired or cleaned up."""

    error_code = "SESSION_NOT_FOUND"

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session expired or not found: {session_id}")


class InvalidStepName(CVSessionError):
    """Raised when a step result is written under a name outside the fixed step set."""

    error_code = "INVALID_STEP_NAME"

    def __init__(self, step_name: str, allowed: list[str] | None = None):
        self.step_name = step_name
        self.allowed = list(allowed or [])
        msg = f"Invalid step name: {step_name!r}"
        if self.allowed:
            msg += f" (allowed: {', '.join(self.allowed)})"
        super().__init__(msg)


class StepAlreadyRecorded(CVSessionError):
    """Raised when a step that already has a result is written a second time."""

    error_code = "STEP_ALREADY_RECORDED"

    def __init__(self, session_id: str, step_name: str):
        self.session_id = session_id
        self.step_name = step_name
        super().__init__(f"Step {step_name!r} already recorded for session {session_id}")


class UpstreamExtractionFailure(CVSessionError):
    """The LLM call for a step failed or returned data that could not be parsed."""

    error_code = "EXTRACTION_FAILED"

    def __init__(self, step: str, reason: str):
        self.step = step
        self.reason = reason
        super().__init__(f"Extraction step '{step}' failed: {reason}")


class StepTimeout(UpstreamExtractionFailure):
    """The LLM call for a step did not finish within the per-step timeout."""

    error_code = "EXTRACTION_TIMEOUT"

    def __init__(self, step: str, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(step, f"timed out after {timeout_seconds:g}s")


class UnsupportedFileType(CVSessionError):
    error_code = "UNSUPPORTED_FILE_TYPE"


class EmptyDocument(CVSessionError):
    error_code = "EMPTY_DOCUMENT"


class UnsafeInputError(CVSessionError):
    """CV text was blocked by the prompt-injection guard."""

    error_code = "UNSAFE_INPUT"

    def __init__(self, detected_patterns: list[str], risk_score: float):
        self.detected_patterns = list(detected_patterns)
        self.risk_score = risk_score
        super().__init__(
            f"CV text rejected by injection guard (risk={risk_score:.2f})"
        )


__all__ = [
    "CVSessionError",
    "SessionExpiredOrNotFound",
    "InvalidStepName",
    "StepAlreadyRecorded",
    "UpstreamExtractionFailure",
    "StepTimeout",
    "UnsupportedFileType",
    "EmptyDocument",
    "UnsafeInputError",
]
