"""
Request and response models for the CV extraction API.

The CV record itself lives in schemas/cv_record_schema.py; this module
holds the thin envelopes around it (session creation, step writes,
health) plus the standardized ErrorResponse.
"""

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field, field_validator


class CreateSessionRequest(BaseModel):
    """Open a session for a CV whose text was extracted elsewhere."""

    raw_text: str = Field(..., min_length=1, description="Full CV text")
    metadata: dict[str, Any] = Field(
        default_factory=dict, description="Advisory metadata (file name, mime type, ...)"
    )

    @field_validator("raw_text")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("raw_text must not be blank")
        return v

    model_config = {"extra": "forbid"}


class CreateSessionResponse(BaseModel):
    session_id: str
    expires_at: datetime | None = None


class StoreStepRequest(BaseModel):
    """Result of one extraction step produced by an external extractor."""

    data: dict[str, Any] = Field(default_factory=dict)
    confidence: float = Field(1.0, ge=0.0, le=1.0)
    extraction_meta: dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "forbid"}


class StoreStepResponse(BaseModel):
    session_id: str
    step_name: str
    confidence: float
    recorded_at: datetime


class ProcessCVRequest(BaseModel):
    """Run the full three-step pipeline on raw CV text."""

    raw_text: str = Field(..., min_length=1, description="Full CV text")
    metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "forbid"}


class ErrorResponse(BaseModel):
    """Error response for failed requests."""

    status: str = Field(default="error", description="Always 'error'")
    error_code: str = Field(
        ...,
        description="Machine-readable error code",
        examples=[
            "SESSION_NOT_FOUND",
            "STEP_ALREADY_RECORDED",
            "EXTRACTION_FAILED",
            "EXTRACTION_TIMEOUT",
        ],
    )
    message: str = Field(..., max_length=500, description="Human-readable error message")
    details: dict[str, Any] | None = Field(
        None, description="Additional error details"
    )
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When error occurred",
    )
    request_id: str | None = Field(
        None, description="Request ID for tracking", examples=["REQ_1717171717171"]
    )
    suggestions: list[str] = Field(
        default_factory=list, description="Suggestions to fix the error"
    )

    model_config = {"extra": "forbid"}


class HealthCheckResponse(BaseModel):
    """Health check response."""

    status: str = Field(
        ..., pattern="^(healthy|degraded|unhealthy)$", description="Service health status"
    )
    checks: dict[str, str] = Field(
        ..., description="Individual component health checks"
    )
    version: str = Field(default="0.1.0", description="Service version")
    uptime_seconds: int = Field(default=0, ge=0, description="Service uptime")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = {"extra": "forbid"}


__all__ = [
    "CreateSessionRequest",
    "CreateSessionResponse",
    "StoreStepRequest",
    "StoreStepResponse",
    "ProcessCVRequest",
    "ErrorResponse",
    "HealthCheckResponse",
]
