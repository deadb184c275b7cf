"""Schema definitions for CV extraction sessions."""

from schemas.cv_record_schema import (
    CVRecord,
    ExperienceEntry,
    PersonalInfo,
    ProcessingInfo,
    Skills,
)
from schemas.session_schema import (
    KnownFacts,
    Session,
    SessionContext,
    SessionStats,
    StepName,
    StepResult,
)

from .output_schema import ErrorResponse

__all__ = [
    # Session model
    "StepName",
    "StepResult",
    "Session",
    "KnownFacts",
    "SessionContext",
    "SessionStats",
    # CV record
    "CVRecord",
    "PersonalInfo",
    "ExperienceEntry",
    "Skills",
    "ProcessingInfo",
    # API envelopes
    "ErrorResponse",
]
