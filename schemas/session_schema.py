"""Session schema definitions for multi-step CV extraction.

A session holds the progress of one CV through the extraction steps:

- `StepName` is the fixed, ordered set of extraction steps.
- `StepResult` is what one step produced (data + self-reported confidence).
- `Session` is the stored record, owned exclusively by the session store.
- `KnownFacts` / `SessionContext` are derived read models used to ground
  the next LLM prompt.
- `SessionStats` is the lightweight monitoring view.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StepName(str, Enum):
    """Extraction steps, declared in execution order."""

    BASIC_INFO = "basic_info"
    PROFESSIONAL = "professional"
    ADDITIONAL = "additional"

    @classmethod
    def values(cls) -> list[str]:
        return [s.value for s in cls]


class StepResult(BaseModel):
    """Result of one extraction step, as persisted in the session."""

    step_name: StepName
    data: dict[str, Any] = Field(default_factory=dict)
    confidence: float = Field(1.0, ge=0.0, le=1.0)
    extraction_meta: dict[str, Any] = Field(default_factory=dict)
    recorded_at: datetime = Field(default_factory=_utcnow)


class Session(BaseModel):
    """Stored state of a single CV's extraction progress."""

    session_id: str
    user_id: str
    raw_text: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    expires_at: datetime
    is_active: bool = True
    current_step: str | None = None
    steps: dict[str, StepResult] = Field(default_factory=dict)

    def is_live(self, now: datetime) -> bool:
        """True while the session is active and its TTL has not elapsed."""
        return self.is_active and now < self.expires_at

    @property
    def step_count(self) -> int:
        return len(self.steps)


class KnownFacts(BaseModel):
    """Compact summary of already-extracted facts used to ground later prompts."""

    name: str | None = None
    email: str | None = None
    current_title: str | None = None
    profession: str | None = None
    experience_level: str | None = None
    skills: list[str] = Field(default_factory=list)
    skill_count: int = 0


class SessionContext(BaseModel):
    session_id: str
    previous_steps: dict[str, StepResult] = Field(default_factory=dict)
    known_facts: KnownFacts = Field(default_factory=KnownFacts)
    step_count: int = 0
    current_step: str | None = None
    processing_metadata: dict[str, Any] = Field(default_factory=dict)


class SessionStats(BaseModel):
    step_count: int
    current_step: str | None = None
    processing_time_seconds: float
    is_active: bool


__all__ = [
    "StepName",
    "StepResult",
    "Session",
    "KnownFacts",
    "SessionContext",
    "SessionStats",
]
