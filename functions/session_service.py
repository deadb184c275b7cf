# functions/session_service.py
"""
Session lifecycle, context building and result aggregation.

The service is the only writer of session state. It owns:

- the TTL policy (a session is live while `is_active` and before
  `expires_at`; anything else is reported as SessionExpiredOrNotFound),
- the step-name whitelist and the "each step is recorded once" rule,
- the derived read models (`SessionContext` with its `KnownFacts`,
  `SessionStats`) and the final `CVRecord` merge.

It is handed a SessionStore instead of reaching for a module-level
database handle, so tests and the API can run independent instances.
"""

from __future__ import annotations

import re
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import structlog

from functions.session_store import SessionStore
from functions.utils.errors import InvalidStepName, SessionExpiredOrNotFound, StepAlreadyRecorded
from schemas.cv_record_schema import (
    Award,
    Certification,
    CVRecord,
    EducationEntry,
    ExperienceEntry,
    PersonalInfo,
    ProcessingInfo,
    Project,
    Publication,
    Skills,
    VolunteerEntry,
)
from schemas.session_schema import KnownFacts, Session, SessionContext, SessionStats, StepName, StepResult

logger = structlog.get_logger(__name__).bind(module="session_service")

DEFAULT_TTL_SECONDS = 2 * 60 * 60

# (profession, title keywords), checked in order
PROFESSION_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("software_developer", ("software", "developer", "engineer")),
    ("healthcare", ("nurse", "medical", "healthcare")),
    ("education", ("teacher", "educator", "professor")),
    ("culinary", ("cook", "chef", "culinary")),
    ("sales_business", ("sales", "account", "business")),
)

_YEAR = re.compile(r"\b(19|20)\d{2}\b")
_ONGOING = ("present", "current", "now", "ongoing")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Known-facts derivation
# ---------------------------------------------------------------------------


def _first_str(data: Dict[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def detect_profession(current_title: Optional[str]) -> str:
    """Keyword match on the job title; 'general' when nothing matches."""
    if not current_title:
        return "general"
    title = current_title.lower()
    for profession, keywords in PROFESSION_KEYWORDS:
        if any(k in title for k in keywords):
            return profession
    return "general"


def _entry_years(entry: Dict[str, Any], current_year: int) -> float:
    """Years for one experience entry: explicit `years`, else the start/end span, else 1."""
    years = entry.get("years")
    if isinstance(years, (int, float)) and not isinstance(years, bool) and years >= 0:
        return float(years)
    if isinstance(years, str):
        try:
            return max(float(years.strip().split(" ")[0]), 0.0)
        except ValueError:
            pass

    start = str(entry.get("startDate") or entry.get("start_date") or "")
    end = str(entry.get("endDate") or entry.get("end_date") or "")
    start_match = _YEAR.search(start)
    if start_match:
        end_match = _YEAR.search(end)
        if end_match:
            end_year = int(end_match.group(0))
        elif not end or end.strip().lower() in _ONGOING:
            end_year = current_year
        else:
            return 1.0
        span = end_year - int(start_match.group(0))
        if span >= 0:
            return float(max(span, 1))
    return 1.0


def determine_experience_level(experience: Any, current_year: Optional[int] = None) -> str:
    """
    Bucket summed years of experience:
    < 2 entry_level, < 5 mid_level, < 10 senior_level, otherwise executive_level.
    """
    if not isinstance(experience, list):
        return "entry_level"
    current_year = current_year or _utcnow().year
    total = sum(_entry_years(e, current_year) for e in experience if isinstance(e, dict))
    if total < 2:
        return "entry_level"
    if total < 5:
        return "mid_level"
    if total < 10:
        return "senior_level"
    return "executive_level"


def _skills_block(value: Any) -> Skills:
    if isinstance(value, list):
        return Skills(technical=value)
    if isinstance(value, dict):
        return Skills.model_validate(value)
    return Skills()


def flatten_technical_skills(skills: Any) -> List[str]:
    """
    `skills.technical` as a flat string list; a bare list counts as technical.

    Goes through the same coercion as `CVRecord.skills`, so known facts
    and the final record always list the same skills.
    """
    return _skills_block(skills).technical


def build_known_facts(steps: Dict[str, StepResult], current_year: Optional[int] = None) -> KnownFacts:
    facts = KnownFacts()

    basic = steps.get(StepName.BASIC_INFO.value)
    if basic is not None:
        data = basic.data
        facts.name = _first_str(data, "name")
        facts.email = _first_str(data, "email")
        facts.current_title = _first_str(data, "currentTitle", "current_title")
        facts.profession = detect_profession(facts.current_title)

    professional = steps.get(StepName.PROFESSIONAL.value)
    if professional is not None:
        data = professional.data
        facts.experience_level = determine_experience_level(data.get("experience", []), current_year)
        facts.skills = flatten_technical_skills(data.get("skills"))
        facts.skill_count = len(facts.skills)

    return facts


# ---------------------------------------------------------------------------
# Aggregation helpers
# ---------------------------------------------------------------------------


def _dict_entries(value: Any) -> List[Dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [v for v in value if isinstance(v, dict)]


class CVSessionService:
    """Lifecycle and read models for multi-step CV extraction sessions."""

    def __init__(
        self,
        store: SessionStore,
        *,
        ttl_seconds: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.ttl_seconds = int(ttl_seconds) if ttl_seconds else DEFAULT_TTL_SECONDS
        self._clock = clock or _utcnow

    def now(self) -> datetime:
        return self._clock()

    # -- lifecycle -----------------------------------------------------------

    def create_session(
        self,
        user_id: str,
        raw_text: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Allocate an active session with no steps and return its id."""
        if not isinstance(raw_text, str) or not raw_text.strip():
            raise ValueError("raw_text must be a non-empty string")

        now = self.now()
        session = Session(
            session_id=uuid.uuid4().hex,
            user_id=str(user_id),
            raw_text=raw_text,
            metadata=dict(metadata or {}),
            created_at=now,
            updated_at=now,
            expires_at=now + timedelta(seconds=self.ttl_seconds),
        )
        self.store.insert(session)

        logger.info(
            "session_created",
            session_id=session.session_id,
            user_id=session.user_id,
            text_chars=len(raw_text),
            ttl_seconds=self.ttl_seconds,
        )
        return session.session_id

    def _live_session(self, session_id: str) -> Session:
        session = self.store.get(session_id)
        if session is None or not session.is_live(self.now()):
            raise SessionExpiredOrNotFound(session_id)
        return session

    def store_step_result(
        self,
        session_id: str,
        step_name: str,
        data: Dict[str, Any],
        confidence: float = 1.0,
        extraction_meta: Optional[Dict[str, Any]] = None,
    ) -> StepResult:
        """
        Record the result of one step.

        Raises:
            SessionExpiredOrNotFound: session missing, expired or cleaned up.
            InvalidStepName: step_name outside the fixed step set.
            StepAlreadyRecorded: the step already has a result.
            pydantic.ValidationError: confidence outside [0, 1].
        """
        try:
            step = StepName(step_name)
        except ValueError:
            raise InvalidStepName(str(step_name), StepName.values()) from None

        with self.store.lock_for(session_id):
            try:
                session = self._live_session(session_id)
            except SessionExpiredOrNotFound:
                # unknown ids must not leave a lock behind
                self.store.discard_lock(session_id)
                raise
            if step.value in session.steps:
                raise StepAlreadyRecorded(session_id, step.value)

            now = self.now()
            result = StepResult(
                step_name=step,
                data=dict(data or {}),
                confidence=confidence,
                extraction_meta=dict(extraction_meta or {}),
                recorded_at=now,
            )
            updated = self.store.add_step(session_id, result, now)
            if updated is None:
                self.store.discard_lock(session_id)
                raise SessionExpiredOrNotFound(session_id)

        logger.info(
            "step_result_stored",
            session_id=session_id,
            step=step.value,
            confidence=result.confidence,
            step_count=updated.step_count,
        )
        return result

    def cleanup_session(self, session_id: str) -> bool:
        """Delete the session. Absent sessions are a no-op; returns whether anything was removed."""
        with self.store.lock_for(session_id):
            removed = self.store.delete(session_id)
        if removed:
            logger.info("session_cleaned_up", session_id=session_id)
        else:
            logger.debug("session_cleanup_noop", session_id=session_id)
        return removed

    def cleanup_expired_sessions(self) -> int:
        """Remove every expired or inactive session; returns how many were removed."""
        removed = self.store.delete_expired(self.now())
        if removed:
            logger.info("expired_sessions_removed", count=removed)
        return removed

    # -- read models ---------------------------------------------------------

    def get_session_context(self, session_id: str) -> SessionContext:
        """Previous steps plus derived known facts. Pure read."""
        session = self._live_session(session_id)
        return SessionContext(
            session_id=session.session_id,
            previous_steps=session.steps,
            known_facts=build_known_facts(session.steps, self.now().year),
            step_count=session.step_count,
            current_step=session.current_step,
            processing_metadata=session.metadata,
        )

    def get_session_stats(self, session_id: str) -> SessionStats:
        session = self._live_session(session_id)
        return SessionStats(
            step_count=session.step_count,
            current_step=session.current_step,
            processing_time_seconds=max((self.now() - session.created_at).total_seconds(), 0.0),
            is_active=session.is_active,
        )

    def get_final_result(self, session_id: str) -> CVRecord:
        """
        Merge whatever steps exist into one CVRecord.

        Missing steps leave their sections empty; malformed entries (non-dict
        list items) are dropped and lists or objects found in text fields are
        flattened, rather than failing the whole record.
        """
        context = self.get_session_context(session_id)
        steps = context.previous_steps

        basic = steps[StepName.BASIC_INFO.value].data if StepName.BASIC_INFO.value in steps else {}
        professional = steps[StepName.PROFESSIONAL.value].data if StepName.PROFESSIONAL.value in steps else {}
        additional = steps[StepName.ADDITIONAL.value].data if StepName.ADDITIONAL.value in steps else {}

        record = CVRecord(
            personal_info=PersonalInfo.model_validate(basic),
            experience=[ExperienceEntry.model_validate(e) for e in _dict_entries(professional.get("experience"))],
            skills=_skills_block(professional.get("skills")),
            education=[EducationEntry.model_validate(e) for e in _dict_entries(professional.get("education"))],
            projects=[Project.model_validate(e) for e in _dict_entries(additional.get("projects"))],
            certifications=[
                Certification.model_validate(e) for e in _dict_entries(additional.get("certifications"))
            ],
            awards=[Award.model_validate(e) for e in _dict_entries(additional.get("awards"))],
            publications=[Publication.model_validate(e) for e in _dict_entries(additional.get("publications"))],
            volunteer=[VolunteerEntry.model_validate(e) for e in _dict_entries(additional.get("volunteer"))],
            processing_info=ProcessingInfo(
                session_id=context.session_id,
                steps_completed=context.step_count,
                confidence_scores={name: s.confidence for name, s in steps.items()},
                profession=context.known_facts.profession,
                experience_level=context.known_facts.experience_level,
            ),
        )

        logger.info(
            "final_result_aggregated",
            session_id=session_id,
            steps_completed=context.step_count,
            experience_entries=len(record.experience),
        )
        return record


__all__ = [
    "DEFAULT_TTL_SECONDS",
    "PROFESSION_KEYWORDS",
    "CVSessionService",
    "build_known_facts",
    "detect_profession",
    "determine_experience_level",
    "flatten_technical_skills",
]
