# functions/extraction_pipeline.py

"""
Multi-step CV extraction pipeline.

This module handles:
- Building one prompt per extraction step, grounded in the facts earlier
  steps already produced (`SessionContext.known_facts`)
- Calling the LLM with a per-step timeout
- Parsing and normalizing the JSON each step returns
- Storing every step result in the session and aggregating the final
  CVRecord


Step order
----------

    PENDING
      └─ basic_info     → BASIC_INFO_DONE      name, contact, title, summary
          └─ professional → PROFESSIONAL_DONE   experience, skills, education
              └─ additional → ADDITIONAL_DONE   projects, certifications, ...
                  └─ aggregate → AGGREGATED
    any failure → FAILED

Each step reads the context *before* calling the LLM and writes its result
*after*; the LLM call itself never runs while a session lock is held.

The engine does not retry whole steps. Retries with backoff live in the
LLM client (`max_retries`); a step that still fails aborts the run with
UpstreamExtractionFailure naming the step, and the session is always
cleaned up.
"""

from __future__ import annotations

import json
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

import structlog

from functions.session_service import CVSessionService
from functions.utils.common import get_config_section, load_generation_params, map_engine_params
from functions.utils.errors import StepTimeout, UpstreamExtractionFailure
from functions.utils.llm_client import is_error_text
from functions.utils.security_functions import ensure_safe_cv_text
from functions.utils.text_cleaner import (
    DEFAULT_MAX_CHARS,
    extract_contact_info,
    extract_name_candidates,
    prepare_for_ai,
)
from schemas.cv_record_schema import CVRecord, flatten_text
from schemas.internal_schema import StepExtraction
from schemas.session_schema import KnownFacts, StepName

logger = structlog.get_logger(__name__).bind(module="extraction_pipeline")

DEFAULT_STEP_TIMEOUT_SECONDS = 60.0
DEFAULT_BASIC_INFO_CHARS = 3000
DEFAULT_LLM_WORKERS = 4
AGGREGATE_STAGE = "aggregate"

# params consumed by the engine itself, never forwarded to the LLM client
_ENGINE_ONLY_PARAMS = ("step_timeout_seconds", "basic_info_text_chars", "llm_workers")


# ---------------------------------------------------------------------------
# Run state
# ---------------------------------------------------------------------------


class PipelineState(str, Enum):
    PENDING = "pending"
    BASIC_INFO_DONE = "basic_info_done"
    PROFESSIONAL_DONE = "professional_done"
    ADDITIONAL_DONE = "additional_done"
    AGGREGATED = "aggregated"
    FAILED = "failed"


_NEXT_STATE: Dict[PipelineState, PipelineState] = {
    PipelineState.PENDING: PipelineState.BASIC_INFO_DONE,
    PipelineState.BASIC_INFO_DONE: PipelineState.PROFESSIONAL_DONE,
    PipelineState.PROFESSIONAL_DONE: PipelineState.ADDITIONAL_DONE,
    PipelineState.ADDITIONAL_DONE: PipelineState.AGGREGATED,
}

STEP_DONE_STATE: Dict[StepName, PipelineState] = {
    StepName.BASIC_INFO: PipelineState.BASIC_INFO_DONE,
    StepName.PROFESSIONAL: PipelineState.PROFESSIONAL_DONE,
    StepName.ADDITIONAL: PipelineState.ADDITIONAL_DONE,
}


@dataclass
class ExtractionRun:
    """Context passed explicitly through one pipeline run."""

    session_id: str
    user_id: str
    cv_text: str
    state: PipelineState = PipelineState.PENDING
    record: Optional[CVRecord] = None
    failed_step: Optional[str] = None
    step_meta: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def advance(self, to: PipelineState) -> None:
        """Move to the next state; anything but the immediate successor is rejected."""
        expected = _NEXT_STATE.get(self.state)
        if to is not expected:
            raise RuntimeError(f"Invalid pipeline transition {self.state.value} -> {to.value}")
        self.state = to

    def fail(self, step: Optional[str]) -> None:
        self.state = PipelineState.FAILED
        self.failed_step = step

    @property
    def is_terminal(self) -> bool:
        return self.state in (PipelineState.AGGREGATED, PipelineState.FAILED)


# ---------------------------------------------------------------------------
# Response parsing helpers
# ---------------------------------------------------------------------------


def _strip_markdown_fence(text: str) -> str:
    """Remove ``` / ```json fences if present, otherwise return text unchanged."""
    stripped = text.strip()
    if stripped.startswith("```"):
        lines = stripped.splitlines()
        # drop first line (``` or ```json)
        if lines:
            lines = lines[1:]
        # drop last line if it's a closing fence
        if lines and lines[-1].strip().startswith("```"):
            lines = lines[:-1]
        stripped = "\n".join(lines).strip()
    return stripped


def extract_json_object(text: str) -> Dict[str, Any]:
    """
    Parse the outermost {...} object in an LLM answer.

    Raises ValueError when there is no object or it is not valid JSON.
    """
    cleaned = _strip_markdown_fence(text or "")
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start == -1 or end < start:
        raise ValueError("no JSON object in response")
    data = json.loads(cleaned[start : end + 1])
    if not isinstance(data, dict):
        raise ValueError("response JSON is not an object")
    return data


def _text(value: Any) -> Optional[str]:
    return flatten_text(value) or None


def _dict_list(value: Any) -> List[Dict[str, Any]]:
    """Collections the LLM returned as something other than a list become empty lists."""
    if not isinstance(value, list):
        return []
    return [v for v in value if isinstance(v, dict)]


def _normalize_experience(entries: Any) -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    for entry in _dict_list(entries):
        entry = dict(entry)
        # some models answer with "position" instead of "title"
        if not entry.get("title") and entry.get("position"):
            entry["title"] = entry.pop("position")
        out.append(entry)
    return out


def _normalize_skills(value: Any) -> Dict[str, List[Any]]:
    if isinstance(value, list):
        return {"technical": value, "soft": [], "languages": []}
    if not isinstance(value, dict):
        return {"technical": [], "soft": [], "languages": []}
    return {
        key: value.get(key) if isinstance(value.get(key), list) else []
        for key in ("technical", "soft", "languages")
    }


def _is_populated(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, dict):
        return any(_is_populated(v) for v in value.values())
    if isinstance(value, (list, tuple)):
        return len(value) > 0
    return True


class CVExtractionEngine:
    """Runs the three extraction steps against a session and aggregates the result."""

    extraction_params: Dict[str, Any]

    def __init__(
        self,
        llm_client: Callable[..., Any],
        session_service: CVSessionService,
        extraction_params: Dict[str, Any] | None = None,
    ):
        self.llm_client = llm_client
        self.session_service = session_service

        defaults: Dict[str, Any] = map_engine_params(load_generation_params())
        defaults.setdefault("step_timeout_seconds", DEFAULT_STEP_TIMEOUT_SECONDS)
        defaults.setdefault("basic_info_text_chars", DEFAULT_BASIC_INFO_CHARS)
        defaults.setdefault("llm_workers", DEFAULT_LLM_WORKERS)
        if extraction_params:
            defaults.update(extraction_params)

        self.extraction_params = defaults
        self.max_text_chars = int(get_config_section("text").get("max_chars", DEFAULT_MAX_CHARS))
        self.llm_workers = max(1, int(self.extraction_params["llm_workers"]))
        self._executor = ThreadPoolExecutor(max_workers=self.llm_workers, thread_name_prefix="cv-llm")
        # timed-out calls still running in a worker
        self._abandoned: Set[Future] = set()
        self._abandoned_lock = threading.Lock()

    def close(self) -> None:
        self._executor.shutdown(wait=False)

    # ------------------------------------------------------------------
    # Prompts
    # ------------------------------------------------------------------

    def build_step_prompt(self, step: StepName | str, cv_text: str, known_facts: KnownFacts) -> str:
        step = StepName(step)
        if step is StepName.BASIC_INFO:
            return self._basic_info_prompt(cv_text)
        if step is StepName.PROFESSIONAL:
            return self._professional_prompt(cv_text, known_facts)
        return self._additional_prompt(cv_text, known_facts)

    def _basic_info_prompt(self, cv_text: str) -> str:
        head = cv_text[: int(self.extraction_params["basic_info_text_chars"])]
        return f"""Extract basic personal information from this CV. Return ONLY a valid JSON object:

{{
  "name": "Full name of the person",
  "email": "Email address",
  "phone": "Phone number",
  "location": "City, Country",
  "currentTitle": "Current or most recent job title",
  "summary": "Professional summary or objective (2-3 sentences)",
  "aboutMe": "Personal statement in first person, if present"
}}

Use null for anything not stated in the CV. Do not invent information.

CV Text:
{head}

JSON Response:"""

    def _professional_prompt(self, cv_text: str, facts: KnownFacts) -> str:
        grounding = self._grounding_lines(facts)
        return f"""Extract professional information from this CV.

Already known about this person (do not extract contact details again):
{grounding}

Return ONLY a valid JSON object:

{{
  "experience": [
    {{
      "title": "Job title",
      "company": "Company name",
      "location": "City, Country",
      "startDate": "Start date",
      "endDate": "End date or 'Present'",
      "years": "Number of years in the role, as a number",
      "description": "What the role involved",
      "achievements": ["Concrete achievement"],
      "technologies": ["Tool or technology used"]
    }}
  ],
  "skills": {{
    "technical": ["Technical or job-specific skill"],
    "soft": ["Soft skill"],
    "languages": ["Spoken language with level"]
  }},
  "education": [
    {{
      "degree": "Degree name",
      "field": "Field of study",
      "institution": "School name",
      "location": "City, Country",
      "graduationYear": "Year",
      "gpa": "GPA if mentioned",
      "honors": "Honors if mentioned"
    }}
  ]
}}

This can be ANY profession. Keep the CV's own wording for titles and skills.

CV Text:
{cv_text}

JSON Response:"""

    def _additional_prompt(self, cv_text: str, facts: KnownFacts) -> str:
        grounding = self._grounding_lines(facts)
        return f"""Extract additional information from this CV.

Already known about this person:
{grounding}

Return ONLY a valid JSON object. Use empty lists for sections the CV does not have:

{{
  "projects": [
    {{"name": "Project name", "description": "Description", "technologies": ["tech"], "role": "Role", "year": "Year", "link": "URL"}}
  ],
  "certifications": [
    {{"name": "Certification name", "issuer": "Issuing organization", "year": "Year obtained", "expirationYear": "Year", "credentialId": "ID"}}
  ],
  "awards": [
    {{"name": "Award name", "issuer": "Who gave it", "year": "Year", "description": "Description"}}
  ],
  "publications": [
    {{"title": "Title", "journal": "Journal or venue", "year": "Year", "authors": ["Author"]}}
  ],
  "volunteer": [
    {{"organization": "Organization", "role": "Role", "duration": "Duration", "description": "Description"}}
  ]
}}

CV Text:
{cv_text}

JSON Response:"""

    @staticmethod
    def _grounding_lines(facts: KnownFacts) -> str:
        lines = []
        if facts.name:
            lines.append(f"- Name: {facts.name}")
        if facts.current_title:
            lines.append(f"- Current title: {facts.current_title}")
        if facts.profession:
            lines.append(f"- Profession: {facts.profession}")
        if facts.experience_level:
            lines.append(f"- Experience level: {facts.experience_level}")
        if facts.skills:
            lines.append(f"- Key skills: {', '.join(facts.skills[:10])}")
        return "\n".join(lines) or "- Nothing yet"

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    def parse_step_response(self, step: StepName | str, raw_text: str, cv_text: str) -> StepExtraction:
        """
        Turn raw LLM output into normalized step data.

        Raises UpstreamExtractionFailure for error markers, unparseable JSON,
        or a basic_info result with no name even after the text fallback.
        """
        step = StepName(step)
        if is_error_text(raw_text):
            raise UpstreamExtractionFailure(step.value, str(raw_text).strip()[:200])
        try:
            payload = extract_json_object(str(raw_text))
        except ValueError as exc:
            raise UpstreamExtractionFailure(step.value, f"unparseable response: {exc}") from exc

        used_fallback = False
        if step is StepName.BASIC_INFO:
            data, used_fallback = self._normalize_basic_info(payload, cv_text)
        elif step is StepName.PROFESSIONAL:
            data = {
                "experience": _normalize_experience(payload.get("experience")),
                "skills": _normalize_skills(payload.get("skills")),
                "education": _dict_list(payload.get("education")),
            }
        else:
            data = {
                key: _dict_list(payload.get(key))
                for key in ("projects", "certifications", "awards", "publications", "volunteer")
            }

        return StepExtraction(
            data=data,
            confidence=self.calculate_confidence(data),
            used_fallback=used_fallback,
            usage=dict(getattr(raw_text, "usage", None) or {}),
            model=getattr(raw_text, "model", None),
        )

    @staticmethod
    def _normalize_basic_info(payload: Dict[str, Any], cv_text: str) -> tuple[Dict[str, Any], bool]:
        data: Dict[str, Any] = {
            "name": _text(payload.get("name")),
            "email": _text(payload.get("email")),
            "phone": _text(payload.get("phone")),
            "location": _text(payload.get("location")),
            "currentTitle": _text(
                payload.get("currentTitle") or payload.get("current_title") or payload.get("title")
            ),
            "summary": _text(payload.get("summary")),
            "aboutMe": _text(payload.get("aboutMe") or payload.get("about_me")),
        }

        used_fallback = False
        if not data["name"]:
            candidates = extract_name_candidates(cv_text)
            if candidates:
                data["name"] = candidates[0]
                used_fallback = True
        if not data["email"] or not data["phone"]:
            contacts = extract_contact_info(cv_text)
            if not data["email"] and contacts["emails"]:
                data["email"] = contacts["emails"][0]
                used_fallback = True
            if not data["phone"] and contacts["phones"]:
                data["phone"] = contacts["phones"][0]
                used_fallback = True

        if not data["name"]:
            raise UpstreamExtractionFailure(StepName.BASIC_INFO.value, "no name found in CV")
        return data, used_fallback

    @staticmethod
    def calculate_confidence(data: Dict[str, Any]) -> float:
        """0.1 for empty data, else 0.5 + 0.1 per populated field, capped at 1.0."""
        if not data:
            return 0.1
        populated = sum(1 for v in data.values() if _is_populated(v))
        return round(min(0.5 + 0.1 * populated, 1.0), 2)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _forget_abandoned(self, future: Future) -> None:
        with self._abandoned_lock:
            self._abandoned.discard(future)
            still_running = len(self._abandoned)
        logger.info("llm_abandoned_call_finished", still_running=still_running)

    @property
    def abandoned_calls(self) -> int:
        with self._abandoned_lock:
            return len(self._abandoned)

    def _call_llm_with_timeout(self, prompt: str, step: StepName) -> Any:
        timeout = float(self.extraction_params["step_timeout_seconds"])
        call_params = {k: v for k, v in self.extraction_params.items() if k not in _ENGINE_ONLY_PARAMS}
        # the client's own request timeout must end the worker by the step deadline
        client_timeout = float(call_params.get("timeout_seconds") or timeout)
        call_params["timeout_seconds"] = min(client_timeout, timeout)

        busy = self.abandoned_calls
        if busy >= self.llm_workers:
            logger.warning("llm_workers_saturated", step=step.value, abandoned_calls=busy, workers=self.llm_workers)

        future = self._executor.submit(self.llm_client, prompt, **call_params)
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError:
            if not future.cancel():
                with self._abandoned_lock:
                    self._abandoned.add(future)
                future.add_done_callback(self._forget_abandoned)
            logger.error("llm_step_timeout", step=step.value, timeout_seconds=timeout)
            raise StepTimeout(step.value, timeout) from None
        except Exception as exc:
            logger.error("llm_step_call_failed", step=step.value, error=str(exc))
            raise UpstreamExtractionFailure(step.value, str(exc) or type(exc).__name__) from exc

    def run_step(self, run: ExtractionRun, step: StepName | str) -> StepExtraction:
        step = StepName(step)
        context = self.session_service.get_session_context(run.session_id)
        prompt = self.build_step_prompt(step, run.cv_text, context.known_facts)

        logger.info(
            "extraction_step_start",
            session_id=run.session_id,
            step=step.value,
            prompt_chars=len(prompt),
            known_steps=context.step_count,
        )

        raw = self._call_llm_with_timeout(prompt, step)
        extraction = self.parse_step_response(step, raw, run.cv_text)

        usage = extraction.usage
        meta = {
            "method": "llm_with_text_fallback" if extraction.used_fallback else "llm",
            "step": step.value,
            "model": extraction.model or self.extraction_params.get("model"),
            "prompt_tokens": usage.get("prompt_tokens"),
            "completion_tokens": usage.get("completion_tokens"),
            "total_tokens": usage.get("total_tokens"),
        }
        self.session_service.store_step_result(
            run.session_id,
            step.value,
            extraction.data,
            confidence=extraction.confidence,
            extraction_meta=meta,
        )
        run.step_meta[step.value] = meta
        run.advance(STEP_DONE_STATE[step])

        logger.info(
            "extraction_step_done",
            session_id=run.session_id,
            step=step.value,
            confidence=extraction.confidence,
            used_fallback=extraction.used_fallback,
        )
        return extraction

    def process_cv(
        self,
        raw_text: str,
        user_id: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> CVRecord:
        """
        Full pipeline: clean → screen → create session → three steps →
        aggregate. The session is removed afterwards whether or not the run
        succeeded.
        """
        cv_text = prepare_for_ai(raw_text or "", self.max_text_chars)
        if not cv_text.strip():
            raise ValueError("CV text is empty after cleaning")

        screening = ensure_safe_cv_text(cv_text)
        run_metadata = dict(metadata or {})
        run_metadata.setdefault("text_chars", len(cv_text))
        if screening.has_findings:
            run_metadata["injection_risk_score"] = screening.risk_score

        session_id = self.session_service.create_session(user_id, cv_text, run_metadata)
        run = ExtractionRun(session_id=session_id, user_id=str(user_id), cv_text=cv_text)
        stage: Optional[str] = None

        logger.info("cv_processing_start", session_id=session_id, user_id=run.user_id, text_chars=len(cv_text))
        try:
            for step in StepName:
                stage = step.value
                self.run_step(run, step)
            stage = AGGREGATE_STAGE
            try:
                run.record = self.session_service.get_final_result(session_id)
            except ValueError as exc:
                # pydantic.ValidationError included: the merged step data is unusable
                raise UpstreamExtractionFailure(AGGREGATE_STAGE, str(exc)) from exc
            run.advance(PipelineState.AGGREGATED)
            logger.info(
                "cv_processing_done",
                session_id=session_id,
                steps_completed=run.record.processing_info.steps_completed,
            )
            return run.record
        except Exception as exc:
            run.fail(stage)
            logger.error(
                "cv_processing_failed",
                session_id=session_id,
                failed_step=run.failed_step,
                error=str(exc),
            )
            raise
        finally:
            try:
                self.session_service.cleanup_session(session_id)
            except Exception as cleanup_exc:  # best effort; the original outcome wins
                logger.exception("session_cleanup_failed", session_id=session_id, error=str(cleanup_exc))


__all__ = [
    "AGGREGATE_STAGE",
    "DEFAULT_STEP_TIMEOUT_SECONDS",
    "PipelineState",
    "ExtractionRun",
    "CVExtractionEngine",
    "extract_json_object",
]
