# main.py
"""
Main access point for multi-step CV extraction.

Pipeline:
    text preparation (clean, strip headers, length cap) + injection guard
    step 1: basic_info     (name, contact, current title)
    step 2: professional   (experience, skills, education), grounded on step 1
    step 3: additional     (projects, certifications, awards, ...), grounded on 1-2
    aggregation into one camelCase CVRecord, then session cleanup

Error packaging (`build_error_response`) is left to the API layer so this
module stays HTTP-agnostic.
"""

import json
import sys
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import structlog

from functions.extraction_pipeline import CVExtractionEngine
from functions.session_service import CVSessionService
from functions.session_store import build_session_store
from functions.utils.common import load_session_params, select_llm_client_and_params
from functions.utils.errors import CVSessionError
from functions.utils.file_text_extraction import extract_text_from_bytes, guess_mime_type
from schemas.cv_record_schema import CVRecord

logger = structlog.get_logger().bind(module="main")

ROOT = Path(__file__).resolve().parent


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def build_session_service(session_cfg: Optional[Dict[str, Any]] = None) -> CVSessionService:
    """Store + service from the `session` config section (env overrides applied)."""
    cfg = session_cfg if session_cfg is not None else load_session_params()
    store = build_session_store(cfg)
    return CVSessionService(store, ttl_seconds=cfg.get("ttl_seconds"))


def build_extraction_engine(
    session_service: CVSessionService,
    llm_client: Optional[Callable[..., Any]] = None,
    extraction_params: Optional[Dict[str, Any]] = None,
) -> CVExtractionEngine:
    """Engine bound to the configured LLM client unless one is passed in."""
    if llm_client is None:
        llm_client, engine_params = select_llm_client_and_params()
        if extraction_params:
            engine_params.update(extraction_params)
        extraction_params = engine_params
    return CVExtractionEngine(
        llm_client=llm_client,
        session_service=session_service,
        extraction_params=extraction_params,
    )


# ---------------------------------------------------------------------------
# Core pipeline
# ---------------------------------------------------------------------------


def run_cv_extraction(
    raw_text: str,
    *,
    user_id: str = "cli",
    metadata: Optional[Dict[str, Any]] = None,
    engine: Optional[CVExtractionEngine] = None,
) -> CVRecord:
    """
    Run the three-step extraction for one CV text.

    Args
    ----
    raw_text:
        CV text as extracted from the uploaded document.
    user_id:
        Owner of the temporary session.
    metadata:
        Advisory metadata stored with the session (file name, mime type).
    engine:
        Pre-built engine; a fresh in-process one is built when omitted.

    Returns
    -------
    CVRecord
        Final merged record. Serialize with `to_public_dict()` for camelCase JSON.
    """
    engine = engine or build_extraction_engine(build_session_service())
    logger.info("pipeline_start", user_id=user_id, text_chars=len(raw_text or ""))
    record = engine.process_cv(raw_text, user_id, metadata)
    logger.info(
        "pipeline_completed",
        user_id=user_id,
        steps_completed=record.processing_info.steps_completed,
    )
    return record


def read_cv_file(path: Path) -> str:
    """Text of a CV file on disk (PDF, DOCX or TXT)."""
    mime_type = guess_mime_type(path.name)
    return extract_text_from_bytes(path.read_bytes(), mime_type)


# ---------------------------------------------------------------------------
# CLI wrapper (for debugging without FastAPI)
# ---------------------------------------------------------------------------


def _cli() -> int:
    """
    CLI usage:

        python main.py path/to/cv.(txt|pdf|docx)
    """
    if len(sys.argv) < 2:
        print("Usage: python main.py path/to/cv.(txt|pdf|docx)", file=sys.stderr)
        return 1

    in_path = Path(sys.argv[1])
    if not in_path.is_file():
        print(f"[ERROR] Input file not found: {in_path}", file=sys.stderr)
        return 1

    try:
        text = read_cv_file(in_path)
        record = run_cv_extraction(
            text,
            metadata={"file_name": in_path.name, "source": "cli"},
        )
    except (CVSessionError, ValueError) as e:
        print(f"[ERROR] Pipeline failed: {e}", file=sys.stderr)
        return 1

    print(json.dumps(record.to_public_dict(), ensure_ascii=False, indent=2))
    print(f"[info] session_id={record.processing_info.session_id}", file=sys.stderr)
    return 0


if __name__ == "__main__":
    raise SystemExit(_cli())
