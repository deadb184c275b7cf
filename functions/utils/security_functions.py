"""
Prompt Injection Screening for CV Text
======================================

CV text is user-controlled and is pasted verbatim into every extraction
prompt, so it is screened before a session is created.

Two complementary strategies:

1. Pattern-based detection
   - Regex patterns (critical and suspicious) loaded from
     `parameters/parameters.yaml`, so they can change without code changes.

2. Heuristic analysis
   - Excessive special-character ratio (obfuscated payloads).
   - Newline density. CVs are line-heavy, so this only ever raises a
     low, non-blocking score.

Primary Functions
-----------------
- detect_injection(text) -> InjectionDetectionResult
- scan_dict_for_injection(data) -> InjectionDetectionResult
- ensure_safe_cv_text(text) -> InjectionDetectionResult, raising
  UnsafeInputError when the risk reaches `security.block_risk_score`.

Configuration
-------------
    security:
      critical_patterns: [...]
      suspicious_patterns: [...]
      block_risk_score: 0.8
"""

from __future__ import annotations

import re
from typing import Any

import structlog

from functions.utils.common import get_config_section
from functions.utils.errors import UnsafeInputError
from schemas.internal_schema import InjectionDetectionResult

logger = structlog.get_logger(__name__).bind(module="security_functions")


def _patterns(key: str) -> tuple[str, ...]:
    return tuple(get_config_section("security").get(key, []) or [])


def _block_threshold() -> float:
    try:
        return float(get_config_section("security").get("block_risk_score", 0.8))
    except (TypeError, ValueError):
        return 0.8


# ---------------------------------------------------------------------------
# Detection logic
# ---------------------------------------------------------------------------


def detect_injection(text: str) -> InjectionDetectionResult:
    """
    Analyze a single string for potential prompt injection.

    Returns:
        InjectionDetectionResult where
            - critical pattern → risk 1.0, unsafe
            - suspicious pattern → risk 0.6
            - special-char heuristic → risk 0.5
            - newline heuristic → risk 0.4
    Non-string or blank input is safe.
    """
    if not isinstance(text, str) or not text.strip():
        return InjectionDetectionResult.safe()

    detected: list[str] = []
    risk_score = 0.0

    for pattern in _patterns("critical_patterns"):
        if re.search(pattern, text, re.IGNORECASE):
            detected.append(f"CRITICAL: {pattern}")
            risk_score = 1.0

    if risk_score < 1.0:
        for pattern in _patterns("suspicious_patterns"):
            if re.search(pattern, text, re.IGNORECASE):
                detected.append(f"SUSPICIOUS: {pattern}")
                risk_score = max(risk_score, 0.6)

    total_len = len(text)

    special_ratio = sum(
        1 for c in text if not c.isalnum() and not c.isspace()
    ) / max(total_len, 1)
    if special_ratio > 0.3:
        detected.append("HEURISTIC: HIGH_SPECIAL_CHAR_RATIO")
        risk_score = max(risk_score, 0.5)

    newline_ratio = text.count("\n") / max(total_len, 1)
    if newline_ratio > 0.1:
        detected.append("HEURISTIC: EXCESSIVE_NEWLINES")
        risk_score = max(risk_score, 0.4)

    detected = list(dict.fromkeys(detected))

    return InjectionDetectionResult.from_findings(
        is_safe=(risk_score < 0.8),
        detected_patterns=detected,
        risk_score=risk_score,
    )


def scan_dict_for_injection(
    data: dict[str, Any] | list[Any] | str,
) -> InjectionDetectionResult:
    """
    Recursively scan nested JSON-like data (e.g. session metadata) and
    aggregate: union of patterns, max risk score.
    """
    all_detected: list[str] = []
    max_risk = 0.0

    def _scan(v: Any) -> None:
        nonlocal max_risk

        if isinstance(v, str):
            r = detect_injection(v)
            if r.has_findings:
                all_detected.extend(r.detected_patterns)
                max_risk = max(max_risk, r.risk_score)
        elif isinstance(v, dict):
            for vv in v.values():
                _scan(vv)
        elif isinstance(v, list):
            for vv in v:
                _scan(vv)

    _scan(data)

    if not all_detected and max_risk == 0.0:
        return InjectionDetectionResult.safe()

    return InjectionDetectionResult.from_findings(
        is_safe=(max_risk < 0.8),
        detected_patterns=list(dict.fromkeys(all_detected)),
        risk_score=max_risk,
    )


def ensure_safe_cv_text(text: str) -> InjectionDetectionResult:
    """Screen CV text; raise UnsafeInputError at or above the block threshold."""
    result = detect_injection(text)
    if result.risk_score >= _block_threshold():
        logger.warning(
            "cv_text_blocked",
            risk_score=result.risk_score,
            detected_patterns=result.detected_patterns,
        )
        raise UnsafeInputError(result.detected_patterns, result.risk_score)
    if result.has_findings:
        logger.info(
            "cv_text_flagged",
            risk_score=result.risk_score,
            detected_patterns=result.detected_patterns,
        )
    return result


__all__ = ["detect_injection", "scan_dict_for_injection", "ensure_safe_cv_text"]
