# functions/utils/text_cleaner.py
"""
Text preparation for raw CV text before it is sent to the LLM.

PDF/DOCX extraction leaves behind page headers, odd bullet glyphs,
zero-width characters and runs of blank lines. The helpers here
normalize that while keeping line structure intact (line starts are
what the name detection relies on).
"""

from __future__ import annotations

import re

import structlog

logger = structlog.get_logger(__name__).bind(module="text_cleaner")

DEFAULT_MAX_CHARS = 25000
TRUNCATION_NOTE = "\n\n[Content truncated due to length]"

_BULLETS = re.compile("[\u2022\u25aa\u25ab\u2023\u2043\u25cf\u25e6]")
_ARROWS = re.compile("[\u2190-\u2193]")
_ZERO_WIDTH = re.compile("[\u200b-\u200d\ufeff]")
# basic Latin, Latin-1, Latin Extended A/B and Latin Extended Additional, plus line breaks
_NON_LATIN = re.compile("[^\n\x20-\x7e\u00a0-\u024f\u1e00-\u1eff]")

_EMAIL = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
_PHONE = re.compile(
    r"(?:\+?1[-.\s]?)?\(?[0-9]{3}\)?[-.\s]?[0-9]{3}[-.\s]?[0-9]{4}"
    r"|\+?[0-9]{1,4}[-.\s]?[0-9]{2,3}[-.\s]?[0-9]{3,4}[-.\s]?[0-9]{3,4}"
)

_HEADER_PATTERNS = (
    re.compile(r"^(page \d+ of \d+|page \d+)$", re.IGNORECASE),
    re.compile(r"^(curriculum vitae|resume|cv)$", re.IGNORECASE),
    re.compile(r"^(personal information|contact information)$", re.IGNORECASE),
    re.compile(r"^(confidential|private)$", re.IGNORECASE),
)

_NAME_SKIP_WORDS = (
    "resume", "curriculum", "vitae", "cv", "profile",
    "summary", "experience", "education", "skills",
)


def clean_extracted_text(text: str) -> str:
    """Normalize line breaks, glyphs and whitespace; keep at most one blank line."""
    if not text or not isinstance(text, str):
        return ""

    cleaned = text.replace("\r\n", "\n").replace("\r", "\n").replace("\f", "\n")
    cleaned = _ZERO_WIDTH.sub("", cleaned)
    cleaned = _BULLETS.sub("- ", cleaned)
    cleaned = _ARROWS.sub(" ", cleaned)
    cleaned = _NON_LATIN.sub(" ", cleaned)

    # collapse horizontal whitespace per line, then blank-line runs
    cleaned = "\n".join(re.sub("[ \t\u00a0]+", " ", ln).strip() for ln in cleaned.split("\n"))
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned).strip()

    logger.debug("text_cleaned", original_chars=len(text), cleaned_chars=len(cleaned))
    return cleaned


def remove_common_headers(text: str) -> str:
    """Drop page counters and generic document titles ('Resume', 'Page 2 of 3')."""
    kept: list[str] = []
    for line in text.split("\n"):
        stripped = line.strip()
        if not kept and not stripped:
            continue
        if any(p.match(stripped) for p in _HEADER_PATTERNS):
            continue
        kept.append(line)
    return "\n".join(kept).strip()


def limit_text_length(text: str, max_length: int = DEFAULT_MAX_CHARS) -> str:
    """
    Cap text at max_length characters.

    Cuts at the last sentence end or line break when that point lies in
    the final 20% of the window, otherwise hard-cuts. A truncation note is
    appended either way.
    """
    if not text or len(text) <= max_length:
        return text

    truncated = text[:max_length]
    cut_point = max(truncated.rfind("."), truncated.rfind("\n"))
    if cut_point > max_length * 0.8:
        return truncated[: cut_point + 1] + TRUNCATION_NOTE
    return truncated + TRUNCATION_NOTE


def prepare_for_ai(text: str, max_length: int = DEFAULT_MAX_CHARS) -> str:
    """Full preparation pipeline: clean → strip headers → length cap."""
    return limit_text_length(remove_common_headers(clean_extracted_text(text)), max_length)


def extract_contact_info(text: str) -> dict[str, list[str]]:
    """Regex-based email / phone discovery, de-duplicated in order of appearance."""
    if not text:
        return {"emails": [], "phones": []}
    emails = list(dict.fromkeys(_EMAIL.findall(text)))
    phones = list(dict.fromkeys(p.strip() for p in _PHONE.findall(text)))
    return {"emails": emails, "phones": phones}


def extract_name_candidates(text: str, max_lines: int = 10) -> list[str]:
    """
    Lines near the top of the CV that look like a person's name:
    2–4 capitalized alphabetic words, no digits or symbols, not a section header.
    """
    candidates: list[str] = []
    if not text:
        return candidates

    for raw in text.split("\n")[:max_lines]:
        line = raw.strip()
        if len(line) < 3 or len(line) > 50:
            continue
        if re.search(r"[0-9@#$%^&*()+=\[\]{}|\\:\";'<>?,./]", line):
            continue
        lower = line.lower()
        if any(word in lower.split() for word in _NAME_SKIP_WORDS):
            continue
        words = line.split()
        if 2 <= len(words) <= 4 and all(re.fullmatch(r"[A-Z][A-Za-z'-]*", w) and len(w) > 1 for w in words):
            candidates.append(line)

    return candidates


__all__ = [
    "DEFAULT_MAX_CHARS",
    "clean_extracted_text",
    "remove_common_headers",
    "limit_text_length",
    "prepare_for_ai",
    "extract_contact_info",
    "extract_name_candidates",
]
