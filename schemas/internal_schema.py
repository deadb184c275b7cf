"""Internal schemas for security screening and step extraction.

These models are not part of the external API contract. They structure
internal signals (prompt injection screening of CV text, the parsed
output of one LLM extraction call) in a consistent, type-safe way
across the pipeline.
"""

from __future__ import annotations

from typing import Any, Dict, List

from pydantic import BaseModel, Field, model_validator


# ---------------------------------------------------------------------------
# Security / Prompt Injection
# ---------------------------------------------------------------------------


class InjectionDetectionResult(BaseModel):
    """Standardized result for prompt injection detection.

    Attributes:
        is_safe:
            Whether the scanned text may be sent to the LLM (True) or must
            be blocked (False).
        detected_patterns:
            Tags of the patterns / heuristics that fired, e.g.
            "CRITICAL: ignore\\s+previous", "HEURISTIC: HIGH_SPECIAL_CHAR_RATIO".
        risk_score:
            Normalized risk in [0.0, 1.0]:
              - 0.0  = no known issues
              - ~0.4 = low risk (monitor)
              - ~0.6 = medium risk (suspicious)
              - ≥0.8 = high risk (block)
    """

    is_safe: bool = Field(
        ...,
        description="True if the input is considered safe enough to process.",
    )
    detected_patterns: List[str] = Field(
        default_factory=list,
        description="List of patterns / heuristics that were triggered.",
    )
    risk_score: float = Field(
        0.0,
        ge=0.0,
        le=1.0,
        description="Normalized risk score in [0.0, 1.0].",
    )

    @model_validator(mode="after")
    def auto_is_safe_from_risk(self) -> "InjectionDetectionResult":
        """High-risk results are never marked safe."""
        if self.risk_score >= 0.8 and self.is_safe:
            self.is_safe = False
        return self

    @property
    def has_findings(self) -> bool:
        return bool(self.detected_patterns)

    @classmethod
    def safe(cls) -> "InjectionDetectionResult":
        return cls(is_safe=True, detected_patterns=[], risk_score=0.0)

    @classmethod
    def from_findings(
        cls,
        *,
        is_safe: bool,
        detected_patterns: list[str] | None = None,
        risk_score: float = 0.0,
    ) -> "InjectionDetectionResult":
        return cls(
            is_safe=is_safe,
            detected_patterns=detected_patterns or [],
            risk_score=risk_score,
        )


# ---------------------------------------------------------------------------
# Step extraction
# ---------------------------------------------------------------------------


class StepExtraction(BaseModel):
    """Parsed output of one LLM extraction call, ready to be stored.

    Attributes:
        data:
            Normalized, JSON-serializable payload for the step.
        confidence:
            Completeness-based confidence in [0.0, 1.0].
        used_fallback:
            True when deterministic text heuristics filled fields the LLM
            left empty (basic_info only).
        usage:
            Token usage reported by the client, if any.
        model:
            Model name reported by the client.
    """

    data: Dict[str, Any] = Field(default_factory=dict)
    confidence: float = Field(1.0, ge=0.0, le=1.0)
    used_fallback: bool = False
    usage: Dict[str, Any] = Field(default_factory=dict)
    model: str | None = None


__all__ = ["InjectionDetectionResult", "StepExtraction"]
