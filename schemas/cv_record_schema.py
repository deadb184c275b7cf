"""Normalized CV record produced by merging all extraction steps.

Every section is an explicit, typed model. Absent information is
represented by None (scalars) or an empty list / empty Skills block,
never by a missing key, so consumers can rely on a fixed shape.

The models serialize in camelCase (`personalInfo`, `processingInfo`,
`confidenceScores`) to match the JSON the LLM prompts ask for and the
frontend consumes, while Python code uses snake_case attributes.
Both spellings are accepted on input.
"""

from __future__ import annotations

import types
from typing import Any, Union, get_args, get_origin

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


def _string_list(v: Any) -> list[str]:
    """Coerce LLM list output to a clean list of non-empty strings.

    `{"category": ..., "items": [...]}` groups are flattened into their items.
    """
    if v is None:
        return []
    if isinstance(v, str):
        v = [v]
    if not isinstance(v, (list, tuple)):
        return []
    out: list[str] = []
    for item in v:
        if isinstance(item, dict):
            out.extend(_string_list(item.get("items")))
            continue
        if item is None or isinstance(item, list):
            continue
        text = str(item).strip()
        if text:
            out.append(text)
    return out


def flatten_text(v: Any) -> str:
    """Bulleted lists join with "; ", structured objects (e.g. a location) with ", "."""
    if isinstance(v, dict):
        parts = [flatten_text(x) for x in v.values()]
        return ", ".join(p for p in parts if p)
    if isinstance(v, (list, tuple)):
        parts = [flatten_text(x) for x in v]
        return "; ".join(p for p in parts if p)
    if v is None:
        return ""
    return str(v).strip()


def _is_text_field(annotation: Any) -> bool:
    if annotation is str:
        return True
    return get_origin(annotation) in (Union, types.UnionType) and str in get_args(annotation)


class _CamelModel(BaseModel):
    """Lenient base for LLM-produced entries.

    - camelCase aliases, snake_case attributes
    - unknown keys dropped
    - numbers accepted where text is expected (phone, year, gpa)
    - lists and objects flattened where text is expected
    - blank strings normalized to None
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        coerce_numbers_to_str=True,
        str_strip_whitespace=True,
    )

    @model_validator(mode="before")
    @classmethod
    def normalize_text_fields(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        text_keys: set[str] = set()
        for name, info in cls.model_fields.items():
            if _is_text_field(info.annotation):
                text_keys.add(name)
                if info.alias:
                    text_keys.add(info.alias)

        out: dict[str, Any] = {}
        for k, v in data.items():
            if k in text_keys and isinstance(v, (dict, list, tuple, bool)):
                v = flatten_text(v)
            out[k] = None if isinstance(v, str) and not v.strip() else v
        return out


class PersonalInfo(_CamelModel):
    name: str | None = None
    email: str | None = None
    phone: str | None = None
    location: str | None = None
    current_title: str | None = None
    summary: str | None = None
    about_me: str | None = None


class ExperienceEntry(_CamelModel):
    title: str | None = None
    company: str | None = None
    location: str | None = None
    start_date: str | None = None
    end_date: str | None = None
    description: str | None = None
    achievements: list[str] = Field(default_factory=list)
    technologies: list[str] = Field(default_factory=list)
    years: int | float | None = None

    @field_validator("achievements", "technologies", mode="before")
    @classmethod
    def coerce_lists(cls, v: Any) -> list[str]:
        return _string_list(v)

    @field_validator("years", mode="before")
    @classmethod
    def parse_years(cls, v: Any) -> Any:
        """Accept '4', '4.5' or '4 years'; anything unparseable becomes None."""
        if v is None or isinstance(v, (int, float)):
            return v
        if isinstance(v, str):
            head = v.strip().split(" ")[0]
            try:
                return float(head) if "." in head else int(head)
            except ValueError:
                return None
        return None


class Skills(_CamelModel):
    technical: list[str] = Field(default_factory=list)
    soft: list[str] = Field(default_factory=list)
    languages: list[str] = Field(default_factory=list)

    @field_validator("technical", "soft", "languages", mode="before")
    @classmethod
    def coerce_lists(cls, v: Any) -> list[str]:
        return _string_list(v)


class EducationEntry(_CamelModel):
    degree: str | None = None
    field: str | None = None
    institution: str | None = None
    location: str | None = None
    graduation_year: str | None = None
    gpa: str | None = None
    honors: str | None = None


class Project(_CamelModel):
    name: str | None = None
    description: str | None = None
    technologies: list[str] = Field(default_factory=list)
    role: str | None = None
    year: str | None = None
    link: str | None = None

    @field_validator("technologies", mode="before")
    @classmethod
    def coerce_lists(cls, v: Any) -> list[str]:
        return _string_list(v)


class Certification(_CamelModel):
    name: str | None = None
    issuer: str | None = None
    year: str | None = None
    expiration_year: str | None = None
    credential_id: str | None = None


class Award(_CamelModel):
    name: str | None = None
    issuer: str | None = None
    year: str | None = None
    description: str | None = None


class Publication(_CamelModel):
    title: str | None = None
    journal: str | None = None
    year: str | None = None
    authors: list[str] = Field(default_factory=list)

    @field_validator("authors", mode="before")
    @classmethod
    def coerce_lists(cls, v: Any) -> list[str]:
        return _string_list(v)


class VolunteerEntry(_CamelModel):
    organization: str | None = None
    role: str | None = None
    duration: str | None = None
    description: str | None = None


class ProcessingInfo(_CamelModel):
    """Provenance of a merged record: which steps ran and how confident they were."""

    session_id: str
    steps_completed: int = 0
    # Keys are step names (e.g. "basic_info") and are not re-cased.
    confidence_scores: dict[str, float] = Field(default_factory=dict)
    profession: str | None = None
    experience_level: str | None = None


class CVRecord(_CamelModel):
    """Final normalized CV assembled from all completed extraction steps."""

    personal_info: PersonalInfo = Field(default_factory=PersonalInfo)
    experience: list[ExperienceEntry] = Field(default_factory=list)
    skills: Skills = Field(default_factory=Skills)
    education: list[EducationEntry] = Field(default_factory=list)
    projects: list[Project] = Field(default_factory=list)
    certifications: list[Certification] = Field(default_factory=list)
    awards: list[Award] = Field(default_factory=list)
    publications: list[Publication] = Field(default_factory=list)
    volunteer: list[VolunteerEntry] = Field(default_factory=list)
    processing_info: ProcessingInfo

    def to_public_dict(self) -> dict[str, Any]:
        """JSON-ready camelCase dict (the shape returned over HTTP)."""
        return self.model_dump(mode="json", by_alias=True)


__all__ = [
    "PersonalInfo",
    "ExperienceEntry",
    "Skills",
    "EducationEntry",
    "Project",
    "Certification",
    "Award",
    "Publication",
    "VolunteerEntry",
    "ProcessingInfo",
    "CVRecord",
    "flatten_text",
]
