"""Schemas for untrusted model output.

Everything a model returns is parsed through these models before the
pipeline acts on it. Lenient coercions (missing scope, string booleans) are
applied here; anything that cannot be coerced raises `ValidationError`.
"""
from __future__ import annotations

import enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class Scope(str, enum.Enum):
    ELEMENT = "element"
    SECTION = "section"
    PAGE = "page"


def _coerce_scope(v: Any) -> str:
    text = str(v or "").strip().lower()
    return text if text in {s.value for s in Scope} else Scope.ELEMENT.value


def _text(v: Any) -> str:
    if v is None:
        return ""
    return str(v).strip()


class DetectedChangeIn(BaseModel):
    """One change as reported by the vision model."""

    element: str = Field(min_length=1, max_length=512)
    scope: Scope = Scope.ELEMENT
    before: str = ""
    after: str = ""
    description: str = ""
    matched_change_id: Optional[str] = None
    match_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    match_rationale: str = ""

    @field_validator("scope", mode="before")
    @classmethod
    def default_scope(cls, v: Any) -> str:
        return _coerce_scope(v)

    @field_validator("before", "after", "description", "match_rationale", mode="before")
    @classmethod
    def stringify(cls, v: Any) -> str:
        return _text(v)

    @field_validator("element", mode="before")
    @classmethod
    def strip_element(cls, v: Any) -> str:
        return _text(v)[:512]

    @field_validator("matched_change_id", mode="before")
    @classmethod
    def stringify_id(cls, v: Any) -> Optional[str]:
        if v is None or isinstance(v, bool):
            return None
        text = str(v).strip()
        return text or None

    @field_validator("match_confidence", mode="before")
    @classmethod
    def clamp_confidence(cls, v: Any) -> float:
        try:
            return min(1.0, max(0.0, float(v)))
        except (TypeError, ValueError):
            return 0.0

    def as_proposal(self) -> dict[str, Any]:
        return {
            "matched_change_id": self.matched_change_id,
            "match_confidence": self.match_confidence,
            "match_rationale": self.match_rationale,
            "scope": self.scope.value,
        }


class VisualDiffResult(BaseModel):
    has_changes: bool = False
    changes: list[DetectedChangeIn] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def accept_camel_case(cls, data: Any) -> Any:
        if isinstance(data, dict) and "hasChanges" in data and "has_changes" not in data:
            data = dict(data)
            data["has_changes"] = data.pop("hasChanges")
        return data

    @field_validator("has_changes", mode="before")
    @classmethod
    def coerce_bool(cls, v: Any) -> bool:
        if isinstance(v, str):
            return v.strip().lower() in {"true", "yes", "1"}
        return bool(v)

    @model_validator(mode="after")
    def consistent_flag(self) -> "VisualDiffResult":
        # The change list is authoritative; the flag is derived from it.
        self.has_changes = bool(self.changes)
        return self


class Magnitude(str, enum.Enum):
    INCREMENTAL = "incremental"
    OVERHAUL = "overhaul"


class FinalAction(str, enum.Enum):
    MATCH = "match"
    INSERT = "insert"


class ReconciledChange(BaseModel):
    element: str = Field(min_length=1, max_length=512)
    description: str = ""
    before: str = ""
    after: str = ""
    scope: Scope = Scope.ELEMENT
    final_ref: str = Field(min_length=1, max_length=64)
    action: FinalAction = FinalAction.INSERT
    matched_change_id: Optional[str] = None

    @field_validator("scope", mode="before")
    @classmethod
    def default_scope(cls, v: Any) -> str:
        return _coerce_scope(v)

    @field_validator("description", "before", "after", mode="before")
    @classmethod
    def stringify(cls, v: Any) -> str:
        return _text(v)

    @field_validator("action", mode="before")
    @classmethod
    def default_action(cls, v: Any) -> str:
        text = str(v or "").strip().lower()
        return text if text in {"match", "insert"} else "insert"

    @field_validator("matched_change_id", mode="before")
    @classmethod
    def stringify_id(cls, v: Any) -> Optional[str]:
        if v is None or isinstance(v, bool):
            return None
        text = str(v).strip()
        return text or None


class Supersession(BaseModel):
    old_id: str
    final_ref: str

    @field_validator("old_id", "final_ref", mode="before")
    @classmethod
    def stringify(cls, v: Any) -> str:
        return _text(v)


class ReconciliationResult(BaseModel):
    magnitude: Magnitude
    final_changes: list[ReconciledChange] = Field(min_length=1)
    supersessions: list[Supersession] = Field(default_factory=list)

    @field_validator("magnitude", mode="before")
    @classmethod
    def lower_magnitude(cls, v: Any) -> str:
        return str(v or "").strip().lower()


class Verdict(str, enum.Enum):
    IMPROVED = "improved"
    REGRESSED = "regressed"
    NEUTRAL = "neutral"
    INCONCLUSIVE = "inconclusive"


class CheckpointVerdict(BaseModel):
    assessment: Verdict
    confidence: float
    reasoning: str = Field(min_length=1)

    @field_validator("assessment", mode="before")
    @classmethod
    def lower_assessment(cls, v: Any) -> str:
        return str(v or "").strip().lower()

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp_confidence(cls, v: Any) -> float:
        try:
            value = float(v)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"confidence must be a number, got {v!r}") from exc
        return round(min(1.0, max(0.0, value)), 2)

    @field_validator("reasoning", mode="before")
    @classmethod
    def trim_reasoning(cls, v: Any) -> str:
        return _text(v)[:1000]
