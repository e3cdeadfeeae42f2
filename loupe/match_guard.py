"""Candidate matcher / hallucination guard.

The vision model may claim that a newly detected change is a continuation of
an existing `watching` record. Such a claim is only honoured when the claimed
ID is one of the candidates that were actually sent to the model; any other
ID is treated as a hallucination and the change is recorded as new.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from loupe.config import settings
from loupe.metrics import MATCH_REJECTIONS_TOTAL

logger = logging.getLogger(__name__)

_COMPATIBLE_SCOPES = {
    ("element", "section"),
    ("section", "element"),
}


@dataclass(slots=True)
class Candidate:
    """Watching record as presented to the model."""

    id: int
    element: str
    scope: str
    before: str | None
    after: str | None

    @classmethod
    def from_change(cls, change) -> "Candidate":
        return cls(
            id=int(change.id),
            element=change.element,
            scope=change.scope or "element",
            before=change.before_value,
            after=change.after_value,
        )


@dataclass(slots=True)
class MatchProposal:
    accepted: bool
    matched_change_id: int | None
    match_confidence: float
    match_rationale: str
    rejection_reason: str | None = None


def normalize_id(value: Any) -> int | None:
    """Model output IDs arrive as ints, numeric strings or garbage."""
    if value is None or isinstance(value, bool):
        return None
    try:
        text = str(value).strip()
        return int(text) if text else None
    except (TypeError, ValueError):
        return None


def scopes_compatible(change_scope: str | None, candidate_scope: str | None) -> bool:
    a = change_scope or "element"
    b = candidate_scope or "element"
    if a == "page" or b == "page" or a == b:
        return True
    return (a, b) in _COMPATIBLE_SCOPES


def _reject(proposed: Any, confidence: float, rationale: str, reason: str) -> MatchProposal:
    MATCH_REJECTIONS_TOTAL.labels(reason=reason).inc()
    logger.info("Rejected match proposal %r: %s", proposed, reason)
    return MatchProposal(
        accepted=False,
        matched_change_id=None,
        match_confidence=confidence,
        match_rationale=rationale,
        rejection_reason=reason,
    )


def validate_match_proposal(
    change: Mapping[str, Any],
    candidate_ids: Iterable[int],
    candidate_scopes: Mapping[int, str] | None = None,
    *,
    min_confidence: float | None = None,
) -> MatchProposal:
    """Accept or reject the model's `matched_change_id` for one detected change.

    Candidate membership is decisive; confidence and scope compatibility are
    additional gates.
    """
    proposed = change.get("matched_change_id")
    try:
        confidence = float(change.get("match_confidence") or 0.0)
    except (TypeError, ValueError):
        confidence = 0.0
    rationale = str(change.get("match_rationale") or "")

    if proposed in (None, ""):
        return MatchProposal(False, None, confidence, rationale)

    proposed_id = normalize_id(proposed)
    known = {int(i) for i in candidate_ids}
    if proposed_id is None or proposed_id not in known:
        return _reject(proposed, confidence, rationale, "not_in_candidate_set")

    threshold = settings.MATCH_CONFIDENCE_MIN if min_confidence is None else min_confidence
    if confidence < threshold:
        return _reject(proposed, confidence, rationale, "low_confidence")

    candidate_scope = (candidate_scopes or {}).get(proposed_id)
    if not scopes_compatible(change.get("scope"), candidate_scope):
        return _reject(proposed, confidence, rationale, "scope_mismatch")

    return MatchProposal(True, proposed_id, confidence, rationale)


def filter_known_ids(ids: Iterable[Any], candidate_ids: Iterable[int]) -> list[int]:
    """Drop any ID the model invented; keeps order, removes duplicates."""
    known = {int(i) for i in candidate_ids}
    out: list[int] = []
    for raw in ids:
        value = normalize_id(raw)
        if value is not None and value in known and value not in out:
            out.append(value)
    return out
