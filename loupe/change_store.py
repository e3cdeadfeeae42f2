"""Detected change persistence.

Centralizes writes to `detected_changes` and `change_lifecycle_events`.
Every status write is a conditional UPDATE on the expected current status,
and every insert is protected by the (page, scan, dedup_key) uniqueness
constraint, so a replayed workflow step can neither resurrect a terminal
record nor double-apply a write.
"""
from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from loupe.clock import as_utc, utcnow
from loupe.config import settings
from loupe.match_guard import Candidate, validate_match_proposal
from loupe.metrics import CHANGE_STATE_TRANSITIONS_TOTAL, CHANGES_RECORDED_TOTAL, SUPERSESSIONS_TOTAL
from loupe.models.change import ActorType, ChangeLifecycleEvent, ChangeStatus, DetectedChange
from loupe.models.page import Page, Scan
from loupe.schemas.model_output import DetectedChangeIn
from loupe.state_engine import can_transition, status_name

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RecordSummary:
    inserted: list[int] = field(default_factory=list)
    matched: list[int] = field(default_factory=list)
    duplicates: int = 0

    @property
    def total(self) -> int:
        return len(self.inserted) + len(self.matched)

    def as_dict(self) -> dict[str, Any]:
        return {
            "inserted": list(self.inserted),
            "matched": list(self.matched),
            "duplicates": self.duplicates,
        }


def _normalize(text: str | None) -> str:
    return " ".join(str(text or "").lower().split())


def change_dedup_key(element: str, before: str | None, after: str | None) -> str:
    raw = "\x1f".join((_normalize(element), _normalize(before), _normalize(after)))
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


async def append_lifecycle_event(
    session: AsyncSession,
    *,
    change_id: int,
    from_status: ChangeStatus | str,
    to_status: ChangeStatus | str,
    reason: str | None,
    actor_type: ActorType | str,
    actor_id: str | None = None,
    checkpoint_id: int | None = None,
) -> ChangeLifecycleEvent:
    row = ChangeLifecycleEvent(
        change_id=change_id,
        from_status=status_name(from_status),
        to_status=status_name(to_status),
        reason=(reason or "")[:256] or None,
        actor_type=ActorType(actor_type).value,
        actor_id=actor_id,
        checkpoint_id=checkpoint_id,
        created_at=utcnow(),
    )
    session.add(row)
    return row


async def transition_change_status(
    session: AsyncSession,
    *,
    change: DetectedChange,
    new_status: ChangeStatus,
    reason: str | None,
    actor_type: ActorType | str = ActorType.SYSTEM,
    actor_id: str | None = None,
    checkpoint_id: int | None = None,
    expected_status: ChangeStatus | str | None = None,
    extra_values: dict[str, Any] | None = None,
) -> bool:
    """Move `change` to `new_status` only if it is still in `expected_status`.

    Returns `True` when a row was updated; a lifecycle event is appended only
    in that case.
    """
    expected = status_name(expected_status or change.status)
    if not can_transition(expected, new_status):
        logger.warning(
            "Refusing transition %s -> %s for change %s", expected, status_name(new_status), change.id
        )
        return False

    values = {"status": status_name(new_status), "updated_at": utcnow()}
    values.update(extra_values or {})
    result = await session.execute(
        update(DetectedChange)
        .where(DetectedChange.id == change.id, DetectedChange.status == expected)
        .values(**values)
    )
    if not result.rowcount:
        logger.info(
            "Change %s no longer %s; transition to %s skipped",
            change.id,
            expected,
            status_name(new_status),
        )
        return False

    for key, value in values.items():
        setattr(change, key, value)
    await append_lifecycle_event(
        session,
        change_id=change.id,
        from_status=expected,
        to_status=new_status,
        reason=reason,
        actor_type=actor_type,
        actor_id=actor_id,
        checkpoint_id=checkpoint_id,
    )
    CHANGE_STATE_TRANSITIONS_TOTAL.labels(
        from_status=expected,
        to_status=status_name(new_status),
        reason=(reason or "UNKNOWN")[:64],
    ).inc()
    return True


async def insert_change(
    session: AsyncSession,
    *,
    page_id: int,
    scan_id: int | None,
    element: str,
    scope: str,
    before: str | None,
    after: str | None,
    description: str | None,
    magnitude: str | None = None,
    first_detected_at=None,
) -> DetectedChange | None:
    """Insert a `watching` record; `None` when the same change already exists for this scan."""
    row = DetectedChange(
        page_id=page_id,
        source_scan_id=scan_id,
        element=element[:512],
        scope=scope,
        before_value=before,
        after_value=after,
        description=description,
        status=ChangeStatus.WATCHING.value,
        magnitude=magnitude,
        first_detected_at=first_detected_at or utcnow(),
        dedup_key=change_dedup_key(element, before, after),
    )
    try:
        async with session.begin_nested():
            session.add(row)
    except IntegrityError:
        logger.info("Duplicate change %r for page %s scan %s ignored", element, page_id, scan_id)
        return None
    return row


async def find_change_by_dedup(
    session: AsyncSession, *, page_id: int, scan_id: int | None, element: str, before: str | None, after: str | None
) -> DetectedChange | None:
    return (
        await session.execute(
            select(DetectedChange).where(
                DetectedChange.page_id == page_id,
                DetectedChange.source_scan_id == scan_id,
                DetectedChange.dedup_key == change_dedup_key(element, before, after),
            )
        )
    ).scalar()


async def update_matched_change(
    session: AsyncSession,
    *,
    change_id: int,
    after: str | None,
    description: str | None,
    match_confidence: float | None,
    match_rationale: str | None,
    scope: str | None = None,
    magnitude: str | None = None,
) -> bool:
    """Refresh an existing record in place, guarded on it still being `watching`.

    `scope` and `magnitude` are only overwritten when given.
    """
    values: dict[str, Any] = {
        "after_value": after,
        "description": description,
        "match_confidence": match_confidence,
        "match_rationale": match_rationale,
        "updated_at": utcnow(),
    }
    if scope is not None:
        values["scope"] = scope
    if magnitude is not None:
        values["magnitude"] = magnitude
    result = await session.execute(
        update(DetectedChange)
        .where(
            DetectedChange.id == change_id,
            DetectedChange.status == ChangeStatus.WATCHING.value,
        )
        .values(**values)
    )
    return bool(result.rowcount)


async def load_watching_candidates(
    session: AsyncSession, page_id: int, *, limit: int | None = None
) -> list[DetectedChange]:
    limit = limit or settings.MAX_WATCHING_CANDIDATES
    rows = (
        await session.execute(
            select(DetectedChange)
            .where(
                DetectedChange.page_id == page_id,
                DetectedChange.status == ChangeStatus.WATCHING.value,
            )
            .order_by(DetectedChange.first_detected_at.desc(), DetectedChange.id.desc())
            .limit(limit)
        )
    ).scalars().all()
    return list(rows)


async def record_detected_changes(
    session: AsyncSession,
    *,
    page: Page,
    scan: Scan,
    changes: Sequence[DetectedChangeIn],
    candidates: Iterable[Candidate],
    magnitude: str | None = None,
    path: str = "legacy",
) -> RecordSummary:
    """Per-change upsert: guarded match-update or new `watching` insert."""
    candidates = list(candidates)
    candidate_ids = [c.id for c in candidates]
    candidate_scopes = {c.id: c.scope for c in candidates}
    summary = RecordSummary()

    for change in changes:
        proposal = validate_match_proposal(change.as_proposal(), candidate_ids, candidate_scopes)
        if proposal.accepted and proposal.matched_change_id is not None:
            updated = await update_matched_change(
                session,
                change_id=proposal.matched_change_id,
                after=change.after,
                description=change.description,
                match_confidence=proposal.match_confidence,
                match_rationale=proposal.match_rationale,
            )
            if updated:
                summary.matched.append(proposal.matched_change_id)
                CHANGES_RECORDED_TOTAL.labels(path=path, action="match").inc()
                continue
            logger.info(
                "Matched change %s left watching; recording %r as new",
                proposal.matched_change_id,
                change.element,
            )

        row = await insert_change(
            session,
            page_id=page.id,
            scan_id=scan.id,
            element=change.element,
            scope=change.scope.value,
            before=change.before,
            after=change.after,
            description=change.description,
            magnitude=magnitude,
        )
        if row is None:
            summary.duplicates += 1
            continue
        summary.inserted.append(row.id)
        CHANGES_RECORDED_TOTAL.labels(path=path, action="insert").inc()

    return summary


async def supersede_change(
    session: AsyncSession,
    *,
    old_id: int,
    aggregate: DetectedChange,
    reason: str = "RECONCILED_OVERHAUL",
) -> bool:
    """Fold a `watching` record into `aggregate`, carrying its age backward."""
    if old_id == aggregate.id:
        return False
    old = await session.get(DetectedChange, old_id)
    if old is None or old.page_id != aggregate.page_id:
        return False

    changed = await transition_change_status(
        session,
        change=old,
        new_status=ChangeStatus.SUPERSEDED,
        reason=reason,
        actor_type=ActorType.LLM,
        expected_status=ChangeStatus.WATCHING,
        extra_values={"superseded_by": aggregate.id},
    )
    if not changed:
        return False

    aggregate.first_detected_at = min(
        as_utc(aggregate.first_detected_at), as_utc(old.first_detected_at)
    )
    SUPERSESSIONS_TOTAL.labels(magnitude=aggregate.magnitude or "unknown").inc()
    return True


async def revert_change(
    session: AsyncSession,
    *,
    change: DetectedChange,
    actor_id: str | None,
    reason: str = "MANUAL_REVERT",
) -> bool:
    return await transition_change_status(
        session,
        change=change,
        new_status=ChangeStatus.REVERTED,
        reason=reason,
        actor_type=ActorType.USER,
        actor_id=actor_id,
    )
