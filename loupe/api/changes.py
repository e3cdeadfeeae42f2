"""Changes API: detected changes, their checkpoints and user inputs.

Status and verdicts are written by the pipeline only; the user-facing
writes here are the hypothesis, checkpoint feedback and manual revert.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from loupe.change_store import revert_change
from loupe.db import get_session
from loupe.models.change import ChangeCheckpoint, ChangeStatus, DetectedChange, OutcomeFeedback
from loupe.models.page import Page
from loupe.state_engine import action_gating_decision

router = APIRouter(tags=["changes"])
logger = logging.getLogger(__name__)

FEEDBACK_STATUSES = frozenset({ChangeStatus.VALIDATED.value, ChangeStatus.REGRESSED.value})


class CheckpointOut(BaseModel):
    id: int
    horizon_days: int
    assessment: str
    confidence: float | None = None
    reasoning: str | None = None
    metrics: list[dict[str, Any]] = Field(default_factory=list)
    data_sources: list[str] = Field(default_factory=list)
    provider: str
    assessed_by: str
    before_window_start: datetime
    before_window_end: datetime
    after_window_start: datetime
    after_window_end: datetime
    computed_at: datetime

    @classmethod
    def from_row(cls, cp: ChangeCheckpoint) -> "CheckpointOut":
        return cls(
            id=cp.id,
            horizon_days=cp.horizon_days,
            assessment=cp.assessment,
            confidence=cp.confidence,
            reasoning=cp.reasoning,
            metrics=cp.metrics_json or [],
            data_sources=cp.data_sources or [],
            provider=cp.provider,
            assessed_by=cp.assessed_by,
            before_window_start=cp.before_window_start,
            before_window_end=cp.before_window_end,
            after_window_start=cp.after_window_start,
            after_window_end=cp.after_window_end,
            computed_at=cp.computed_at,
        )


class ChangeOut(BaseModel):
    id: int
    page_id: int
    element: str
    scope: str
    before_value: str | None = None
    after_value: str | None = None
    description: str | None = None
    status: str
    magnitude: str | None = None
    superseded_by: int | None = None
    first_detected_at: datetime
    match_confidence: float | None = None
    hypothesis: str | None = None
    observation_text: str | None = None
    checkpoints: list[CheckpointOut] | None = None

    @classmethod
    def from_row(cls, change: DetectedChange, checkpoints: list[ChangeCheckpoint] | None = None) -> "ChangeOut":
        return cls(
            id=change.id,
            page_id=change.page_id,
            element=change.element,
            scope=change.scope,
            before_value=change.before_value,
            after_value=change.after_value,
            description=change.description,
            status=change.status,
            magnitude=change.magnitude,
            superseded_by=change.superseded_by,
            first_detected_at=change.first_detected_at,
            match_confidence=change.match_confidence,
            hypothesis=change.hypothesis,
            observation_text=change.observation_text,
            checkpoints=[CheckpointOut.from_row(cp) for cp in checkpoints] if checkpoints is not None else None,
        )


class HypothesisPayload(BaseModel):
    hypothesis: str | None = Field(default=None, max_length=500)


class FeedbackPayload(BaseModel):
    feedback_type: Literal["accurate", "inaccurate"]
    feedback_text: str | None = Field(default=None, max_length=500)


class RevertPayload(BaseModel):
    user_id: str | None = None
    reason: str | None = Field(default=None, max_length=200)


async def _get_change(db: AsyncSession, change_id: int) -> DetectedChange:
    change = await db.get(DetectedChange, change_id)
    if change is None:
        raise HTTPException(status_code=404, detail="Change not found")
    return change


async def _checkpoints(db: AsyncSession, change_id: int) -> list[ChangeCheckpoint]:
    return list(
        (
            await db.execute(
                select(ChangeCheckpoint)
                .where(ChangeCheckpoint.change_id == change_id)
                .order_by(ChangeCheckpoint.horizon_days.asc())
            )
        ).scalars().all()
    )


@router.get("/pages/{page_id}/changes")
async def list_page_changes(
    page_id: int,
    status: str | None = None,
    limit: int = 100,
    db: AsyncSession = Depends(get_session),
) -> list[ChangeOut]:
    if await db.get(Page, page_id) is None:
        raise HTTPException(status_code=404, detail="Page not found")
    stmt = (
        select(DetectedChange)
        .where(DetectedChange.page_id == page_id)
        .order_by(DetectedChange.first_detected_at.desc(), DetectedChange.id.desc())
        .limit(max(1, min(limit, 500)))
    )
    if status:
        try:
            stmt = stmt.where(DetectedChange.status == ChangeStatus(status).value)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown status {status!r}")
    rows = (await db.execute(stmt)).scalars().all()
    return [ChangeOut.from_row(c) for c in rows]


@router.get("/changes/{change_id}")
async def get_change(change_id: int, db: AsyncSession = Depends(get_session)) -> ChangeOut:
    change = await _get_change(db, change_id)
    return ChangeOut.from_row(change, await _checkpoints(db, change_id))


@router.get("/changes/{change_id}/checkpoints")
async def list_checkpoints(change_id: int, db: AsyncSession = Depends(get_session)) -> list[CheckpointOut]:
    await _get_change(db, change_id)
    return [CheckpointOut.from_row(cp) for cp in await _checkpoints(db, change_id)]


@router.put("/changes/{change_id}/hypothesis")
async def set_hypothesis(
    change_id: int,
    payload: HypothesisPayload,
    db: AsyncSession = Depends(get_session),
) -> ChangeOut:
    change = await _get_change(db, change_id)
    allowed, blocked_reason = action_gating_decision(change, action="HYPOTHESIS")
    if not allowed:
        raise HTTPException(status_code=409, detail=blocked_reason)
    text = (payload.hypothesis or "").strip()
    change.hypothesis = text or None
    await db.commit()
    logger.info("Hypothesis updated for change %s", change_id)
    return ChangeOut.from_row(change)


@router.post("/changes/{change_id}/checkpoints/{checkpoint_id}/feedback", status_code=201)
async def record_outcome_feedback(
    change_id: int,
    checkpoint_id: int,
    payload: FeedbackPayload,
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    change = await _get_change(db, change_id)
    checkpoint = await db.get(ChangeCheckpoint, checkpoint_id)
    if checkpoint is None or checkpoint.change_id != change.id:
        raise HTTPException(status_code=404, detail="Checkpoint not found")
    if change.status not in FEEDBACK_STATUSES:
        raise HTTPException(status_code=400, detail="Feedback is only accepted on resolved changes")

    page = await db.get(Page, change.page_id)
    text = (payload.feedback_text or "").strip()
    db.add(
        OutcomeFeedback(
            checkpoint_id=checkpoint.id,
            change_id=change.id,
            account_id=page.account_id,
            feedback_type=payload.feedback_type,
            feedback_text=text or None,
        )
    )
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise HTTPException(status_code=409, detail="Feedback already submitted for this checkpoint")
    logger.info("Outcome feedback %s recorded for checkpoint %s", payload.feedback_type, checkpoint_id)
    return {"status": "recorded", "checkpoint_id": checkpoint_id}


@router.post("/changes/{change_id}/revert")
async def revert(
    change_id: int,
    payload: RevertPayload,
    db: AsyncSession = Depends(get_session),
) -> ChangeOut:
    change = await _get_change(db, change_id)
    allowed, blocked_reason = action_gating_decision(change, action="REVERT")
    if not allowed:
        raise HTTPException(status_code=409, detail=blocked_reason)
    reverted = await revert_change(
        db,
        change=change,
        actor_id=payload.user_id,
        reason=payload.reason or "MANUAL_REVERT",
    )
    if not reverted:
        await db.rollback()
        raise HTTPException(status_code=409, detail="Change status changed concurrently")
    await db.commit()
    logger.info("Change %s reverted by %s", change_id, payload.user_id or "anonymous")
    return ChangeOut.from_row(change)
