"""Daily checkpoint sweep (D+7, D+14, D+30, D+60, D+90).

Each due horizon produces one write-once `change_checkpoints` row. Status
transitions follow the decision-horizon rules in `loupe.checkpoints`.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from loupe import assessment
from loupe.celery_app import celery
from loupe.change_store import transition_change_status
from loupe.checkpoints import (
    compute_windows,
    fallback_assessment,
    format_checkpoint_observation,
    get_eligible_horizons,
    resolve_status_transition,
)
from loupe.clock import utcnow
from loupe.db import async_session_factory
from loupe.metrics import CHECKPOINTS_WRITTEN_TOTAL
from loupe.metrics_providers.registry import build_providers, gather_metrics
from loupe.models.account import Account, Integration
from loupe.models.change import ChangeCheckpoint, ChangeStatus, DetectedChange, OutcomeFeedback
from loupe.models.page import Page
from loupe.notifications import change_validated_message, dispatch
from loupe.state_engine import ACTIVE_STATUSES, is_terminal

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ChangeCheckpointRun:
    change_id: int
    written: list[int] = field(default_factory=list)
    transitions: int = 0
    validated: bool = False


@celery.task(name="loupe.workers.checkpoints.run_checkpoints")
def run_checkpoints() -> dict[str, Any]:
    return asyncio.run(_run_checkpoints())


async def _run_checkpoints(now: datetime | None = None) -> dict[str, Any]:
    now = now or utcnow()
    async with async_session_factory() as session:
        change_ids = (
            await session.execute(
                select(DetectedChange.id)
                .where(DetectedChange.status.in_(sorted(ACTIVE_STATUSES)))
                .order_by(DetectedChange.first_detected_at.asc(), DetectedChange.id.asc())
            )
        ).scalars().all()

    stats = {"changes": len(change_ids), "checkpoints": 0, "transitions": 0, "validated": 0, "errors": 0}
    for change_id in change_ids:
        try:
            run = await process_change(change_id, now=now)
        except Exception:
            logger.exception(
                "Checkpoint processing failed for change %s", change_id, extra={"change_id": change_id}
            )
            stats["errors"] += 1
            continue
        stats["checkpoints"] += len(run.written)
        stats["transitions"] += run.transitions
        stats["validated"] += int(run.validated)

    logger.info("Checkpoint sweep finished: %s", stats)
    return stats


async def _prior_context(
    session: AsyncSession, change: DetectedChange, account_id: int
) -> tuple[list[assessment.PriorCheckpoint], list[assessment.PriorFeedback]]:
    """Trend for this change, calibration feedback from every change on its page."""
    checkpoints = (
        await session.execute(
            select(ChangeCheckpoint)
            .where(ChangeCheckpoint.change_id == change.id)
            .order_by(ChangeCheckpoint.horizon_days.asc())
        )
    ).scalars().all()
    feedback_rows = (
        await session.execute(
            select(OutcomeFeedback, ChangeCheckpoint, DetectedChange.element)
            .join(ChangeCheckpoint, ChangeCheckpoint.id == OutcomeFeedback.checkpoint_id)
            .join(DetectedChange, DetectedChange.id == OutcomeFeedback.change_id)
            .where(
                DetectedChange.page_id == change.page_id,
                OutcomeFeedback.account_id == account_id,
            )
            .order_by(OutcomeFeedback.created_at.asc(), OutcomeFeedback.id.asc())
        )
    ).all()

    priors = [assessment.PriorCheckpoint(cp.horizon_days, cp.assessment, cp.reasoning) for cp in checkpoints]
    feedback = [
        assessment.PriorFeedback(
            cp.horizon_days,
            cp.assessment,
            f.feedback_type,
            f.feedback_text,
            element=None if f.change_id == change.id else element,
        )
        for f, cp, element in feedback_rows
    ]
    return priors, feedback


async def _insert_checkpoint(session: AsyncSession, checkpoint: ChangeCheckpoint) -> bool:
    try:
        async with session.begin_nested():
            session.add(checkpoint)
            await session.flush()
    except IntegrityError:
        return False
    return True


async def process_change(change_id: int, *, now: datetime | None = None) -> ChangeCheckpointRun:
    """Write every due checkpoint for one change and apply resulting transitions."""
    now = now or utcnow()
    run = ChangeCheckpointRun(change_id)
    notify: tuple[str, str, str, str | None] | None = None

    async with async_session_factory() as session:
        change = await session.get(DetectedChange, change_id)
        if change is None or is_terminal(change.status):
            return run
        existing = (
            await session.execute(
                select(ChangeCheckpoint.horizon_days).where(ChangeCheckpoint.change_id == change.id)
            )
        ).scalars().all()
        horizons = get_eligible_horizons(change.first_detected_at, now, existing)
        if not horizons:
            return run

        page = await session.get(Page, change.page_id)
        account = await session.get(Account, page.account_id)
        integrations = (
            await session.execute(
                select(Integration).where(
                    Integration.account_id == account.id, Integration.enabled.is_(True)
                )
            )
        ).scalars().all()
        providers = build_providers(integrations)

        try:
            for horizon in horizons:
                if is_terminal(change.status):
                    break
                windows = compute_windows(change.first_detected_at, horizon)
                gathered = await gather_metrics(providers, page.url, windows)
                priors, feedback = await _prior_context(session, change, account.id)

                ctx = assessment.AssessmentContext(
                    page_url=page.url,
                    horizon_days=horizon,
                    element=change.element,
                    before=change.before_value,
                    after=change.after_value,
                    description=change.description,
                    metrics=gathered.metrics,
                    prior_checkpoints=priors,
                    hypothesis=change.hypothesis,
                    page_focus=page.metric_focus,
                    prior_feedback=feedback,
                )
                fallback = fallback_assessment(gathered.metrics, horizon_days=horizon, metric_focus=page.metric_focus)
                verdict = await assessment.run_checkpoint_assessment(ctx)
                if verdict is not None:
                    outcome, confidence, reasoning, assessed_by = (
                        verdict.assessment.value,
                        verdict.confidence,
                        verdict.reasoning,
                        "llm",
                    )
                else:
                    outcome, confidence, reasoning, assessed_by = (
                        fallback.assessment.value,
                        fallback.confidence,
                        fallback.reasoning,
                        "fallback",
                    )

                metrics_json = [m.as_dict() for m in gathered.metrics]
                checkpoint = ChangeCheckpoint(
                    change_id=change.id,
                    horizon_days=horizon,
                    before_window_start=windows.before_start,
                    before_window_end=windows.before_end,
                    after_window_start=windows.after_start,
                    after_window_end=windows.after_end,
                    metrics_json=metrics_json,
                    assessment=outcome,
                    confidence=confidence,
                    reasoning=reasoning,
                    data_sources=list(gathered.sources),
                    provider=gathered.provider_label,
                    assessed_by=assessed_by,
                    computed_at=now,
                )
                if not await _insert_checkpoint(session, checkpoint):
                    logger.info("Checkpoint D+%s for change %s already exists", horizon, change.id)
                    continue
                run.written.append(checkpoint.id)
                CHECKPOINTS_WRITTEN_TOTAL.labels(
                    horizon=str(horizon), assessment=outcome, assessed_by=assessed_by
                ).inc()

                transition = resolve_status_transition(change.status, horizon, outcome)
                if transition is not None:
                    correlation = {
                        "horizon_days": horizon,
                        "metrics": metrics_json,
                        "overall_assessment": outcome,
                        "sources": list(gathered.sources),
                    }
                    if not providers:
                        correlation["reason"] = "analytics_disconnected"
                    moved = await transition_change_status(
                        session,
                        change=change,
                        new_status=transition.new_status,
                        reason=transition.reason,
                        checkpoint_id=checkpoint.id,
                        expected_status=change.status,
                        extra_values={"correlation_json": correlation},
                    )
                    if moved:
                        run.transitions += 1
                        logger.info(
                            "Change %s moved to %s at D+%s",
                            change.id,
                            transition.new_status.value,
                            horizon,
                            extra={"change_id": change.id, "page_id": page.id, "checkpoint_id": checkpoint.id},
                        )
                        if not change.observation_text:
                            change.observation_text = format_checkpoint_observation(
                                change.element, change.first_detected_at, horizon, fallback.top_metric, outcome
                            )
                await session.commit()
        finally:
            for provider in providers:
                await provider.aclose()

        run.validated = run.transitions > 0 and change.status == ChangeStatus.VALIDATED.value
        if run.validated and account.email_notifications:
            notify = (account.email, page.url, change.element, change.observation_text)

    if notify:
        email, url, element, observation = notify
        subject, body = change_validated_message(url, element, observation)
        dispatch(email, subject, body)
    return run
