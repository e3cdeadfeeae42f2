"""Baseline freshness policy and stable-baseline resolution.

A baseline older than the freshness threshold is never diffed against: the
scan re-establishes it instead, so cosmetic drift accumulated over weeks is
not reported as a burst of new changes.
"""
from __future__ import annotations

import enum
import logging
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from loupe.clock import as_utc, utcnow
from loupe.config import settings
from loupe.models.page import Baseline, Page, Scan, ScanStatus, TriggerType

logger = logging.getLogger(__name__)


class BaselineVerdict(str, enum.Enum):
    USABLE = "usable"
    STALE = "stale"


def evaluate_baseline(
    captured_at: datetime | None,
    now: datetime | None = None,
    max_age_days: int | None = None,
) -> BaselineVerdict:
    """`stale` when there is no baseline or it is strictly older than the threshold."""
    if captured_at is None:
        return BaselineVerdict.STALE
    threshold = max_age_days if max_age_days is not None else settings.BASELINE_MAX_AGE_DAYS
    age = as_utc(now or utcnow()) - as_utc(captured_at)
    if age > timedelta(days=threshold):
        return BaselineVerdict.STALE
    return BaselineVerdict.USABLE


def is_baseline_stale(baseline: Baseline | None, now: datetime | None = None) -> bool:
    if baseline is None:
        return True
    return evaluate_baseline(baseline.captured_at, now) is BaselineVerdict.STALE


async def get_stable_baseline(
    session: AsyncSession,
    page: Page,
    *,
    now: datetime | None = None,
) -> Baseline | None:
    """Resolve the baseline a scan should diff against.

    Priority: the page's current baseline, then the newest baseline produced by
    a completed scheduled scan, then any baseline captured at least 24h ago.
    """
    if page.current_baseline_id:
        baseline = await session.get(Baseline, page.current_baseline_id)
        if baseline is not None:
            return baseline

    scheduled = (
        await session.execute(
            select(Baseline)
            .join(Scan, Scan.id == Baseline.source_scan_id)
            .where(
                Baseline.page_id == page.id,
                Scan.status == ScanStatus.COMPLETE.value,
                Scan.trigger_type.in_([TriggerType.DAILY.value, TriggerType.WEEKLY.value]),
            )
            .order_by(Baseline.captured_at.desc())
            .limit(1)
        )
    ).scalar()
    if scheduled is not None:
        return scheduled

    cutoff = as_utc(now or utcnow()) - timedelta(hours=24)
    settled = (
        await session.execute(
            select(Baseline)
            .where(Baseline.page_id == page.id, Baseline.captured_at <= cutoff)
            .order_by(Baseline.captured_at.desc())
            .limit(1)
        )
    ).scalar()
    if settled is None:
        logger.info("No stable baseline for page %s", page.id)
    return settled
