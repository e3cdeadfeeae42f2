"""Per-page detection core shared by deploy and scheduled scans.

baseline policy -> establish (stale) or capture + visual diff (usable)
-> reconciliation or per-change upsert -> baseline promotion.

The caller owns the transaction: it commits on success and records the
exception against the scan on failure.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from loupe import reconciliation, visual_diff
from loupe.baseline_policy import get_stable_baseline, is_baseline_stale
from loupe.change_store import load_watching_candidates, record_detected_changes
from loupe.clock import utcnow
from loupe.config import settings
from loupe.match_guard import Candidate
from loupe.metrics import SCAN_LATENCY_SECONDS, SCANS_TOTAL
from loupe.models.page import Baseline, Page, Scan, ScanMode, ScanStatus, TriggerType
from loupe.schemas.model_output import Magnitude
from loupe.screenshots import ScreenshotClient, ScreenshotStore
from loupe.tiers import Tier, can_access_mobile

logger = logging.getLogger(__name__)

PROMOTING_TRIGGERS = frozenset({TriggerType.DAILY.value, TriggerType.WEEKLY.value})


@dataclass(slots=True)
class Capture:
    desktop: bytes
    mobile: bytes | None = None


@dataclass(slots=True)
class ScanOutcome:
    page_id: int
    scan_id: int
    mode: str
    elements: list[str] = field(default_factory=list)
    summary: dict = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return bool(self.elements)

    def as_dict(self) -> dict:
        return {
            "page_id": self.page_id,
            "scan_id": self.scan_id,
            "mode": self.mode,
            "changes": len(self.elements),
            "summary": self.summary,
        }


async def capture_page(client: ScreenshotClient, url: str, *, with_mobile: bool) -> Capture:
    """Desktop and mobile captures are issued together; only desktop is required."""
    if not with_mobile:
        return Capture(desktop=await client.capture(url))

    desktop, mobile = await asyncio.gather(
        client.capture(url),
        client.capture(url, viewport_width=settings.MOBILE_VIEWPORT_WIDTH),
        return_exceptions=True,
    )
    if isinstance(desktop, BaseException):
        raise desktop
    if isinstance(mobile, BaseException):
        logger.warning("Mobile capture of %s failed, continuing desktop-only: %s", url, mobile)
        mobile = None
    return Capture(desktop=desktop, mobile=mobile)


async def _store_baseline(
    session: AsyncSession, store: ScreenshotStore, *, page: Page, scan: Scan, capture: Capture, now: datetime
) -> Baseline:
    desktop_ref = await store.save(capture.desktop)
    mobile_ref = await store.save(capture.mobile) if capture.mobile else None
    baseline = Baseline(
        page_id=page.id,
        source_scan_id=scan.id,
        desktop_ref=desktop_ref,
        mobile_ref=mobile_ref,
        captured_at=now,
    )
    session.add(baseline)
    await session.flush()
    page.current_baseline_id = baseline.id
    scan.desktop_ref = desktop_ref
    scan.mobile_ref = mobile_ref
    return baseline


def _finish(scan: Scan, page: Page, mode: ScanMode, summary: dict, now: datetime) -> None:
    scan.mode = mode.value
    scan.status = ScanStatus.COMPLETE.value
    scan.changes_json = summary
    scan.error = None
    scan.completed_at = now
    page.last_scan_id = scan.id


async def scan_page(
    session: AsyncSession,
    *,
    page: Page,
    scan: Scan,
    tier: Tier | str,
    screenshots: ScreenshotClient,
    store: ScreenshotStore,
    now: datetime | None = None,
) -> ScanOutcome:
    now = now or utcnow()
    started = time.perf_counter()
    scan.status = ScanStatus.RUNNING.value
    mobile_allowed = can_access_mobile(tier)

    baseline = await get_stable_baseline(session, page, now=now)
    if is_baseline_stale(baseline, now):
        capture = await capture_page(screenshots, page.url, with_mobile=mobile_allowed)
        fresh = await _store_baseline(session, store, page=page, scan=scan, capture=capture, now=now)
        summary = {"baseline_id": fresh.id, "reason": "stale" if baseline else "missing"}
        _finish(scan, page, ScanMode.ESTABLISH, summary, now)
        SCANS_TOTAL.labels(trigger_type=scan.trigger_type, mode="establish", outcome="complete").inc()
        SCAN_LATENCY_SECONDS.labels(trigger_type=scan.trigger_type, mode="establish").observe(
            time.perf_counter() - started
        )
        logger.info(
            "Established baseline %s for page %s",
            fresh.id,
            page.id,
            extra={"scan_id": scan.id, "page_id": page.id, "scan_mode": "establish"},
        )
        return ScanOutcome(page.id, scan.id, ScanMode.ESTABLISH.value, summary=summary)

    with_mobile = mobile_allowed and baseline.mobile_ref is not None
    capture = await capture_page(screenshots, page.url, with_mobile=with_mobile)
    baseline_desktop = await store.load(baseline.desktop_ref)
    mobile_pair = None
    if capture.mobile is not None and baseline.mobile_ref:
        mobile_pair = visual_diff.ImagePair(await store.load(baseline.mobile_ref), capture.mobile)

    watching = await load_watching_candidates(session, page.id)
    candidates = [Candidate.from_change(c) for c in watching]

    diff = await visual_diff.detect_changes(
        desktop=visual_diff.ImagePair(baseline_desktop, capture.desktop),
        mobile=mobile_pair,
        candidates=candidates,
    )

    summary: dict = {"baseline_id": baseline.id, "raw_changes": len(diff.changes)}
    elements: list[str] = []
    if diff.changes:
        result = None
        if reconciliation.should_reconcile(len(diff.changes), len(candidates)):
            result = await reconciliation.reconcile_changes(diff.changes, candidates, page.url)
        if result is not None:
            applied = await reconciliation.apply_reconciliation(
                session, page=page, scan=scan, result=result, candidates=candidates
            )
            summary["path"] = "reconcile"
            summary.update(applied.as_dict())
            if applied.total:
                elements = [fc.element for fc in result.final_changes]
        else:
            recorded = await record_detected_changes(
                session,
                page=page,
                scan=scan,
                changes=diff.changes,
                candidates=candidates,
                magnitude=Magnitude.INCREMENTAL.value,
            )
            summary["path"] = "legacy"
            summary.update(recorded.as_dict())
            if recorded.total:
                elements = [c.element for c in diff.changes]

    if scan.trigger_type in PROMOTING_TRIGGERS:
        promoted = await _store_baseline(session, store, page=page, scan=scan, capture=capture, now=now)
        summary["promoted_baseline_id"] = promoted.id
    else:
        scan.desktop_ref = await store.save(capture.desktop)
        scan.mobile_ref = await store.save(capture.mobile) if capture.mobile else None

    _finish(scan, page, ScanMode.DIFF, summary, now)
    SCANS_TOTAL.labels(trigger_type=scan.trigger_type, mode="diff", outcome="complete").inc()
    SCAN_LATENCY_SECONDS.labels(trigger_type=scan.trigger_type, mode="diff").observe(
        time.perf_counter() - started
    )
    logger.info(
        "Scan %s of page %s: %s raw change(s), path=%s",
        scan.id,
        page.id,
        len(diff.changes),
        summary.get("path", "none"),
        extra={"scan_id": scan.id, "page_id": page.id, "scan_mode": "diff"},
    )
    return ScanOutcome(page.id, scan.id, ScanMode.DIFF.value, elements=elements, summary=summary)
