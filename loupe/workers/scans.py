"""Deploy-triggered and scheduled scan orchestration."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from loupe import pipeline
from loupe.celery_app import celery
from loupe.clock import utc_day, utcnow
from loupe.config import settings
from loupe.db import async_session_factory
from loupe.deploy_filter import could_affect_page
from loupe.metrics import SCANS_TOTAL
from loupe.models.account import Account
from loupe.models.page import Deploy, DeployStatus, Page, Scan, ScanFrequency, ScanStatus, TriggerType
from loupe.notifications import change_detected_message, dispatch
from loupe.screenshots import ScreenshotClient, ScreenshotStore
from loupe.tiers import (
    Tier,
    can_use_deploy_scans,
    effective_tier_for,
    get_page_limit,
    validate_scan_frequency,
)
from loupe.workflow import Step

logger = logging.getLogger(__name__)

FINISHED_SCAN_STATUSES = frozenset({ScanStatus.COMPLETE.value, ScanStatus.FAILED.value})


def scan_idempotency_key(
    page_id: int,
    trigger_type: TriggerType | str,
    *,
    day: datetime | None = None,
    deploy_id: int | None = None,
) -> str:
    """`page:deploy:<id>` for deploy scans, `page:trigger:YYYY-MM-DD` otherwise."""
    trigger = TriggerType(trigger_type).value
    if deploy_id is not None:
        return f"{page_id}:{trigger}:{deploy_id}"
    return f"{page_id}:{trigger}:{utc_day(day).isoformat()}"


async def create_scan(
    session: AsyncSession,
    *,
    page_id: int,
    trigger_type: TriggerType | str,
    now: datetime | None = None,
    deploy_id: int | None = None,
) -> tuple[Scan, bool]:
    """Insert the scan row for this page/trigger/day, or return the existing one.

    The boolean is `True` when the row was created by this call.
    """
    now = now or utcnow()
    key = scan_idempotency_key(page_id, trigger_type, day=now, deploy_id=deploy_id)
    scan = Scan(
        page_id=page_id,
        deploy_id=deploy_id,
        trigger_type=TriggerType(trigger_type).value,
        scan_day=utc_day(now),
        idempotency_key=key,
        status=ScanStatus.PENDING.value,
        created_at=now,
    )
    try:
        async with session.begin_nested():
            session.add(scan)
            await session.flush()
    except IntegrityError:
        existing = (
            await session.execute(select(Scan).where(Scan.idempotency_key == key))
        ).scalar_one()
        return existing, False
    return scan, True


def wants_scheduled_scan(frequency: str, tier: Tier | str, page_frequency: str | None) -> bool:
    """A page joins the run matching its frequency once coerced to what the tier permits."""
    return validate_scan_frequency(tier, page_frequency) == ScanFrequency(frequency).value


def _scan_result(scan: Scan, **extra: Any) -> dict[str, Any]:
    summary = scan.changes_json or {}
    result = {
        "page_id": scan.page_id,
        "scan_id": scan.id,
        "status": scan.status,
        "mode": scan.mode,
        "changes": len(summary.get("inserted") or []) + len(summary.get("matched") or []),
    }
    if scan.error:
        result["error"] = scan.error
    result.update(extra)
    return result


async def _record_scan_failure(session: AsyncSession, scan_id: int, exc: BaseException) -> None:
    scan = await session.get(Scan, scan_id)
    if scan is None:
        return
    scan.status = ScanStatus.FAILED.value
    scan.error = f"{type(exc).__name__}: {exc}"[:2000]
    scan.completed_at = utcnow()
    await session.commit()


async def execute_scan(scan_id: int, *, tier: Tier | str | None = None) -> dict[str, Any]:
    """Run the detection core for one scan row; failures are recorded on the row."""
    screenshots = ScreenshotClient()
    store = ScreenshotStore()
    notify: tuple[str, list[str], str, str] | None = None
    try:
        async with async_session_factory() as session:
            scan = await session.get(Scan, scan_id)
            if scan is None:
                logger.warning("Scan %s not found", scan_id)
                return {"scan_id": scan_id, "status": "missing"}
            if scan.status in FINISHED_SCAN_STATUSES:
                logger.info("Scan %s already %s; nothing to do", scan_id, scan.status)
                return _scan_result(scan, skipped=True)

            page = await session.get(Page, scan.page_id)
            account = await session.get(Account, page.account_id)
            effective = tier or effective_tier_for(account)
            trigger = scan.trigger_type
            page_id = page.id
            try:
                outcome = await pipeline.scan_page(
                    session,
                    page=page,
                    scan=scan,
                    tier=effective,
                    screenshots=screenshots,
                    store=store,
                )
                await session.commit()
            except Exception as exc:
                await session.rollback()
                logger.exception(
                    "Scan %s of page %s failed",
                    scan_id,
                    page_id,
                    extra={"scan_id": scan_id, "page_id": page_id, "trigger_type": trigger},
                )
                SCANS_TOTAL.labels(trigger_type=trigger, mode="unknown", outcome="failed").inc()
                await _record_scan_failure(session, scan_id, exc)
                return {
                    "page_id": page_id,
                    "scan_id": scan_id,
                    "status": ScanStatus.FAILED.value,
                    "mode": None,
                    "changes": 0,
                    "error": str(exc)[:500],
                }

            if outcome.changed and account.email_notifications:
                notify = (account.email, outcome.elements, page.url, trigger)
            result = _scan_result(scan)
    finally:
        await screenshots.aclose()

    if notify:
        email, elements, url, trigger = notify
        subject, body = change_detected_message(url, elements, trigger=trigger)
        dispatch(email, subject, body)
    return result


async def _finish_deploy(deploy_id: int, results: dict[str, Any]) -> dict[str, Any]:
    async with async_session_factory() as session:
        deploy = await session.get(Deploy, deploy_id)
        deploy.status = DeployStatus.COMPLETE.value
        deploy.results_json = results
        deploy.completed_at = utcnow()
        await session.commit()
    logger.info("Deploy %s complete: %s", deploy_id, results)
    return results


async def _scan_deploy_page(deploy_id: int, page_id: int, tier: Tier) -> dict[str, Any]:
    async with async_session_factory() as session:
        scan, _ = await create_scan(
            session, page_id=page_id, trigger_type=TriggerType.DEPLOY, deploy_id=deploy_id
        )
        await session.commit()
        scan_id = scan.id
    return await execute_scan(scan_id, tier=tier)


@celery.task(name="loupe.workers.scans.run_deploy_scan", bind=True, max_retries=3)
def run_deploy_scan(self, deploy_id: int):
    """Scan the account's affected pages once the deploy has settled."""
    try:
        return asyncio.run(_run_deploy_scan(deploy_id))
    except Exception as exc:
        logger.error("Deploy scan %s failed: %s", deploy_id, exc)
        raise self.retry(exc=exc, countdown=60)


async def _run_deploy_scan(deploy_id: int) -> dict[str, Any]:
    async with async_session_factory() as session:
        deploy = await session.get(Deploy, deploy_id)
        if deploy is None:
            logger.warning("Deploy %s not found", deploy_id)
            return {}
        if deploy.status == DeployStatus.COMPLETE.value:
            return deploy.results_json or {}
        account_id = deploy.account_id
        changed_files = list(deploy.changed_files or [])

    step = Step(f"deploy:{deploy_id}", session_factory=async_session_factory)

    async def check_tier() -> dict[str, Any]:
        async with async_session_factory() as session:
            account = await session.get(Account, account_id)
            tier = effective_tier_for(account)
            return {"tier": tier.value, "page_limit": get_page_limit(tier, account.bonus_pages)}

    plan = await step.run("check-tier", check_tier)
    tier = Tier(plan["tier"])
    if not can_use_deploy_scans(tier):
        logger.info("Deploy %s skipped: tier %s has no deploy scans", deploy_id, tier.value)
        return await _finish_deploy(deploy_id, {"scanned": 0, "skipped": "tier"})

    async with async_session_factory() as session:
        deploy = await session.get(Deploy, deploy_id)
        deploy.status = DeployStatus.SCANNING.value
        await session.commit()

    await step.sleep("wait-for-deploy", settings.DEPLOY_SETTLE_DELAY_S)

    async def select_pages() -> list[int]:
        async with async_session_factory() as session:
            pages = (
                await session.execute(
                    select(Page)
                    .where(Page.account_id == account_id)
                    .order_by(Page.created_at.asc(), Page.id.asc())
                    .limit(plan["page_limit"])
                )
            ).scalars().all()
        return [p.id for p in pages if could_affect_page(changed_files, p.url)]

    page_ids = await step.run("select-pages", select_pages)
    if not page_ids:
        logger.info("Deploy %s touched no monitored page", deploy_id)
        return await _finish_deploy(deploy_id, {"scanned": 0, "changed": 0, "established": 0, "errors": []})

    results: list[dict[str, Any]] = []
    for page_id in page_ids:

        async def scan_one(page_id: int = page_id) -> dict[str, Any]:
            try:
                return await _scan_deploy_page(deploy_id, page_id, tier)
            except Exception as exc:
                logger.exception("Deploy %s: page %s failed", deploy_id, page_id)
                return {"page_id": page_id, "status": ScanStatus.FAILED.value, "error": str(exc)[:500]}

        results.append(await step.run(f"scan-page-{page_id}", scan_one))

    summary = {
        "scanned": len(results),
        "changed": sum(1 for r in results if r.get("changes")),
        "established": sum(1 for r in results if r.get("mode") == "establish"),
        "errors": [
            {"page_id": r["page_id"], "error": r.get("error", "")}
            for r in results
            if r.get("status") == ScanStatus.FAILED.value
        ],
        "pages": results,
    }
    return await _finish_deploy(deploy_id, summary)


@celery.task(name="loupe.workers.scans.run_scheduled_scans")
def run_scheduled_scans(frequency: str) -> dict[str, Any]:
    return asyncio.run(_run_scheduled_scans(frequency))


async def _run_scheduled_scans(frequency: str, now: datetime | None = None) -> dict[str, Any]:
    frequency = ScanFrequency(frequency).value
    now = now or utcnow()
    day = utc_day(now)
    step = Step(f"scheduled:{frequency}:{day.isoformat()}", session_factory=async_session_factory)

    async def create_scans() -> list[int]:
        pending: list[int] = []
        async with async_session_factory() as session:
            rows = (
                await session.execute(
                    select(Page, Account)
                    .join(Account, Page.account_id == Account.id)
                    .where(Page.scan_frequency != ScanFrequency.MANUAL.value)
                    .order_by(Page.account_id, Page.created_at.asc(), Page.id.asc())
                )
            ).all()

            by_account: dict[int, tuple[Account, list[Page]]] = {}
            for page, account in rows:
                by_account.setdefault(account.id, (account, []))[1].append(page)

            for account, pages in by_account.values():
                tier = effective_tier_for(account, now)
                eligible = [p for p in pages if wants_scheduled_scan(frequency, tier, p.scan_frequency)]
                for page in eligible[: get_page_limit(tier, account.bonus_pages)]:
                    scan, created = await create_scan(
                        session, page_id=page.id, trigger_type=frequency, now=now
                    )
                    if created or scan.status == ScanStatus.PENDING.value:
                        pending.append(scan.id)
            await session.commit()
        return pending

    scan_ids = await step.run(f"create-{frequency}-scans", create_scans)
    for scan_id in scan_ids:
        run_page_scan.delay(scan_id)
    logger.info("Queued %s %s scan(s) for %s", len(scan_ids), frequency, day.isoformat())
    return {"frequency": frequency, "day": day.isoformat(), "queued": len(scan_ids)}


@celery.task(name="loupe.workers.scans.run_page_scan")
def run_page_scan(scan_id: int) -> dict[str, Any]:
    return asyncio.run(execute_scan(scan_id))
