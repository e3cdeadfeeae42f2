"""Row builders and fakes shared by the store and worker tests."""
from __future__ import annotations

import itertools
from datetime import datetime, timedelta, timezone

from loupe.change_store import change_dedup_key
from loupe.models.account import Account, Integration
from loupe.models.change import ChangeStatus, DetectedChange
from loupe.models.page import Baseline, Page, Scan, ScanStatus

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

_scan_seq = itertools.count(1)


def days_ago(days: float, now: datetime = NOW) -> datetime:
    return now - timedelta(days=days)


async def add_account(session, *, tier: str = "pro", email: str = "owner@example.com", **kw) -> Account:
    account = Account(email=email, tier=tier, **kw)
    session.add(account)
    await session.flush()
    return account


async def add_page(session, account: Account, *, url: str = "https://example.com/pricing", **kw) -> Page:
    page = Page(account_id=account.id, url=url, **kw)
    session.add(page)
    await session.flush()
    return page


async def add_scan(session, page: Page, *, trigger_type: str = "daily", key: str | None = None, **kw) -> Scan:
    scan = Scan(
        page_id=page.id,
        trigger_type=trigger_type,
        scan_day=NOW.date(),
        idempotency_key=key or f"{page.id}:{trigger_type}:{next(_scan_seq)}",
        status=kw.pop("status", ScanStatus.PENDING.value),
        **kw,
    )
    session.add(scan)
    await session.flush()
    return scan


async def add_baseline(session, page: Page, *, captured_at: datetime, current: bool = True, **kw) -> Baseline:
    baseline = Baseline(
        page_id=page.id,
        desktop_ref=kw.pop("desktop_ref", "baseline-desktop.jpg"),
        captured_at=captured_at,
        **kw,
    )
    session.add(baseline)
    await session.flush()
    if current:
        page.current_baseline_id = baseline.id
    return baseline


async def add_change(
    session,
    page: Page,
    *,
    element: str = "Hero headline",
    before: str = "Old",
    after: str = "New",
    status: str = ChangeStatus.WATCHING.value,
    first_detected_at: datetime = NOW,
    scan: Scan | None = None,
    **kw,
) -> DetectedChange:
    change = DetectedChange(
        page_id=page.id,
        source_scan_id=scan.id if scan else None,
        element=element,
        scope=kw.pop("scope", "element"),
        before_value=before,
        after_value=after,
        status=status,
        first_detected_at=first_detected_at,
        dedup_key=change_dedup_key(element, before, after),
        **kw,
    )
    session.add(change)
    await session.flush()
    return change


async def add_integration(session, account: Account, provider: str, config: dict) -> Integration:
    integration = Integration(account_id=account.id, provider=provider, config_json=config)
    session.add(integration)
    await session.flush()
    return integration


class FakeScreenshots:
    """Stands in for `ScreenshotClient`; returns distinct bytes per viewport."""

    def __init__(self, *args, fail_mobile: bool = False, **kwargs) -> None:
        self.calls: list[tuple[str, int | None]] = []
        self.fail_mobile = fail_mobile

    async def capture(self, url: str, viewport_width: int | None = None) -> bytes:
        self.calls.append((url, viewport_width))
        if viewport_width and self.fail_mobile:
            raise RuntimeError("mobile capture failed")
        return f"{url}|{viewport_width or 'desktop'}|{len(self.calls)}".encode()

    async def aclose(self) -> None:
        return None


class MemoryStore:
    """Stands in for `ScreenshotStore`."""

    def __init__(self, *args, **kwargs) -> None:
        self.blobs: dict[str, bytes] = {}

    async def save(self, data: bytes) -> str:
        ref = f"blob-{len(self.blobs) + 1}.jpg"
        self.blobs[ref] = data
        return ref

    async def load(self, ref: str) -> bytes:
        return self.blobs.get(ref, b"baseline")
