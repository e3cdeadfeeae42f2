"""Page, Baseline, Scan and Deploy models."""
from __future__ import annotations

import enum
from datetime import date, datetime

from sqlalchemy import Date, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from loupe.clock import utcnow
from loupe.db import Base, JSONType


class ScanFrequency(str, enum.Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MANUAL = "manual"


class TriggerType(str, enum.Enum):
    DEPLOY = "deploy"
    DAILY = "daily"
    WEEKLY = "weekly"
    MANUAL = "manual"


class ScanStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"


class ScanMode(str, enum.Enum):
    DIFF = "diff"
    ESTABLISH = "establish"


class DeployStatus(str, enum.Enum):
    PENDING = "pending"
    SCANNING = "scanning"
    COMPLETE = "complete"


class Page(Base):
    """Monitored URL."""

    __tablename__ = "pages"
    __table_args__ = (UniqueConstraint("account_id", "url", name="uq_pages_account_url"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    url: Mapped[str] = mapped_column(String(2048), nullable=False)
    name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    scan_frequency: Mapped[str] = mapped_column(
        String(16), default=ScanFrequency.WEEKLY.value, nullable=False
    )
    metric_focus: Mapped[str | None] = mapped_column(
        String(64), nullable=True, comment="Metric the owner cares most about"
    )
    # Plain references (no FK) to avoid a pages <-> baselines/scans cycle.
    current_baseline_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_scan_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False, index=True
    )

    def __repr__(self) -> str:
        return f"<Page id={self.id} url={self.url!r}>"


class Baseline(Base):
    """Authoritative capture a page is diffed against."""

    __tablename__ = "baselines"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    page_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("pages.id", ondelete="CASCADE"), nullable=False, index=True
    )
    source_scan_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("scans.id", ondelete="SET NULL"), nullable=True
    )
    desktop_ref: Mapped[str] = mapped_column(String(1024), nullable=False)
    mobile_ref: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    captured_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return f"<Baseline id={self.id} page={self.page_id} captured_at={self.captured_at}>"


class Deploy(Base):
    """Push event that may trigger a deploy scan."""

    __tablename__ = "deploys"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    commit_sha: Mapped[str | None] = mapped_column(String(64), nullable=True)
    commit_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    changed_files: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    status: Mapped[str] = mapped_column(
        String(16), default=DeployStatus.PENDING.value, nullable=False
    )
    results_json: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<Deploy id={self.id} status={self.status}>"


class Scan(Base):
    """One detection run against one page."""

    __tablename__ = "scans"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    page_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("pages.id", ondelete="CASCADE"), nullable=False, index=True
    )
    deploy_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("deploys.id", ondelete="SET NULL"), nullable=True
    )
    trigger_type: Mapped[str] = mapped_column(String(16), nullable=False)
    scan_day: Mapped[date] = mapped_column(Date, nullable=False)
    idempotency_key: Mapped[str] = mapped_column(
        String(128), nullable=False, unique=True, comment="page:trigger:day or page:deploy:id"
    )
    status: Mapped[str] = mapped_column(
        String(16), default=ScanStatus.PENDING.value, nullable=False, index=True
    )
    mode: Mapped[str | None] = mapped_column(String(16), nullable=True)
    desktop_ref: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    mobile_ref: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    changes_json: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<Scan id={self.id} page={self.page_id} trigger={self.trigger_type} status={self.status}>"
