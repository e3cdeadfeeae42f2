"""Account and Integration models."""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from loupe.clock import utcnow
from loupe.db import Base, JSONType


class Account(Base):
    """Page owner with subscription tier used for quota and feature gating."""

    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    tier: Mapped[str] = mapped_column(
        String(16), default="free", nullable=False, comment="free | starter | pro"
    )
    subscription_status: Mapped[str | None] = mapped_column(
        String(32), nullable=True, comment="active | trialing | past_due | canceled"
    )
    trial_ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    bonus_pages: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    email_notifications: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return f"<Account id={self.id} tier={self.tier}>"


class Integration(Base):
    """Connected metric source (posthog | ga4 | database)."""

    __tablename__ = "integrations"
    __table_args__ = (
        UniqueConstraint("account_id", "provider", name="uq_integrations_account_provider"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    config_json: Mapped[dict] = mapped_column(
        JSONType, nullable=False, default=dict, comment="Provider credentials / identifiers"
    )
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return f"<Integration id={self.id} provider={self.provider}>"
