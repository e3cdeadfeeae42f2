"""DetectedChange, ChangeLifecycleEvent, ChangeCheckpoint and OutcomeFeedback models."""
from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import (
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from loupe.clock import utcnow
from loupe.db import Base, JSONType


class ChangeStatus(str, enum.Enum):
    """Lifecycle of a detected change."""

    WATCHING = "watching"
    VALIDATED = "validated"
    REGRESSED = "regressed"
    INCONCLUSIVE = "inconclusive"
    REVERTED = "reverted"
    SUPERSEDED = "superseded"


class ChangeScope(str, enum.Enum):
    ELEMENT = "element"
    SECTION = "section"
    PAGE = "page"


class Magnitude(str, enum.Enum):
    INCREMENTAL = "incremental"
    OVERHAUL = "overhaul"


class Assessment(str, enum.Enum):
    IMPROVED = "improved"
    REGRESSED = "regressed"
    NEUTRAL = "neutral"
    INCONCLUSIVE = "inconclusive"


class ActorType(str, enum.Enum):
    SYSTEM = "system"
    USER = "user"
    LLM = "llm"


class DetectedChange(Base):
    """A persisted, tracked visual/content modification on a page."""

    __tablename__ = "detected_changes"
    __table_args__ = (
        UniqueConstraint(
            "page_id", "source_scan_id", "dedup_key", name="uq_detected_changes_scan_dedup"
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    page_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("pages.id", ondelete="CASCADE"), nullable=False, index=True
    )
    source_scan_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("scans.id", ondelete="SET NULL"), nullable=True
    )
    element: Mapped[str] = mapped_column(String(512), nullable=False)
    scope: Mapped[str] = mapped_column(String(16), default=ChangeScope.ELEMENT.value, nullable=False)
    before_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    after_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String(16), default=ChangeStatus.WATCHING.value, nullable=False, index=True
    )
    magnitude: Mapped[str | None] = mapped_column(String(16), nullable=True)
    superseded_by: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("detected_changes.id", ondelete="SET NULL"),
        nullable=True,
        comment="Aggregate record that absorbed this one",
    )
    first_detected_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False, index=True
    )
    match_confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    match_rationale: Mapped[str | None] = mapped_column(Text, nullable=True)
    dedup_key: Mapped[str] = mapped_column(String(64), nullable=False)
    hypothesis: Mapped[str | None] = mapped_column(Text, nullable=True)
    observation_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    correlation_json: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return f"<DetectedChange id={self.id} page={self.page_id} status={self.status}>"


class ChangeLifecycleEvent(Base):
    """Append-only audit row for every status transition."""

    __tablename__ = "change_lifecycle_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    change_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("detected_changes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    from_status: Mapped[str] = mapped_column(String(16), nullable=False)
    to_status: Mapped[str] = mapped_column(String(16), nullable=False)
    reason: Mapped[str | None] = mapped_column(String(256), nullable=True)
    actor_type: Mapped[str] = mapped_column(String(16), nullable=False)
    actor_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    checkpoint_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("change_checkpoints.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return f"<ChangeLifecycleEvent change={self.change_id} {self.from_status}->{self.to_status}>"


class ChangeCheckpoint(Base):
    """Write-once verdict for one change at one horizon."""

    __tablename__ = "change_checkpoints"
    __table_args__ = (
        UniqueConstraint("change_id", "horizon_days", name="uq_change_checkpoints_horizon"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    change_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("detected_changes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    horizon_days: Mapped[int] = mapped_column(Integer, nullable=False)
    before_window_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    before_window_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    after_window_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    after_window_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    metrics_json: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    assessment: Mapped[str] = mapped_column(String(16), nullable=False)
    confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    reasoning: Mapped[str | None] = mapped_column(Text, nullable=True)
    data_sources: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    provider: Mapped[str] = mapped_column(
        String(32), nullable=False, comment="Metric provider label (posthog, ga4, database, none)"
    )
    assessed_by: Mapped[str] = mapped_column(
        String(16), nullable=False, default="fallback", comment="llm | fallback"
    )
    computed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return f"<ChangeCheckpoint change={self.change_id} D+{self.horizon_days} {self.assessment}>"


class OutcomeFeedback(Base):
    """User rating of a checkpoint verdict."""

    __tablename__ = "outcome_feedback"
    __table_args__ = (
        UniqueConstraint("checkpoint_id", "account_id", name="uq_outcome_feedback_account"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    checkpoint_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("change_checkpoints.id", ondelete="CASCADE"), nullable=False, index=True
    )
    change_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("detected_changes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    account_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    feedback_type: Mapped[str] = mapped_column(String(16), nullable=False, comment="accurate | inaccurate")
    feedback_text: Mapped[str | None] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return f"<OutcomeFeedback checkpoint={self.checkpoint_id} {self.feedback_type}>"
