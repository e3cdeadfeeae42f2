"""Memoized workflow step results."""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from loupe.clock import utcnow
from loupe.db import Base, JSONType


class WorkflowStep(Base):
    """Result of one named step inside one workflow run."""

    __tablename__ = "workflow_steps"
    __table_args__ = (
        UniqueConstraint("run_key", "step_name", name="uq_workflow_steps_run_step"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_key: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    step_name: Mapped[str] = mapped_column(String(128), nullable=False)
    result_json: Mapped[dict | list | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return f"<WorkflowStep run={self.run_key} step={self.step_name}>"
