"""Durable step runtime for multi-step workflows.

`Step.run(name, fn)` executes `fn` at most once successfully per
(run_key, name) and memoizes its JSON result in `workflow_steps`; a replayed
run (Celery redelivery after a crash) returns the stored result instead of
repeating the work. `Step.sleep(name, seconds)` memoizes its wake-up time, so
a replay after the deadline does not sleep again.

Execution is at-least-once: a crash between `fn` finishing and its result
being stored repeats `fn`, so every step must be idempotent.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from loupe.clock import as_utc, utcnow
from loupe.db import async_session_factory
from loupe.models.workflow import WorkflowStep

logger = logging.getLogger(__name__)

T = TypeVar("T")

_MISSING = object()


class Step:
    def __init__(
        self,
        run_key: str,
        *,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        sleeper: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.run_key = run_key
        self.session_factory = session_factory or async_session_factory
        self._sleep = sleeper

    async def _load(self, name: str) -> Any:
        async with self.session_factory() as session:
            row = (
                await session.execute(
                    select(WorkflowStep).where(
                        WorkflowStep.run_key == self.run_key,
                        WorkflowStep.step_name == name,
                    )
                )
            ).scalar()
        if row is None:
            return _MISSING
        return (row.result_json or {}).get("value")

    async def _store(self, name: str, value: Any) -> Any:
        async with self.session_factory() as session:
            session.add(WorkflowStep(run_key=self.run_key, step_name=name, result_json={"value": value}))
            try:
                await session.commit()
            except IntegrityError:
                # A concurrent delivery stored first; its result wins.
                await session.rollback()
                stored = await self._load(name)
                return value if stored is _MISSING else stored
        return value

    async def run(self, name: str, fn: Callable[[], Awaitable[T]]) -> T:
        cached = await self._load(name)
        if cached is not _MISSING:
            logger.debug("Step %s/%s replayed from memo", self.run_key, name)
            return cached
        value = await fn()
        return await self._store(name, value)

    async def sleep(self, name: str, seconds: float) -> None:
        stored = await self._load(name)
        if stored is _MISSING:
            wake_at = utcnow() + timedelta(seconds=seconds)
            stored = await self._store(name, {"wake_at": wake_at.isoformat()})
        wake_at = as_utc(datetime.fromisoformat(stored["wake_at"]))
        remaining = (wake_at - utcnow()).total_seconds()
        if remaining > 0:
            logger.info("Step %s/%s sleeping %.1fs", self.run_key, name, remaining)
            await self._sleep(remaining)
