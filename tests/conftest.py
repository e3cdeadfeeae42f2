from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool
from tenacity import wait_none

import loupe.models  # noqa: F401  (registers every table on Base.metadata)
from loupe.core import llm
from loupe.db import Base


@pytest.fixture(autouse=True)
def _no_retry_wait(monkeypatch) -> None:
    monkeypatch.setattr(llm, "RETRY_WAIT", wait_none())


@pytest.fixture
def session_factory(tmp_path) -> async_sessionmaker[AsyncSession]:
    """File-backed SQLite with working SAVEPOINTs (pysqlite's implicit BEGIN disabled)."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/loupe.db", poolclass=NullPool)

    @event.listens_for(engine.sync_engine, "connect")
    def _connect(dbapi_connection, _record) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin(conn) -> None:
        conn.exec_driver_sql("BEGIN")

    async def _create() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(_create())
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    asyncio.run(engine.dispose())


@pytest.fixture
def worker_db(session_factory, monkeypatch) -> async_sessionmaker[AsyncSession]:
    """Point every module that opens its own sessions at the test database."""
    import loupe.workers.checkpoints as checkpoints_worker
    import loupe.workers.scans as scans_worker
    import loupe.workflow as workflow

    for module in (scans_worker, checkpoints_worker, workflow):
        monkeypatch.setattr(module, "async_session_factory", session_factory)
    return session_factory

