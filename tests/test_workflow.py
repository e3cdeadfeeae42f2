import asyncio

from sqlalchemy import func, select

from loupe.models.workflow import WorkflowStep
from loupe.workflow import Step


def test_step_result_is_memoized(session_factory) -> None:
    runs = []

    async def work():
        runs.append(1)
        return {"pages": [1, 2]}

    async def scenario():
        first = await Step("deploy:1", session_factory=session_factory).run("select-pages", work)
        second = await Step("deploy:1", session_factory=session_factory).run("select-pages", work)
        other = await Step("deploy:2", session_factory=session_factory).run("select-pages", work)
        return first, second, other

    first, second, other = asyncio.run(scenario())
    assert first == second == other == {"pages": [1, 2]}
    assert len(runs) == 2


def test_failed_step_is_not_memoized(session_factory) -> None:
    async def boom():
        raise RuntimeError("capture failed")

    async def ok():
        return "done"

    async def scenario():
        step = Step("deploy:3", session_factory=session_factory)
        try:
            await step.run("scan-page-1", boom)
        except RuntimeError:
            pass
        return await step.run("scan-page-1", ok)

    assert asyncio.run(scenario()) == "done"


def test_sleep_is_skipped_once_deadline_has_passed(session_factory) -> None:
    slept = []

    async def fake_sleep(seconds):
        slept.append(seconds)

    async def scenario():
        step = Step("deploy:4", session_factory=session_factory, sleeper=fake_sleep)
        await step.sleep("wait-for-deploy", 0)
        await step.sleep("wait-for-deploy", 300)
        async with session_factory() as session:
            return await session.scalar(select(func.count()).select_from(WorkflowStep))

    stored = asyncio.run(scenario())
    assert slept == []
    assert stored == 1


def test_sleep_waits_for_remaining_time(session_factory) -> None:
    slept = []

    async def fake_sleep(seconds):
        slept.append(seconds)

    asyncio.run(Step("deploy:5", session_factory=session_factory, sleeper=fake_sleep).sleep("wait", 120))
    assert len(slept) == 1
    assert 0 < slept[0] <= 120
