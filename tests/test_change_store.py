import asyncio

from helpers import NOW, add_account, add_change, add_page, add_scan, days_ago
from sqlalchemy import select

from loupe.change_store import (
    change_dedup_key,
    insert_change,
    load_watching_candidates,
    record_detected_changes,
    revert_change,
    supersede_change,
    transition_change_status,
)
from loupe.clock import as_utc
from loupe.match_guard import Candidate
from loupe.models.change import ActorType, ChangeLifecycleEvent, ChangeStatus, DetectedChange
from loupe.schemas.model_output import DetectedChangeIn


def _detected(element: str, before: str, after: str, matched=None, confidence: float = 0.0) -> DetectedChangeIn:
    return DetectedChangeIn.model_validate(
        {
            "element": element,
            "before": before,
            "after": after,
            "matched_change_id": matched,
            "match_confidence": confidence,
        }
    )


def test_dedup_key_ignores_case_and_spacing() -> None:
    assert change_dedup_key("Hero  Headline", "Old", "New ") == change_dedup_key("hero headline", "old", "new")
    assert change_dedup_key("Hero", "A", "B") != change_dedup_key("Hero", "B", "A")


def test_incremental_scan_inserts_new_and_updates_matched(session_factory) -> None:
    async def scenario():
        async with session_factory() as session:
            page = await add_page(session, await add_account(session))
            scan = await add_scan(session, page)
            existing = await add_change(session, page, element="Hero headline", first_detected_at=days_ago(10))
            candidates = [Candidate.from_change(c) for c in await load_watching_candidates(session, page.id)]

            summary = await record_detected_changes(
                session,
                page=page,
                scan=scan,
                changes=[
                    _detected("Hero headline", "Old", "Newer", matched=str(existing.id), confidence=0.9),
                    _detected("Pricing CTA", "Buy", "Start trial"),
                ],
                candidates=candidates,
            )
            await session.commit()

            rows = (await session.execute(select(DetectedChange).order_by(DetectedChange.id))).scalars().all()
            await session.refresh(existing)
            return summary, rows, existing

    summary, rows, existing = asyncio.run(scenario())
    assert summary.matched == [existing.id]
    assert len(summary.inserted) == 1
    assert len(rows) == 2
    assert existing.after_value == "Newer"
    assert existing.match_confidence == 0.9
    assert as_utc(existing.first_detected_at) == days_ago(10)
    new = next(r for r in rows if r.id != existing.id)
    assert new.status == "watching"
    assert new.element == "Pricing CTA"


def test_hallucinated_match_is_recorded_as_new(session_factory) -> None:
    async def scenario():
        async with session_factory() as session:
            page = await add_page(session, await add_account(session))
            scan = await add_scan(session, page)
            existing = await add_change(session, page)
            summary = await record_detected_changes(
                session,
                page=page,
                scan=scan,
                changes=[_detected("Footer", "2025", "2026", matched="4242", confidence=0.99)],
                candidates=[Candidate.from_change(existing)],
            )
            await session.commit()
            await session.refresh(existing)
            return summary, existing

    summary, existing = asyncio.run(scenario())
    assert summary.matched == []
    assert len(summary.inserted) == 1
    assert existing.after_value == "New"


def test_match_against_resolved_record_inserts_instead(session_factory) -> None:
    async def scenario():
        async with session_factory() as session:
            page = await add_page(session, await add_account(session))
            scan = await add_scan(session, page)
            stale = await add_change(session, page, status="watching")
            candidates = [Candidate.from_change(stale)]
            stale.status = ChangeStatus.VALIDATED.value
            await session.flush()
            summary = await record_detected_changes(
                session,
                page=page,
                scan=scan,
                changes=[_detected("Hero headline", "Old", "Newest", matched=stale.id, confidence=0.95)],
                candidates=candidates,
            )
            await session.commit()
            await session.refresh(stale)
            return summary, stale

    summary, stale = asyncio.run(scenario())
    assert summary.matched == []
    assert len(summary.inserted) == 1
    assert stale.status == "validated"
    assert stale.after_value == "New"


def test_same_change_twice_in_one_scan_is_stored_once(session_factory) -> None:
    async def scenario():
        async with session_factory() as session:
            page = await add_page(session, await add_account(session))
            scan = await add_scan(session, page)
            first = await insert_change(
                session, page_id=page.id, scan_id=scan.id, element="CTA", scope="element",
                before="Buy", after="Try", description=None,
            )
            second = await insert_change(
                session, page_id=page.id, scan_id=scan.id, element="cta", scope="element",
                before="buy", after="try", description=None,
            )
            await session.commit()
            count = len((await session.execute(select(DetectedChange))).scalars().all())
            return first, second, count

    first, second, count = asyncio.run(scenario())
    assert first is not None
    assert second is None
    assert count == 1


def test_guarded_transition_appends_lifecycle_event(session_factory) -> None:
    async def scenario():
        async with session_factory() as session:
            page = await add_page(session, await add_account(session))
            change = await add_change(session, page)
            moved = await transition_change_status(
                session, change=change, new_status=ChangeStatus.VALIDATED, reason="D+30: metrics improved"
            )
            await session.commit()
            events = (await session.execute(select(ChangeLifecycleEvent))).scalars().all()
            return moved, change, events

    moved, change, events = asyncio.run(scenario())
    assert moved is True
    assert change.status == "validated"
    assert len(events) == 1
    assert (events[0].from_status, events[0].to_status) == ("watching", "validated")
    assert events[0].actor_type == "system"


def test_transition_with_stale_expected_status_is_a_no_op(session_factory) -> None:
    async def scenario():
        async with session_factory() as session:
            page = await add_page(session, await add_account(session))
            change = await add_change(session, page, status="regressed")
            moved = await transition_change_status(
                session,
                change=change,
                new_status=ChangeStatus.VALIDATED,
                reason="late writer",
                expected_status=ChangeStatus.INCONCLUSIVE,
            )
            events = (await session.execute(select(ChangeLifecycleEvent))).scalars().all()
            return moved, events

    moved, events = asyncio.run(scenario())
    assert moved is False
    assert events == []


def test_terminal_records_never_move(session_factory) -> None:
    async def scenario():
        async with session_factory() as session:
            page = await add_page(session, await add_account(session))
            reverted = await add_change(session, page, status="reverted")
            superseded = await add_change(session, page, element="Other", status="superseded")
            results = []
            for change in (reverted, superseded):
                for target in ChangeStatus:
                    results.append(
                        await transition_change_status(session, change=change, new_status=target, reason="x")
                    )
            return results

    assert not any(asyncio.run(scenario()))


def test_manual_revert_is_attributed_to_user(session_factory) -> None:
    async def scenario():
        async with session_factory() as session:
            page = await add_page(session, await add_account(session))
            change = await add_change(session, page, status="validated")
            first = await revert_change(session, change=change, actor_id="user-7")
            second = await revert_change(session, change=change, actor_id="user-7")
            await session.commit()
            events = (await session.execute(select(ChangeLifecycleEvent))).scalars().all()
            return first, second, events

    first, second, events = asyncio.run(scenario())
    assert first is True
    assert second is False
    assert len(events) == 1
    assert events[0].actor_type == ActorType.USER.value
    assert events[0].actor_id == "user-7"


def test_supersession_carries_oldest_detection_date(session_factory) -> None:
    async def scenario():
        async with session_factory() as session:
            page = await add_page(session, await add_account(session))
            old = await add_change(session, page, element="Hero", first_detected_at=days_ago(20))
            aggregate = await add_change(session, page, element="Page redesign", first_detected_at=NOW, magnitude="overhaul")
            done = await supersede_change(session, old_id=old.id, aggregate=aggregate)
            again = await supersede_change(session, old_id=old.id, aggregate=aggregate)
            await session.commit()
            await session.refresh(old)
            await session.refresh(aggregate)
            return done, again, old, aggregate

    done, again, old, aggregate = asyncio.run(scenario())
    assert done is True
    assert again is False
    assert old.status == "superseded"
    assert old.superseded_by == aggregate.id
    assert as_utc(aggregate.first_detected_at) == days_ago(20)
