from loupe.models.change import ChangeStatus, DetectedChange
from loupe.state_engine import (
    ACTIVE_STATUSES,
    action_gating_decision,
    can_transition,
    is_terminal,
    status_name,
)


def _change(status: ChangeStatus) -> DetectedChange:
    c = DetectedChange()  # SQLAlchemy model instance without session is enough for unit logic
    c.id = 1
    c.status = status.value
    return c


def test_terminal_statuses_have_no_exits() -> None:
    assert is_terminal(ChangeStatus.REVERTED)
    assert is_terminal("superseded")
    for target in ChangeStatus:
        assert not can_transition(ChangeStatus.REVERTED, target)
        assert not can_transition(ChangeStatus.SUPERSEDED, target)


def test_watching_can_resolve_or_be_superseded() -> None:
    for target in ("validated", "regressed", "inconclusive", "reverted", "superseded"):
        assert can_transition("watching", target)


def test_resolved_statuses_cannot_return_to_watching_or_be_superseded() -> None:
    for source in (ChangeStatus.VALIDATED, ChangeStatus.REGRESSED, ChangeStatus.INCONCLUSIVE):
        assert not can_transition(source, ChangeStatus.WATCHING)
        assert not can_transition(source, ChangeStatus.SUPERSEDED)


def test_reversal_between_validated_and_regressed_is_allowed() -> None:
    assert can_transition("validated", "regressed")
    assert can_transition("regressed", "validated")
    assert not can_transition("validated", "inconclusive")


def test_unknown_status_never_transitions() -> None:
    assert can_transition("bogus", "validated") is False


def test_active_statuses_exclude_terminal() -> None:
    assert set(ACTIVE_STATUSES) == {"watching", "validated", "regressed", "inconclusive"}


def test_status_name_handles_enum_string_repr() -> None:
    assert status_name("ChangeStatus.SUPERSEDED") == "superseded"
    assert status_name(ChangeStatus.WATCHING) == "watching"


def test_action_gating_blocks_everything_on_superseded() -> None:
    allowed, reason = action_gating_decision(_change(ChangeStatus.SUPERSEDED), action="HYPOTHESIS")
    assert allowed is False
    assert reason == "ACTION_BLOCKED_SUPERSEDED"


def test_action_gating_blocks_second_revert() -> None:
    allowed, reason = action_gating_decision(_change(ChangeStatus.REVERTED), action="revert")
    assert allowed is False
    assert reason == "ACTION_BLOCKED_REVERTED"


def test_action_gating_allows_revert_of_validated_change() -> None:
    assert action_gating_decision(_change(ChangeStatus.VALIDATED), action="REVERT") == (True, None)
