"""Detected change status graph and action gating.

Statuses only move along ALLOWED_TRANSITIONS; `reverted` and `superseded`
are terminal.
"""
from __future__ import annotations

import logging

from loupe.models.change import ChangeStatus, DetectedChange

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[ChangeStatus, frozenset[ChangeStatus]] = {
    ChangeStatus.WATCHING: frozenset(
        {
            ChangeStatus.VALIDATED,
            ChangeStatus.REGRESSED,
            ChangeStatus.INCONCLUSIVE,
            ChangeStatus.REVERTED,
            ChangeStatus.SUPERSEDED,
        }
    ),
    ChangeStatus.VALIDATED: frozenset({ChangeStatus.REGRESSED, ChangeStatus.REVERTED}),
    ChangeStatus.REGRESSED: frozenset({ChangeStatus.VALIDATED, ChangeStatus.REVERTED}),
    ChangeStatus.INCONCLUSIVE: frozenset(
        {ChangeStatus.VALIDATED, ChangeStatus.REGRESSED, ChangeStatus.REVERTED}
    ),
    ChangeStatus.REVERTED: frozenset(),
    ChangeStatus.SUPERSEDED: frozenset(),
}

ACTIVE_STATUSES: tuple[str, ...] = tuple(
    s.value for s, targets in ALLOWED_TRANSITIONS.items() if targets
)


def status_name(value: ChangeStatus | str) -> str:
    if isinstance(value, ChangeStatus):
        return value.value
    raw = str(value)
    if raw.startswith("ChangeStatus."):
        return ChangeStatus[raw.split(".", 1)[1]].value
    return raw


def is_terminal(status: ChangeStatus | str) -> bool:
    return not ALLOWED_TRANSITIONS[ChangeStatus(status_name(status))]


def can_transition(from_status: ChangeStatus | str, to_status: ChangeStatus | str) -> bool:
    try:
        source = ChangeStatus(status_name(from_status))
        target = ChangeStatus(status_name(to_status))
    except ValueError:
        return False
    return target in ALLOWED_TRANSITIONS[source]


def action_gating_decision(change: DetectedChange, *, action: str) -> tuple[bool, str | None]:
    """User action gating on a change.

    Returns `(allowed, reason_code_if_blocked)`.
    """
    action = str(action or "").upper()
    status = status_name(change.status)

    if status == ChangeStatus.SUPERSEDED.value:
        return False, "ACTION_BLOCKED_SUPERSEDED"
    if action == "REVERT" and not can_transition(status, ChangeStatus.REVERTED):
        return False, f"ACTION_BLOCKED_{status.upper()}"
    if action == "HYPOTHESIS" and status == ChangeStatus.REVERTED.value:
        return False, "ACTION_BLOCKED_REVERTED"
    return True, None
