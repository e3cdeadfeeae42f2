"""Checkpoint horizons, metric windows and deterministic verdict rules.

Pure logic: no database, no network. D+7 and D+14 are early signals only,
D+30 is the first canonical resolution and D+60 / D+90 may confirm or
reverse it.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Sequence

from loupe.clock import as_utc
from loupe.models.change import Assessment, ChangeStatus
from loupe.state_engine import is_terminal

HORIZONS: tuple[int, ...] = (7, 14, 30, 60, 90)
DECISION_HORIZON = 30
SIGNIFICANCE_THRESHOLD = 5.0  # abs(change_percent) > 5

# Metrics where a decrease is an improvement.
LOWER_IS_BETTER = frozenset({"bounce_rate", "exit_rate", "error_rate", "load_time"})

FALLBACK_CONFIDENCE = 0.3
NO_DATA_CONFIDENCE = 0.0


@dataclass(slots=True)
class CheckpointWindows:
    before_start: datetime
    before_end: datetime
    after_start: datetime
    after_end: datetime


@dataclass(slots=True)
class MetricDelta:
    name: str
    source: str
    before: float
    after: float
    change_percent: float

    def as_dict(self) -> dict:
        return {
            "name": self.name,
            "source": self.source,
            "before": self.before,
            "after": self.after,
            "change_percent": self.change_percent,
            "assessment": metric_assessment(self.name, self.change_percent).value,
        }


@dataclass(slots=True)
class FallbackVerdict:
    assessment: Assessment
    confidence: float
    reasoning: str
    top_metric: MetricDelta | None = None


@dataclass(slots=True)
class StatusTransition:
    new_status: ChangeStatus
    reason: str


def change_percent(before: float, after: float) -> float:
    """Percent delta rounded to one decimal; 0 -> positive counts as +100%."""
    if before == 0:
        return 100.0 if after > 0 else 0.0
    return round(((after - before) / before) * 1000) / 10


def days_since(moment: datetime, now: datetime) -> int:
    return int((as_utc(now) - as_utc(moment)).total_seconds() // 86400)


def get_eligible_horizons(
    first_detected_at: datetime,
    now: datetime,
    existing_horizons: Iterable[int] = (),
) -> list[int]:
    """Horizons whose whole-day age has elapsed and that have no checkpoint yet."""
    elapsed = days_since(first_detected_at, now)
    existing = set(existing_horizons)
    return [h for h in HORIZONS if elapsed >= h and h not in existing]


def compute_windows(first_detected_at: datetime, horizon_days: int) -> CheckpointWindows:
    """Before: [midnight - h, midnight). After: [detected_at, midnight + h)."""
    detected = as_utc(first_detected_at)
    midnight = detected.replace(hour=0, minute=0, second=0, microsecond=0)
    return CheckpointWindows(
        before_start=midnight - timedelta(days=horizon_days),
        before_end=midnight,
        after_start=detected,
        after_end=midnight + timedelta(days=horizon_days),
    )


def metric_assessment(name: str, pct: float) -> Assessment:
    if abs(pct) <= SIGNIFICANCE_THRESHOLD:
        return Assessment.NEUTRAL
    better = pct < 0 if name in LOWER_IS_BETTER else pct > 0
    return Assessment.IMPROVED if better else Assessment.REGRESSED


def _pick_top_metric(metrics: Sequence[MetricDelta], focus: str | None) -> MetricDelta | None:
    significant = [m for m in metrics if abs(m.change_percent) > SIGNIFICANCE_THRESHOLD]
    if not significant:
        return None
    if focus:
        focused = [m for m in significant if m.name == focus]
        if focused:
            significant = focused
    return max(significant, key=lambda m: abs(m.change_percent))


def fallback_assessment(
    metrics: Sequence[MetricDelta],
    *,
    horizon_days: int,
    metric_focus: str | None = None,
) -> FallbackVerdict:
    """Deterministic verdict from the single largest significant metric delta."""
    if not metrics:
        return FallbackVerdict(
            Assessment.INCONCLUSIVE,
            NO_DATA_CONFIDENCE,
            f"No metric data was available for the D+{horizon_days} window.",
        )

    top = _pick_top_metric(metrics, metric_focus)
    if top is None:
        return FallbackVerdict(
            Assessment.NEUTRAL,
            FALLBACK_CONFIDENCE,
            f"At D+{horizon_days} no tracked metric moved more than "
            f"{SIGNIFICANCE_THRESHOLD:g}% relative to the prior window.",
        )

    verdict = metric_assessment(top.name, top.change_percent)
    direction = "up" if top.change_percent > 0 else "down"
    return FallbackVerdict(
        verdict,
        FALLBACK_CONFIDENCE,
        f"At D+{horizon_days}, {top.name.replace('_', ' ')} ({top.source}) was {direction} "
        f"{abs(top.change_percent):g}% after the change, which is associated with a "
        f"{verdict.value} outcome. Automated rule-based assessment.",
        top_metric=top,
    )


def resolve_status_transition(
    current_status: ChangeStatus | str,
    horizon_days: int,
    assessment: Assessment | str,
) -> StatusTransition | None:
    status = ChangeStatus(current_status)
    verdict = Assessment(assessment)

    if is_terminal(status):
        return None
    if horizon_days < DECISION_HORIZON:
        return None

    if horizon_days == DECISION_HORIZON:
        if status is not ChangeStatus.WATCHING:
            return None
        if verdict is Assessment.IMPROVED:
            return StatusTransition(ChangeStatus.VALIDATED, f"D+{horizon_days}: metrics improved")
        if verdict is Assessment.REGRESSED:
            return StatusTransition(ChangeStatus.REGRESSED, f"D+{horizon_days}: metrics regressed")
        return StatusTransition(ChangeStatus.INCONCLUSIVE, f"D+{horizon_days}: no significant change")

    if verdict in (Assessment.NEUTRAL, Assessment.INCONCLUSIVE):
        return None
    if status is ChangeStatus.VALIDATED and verdict is Assessment.REGRESSED:
        return StatusTransition(ChangeStatus.REGRESSED, f"D+{horizon_days}: trend reversed to regression")
    if status is ChangeStatus.REGRESSED and verdict is Assessment.IMPROVED:
        return StatusTransition(ChangeStatus.VALIDATED, f"D+{horizon_days}: trend reversed to improvement")
    if status is ChangeStatus.INCONCLUSIVE:
        new_status = ChangeStatus.VALIDATED if verdict is Assessment.IMPROVED else ChangeStatus.REGRESSED
        return StatusTransition(new_status, f"D+{horizon_days}: clear signal emerged")
    return None


def format_checkpoint_observation(
    element: str,
    first_detected_at: datetime,
    horizon_days: int,
    top_metric: MetricDelta | None,
    assessment: Assessment | str,
) -> str:
    detected = as_utc(first_detected_at)
    date_str = f"{detected:%b} {detected.day}"
    if top_metric is None or Assessment(assessment) is Assessment.INCONCLUSIVE:
        return f"{element} changed on {date_str}. At {horizon_days} days: no significant metric movement."
    direction = "up" if top_metric.change_percent > 0 else "down"
    name = top_metric.name.replace("_", " ")
    return (
        f"{element} changed on {date_str}. At {horizon_days} days: "
        f"{name} {direction} {abs(top_metric.change_percent):g}%."
    )
