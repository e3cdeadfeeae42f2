"""Prometheus metrics for pipeline and product observability."""
from __future__ import annotations

from prometheus_client import Counter, Histogram


SCANS_TOTAL = Counter(
    "loupe_scans_total",
    "Page scans by trigger, mode and outcome",
    ["trigger_type", "mode", "outcome"],
)

SCAN_LATENCY_SECONDS = Histogram(
    "loupe_scan_latency_seconds",
    "Per-page scan latency",
    ["trigger_type", "mode"],
    buckets=(1, 2, 5, 10, 20, 40, 60, 120, 240),
)

SCREENSHOT_CAPTURES_TOTAL = Counter(
    "loupe_screenshot_captures_total",
    "Screenshot captures by viewport and outcome",
    ["viewport", "outcome"],
)

CHANGES_RECORDED_TOTAL = Counter(
    "loupe_changes_recorded_total",
    "Detected change writes by path and action",
    ["path", "action"],
)

MATCH_REJECTIONS_TOTAL = Counter(
    "loupe_match_rejections_total",
    "Model match proposals rejected by the candidate guard",
    ["reason"],
)

SUPERSESSIONS_TOTAL = Counter(
    "loupe_supersessions_total",
    "Watching records superseded by overhaul aggregates",
    ["magnitude"],
)

CHANGE_STATE_TRANSITIONS_TOTAL = Counter(
    "loupe_change_state_transitions_total",
    "Detected change status transitions",
    ["from_status", "to_status", "reason"],
)

CHECKPOINTS_WRITTEN_TOTAL = Counter(
    "loupe_checkpoints_written_total",
    "Checkpoints written by horizon, assessment and source",
    ["horizon", "assessment", "assessed_by"],
)

LLM_CALLS_TOTAL = Counter(
    "loupe_llm_calls_total",
    "Model calls by purpose and outcome",
    ["purpose", "outcome"],
)

LLM_LATENCY_SECONDS = Histogram(
    "loupe_llm_latency_seconds",
    "Model call latency by purpose",
    ["purpose"],
    buckets=(0.5, 1, 2, 5, 10, 20, 40, 60, 120),
)

METRIC_PROVIDER_ERRORS_TOTAL = Counter(
    "loupe_metric_provider_errors_total",
    "Metric provider failures",
    ["provider"],
)
