"""Metric provider interface."""
from __future__ import annotations

import abc
import logging
from datetime import datetime

import httpx

from loupe.checkpoints import CheckpointWindows, MetricDelta, change_percent
from loupe.config import settings

logger = logging.getLogger(__name__)


class ProviderError(RuntimeError):
    """A metric source could not be queried."""


def window_days(start: datetime, end: datetime) -> float:
    return max((end - start).total_seconds() / 86400.0, 1 / 24)


def per_day_delta(
    name: str, source: str, before_total: float, after_total: float, windows: CheckpointWindows
) -> MetricDelta:
    """Compare daily averages; the after window starts mid-day so totals are not comparable."""
    before = round(before_total / window_days(windows.before_start, windows.before_end), 2)
    after = round(after_total / window_days(windows.after_start, windows.after_end), 2)
    return MetricDelta(name, source, before, after, change_percent(before, after))


def rate_delta(name: str, source: str, before: float, after: float) -> MetricDelta:
    before = round(float(before), 1)
    after = round(float(after), 1)
    return MetricDelta(name, source, before, after, change_percent(before, after))


class MetricsProvider(abc.ABC):
    """Returns before/after deltas for one page over one checkpoint window pair."""

    name: str = "unknown"

    def __init__(self, config: dict, *, client: httpx.AsyncClient | None = None) -> None:
        self.config = dict(config or {})
        self._client = client

    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_S)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @abc.abstractmethod
    async def get_metrics(self, page_url: str, windows: CheckpointWindows) -> list[MetricDelta]:
        ...
