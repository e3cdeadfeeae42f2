"""Provider construction and metric gathering across connected sources."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable

from loupe.checkpoints import CheckpointWindows, MetricDelta
from loupe.metrics import METRIC_PROVIDER_ERRORS_TOTAL
from loupe.metrics_providers.base import MetricsProvider, ProviderError
from loupe.metrics_providers.database import DatabaseProvider
from loupe.metrics_providers.ga4 import GA4Provider
from loupe.metrics_providers.posthog import PostHogProvider

logger = logging.getLogger(__name__)

PROVIDER_CLASSES: dict[str, type[MetricsProvider]] = {
    "posthog": PostHogProvider,
    "ga4": GA4Provider,
    "database": DatabaseProvider,
}


@dataclass(slots=True)
class GatheredMetrics:
    metrics: list[MetricDelta] = field(default_factory=list)
    sources: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def provider_label(self) -> str:
        if not self.sources:
            return "none"
        return "+".join(self.sources)


def build_providers(integrations: Iterable) -> list[MetricsProvider]:
    """One provider per enabled integration; misconfigured ones are skipped."""
    providers: list[MetricsProvider] = []
    for integration in integrations:
        if not getattr(integration, "enabled", True):
            continue
        cls = PROVIDER_CLASSES.get(integration.provider)
        if cls is None:
            logger.warning("Unknown metric provider %r", integration.provider)
            continue
        try:
            providers.append(cls(integration.config_json or {}))
        except ProviderError as exc:
            logger.warning("Skipping %s integration %s: %s", integration.provider, integration.id, exc)
    return providers


async def gather_metrics(
    providers: Iterable[MetricsProvider], page_url: str, windows: CheckpointWindows
) -> GatheredMetrics:
    """Query every provider; a failing provider contributes nothing."""
    gathered = GatheredMetrics()
    for provider in providers:
        try:
            deltas = await provider.get_metrics(page_url, windows)
        except Exception as exc:
            METRIC_PROVIDER_ERRORS_TOTAL.labels(provider=provider.name).inc()
            logger.warning("Metric provider %s failed for %s: %s", provider.name, page_url, exc)
            gathered.failed.append(provider.name)
            continue
        if deltas:
            gathered.metrics.extend(deltas)
            gathered.sources.append(provider.name)
    return gathered
