"""PostHog metrics through the HogQL query API."""
from __future__ import annotations

import logging
from urllib.parse import urlparse

import httpx

from loupe.checkpoints import CheckpointWindows, MetricDelta
from loupe.config import settings
from loupe.metrics_providers.base import MetricsProvider, ProviderError, per_day_delta, rate_delta

logger = logging.getLogger(__name__)

ALLOWED_HOSTS = {
    "https://us.posthog.com",
    "https://eu.posthog.com",
    "https://us.i.posthog.com",
    "https://eu.i.posthog.com",
    "https://app.posthog.com",
}


def _escape(value: str) -> str:
    return (
        value.replace("\\", "\\\\")
        .replace("'", "\\'")
        .replace("%", "\\%")
        .replace("_", "\\_")
    )


def _ts(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S")


class PostHogProvider(MetricsProvider):
    name = "posthog"

    def __init__(self, config: dict, *, client: httpx.AsyncClient | None = None) -> None:
        super().__init__(config, client=client)
        self.host = (self.config.get("host") or settings.POSTHOG_HOST).rstrip("/")
        if self.host not in ALLOWED_HOSTS:
            raise ProviderError(f"Invalid PostHog host: {self.host}")
        self.project_id = str(self.config.get("project_id") or "")
        if not self.project_id.isdigit():
            raise ProviderError("PostHog project_id must be numeric")
        self.api_key = self.config.get("api_key") or ""

    async def _query(self, hogql: str) -> list[list]:
        url = f"{self.host}/api/projects/{self.project_id}/query/"
        try:
            resp = await self.client().post(
                url,
                headers={"Authorization": f"Bearer {self.api_key}"},
                json={"query": {"kind": "HogQLQuery", "query": hogql}},
            )
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise ProviderError(f"PostHog query failed: {exc}") from exc
        return resp.json().get("results") or []

    def _url_filter(self, page_url: str) -> str:
        parsed = urlparse(page_url)
        path = parsed.path.rstrip("/") or "/"
        target = _escape(f"{parsed.hostname or ''}{path}")
        return f"properties.$current_url LIKE '%{target}%'"

    async def _window(self, page_url: str, start, end) -> tuple[float, float, float]:
        where = f"event = '$pageview' AND {self._url_filter(page_url)} AND timestamp >= toDateTime('{_ts(start)}') AND timestamp < toDateTime('{_ts(end)}')"
        totals = await self._query(
            f"SELECT count() AS pageviews, count(DISTINCT person_id) AS unique_visitors FROM events WHERE {where}"
        )
        bounce = await self._query(
            "SELECT countIf(session_pageviews = 1) * 100.0 / greatest(count(), 1) AS bounce_rate "
            f"FROM (SELECT $session_id, count() AS session_pageviews FROM events WHERE {where} GROUP BY $session_id)"
        )
        row = totals[0] if totals else [0, 0]
        bounce_rate = (bounce[0][0] if bounce and bounce[0] else 0) or 0
        return float(row[0] or 0), float(row[1] or 0), float(bounce_rate)

    async def get_metrics(self, page_url: str, windows: CheckpointWindows) -> list[MetricDelta]:
        pv_b, uv_b, br_b = await self._window(page_url, windows.before_start, windows.before_end)
        pv_a, uv_a, br_a = await self._window(page_url, windows.after_start, windows.after_end)
        if not any((pv_b, pv_a)):
            logger.info("PostHog returned no pageviews for %s", page_url)
            return []
        return [
            per_day_delta("pageviews", self.name, pv_b, pv_a, windows),
            per_day_delta("unique_visitors", self.name, uv_b, uv_a, windows),
            rate_delta("bounce_rate", self.name, br_b, br_a),
        ]
