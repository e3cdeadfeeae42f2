"""Google Analytics 4 metrics through the Data API runReport endpoint."""
from __future__ import annotations

import logging
from datetime import datetime, time, timedelta
from urllib.parse import urlparse

import httpx

from loupe.checkpoints import CheckpointWindows, MetricDelta
from loupe.config import settings
from loupe.metrics_providers.base import MetricsProvider, ProviderError, per_day_delta, rate_delta

logger = logging.getLogger(__name__)


class GA4Provider(MetricsProvider):
    """Day-granular: windows are rounded to whole dates."""

    name = "ga4"

    def __init__(self, config: dict, *, client: httpx.AsyncClient | None = None) -> None:
        super().__init__(config, client=client)
        self.property_id = str(self.config.get("property_id") or "")
        if not self.property_id.isdigit():
            raise ProviderError("GA4 property_id must be numeric")
        self.access_token = self.config.get("access_token") or ""

    async def _run_report(self, body: dict) -> dict:
        url = f"{settings.GA4_API_URL}/properties/{self.property_id}:runReport"
        try:
            resp = await self.client().post(
                url, headers={"Authorization": f"Bearer {self.access_token}"}, json=body
            )
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise ProviderError(f"GA4 runReport failed: {exc}") from exc
        return resp.json()

    async def _window(self, page_url: str, start: datetime, end: datetime) -> tuple[float, float, float]:
        parsed = urlparse(page_url)
        path = parsed.path or "/"
        # `end` is exclusive; a midnight end means the previous date is the last full day.
        last_day = end.date() - timedelta(days=1) if end.time() == time.min else end.date()
        body = {
            "dateRanges": [{"startDate": start.date().isoformat(), "endDate": last_day.isoformat()}],
            "metrics": [{"name": "screenPageViews"}, {"name": "totalUsers"}, {"name": "bounceRate"}],
            "dimensionFilter": {
                "andGroup": {
                    "expressions": [
                        {"filter": {"fieldName": "hostName", "stringFilter": {"matchType": "EXACT", "value": parsed.hostname or ""}}},
                        {"filter": {"fieldName": "pagePath", "stringFilter": {"matchType": "EXACT", "value": path}}},
                    ]
                }
            },
        }
        report = await self._run_report(body)
        rows = report.get("rows") or []
        if not rows:
            return 0.0, 0.0, 0.0
        values = [float(v.get("value") or 0) for v in rows[0].get("metricValues", [])]
        values += [0.0] * (3 - len(values))
        # bounceRate is a 0-1 fraction.
        return values[0], values[1], values[2] * 100.0

    async def get_metrics(self, page_url: str, windows: CheckpointWindows) -> list[MetricDelta]:
        pv_b, uv_b, br_b = await self._window(page_url, windows.before_start, windows.before_end)
        pv_a, uv_a, br_a = await self._window(page_url, windows.after_start, windows.after_end)
        if not any((pv_b, pv_a)):
            return []
        return [
            per_day_delta("pageviews", self.name, pv_b, pv_a, windows),
            per_day_delta("unique_visitors", self.name, uv_b, uv_a, windows),
            rate_delta("bounce_rate", self.name, br_b, br_a),
        ]
