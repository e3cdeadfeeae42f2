"""Application database metrics: rows created per day, via a PostgREST endpoint."""
from __future__ import annotations

import logging
import re
from datetime import datetime

import httpx

from loupe.checkpoints import CheckpointWindows, MetricDelta
from loupe.metrics_providers.base import MetricsProvider, ProviderError, per_day_delta

logger = logging.getLogger(__name__)

_TABLE_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")


def parse_content_range(header: str | None) -> int:
    """`0-0/123` or `*/123` -> 123."""
    if not header or "/" not in header:
        return 0
    total = header.rsplit("/", 1)[1]
    return int(total) if total.isdigit() else 0


class DatabaseProvider(MetricsProvider):
    """Counts rows in configured tables; page-independent business signal."""

    name = "database"

    def __init__(self, config: dict, *, client: httpx.AsyncClient | None = None) -> None:
        super().__init__(config, client=client)
        self.project_url = (self.config.get("project_url") or "").rstrip("/")
        self.api_key = self.config.get("api_key") or ""
        self.timestamp_column = self.config.get("timestamp_column") or "created_at"
        tables = self.config.get("tables") or []
        self.tables = [t for t in tables if isinstance(t, str) and _TABLE_RE.match(t)]
        if not self.project_url or not self.api_key:
            raise ProviderError("database provider needs project_url and api_key")

    async def _count(self, table: str, start: datetime, end: datetime) -> int:
        params = [
            ("select", "*"),
            (self.timestamp_column, f"gte.{start.isoformat()}"),
            (self.timestamp_column, f"lt.{end.isoformat()}"),
        ]
        try:
            resp = await self.client().head(
                f"{self.project_url}/rest/v1/{table}",
                params=params,
                headers={
                    "apikey": self.api_key,
                    "Authorization": f"Bearer {self.api_key}",
                    "Prefer": "count=exact",
                },
            )
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise ProviderError(f"row count for {table} failed: {exc}") from exc
        return parse_content_range(resp.headers.get("content-range"))

    async def get_metrics(self, page_url: str, windows: CheckpointWindows) -> list[MetricDelta]:
        deltas = []
        for table in self.tables:
            before = await self._count(table, windows.before_start, windows.before_end)
            after = await self._count(table, windows.after_start, windows.after_end)
            if before == 0 and after == 0:
                continue
            deltas.append(per_day_delta(f"{table}_created", self.name, before, after, windows))
        return deltas
