"""Screenshot capture client and local capture storage."""
from __future__ import annotations

import asyncio
import hashlib
import logging
from pathlib import Path

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from loupe.config import settings
from loupe.metrics import SCREENSHOT_CAPTURES_TOTAL

logger = logging.getLogger(__name__)


class ScreenshotError(RuntimeError):
    """Capture failed permanently (bad request, unreachable page)."""


class TransientScreenshotError(ScreenshotError):
    """Capture failed in a way worth retrying."""


class ScreenshotClient:
    """Client for the external capture service (`GET /screenshot?url=&width=`)."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = (base_url or settings.SCREENSHOT_SERVICE_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.SCREENSHOT_API_KEY
        self._client = client

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=settings.SCREENSHOT_TIMEOUT_S)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type(TransientScreenshotError),
        reraise=True,
    )
    async def capture(self, url: str, viewport_width: int | None = None) -> bytes:
        """Full-page JPEG capture of `url`."""
        viewport = "mobile" if viewport_width else "desktop"
        params = {"url": url}
        if viewport_width:
            params["width"] = str(viewport_width)
        headers = {"x-api-key": self.api_key} if self.api_key else {}
        try:
            resp = await self._http().get(f"{self.base_url}/screenshot", params=params, headers=headers)
        except httpx.TransportError as exc:
            SCREENSHOT_CAPTURES_TOTAL.labels(viewport=viewport, outcome="transport_error").inc()
            raise TransientScreenshotError(f"capture of {url} failed: {exc}") from exc

        if resp.status_code >= 500 or resp.status_code == 429:
            SCREENSHOT_CAPTURES_TOTAL.labels(viewport=viewport, outcome="retryable").inc()
            raise TransientScreenshotError(f"capture of {url} returned {resp.status_code}")
        if resp.status_code >= 400:
            SCREENSHOT_CAPTURES_TOTAL.labels(viewport=viewport, outcome="rejected").inc()
            raise ScreenshotError(f"capture of {url} returned {resp.status_code}: {resp.text[:200]}")
        if not resp.content:
            SCREENSHOT_CAPTURES_TOTAL.labels(viewport=viewport, outcome="empty").inc()
            raise TransientScreenshotError(f"capture of {url} returned an empty body")

        SCREENSHOT_CAPTURES_TOTAL.labels(viewport=viewport, outcome="ok").inc()
        return resp.content


class ScreenshotStore:
    """Content-addressed JPEG storage on the local filesystem."""

    def __init__(self, root: str | Path | None = None) -> None:
        self.root = Path(root or settings.SCREENSHOT_DIR)

    def _path(self, ref: str) -> Path:
        if "/" in ref or "\\" in ref or ref.startswith("."):
            raise ValueError(f"invalid screenshot ref {ref!r}")
        return self.root / ref

    def _write(self, data: bytes) -> str:
        ref = f"{hashlib.sha256(data).hexdigest()}.jpg"
        path = self._path(ref)
        if not path.exists():
            self.root.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(".tmp")
            tmp.write_bytes(data)
            tmp.replace(path)
        return ref

    async def save(self, data: bytes) -> str:
        return await asyncio.to_thread(self._write, data)

    async def load(self, ref: str) -> bytes:
        return await asyncio.to_thread(self._path(ref).read_bytes)
