import asyncio
import json

import httpx
import pytest
from tenacity import wait_none

from loupe import notifications
from loupe.config import settings
from loupe.screenshots import ScreenshotClient, ScreenshotError, ScreenshotStore


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def test_capture_passes_mobile_width_and_api_key() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, content=b"\xff\xd8jpeg")

    client = ScreenshotClient("https://shots.example.com/", "secret", client=_client(handler))
    data = asyncio.run(client.capture("https://example.com/pricing", viewport_width=390))

    assert data == b"\xff\xd8jpeg"
    assert seen[0].url.path == "/screenshot"
    assert seen[0].url.params["width"] == "390"
    assert seen[0].headers["x-api-key"] == "secret"


def test_capture_client_error_is_not_retried() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        return httpx.Response(404, text="no such page")

    client = ScreenshotClient("https://shots.example.com", "", client=_client(handler))
    with pytest.raises(ScreenshotError):
        asyncio.run(client.capture("https://example.com/missing"))
    assert len(calls) == 1


def test_capture_retries_server_errors(monkeypatch) -> None:
    monkeypatch.setattr(ScreenshotClient.capture.retry, "wait", wait_none())
    statuses = iter([503, 200])

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(next(statuses), content=b"img")

    client = ScreenshotClient("https://shots.example.com", "", client=_client(handler))
    assert asyncio.run(client.capture("https://example.com/")) == b"img"


def test_store_is_content_addressed(tmp_path) -> None:
    store = ScreenshotStore(tmp_path)
    first = asyncio.run(store.save(b"capture"))
    second = asyncio.run(store.save(b"capture"))
    assert first == second
    assert first.endswith(".jpg")
    assert asyncio.run(store.load(first)) == b"capture"
    with pytest.raises(ValueError):
        asyncio.run(store.load("../etc/passwd"))


def test_send_posts_plain_text_mail(monkeypatch) -> None:
    monkeypatch.setattr(settings, "RESEND_API_KEY", "re_key")
    bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["Authorization"] == "Bearer re_key"
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"id": "m1"})

    assert asyncio.run(notifications.send("a@example.com", "Hi", "Body", client=_client(handler)))
    assert bodies[0]["to"] == ["a@example.com"]
    assert bodies[0]["text"] == "Body"


def test_send_failures_are_swallowed(monkeypatch) -> None:
    monkeypatch.setattr(settings, "RESEND_API_KEY", "re_key")
    failing = _client(lambda request: httpx.Response(500))
    assert asyncio.run(notifications.send("a@example.com", "Hi", "Body", client=failing)) is False
    monkeypatch.setattr(settings, "RESEND_API_KEY", "")
    assert asyncio.run(notifications.send("a@example.com", "Hi", "Body")) is False


def test_change_detected_message_lists_elements() -> None:
    elements = [f"Element {i}" for i in range(12)]
    subject, body = notifications.change_detected_message("https://example.com", elements, trigger="deploy")
    assert subject == "12 changes detected on https://example.com"
    assert "(deploy scan)" in body
    assert "- and 2 more" in body
