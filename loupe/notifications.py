"""Owner notifications (plain-text e-mail through the Resend HTTP API).

Notifications never block or fail the pipeline: `dispatch` hands the message
to the notifications queue and `send` logs delivery errors instead of raising.
"""
from __future__ import annotations

import logging
from typing import Sequence

import httpx

from loupe.config import settings

logger = logging.getLogger(__name__)

SEND_TASK = "loupe.workers.notifications.send_email"


async def send(email: str, subject: str, body: str, *, client: httpx.AsyncClient | None = None) -> bool:
    """Deliver one message; returns `False` (and logs) on any failure."""
    if not settings.RESEND_API_KEY:
        logger.info("E-mail disabled; would send %r to %s", subject, email)
        return False

    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_S)
    try:
        resp = await client.post(
            settings.RESEND_API_URL,
            headers={"Authorization": f"Bearer {settings.RESEND_API_KEY}"},
            json={"from": settings.EMAIL_FROM, "to": [email], "subject": subject, "text": body},
        )
        resp.raise_for_status()
    except httpx.HTTPError as exc:
        logger.error("E-mail %r to %s failed: %s", subject, email, exc)
        return False
    finally:
        if owns_client:
            await client.aclose()
    logger.info("E-mail %r sent to %s", subject, email)
    return True


def dispatch(email: str | None, subject: str, body: str) -> None:
    """Queue a message for delivery; errors are logged, never raised."""
    if not email:
        return
    from loupe.celery_app import celery

    try:
        celery.send_task(SEND_TASK, args=[email, subject, body], queue="notifications")
    except Exception as exc:
        logger.error("Could not queue e-mail %r to %s: %s", subject, email, exc)


def change_detected_message(page_url: str, elements: Sequence[str], *, trigger: str) -> tuple[str, str]:
    count = len(elements)
    noun = "change" if count == 1 else "changes"
    subject = f"{count} {noun} detected on {page_url}"
    lines = [f"Loupe detected {count} {noun} on {page_url} ({trigger} scan):", ""]
    lines += [f"- {e}" for e in elements[:10]]
    if count > 10:
        lines.append(f"- and {count - 10} more")
    lines += ["", "We'll track how your metrics move over the next 90 days.", settings.APP_URL]
    return subject, "\n".join(lines)


def change_validated_message(page_url: str, element: str, observation: str | None) -> tuple[str, str]:
    subject = f"A change on {page_url} is associated with better metrics"
    lines = [
        f'"{element}" on {page_url} is now marked validated.',
        "",
        observation or "",
        "",
        settings.APP_URL,
    ]
    return subject, "\n".join(lines).strip() + "\n"
