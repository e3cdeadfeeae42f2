"""Notification delivery worker."""
from __future__ import annotations

import asyncio
import logging

from loupe.celery_app import celery
from loupe.notifications import send

logger = logging.getLogger(__name__)


@celery.task(name="loupe.workers.notifications.send_email")
def send_email(email: str, subject: str, body: str) -> bool:
    """Fire-and-forget delivery; failures are logged by `send`."""
    return asyncio.run(send(email, subject, body))
