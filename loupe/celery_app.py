"""Celery application: RabbitMQ broker, Redis result backend.

Scans, checkpoint sweeps and e-mail delivery run on separate queues so a
slow capture backlog never delays notifications.
"""
from __future__ import annotations

from celery import Celery
from celery.schedules import crontab
from celery.signals import setup_logging as worker_setup_logging
from celery.signals import worker_process_init
from kombu import Exchange, Queue

from loupe.config import settings
from loupe.logging_config import setup_logging
from loupe.observability import setup_opentelemetry

celery = Celery(
    "loupe",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.REDIS_URL,
    include=[
        "loupe.workers.scans",
        "loupe.workers.checkpoints",
        "loupe.workers.notifications",
    ],
)


@worker_setup_logging.connect
def _configure_worker_logging(**_kwargs) -> None:
    setup_logging("worker")


@worker_process_init.connect
def _configure_worker_tracing(**_kwargs) -> None:
    setup_opentelemetry("worker")


# ── Serialisation ──
celery.conf.accept_content = ["json"]
celery.conf.task_serializer = "json"
celery.conf.result_serializer = "json"
celery.conf.timezone = "UTC"
celery.conf.enable_utc = True

# ── Reliability ──
celery.conf.task_acks_late = True
celery.conf.worker_prefetch_multiplier = 1
celery.conf.task_reject_on_worker_lost = True

# ── Exchanges & Queues ──
default_exchange = Exchange("loupe", type="direct")

celery.conf.task_queues = (
    Queue("scans", default_exchange, routing_key="scans"),
    Queue("checkpoints", default_exchange, routing_key="checkpoints"),
    Queue("notifications", default_exchange, routing_key="notifications"),
    Queue("maintenance", default_exchange, routing_key="maintenance"),
)

celery.conf.task_default_queue = "maintenance"
celery.conf.task_default_exchange = "loupe"
celery.conf.task_default_routing_key = "maintenance"

# ── Task routes ──
celery.conf.task_routes = {
    "loupe.workers.scans.run_deploy_scan": {"queue": "scans"},
    "loupe.workers.scans.run_page_scan": {"queue": "scans"},
    "loupe.workers.scans.run_scheduled_scans": {"queue": "scans"},
    "loupe.workers.checkpoints.run_checkpoints": {"queue": "checkpoints"},
    "loupe.workers.notifications.send_email": {"queue": "notifications"},
}

# ── Beat Schedule ──
celery.conf.beat_schedule = {
    "daily-scans": {
        "task": "loupe.workers.scans.run_scheduled_scans",
        "schedule": crontab(hour=9, minute=0),
        "args": ("daily",),
    },
    "weekly-scans": {
        "task": "loupe.workers.scans.run_scheduled_scans",
        "schedule": crontab(hour=9, minute=0, day_of_week="mon"),
        "args": ("weekly",),
    },
    # After the daily scans have landed.
    "checkpoints-daily": {
        "task": "loupe.workers.checkpoints.run_checkpoints",
        "schedule": crontab(hour=10, minute=30),
    },
}
