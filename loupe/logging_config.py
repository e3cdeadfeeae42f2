"""JSON structured logging configuration.

Every record carries the emitting service (`loupe-api` or `loupe-worker`);
scan, page and change ids travel as `extra` fields on the records that
concern them.
"""
from __future__ import annotations

import logging
import sys

from pythonjsonlogger.json import JsonFormatter

from loupe.config import settings

LOUD_LIBRARIES = ("httpx", "anthropic", "PIL", "google.generativeai")


def service_name(role: str) -> str:
    return f"{settings.SERVICE_NAME}-{role}"


def build_formatter(role: str) -> JsonFormatter:
    return JsonFormatter(
        fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
        rename_fields={
            "asctime": "timestamp",
            "levelname": "level",
            "name": "logger",
        },
        static_fields={"service": service_name(role), "env": settings.APP_ENV},
    )


def setup_logging(role: str = "api") -> None:
    """Configure root logger with JSON output for the API or a worker process."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(build_formatter(role))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(settings.APP_LOG_LEVEL)

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("celery").setLevel(logging.INFO)
    for name in LOUD_LIBRARIES:
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.APP_ENV == "development" else logging.WARNING
    )
