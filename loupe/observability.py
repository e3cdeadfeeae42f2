"""Optional OpenTelemetry bootstrap (graceful no-op if deps missing).

The API and the Celery workers report as separate services. Spans go to
the OTLP endpoint when one is configured and to the console otherwise.
"""
from __future__ import annotations

import logging

from loupe.config import settings
from loupe.logging_config import service_name

logger = logging.getLogger(__name__)


def _span_exporter():
    if settings.OTEL_EXPORTER_OTLP_ENDPOINT:
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter

        return OTLPSpanExporter(endpoint=settings.OTEL_EXPORTER_OTLP_ENDPOINT)
    from opentelemetry.sdk.trace.export import ConsoleSpanExporter

    return ConsoleSpanExporter()


def setup_opentelemetry(role: str, app=None) -> bool:
    """Best-effort OTel setup; returns whether a tracer provider was installed."""
    try:
        from opentelemetry import trace
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor

        exporter = _span_exporter()
    except Exception as exc:
        logger.info("OpenTelemetry disabled (packages missing): %s", exc)
        return False

    provider = trace.get_tracer_provider()
    if provider.__class__.__name__ != "ProxyTracerProvider":
        # Already initialized by another bootstrap.
        return False

    tracer_provider = TracerProvider(
        resource=Resource.create(
            {"service.name": service_name(role), "deployment.environment": settings.APP_ENV}
        )
    )
    tracer_provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(tracer_provider)

    if app is not None:
        try:
            from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

            FastAPIInstrumentor.instrument_app(app, excluded_urls="health,metrics")
        except Exception as exc:
            logger.info("FastAPI OTel instrumentation unavailable: %s", exc)

    try:
        from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor

        from loupe.db import engine

        SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)
    except Exception as exc:
        logger.info("SQLAlchemy OTel instrumentation unavailable: %s", exc)

    # Screenshot capture, metric providers and Resend all go through httpx.
    try:
        from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor

        HTTPXClientInstrumentor().instrument()
    except Exception as exc:
        logger.info("HTTPX OTel instrumentation unavailable: %s", exc)

    if role == "worker":
        try:
            from opentelemetry.instrumentation.celery import CeleryInstrumentor

            CeleryInstrumentor().instrument()
        except Exception as exc:
            logger.info("Celery OTel instrumentation unavailable: %s", exc)
    return True
