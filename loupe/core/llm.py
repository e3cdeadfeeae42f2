"""Model clients and the shared retry policy.

Vision diff and reconciliation run on Anthropic; checkpoint assessment runs
on Gemini. Calls are blocking SDK calls pushed to a worker thread. The retry
policy wraps call *and* parse, so malformed output is retried exactly like a
transport failure.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

import anthropic
from google.api_core import exceptions as google_exceptions
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from loupe.config import settings
from loupe.metrics import LLM_CALLS_TOTAL, LLM_LATENCY_SECONDS

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3
RETRY_WAIT = wait_exponential(multiplier=1, min=1, max=10)


class MalformedModelOutput(ValueError):
    """Model answered, but not in the required shape."""


class ModelUnavailable(RuntimeError):
    """Model client is not configured."""


TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    anthropic.APIConnectionError,
    anthropic.RateLimitError,
    anthropic.InternalServerError,
    google_exceptions.ServiceUnavailable,
    google_exceptions.ResourceExhausted,
    google_exceptions.DeadlineExceeded,
    google_exceptions.InternalServerError,
    asyncio.TimeoutError,
)

RETRYABLE_ERRORS = TRANSIENT_ERRORS + (MalformedModelOutput,)


def retrying(attempts: int = MAX_ATTEMPTS) -> AsyncRetrying:
    """Fixed attempt budget with exponential backoff; the last error is re-raised."""
    return AsyncRetrying(
        stop=stop_after_attempt(attempts),
        wait=RETRY_WAIT,
        retry=retry_if_exception_type(RETRYABLE_ERRORS),
        reraise=True,
        before_sleep=lambda state: logger.warning(
            "Model call attempt %s failed: %s",
            state.attempt_number,
            state.outcome.exception() if state.outcome else None,
        ),
    )


_anthropic_client: anthropic.Anthropic | None = None
_gemini_model = None


def get_anthropic_client() -> anthropic.Anthropic:
    """Get or create the Anthropic client instance."""
    global _anthropic_client
    if _anthropic_client is None:
        if not settings.ANTHROPIC_API_KEY:
            raise ModelUnavailable("ANTHROPIC_API_KEY not configured")
        _anthropic_client = anthropic.Anthropic(
            api_key=settings.ANTHROPIC_API_KEY,
            timeout=float(settings.LLM_TIMEOUT_S),
            max_retries=0,
        )
    return _anthropic_client


def get_gemini_model():
    global _gemini_model
    if _gemini_model is None:
        if not settings.GEMINI_API_KEY:
            raise ModelUnavailable("GEMINI_API_KEY not configured")
        import google.generativeai as genai

        genai.configure(api_key=settings.GEMINI_API_KEY)
        _gemini_model = genai.GenerativeModel(settings.LLM_MODEL)
        logger.info("Gemini model %s configured", settings.LLM_MODEL)
    return _gemini_model


def _message_text(message: Any) -> str:
    parts = [getattr(block, "text", "") for block in getattr(message, "content", []) or []]
    return "".join(p for p in parts if p)


async def anthropic_complete(
    *,
    purpose: str,
    model: str,
    content: list[dict[str, Any]] | str,
    system: str | None = None,
    max_tokens: int = 4000,
) -> str:
    """Single Anthropic messages call; returns the concatenated text blocks."""
    client = get_anthropic_client()
    kwargs: dict[str, Any] = {
        "model": model,
        "max_tokens": max_tokens,
        "messages": [{"role": "user", "content": content}],
    }
    if system:
        kwargs["system"] = system

    started = time.perf_counter()
    try:
        message = await asyncio.to_thread(client.messages.create, **kwargs)
    except Exception:
        LLM_CALLS_TOTAL.labels(purpose=purpose, outcome="error").inc()
        raise
    finally:
        LLM_LATENCY_SECONDS.labels(purpose=purpose).observe(time.perf_counter() - started)
    LLM_CALLS_TOTAL.labels(purpose=purpose, outcome="ok").inc()
    return _message_text(message)


async def gemini_complete(*, purpose: str, prompt: str) -> str:
    model = get_gemini_model()
    started = time.perf_counter()
    try:
        response = await asyncio.wait_for(
            asyncio.to_thread(model.generate_content, prompt),
            timeout=settings.LLM_TIMEOUT_S,
        )
    except Exception:
        LLM_CALLS_TOTAL.labels(purpose=purpose, outcome="error").inc()
        raise
    finally:
        LLM_LATENCY_SECONDS.labels(purpose=purpose).observe(time.perf_counter() - started)
    LLM_CALLS_TOTAL.labels(purpose=purpose, outcome="ok").inc()
    return response.text or ""
