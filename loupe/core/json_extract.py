"""Tolerant JSON extraction from model responses.

Layers, in order: fenced code block, first balanced object, truncated-object
closing, then json5 for trailing commas / comments / single quotes.
"""
from __future__ import annotations

import json
import logging
import re
from typing import Any

import json5

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*\n?(.*?)```", re.DOTALL)


class JSONExtractionError(ValueError):
    """No JSON object could be recovered from the text."""


def _balanced_object(text: str) -> str | None:
    start = text.find("{")
    if start < 0:
        return None
    depth = 0
    in_string = False
    escaped = False
    for idx in range(start, len(text)):
        ch = text[idx]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start : idx + 1]
    return None


def close_truncated_json(text: str) -> str | None:
    """Append the closers a response cut off at max_tokens is missing."""
    start = text.find("{")
    if start < 0:
        return None
    body = text[start:]
    stack: list[str] = []
    in_string = False
    escaped = False
    for ch in body:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in "{[":
            stack.append("}" if ch == "{" else "]")
        elif ch in "}]" and stack:
            stack.pop()
    if not stack and not in_string:
        return None
    repaired = body
    if in_string:
        repaired += '"'
    repaired = re.sub(r",\s*$", "", repaired.rstrip())
    # Dangling key without a value.
    repaired = re.sub(r',?\s*"[^"]*"\s*:\s*$', "", repaired)
    return repaired + "".join(reversed(stack))


def _loads(candidate: str) -> Any:
    try:
        return json.loads(candidate)
    except json.JSONDecodeError:
        return json5.loads(candidate)


def extract_json(text: str | None) -> dict[str, Any]:
    """Return the first JSON object embedded in `text`.

    Raises `JSONExtractionError` when every layer fails.
    """
    if not text or not text.strip():
        raise JSONExtractionError("empty response")

    candidates: list[str] = []
    fence = _FENCE_RE.search(text)
    if fence:
        candidates.append(fence.group(1).strip())
    balanced = _balanced_object(text)
    if balanced:
        candidates.append(balanced)
    closed = close_truncated_json(text)
    if closed:
        candidates.append(closed)
    candidates.append(text.strip())

    errors: list[str] = []
    for candidate in candidates:
        try:
            parsed = _loads(candidate)
        except Exception as exc:
            errors.append(f"{type(exc).__name__}: {exc}"[:200])
            continue
        if isinstance(parsed, dict):
            return parsed
        errors.append(f"not an object: {type(parsed).__name__}")

    logger.warning("JSON extraction failed after %s layers", len(candidates))
    raise JSONExtractionError("; ".join(errors) or "no JSON object found")
