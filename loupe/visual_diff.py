"""Visual diff detector.

Compares a baseline capture with the current capture (desktop, optionally
mobile) through a vision model and returns a validated list of detected
changes. Unparseable output is an error, never an empty result.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Sequence

from pydantic import ValidationError

from loupe.config import settings
from loupe.core import llm
from loupe.core.images import prepare_screenshot
from loupe.core.json_extract import JSONExtractionError, extract_json
from loupe.core.prompt_text import format_watching_candidates
from loupe.match_guard import Candidate
from loupe.schemas.model_output import VisualDiffResult

logger = logging.getLogger(__name__)

VISUAL_DIFF_SYSTEM = """You detect visual changes between two captures of the same web page.

## What to report
- Copy changes: headlines, calls to action, body text, prices
- Layout changes: sections added, removed or reordered, elements moved
- Visual design changes: colours, imagery, typography, component styling

## Granularity
- One to three distinct edits: report each one separately with scope "element".
  Example: {"element": "Hero headline", "before": "Start free", "after": "Get started today", "scope": "element"}
- Several related edits inside one region: report one change with scope "section".
  Example: {"element": "Pricing section", "before": "Three plan cards", "after": "Two plan cards with toggle", "scope": "section"}
- Restructured layout or most sections changed: report a single change with scope "page".

## Linking to tracked changes
You may be given Active Watching Changes. For each change you detect:
1. If it is the same element/area and the same modification as a listed change, set
   matched_change_id to that id and match_confidence between 0.7 and 1.0.
2. Otherwise set matched_change_id to null and match_confidence between 0.0 and 0.3.
3. Always give a short match_rationale. Only ids from the list are valid.

## Not changes
Never report capture artifacts:
- compression noise, colour banding, anti-aliasing or font rendering differences
- shifts smaller than 5 pixels, shadow or gradient rendering differences
- skeleton loaders, grey placeholder blocks, blank areas or lazy content that did not load, on either capture
- cookie consent or chat widgets appearing or disappearing

## Output
Respond with ONLY this JSON object:
{
  "hasChanges": boolean,
  "changes": [
    {
      "element": "display-ready label of what changed",
      "scope": "element" | "section" | "page",
      "before": "previous state",
      "after": "new state",
      "description": "what changed",
      "matched_change_id": "id from Active Watching Changes, or null",
      "match_confidence": 0.0,
      "match_rationale": "why it does or does not match"
    }
  ]
}
If the captures are essentially identical return {"hasChanges": false, "changes": []}."""


class VisualDiffError(RuntimeError):
    """The diff could not be computed (model failure or unusable output)."""


@dataclass(slots=True)
class ImagePair:
    baseline: bytes
    current: bytes


def _image_block(data: str) -> dict:
    return {
        "type": "image",
        "source": {"type": "base64", "media_type": "image/jpeg", "data": data},
    }


def parse_visual_diff(text: str) -> VisualDiffResult:
    """Validate raw model text; raises `MalformedModelOutput`."""
    try:
        payload = extract_json(text)
    except JSONExtractionError as exc:
        raise llm.MalformedModelOutput(f"visual diff returned invalid JSON: {exc}") from exc
    if not isinstance(payload.get("changes", []), list):
        raise llm.MalformedModelOutput("visual diff 'changes' is not a list")
    try:
        return VisualDiffResult.model_validate(payload)
    except ValidationError as exc:
        raise llm.MalformedModelOutput(f"visual diff schema violation: {exc}") from exc


async def _build_content(
    desktop: ImagePair, mobile: ImagePair | None, candidates: Sequence[Candidate]
) -> list[dict]:
    max_px = settings.MAX_IMAGE_HEIGHT_PX
    images = [desktop.baseline, desktop.current]
    if mobile is not None:
        images += [mobile.baseline, mobile.current]
    encoded = await asyncio.gather(
        *(asyncio.to_thread(prepare_screenshot, img, max_px) for img in images)
    )

    if mobile is not None:
        intro = (
            "Images 1-2 are DESKTOP (baseline, then current). Images 3-4 are MOBILE "
            f"{settings.MOBILE_VIEWPORT_WIDTH}px (baseline, then current). Identify what changed."
        )
    else:
        intro = (
            "The first image is the BASELINE (previous state). The second image is the "
            "CURRENT state. Identify what changed."
        )
    linkage = format_watching_candidates(candidates, settings.MAX_WATCHING_CANDIDATES)
    text = f"{linkage}\n{intro}" if linkage else intro
    return [{"type": "text", "text": text}] + [_image_block(e) for e in encoded]


async def detect_changes(
    *,
    desktop: ImagePair,
    mobile: ImagePair | None = None,
    candidates: Sequence[Candidate] = (),
) -> VisualDiffResult:
    """Run the vision diff with the shared retry budget.

    Raises `VisualDiffError` once every attempt failed.
    """
    content = await _build_content(desktop, mobile, candidates[: settings.MAX_WATCHING_CANDIDATES])
    try:
        async for attempt in llm.retrying():
            with attempt:
                text = await llm.anthropic_complete(
                    purpose="visual_diff",
                    model=settings.VISION_MODEL,
                    system=VISUAL_DIFF_SYSTEM,
                    content=content,
                    max_tokens=settings.VISION_MAX_TOKENS,
                )
                result = parse_visual_diff(text)
    except Exception as exc:
        logger.error("Visual diff failed: %s", exc)
        raise VisualDiffError(str(exc)) from exc

    logger.info("Visual diff found %s change(s)", len(result.changes))
    return result
