"""
Highlight analyzer: asks the language model which transcript segments are
hook-worthy and sets ``is_highlight`` on them.

Malformed output degrades to zero highlights; the pipeline continues.
"""
from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any

from pydantic import BaseModel

from clipforge.services.llm_provider import Malformed, PromptSpec, as_index, complete_json, format_segments
from clipforge.services.transcription import TranscriptSegment

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are an expert at identifying viral moments in content. Analyze the transcription and identify segments that would make great short-form clips. Look for:
- Strong hooks or attention-grabbing statements
- Emotional moments
- Key insights or revelations
- Quotable phrases
- Surprising facts or statistics
- Story climaxes
- Calls to action

Return JSON of the form {"highlights": [<segment indices, 0-based>]}. Only include the most impactful 5-10 segments."""


class HighlightsPayload(BaseModel):
    # entries are coerced one by one; a bad entry does not void the rest
    highlights: list[Any]


async def analyze_highlights(
    transcript_text: str, segments: list[TranscriptSegment]
) -> tuple[list[TranscriptSegment], dict]:
    """Return copies of ``segments`` with highlight flags, plus a small report."""
    if not segments:
        return [], {"highlights": 0, "degraded": False, "discarded": 0}

    prompt = PromptSpec(
        system=SYSTEM_PROMPT,
        user=f"Transcription:\n{transcript_text}\n\nSegments:\n{format_segments(segments)}",
        temperature=0.7,
    )
    result = await complete_json(prompt, HighlightsPayload)
    if isinstance(result, Malformed):
        logger.warning(f"[highlights] degraded to zero highlights: {result.reason}")
        return [replace(s, is_highlight=False) for s in segments], {
            "highlights": 0,
            "degraded": True,
            "reason": result.reason,
            "discarded": 0,
        }

    selected: set[int] = set()
    discarded = 0
    for raw in result.value.highlights:
        index = as_index(raw)
        if index is None or not 0 <= index < len(segments):
            discarded += 1
        else:
            selected.add(index)
    if discarded:
        logger.info(f"[highlights] discarded {discarded} invalid or out-of-range indices")
    if not 5 <= len(selected) <= 10:
        logger.debug(f"[highlights] {len(selected)} highlights selected (5-10 recommended)")

    marked = [replace(s, is_highlight=i in selected) for i, s in enumerate(segments)]
    return marked, {"highlights": len(selected), "degraded": False, "discarded": discarded}
