"""
Clip planner: turns highlighted segments into contiguous clip plans.

Each plan references a segment range; plans whose indices are missing,
out of range, reversed, or yield a non-positive duration are dropped.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, Field

from clipforge.services.llm_provider import Malformed, PromptSpec, as_index, complete_json, format_segments
from clipforge.services.transcription import TranscriptSegment

logger = logging.getLogger(__name__)

DEFAULT_TARGET_COUNT = 5
MIN_CLIP_SECONDS = 15
MAX_CLIP_SECONDS = 60


class ClipPlanItem(BaseModel):
    title: str | None = None
    startIndex: Any = None
    endIndex: Any = None
    viralScore: Any = None
    reason: str | None = None


class ClipsPayload(BaseModel):
    clips: list[ClipPlanItem] = Field(default_factory=list)


@dataclass
class ClipPlan:
    title: str
    start_segment_index: int
    end_segment_index: int
    start_time: float
    end_time: float
    viral_score: int | None
    reason: str | None = None

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time


def _as_score(value: Any) -> int | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        score = float(value)
    except (TypeError, ValueError):
        return None
    return int(round(min(max(score, 0.0), 100.0)))


def validate_plans(
    items: list[ClipPlanItem], segments: list[TranscriptSegment], *, max_end: float | None = None
) -> tuple[list[ClipPlan], int]:
    """Keep plans satisfying 0 <= start <= end < len(segments) and end_time > start_time."""
    plans: list[ClipPlan] = []
    dropped = 0
    seen: set[tuple[int, int]] = set()
    for n, item in enumerate(items):
        start = as_index(item.startIndex)
        end = as_index(item.endIndex)
        if start is None or end is None or not (0 <= start <= end < len(segments)):
            dropped += 1
            continue
        start_time = segments[start].start
        end_time = segments[end].end
        if max_end is not None:
            end_time = min(end_time, max_end)
        if end_time <= start_time or (start, end) in seen:
            dropped += 1
            continue
        seen.add((start, end))
        plans.append(
            ClipPlan(
                title=(item.title or "").strip()[:255] or f"Clip {n + 1}",
                start_segment_index=start,
                end_segment_index=end,
                start_time=start_time,
                end_time=end_time,
                viral_score=_as_score(item.viralScore),
                reason=item.reason,
            )
        )
    return plans, dropped


def _system_prompt(target_count: int) -> str:
    return f"""You are an expert at identifying viral short-form content. Analyze the transcription and identify {target_count} clips that would perform well on social media.

For each clip:
- Should be {MIN_CLIP_SECONDS}-{MAX_CLIP_SECONDS} seconds long
- Should be self-contained (makes sense without context)
- Should have a strong hook at the start
- Should provide value or entertainment
- Prefer ranges built around segments marked [HIGHLIGHT]

Return JSON with "clips" array containing objects with:
- "title": Catchy title for the clip
- "startIndex": Index of first segment
- "endIndex": Index of last segment
- "viralScore": 0-100 score predicting viral potential
- "reason": Brief explanation of why this clip would perform well"""


async def plan_clips(
    transcript_text: str,
    segments: list[TranscriptSegment],
    *,
    target_count: int = DEFAULT_TARGET_COUNT,
    duration: float | None = None,
) -> tuple[list[ClipPlan], dict]:
    """Ask the model for clip plans and keep only the valid ones."""
    if not segments:
        return [], {"plans": 0, "dropped": 0, "degraded": False}

    prompt = PromptSpec(
        system=_system_prompt(target_count),
        user=f"Segments:\n{format_segments(segments, mark_highlights=True)}",
        temperature=0.7,
    )
    result = await complete_json(prompt, ClipsPayload)
    if isinstance(result, Malformed):
        logger.warning(f"[clip_planner] degraded to zero plans: {result.reason}")
        return [], {"plans": 0, "dropped": 0, "degraded": True, "reason": result.reason}

    plans, dropped = validate_plans(result.value.clips, segments, max_end=duration)
    if dropped:
        logger.info(f"[clip_planner] dropped {dropped} invalid plan(s)")
    return plans, {"plans": len(plans), "dropped": dropped, "degraded": False}
