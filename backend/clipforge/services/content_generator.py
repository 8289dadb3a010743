"""
Content generator: platform-specific post drafts and pull-quotes.

One model call per platform, run concurrently; a failing platform is left
out of the result and reported in ``failed``. Nothing is retried here.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from pydantic import BaseModel, Field, field_validator
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from clipforge.errors import InvalidRequest, InvalidState, NotFound
from clipforge.models import Clip, Content, GeneratedContent
from clipforge.services.llm_provider import Malformed, PromptSpec, complete_json
from clipforge.services.transcription import TranscriptSegment
from clipforge.state import GeneratedContentStatus

logger = logging.getLogger(__name__)

SOCIAL_TRANSCRIPT_CHARS = 4000
QUOTE_TRANSCRIPT_CHARS = 8000
DEFAULT_QUOTE_COUNT = 5
MAX_QUOTE_CHARS = 150
QUOTE_TYPE = "quote_graphic"

PLATFORM_INSTRUCTIONS: dict[str, str] = {
    "twitter": "Create a thread of 3-5 tweets. First tweet should be a strong hook. Keep each tweet under 280 characters. Separate tweets with a line containing only ---.",
    "linkedin": "Create a professional LinkedIn post (1500 chars max) with clear formatting, line breaks, and a call to action.",
    "instagram": "Create an Instagram caption (2200 chars max) with emojis and hashtags at the end.",
    "tiktok": "Create a short, punchy TikTok caption (150 chars max) with trending hashtags.",
    "youtube": "Create a YouTube description with timestamps, key points, and relevant links section.",
    "blog": "Create a blog post outline with introduction, main points, and conclusion.",
    "newsletter": "Create a newsletter section with an engaging subject line and body content.",
}

TONES: dict[str, str] = {
    "professional": "Professional, authoritative, and business-focused",
    "casual": "Friendly, conversational, and relatable",
    "humorous": "Witty, playful, with clever observations",
    "inspirational": "Motivating, uplifting, and empowering",
}


class SocialPostPayload(BaseModel):
    content: str = Field(min_length=1)
    hashtags: list[str] = Field(default_factory=list)
    type: str = "post"

    @field_validator("hashtags", mode="before")
    @classmethod
    def _strip_hash(cls, value):
        if value is None:
            return []
        return [str(tag).lstrip("#").strip() for tag in value if str(tag).strip("# ")]


class QuoteItem(BaseModel):
    quote: str = Field(min_length=1)
    attribution: str | None = None


class QuotesPayload(BaseModel):
    quotes: list[QuoteItem] = Field(default_factory=list)


@dataclass
class GenerationOptions:
    tone_of_voice: str = "professional"
    include_hashtags: bool = True
    include_emojis: bool = True
    include_quotes: bool = True
    quote_count: int = DEFAULT_QUOTE_COUNT
    clip_id: int | None = None


@dataclass
class GenerationResult:
    content_id: int
    generated: list[GeneratedContent] = field(default_factory=list)
    quotes: list[GeneratedContent] = field(default_factory=list)
    succeeded: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)


def _validate(platforms: list[str], options: GenerationOptions) -> list[str]:
    if not platforms:
        raise InvalidRequest("At least one platform is required")
    unknown = [p for p in platforms if p not in PLATFORM_INSTRUCTIONS]
    if unknown:
        raise InvalidRequest(f"Unsupported platform(s): {', '.join(unknown)}")
    if options.tone_of_voice not in TONES:
        raise InvalidRequest(f"Unsupported tone of voice: {options.tone_of_voice}")
    return list(dict.fromkeys(platforms))


def _social_prompt(
    platform: str, transcript: str, highlights: list[TranscriptSegment], options: GenerationOptions,
    custom_prompt: str | None = None,
) -> PromptSpec:
    system = f"""You are an expert social media content creator. Create engaging content for {platform}.

Tone: {TONES[options.tone_of_voice]}
{'Include relevant hashtags.' if options.include_hashtags else 'Do not include hashtags.'}
{'Use emojis appropriately.' if options.include_emojis else 'Do not use emojis.'}

{PLATFORM_INSTRUCTIONS[platform]}

Focus on the most interesting and valuable insights from the content. Make it engaging and shareable.

Return JSON with fields: "content" (string), "hashtags" (array of strings, without #), "type" (string: post/thread/caption/description/outline)"""
    body = transcript[:SOCIAL_TRANSCRIPT_CHARS]
    if custom_prompt:
        body = f"{custom_prompt}\n\nOriginal content:\n{body}"
    key_points = "\n".join(f'- "{h.text}"' for h in highlights if h.is_highlight)
    return PromptSpec(
        system=system,
        user=f"Main transcription:\n{body}\n\nKey highlights:\n{key_points}",
        temperature=0.8,
    )


def _quotes_prompt(transcript: str, count: int) -> PromptSpec:
    return PromptSpec(
        system=f"""Extract {count} powerful, quotable statements from the transcription. These should be:
- Concise (under {MAX_QUOTE_CHARS} characters)
- Impactful and memorable
- Suitable for quote graphics
- Self-contained (understandable without context)

Return JSON with "quotes" array containing objects with "quote" and optional "attribution" fields.""",
        user=transcript[:QUOTE_TRANSCRIPT_CHARS],
        temperature=0.7,
    )


async def generate_for_platform(
    platform: str,
    transcript: str,
    highlights: list[TranscriptSegment],
    options: GenerationOptions,
    *,
    custom_prompt: str | None = None,
) -> SocialPostPayload:
    result = await complete_json(_social_prompt(platform, transcript, highlights, options, custom_prompt), SocialPostPayload)
    if isinstance(result, Malformed):
        raise ValueError(f"malformed output: {result.reason}")
    payload = result.value
    if not options.include_hashtags:
        payload.hashtags = []
    return payload


async def extract_quotes(transcript: str, count: int = DEFAULT_QUOTE_COUNT) -> list[QuoteItem]:
    result = await complete_json(_quotes_prompt(transcript, count), QuotesPayload)
    if isinstance(result, Malformed):
        logger.warning(f"[generator] quotes skipped: {result.reason}")
        return []
    return [q for q in result.value.quotes if len(q.quote) <= MAX_QUOTE_CHARS * 2][:count]


def _segments(content: Content) -> list[TranscriptSegment]:
    return [TranscriptSegment.from_dict(s) for s in content.transcript_segments or []]


async def _get_owned_content(session: AsyncSession, user_id: str, content_id: int) -> Content:
    content = await session.get(Content, content_id)
    if not content or content.user_id != user_id:
        raise NotFound("Content not found")
    return content


async def generate_social_content(
    session: AsyncSession,
    user_id: str,
    content_id: int,
    platforms: list[str],
    options: GenerationOptions | None = None,
) -> GenerationResult:
    """Fan out one generation per platform; keep whatever succeeded."""
    options = options or GenerationOptions()
    platforms = _validate(platforms, options)
    content = await _get_owned_content(session, user_id, content_id)
    if not content.transcript:
        raise InvalidState("Content has not been transcribed yet")
    if options.clip_id is not None:
        clip = await session.get(Clip, options.clip_id)
        if not clip or clip.content_id != content.id:
            raise NotFound("Clip not found")

    segments = _segments(content)
    outcomes = await asyncio.gather(
        *(generate_for_platform(p, content.transcript, segments, options) for p in platforms),
        return_exceptions=True,
    )
    quotes: list[QuoteItem] = []
    if options.include_quotes:
        try:
            quotes = await extract_quotes(content.transcript, options.quote_count)
        except Exception as e:
            logger.warning(f"[generator][content={content_id}] quote extraction failed: {e}")

    result = GenerationResult(content_id=content.id)
    for platform, outcome in zip(platforms, outcomes):
        if isinstance(outcome, BaseException):
            if not isinstance(outcome, Exception):
                raise outcome
            result.failed[platform] = str(outcome)[:300] or outcome.__class__.__name__
            logger.warning(f"[generator][content={content_id}] {platform} failed: {outcome}")
            continue
        item = GeneratedContent(
            content_id=content.id,
            clip_id=options.clip_id,
            user_id=user_id,
            type=f"{platform}_{outcome.type}",
            platform=platform,
            content=outcome.content,
            metadata_json={"hashtags": outcome.hashtags, "toneOfVoice": options.tone_of_voice},
            status=GeneratedContentStatus.draft,
        )
        session.add(item)
        result.generated.append(item)
        result.succeeded.append(platform)

    for quote in quotes:
        item = GeneratedContent(
            content_id=content.id,
            user_id=user_id,
            type=QUOTE_TYPE,
            platform=None,
            content=quote.quote,
            metadata_json={"attribution": quote.attribution},
            status=GeneratedContentStatus.draft,
        )
        session.add(item)
        result.quotes.append(item)

    await session.commit()
    logger.info(
        f"[generator][content={content_id}] ok={result.succeeded} failed={list(result.failed)} "
        f"quotes={len(result.quotes)}"
    )
    return result


async def regenerate_content(
    session: AsyncSession, user_id: str, generated_content_id: int, custom_prompt: str | None = None
) -> GeneratedContent:
    """Rewrite one draft for its platform, optionally steered by ``custom_prompt``."""
    item = await session.get(GeneratedContent, generated_content_id, populate_existing=True)
    if not item or item.user_id != user_id:
        raise NotFound("Generated content not found")
    if item.status != GeneratedContentStatus.draft.value:
        raise InvalidState("Only drafts can be regenerated")
    if not item.platform or item.platform not in PLATFORM_INSTRUCTIONS:
        raise InvalidRequest("Only platform posts can be regenerated")
    content = await session.get(Content, item.content_id) if item.content_id else None
    if not content or not content.transcript:
        raise NotFound("Source content not found")

    meta = dict(item.metadata_json or {})
    tone = meta.get("toneOfVoice") if meta.get("toneOfVoice") in TONES else "professional"
    payload = await generate_for_platform(
        item.platform, content.transcript, _segments(content), GenerationOptions(tone_of_voice=tone),
        custom_prompt=custom_prompt,
    )
    meta.update({"hashtags": payload.hashtags, "regeneratedAt": datetime.now(timezone.utc).isoformat()})
    # status guard: the draft may have been scheduled while the model was running
    result = await session.execute(
        update(GeneratedContent)
        .where(GeneratedContent.id == item.id, GeneratedContent.status == GeneratedContentStatus.draft.value)
        .values(content=payload.content, metadata_json=meta)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    if result.rowcount != 1:
        raise InvalidState("Generated content changed status during regeneration")
    await session.refresh(item)
    return item


async def list_generated(session: AsyncSession, user_id: str, content_id: int | None = None) -> list[GeneratedContent]:
    stmt = select(GeneratedContent).where(GeneratedContent.user_id == user_id).order_by(GeneratedContent.created_at.desc())
    if content_id is not None:
        stmt = stmt.where(GeneratedContent.content_id == content_id)
    return list((await session.execute(stmt)).scalars().all())
