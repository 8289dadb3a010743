from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from clipforge.auth import CurrentUser
from clipforge.db import get_session
from clipforge.schemas import GenerateRequest, GenerateResponse, GeneratedContentRead, RegenerateRequest
from clipforge.services.content_generator import (
    GenerationOptions,
    generate_social_content,
    list_generated,
    regenerate_content,
)

router = APIRouter(prefix="/api/generate", tags=["generate"])

SessionDep = Depends(get_session)


@router.post("", response_model=GenerateResponse)
async def generate(payload: GenerateRequest, user_id: str = CurrentUser, session: AsyncSession = SessionDep):
    """One draft per platform; platforms that failed are listed in ``failed``."""
    result = await generate_social_content(
        session,
        user_id,
        payload.content_id,
        [p.value for p in payload.platforms],
        GenerationOptions(
            tone_of_voice=payload.tone_of_voice,
            include_hashtags=payload.include_hashtags,
            include_emojis=payload.include_emojis,
            include_quotes=payload.include_quotes,
            quote_count=payload.quote_count,
            clip_id=payload.clip_id,
        ),
    )
    return GenerateResponse(
        success=bool(result.succeeded),
        content_id=result.content_id,
        generated=[GeneratedContentRead.model_validate(g) for g in result.generated],
        quotes=[GeneratedContentRead.model_validate(q) for q in result.quotes],
        succeeded=result.succeeded,
        failed=result.failed,
    )


@router.get("", response_model=list[GeneratedContentRead])
async def list_generated_content(
    content_id: int | None = Query(default=None),
    user_id: str = CurrentUser,
    session: AsyncSession = SessionDep,
):
    return await list_generated(session, user_id, content_id)


@router.put("/{generated_content_id}", response_model=GeneratedContentRead)
async def regenerate(
    generated_content_id: int,
    payload: RegenerateRequest,
    user_id: str = CurrentUser,
    session: AsyncSession = SessionDep,
):
    return await regenerate_content(session, user_id, generated_content_id, payload.custom_prompt)
