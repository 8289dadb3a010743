from __future__ import annotations

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from clipforge.auth import CurrentUser
from clipforge.db import get_session
from clipforge.schemas import ClipCreate, ClipRead, RenderRequest
from clipforge.services import pipeline_orchestrator as orchestrator
from clipforge.services.clip_renderer import request_clip_render

router = APIRouter(prefix="/api/clips", tags=["clips"])

SessionDep = Depends(get_session)


@router.get("", response_model=list[ClipRead])
async def list_clips(
    content_id: int | None = Query(default=None),
    user_id: str = CurrentUser,
    session: AsyncSession = SessionDep,
):
    return await orchestrator.list_clips(session, user_id, content_id)


@router.post("", response_model=dict, status_code=status.HTTP_201_CREATED)
async def create_clip(payload: ClipCreate, user_id: str = CurrentUser, session: AsyncSession = SessionDep):
    return await orchestrator.create_manual_clip(
        session,
        user_id,
        payload.content_id,
        title=payload.title,
        start_time=payload.start_time,
        end_time=payload.end_time,
        aspect_ratio=payload.aspect_ratio.value,
        render_now=payload.render_now,
    )


@router.post("/{clip_id}/render", response_model=dict, status_code=status.HTTP_202_ACCEPTED)
async def render_clip(
    clip_id: int,
    payload: RenderRequest | None = None,
    user_id: str = CurrentUser,
    session: AsyncSession = SessionDep,
):
    """Acknowledges that rendering started; poll the clip for the result."""
    payload = payload or RenderRequest()
    return await request_clip_render(
        session,
        user_id,
        clip_id,
        payload.aspect_ratio.value if payload.aspect_ratio else None,
        discard_previous=payload.discard_previous,
    )


@router.delete("/{clip_id}", response_model=dict)
async def delete_clip(clip_id: int, user_id: str = CurrentUser, session: AsyncSession = SessionDep):
    return await orchestrator.delete_clip(session, user_id, clip_id)
