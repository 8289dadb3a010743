from __future__ import annotations

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from clipforge.auth import CurrentUser
from clipforge.db import get_session
from clipforge.models import as_utc
from clipforge.schemas import PublishNowRequest, ScheduledPostRead, ScheduleRequest
from clipforge.services import publishing_scheduler

router = APIRouter(prefix="/api", tags=["schedule"])

SessionDep = Depends(get_session)


@router.get("/schedule", response_model=list[ScheduledPostRead])
async def list_scheduled(user_id: str = CurrentUser, session: AsyncSession = SessionDep):
    return await publishing_scheduler.list_scheduled_posts(session, user_id)


@router.post("/schedule", response_model=ScheduledPostRead, status_code=status.HTTP_201_CREATED)
async def create_scheduled(payload: ScheduleRequest, user_id: str = CurrentUser, session: AsyncSession = SessionDep):
    post = await publishing_scheduler.schedule_post(
        session,
        user_id,
        platform=payload.platform.value,
        scheduled_for=payload.scheduled_at,
        generated_content_id=payload.generated_content_id,
        text=payload.content,
    )
    return ScheduledPostRead(
        id=post.id,
        generated_content_id=post.generated_content_id,
        platform=post.platform,
        scheduled_for=as_utc(post.scheduled_for),
        status=post.status,
    )


@router.delete("/schedule/{post_id}", response_model=dict)
async def cancel_scheduled(post_id: int, user_id: str = CurrentUser, session: AsyncSession = SessionDep):
    return await publishing_scheduler.cancel_scheduled_post(session, user_id, post_id)


@router.post("/publish", response_model=dict)
async def publish(payload: PublishNowRequest, user_id: str = CurrentUser, session: AsyncSession = SessionDep):
    """Publish a draft now; the result carries the post URL or the error."""
    return await publishing_scheduler.publish_now(
        session,
        user_id,
        payload.generated_content_id,
        payload.platform.value if payload.platform else None,
    )
