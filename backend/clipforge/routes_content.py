from __future__ import annotations

from fastapi import APIRouter, Depends, File, Form, UploadFile, status
from sqlalchemy.ext.asyncio import AsyncSession

from clipforge.auth import CurrentUser
from clipforge.db import get_session
from clipforge.schemas import ContentRead, ContentSummary, ImportUrlRequest
from clipforge.services import pipeline_orchestrator as orchestrator

router = APIRouter(prefix="/api/content", tags=["content"])

SessionDep = Depends(get_session)


@router.get("", response_model=list[ContentSummary])
async def list_contents(user_id: str = CurrentUser, session: AsyncSession = SessionDep):
    return await orchestrator.list_contents(session, user_id)


@router.post("/upload", response_model=ContentRead, status_code=status.HTTP_201_CREATED)
async def upload_content(
    file: UploadFile = File(...),
    title: str | None = Form(default=None),
    description: str | None = Form(default=None),
    user_id: str = CurrentUser,
    session: AsyncSession = SessionDep,
):
    data = await file.read()
    return await orchestrator.create_upload(
        session,
        user_id,
        filename=file.filename or "",
        content_type=file.content_type or "",
        data=data,
        title=title,
        description=description,
    )


@router.post("/import-url", response_model=dict, status_code=status.HTTP_202_ACCEPTED)
async def import_url(payload: ImportUrlRequest, user_id: str = CurrentUser, session: AsyncSession = SessionDep):
    """Create a Content from a YouTube/TikTok/media URL and start processing it."""
    return await orchestrator.import_from_url(
        session, user_id, payload.url, payload.source_type.value, title=payload.title
    )


@router.get("/{content_id}", response_model=ContentRead)
async def get_content(content_id: int, user_id: str = CurrentUser, session: AsyncSession = SessionDep):
    return await orchestrator.get_content(session, user_id, content_id)


@router.post("/{content_id}/process", response_model=dict, status_code=status.HTTP_202_ACCEPTED)
async def process_content(content_id: int, user_id: str = CurrentUser, session: AsyncSession = SessionDep):
    """Start the transcribe -> analyze -> plan job. Returns immediately."""
    return await orchestrator.start_processing(session, user_id, content_id)


@router.post("/{content_id}/reprocess", response_model=dict, status_code=status.HTTP_202_ACCEPTED)
async def reprocess_content(content_id: int, user_id: str = CurrentUser, session: AsyncSession = SessionDep):
    return await orchestrator.request_reprocess(session, user_id, content_id)


@router.get("/{content_id}/status", response_model=dict)
async def content_status(content_id: int, user_id: str = CurrentUser, session: AsyncSession = SessionDep):
    return await orchestrator.get_processing_status(session, user_id, content_id)


@router.delete("/{content_id}", response_model=dict)
async def delete_content(content_id: int, user_id: str = CurrentUser, session: AsyncSession = SessionDep):
    return await orchestrator.delete_content(session, user_id, content_id)
