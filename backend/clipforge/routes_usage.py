from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from clipforge.auth import CurrentUser
from clipforge.db import get_session
from clipforge.schemas import PlanUpdate, UsageRead
from clipforge.services import quota_ledger

router = APIRouter(prefix="/api/user", tags=["usage"])

SessionDep = Depends(get_session)


@router.get("/usage", response_model=UsageRead)
async def get_usage(user_id: str = CurrentUser, session: AsyncSession = SessionDep):
    return await quota_ledger.get_usage(session, user_id)


@router.put("/plan", response_model=UsageRead)
async def set_plan(payload: PlanUpdate, user_id: str = CurrentUser, session: AsyncSession = SessionDep):
    """Called by the billing integration when a subscription changes."""
    await quota_ledger.set_plan(session, user_id, payload.plan)
    return await quota_ledger.get_usage(session, user_id)
