"""
Externally triggered jobs (platform cron), bearer-protected with CRON_SECRET.

The in-process APScheduler runs the same operations; these endpoints exist
for deployments that drive them from outside.
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from clipforge.auth import require_cron_secret
from clipforge.db import get_session
from clipforge.services.publishing_scheduler import run_publishing_sweep
from clipforge.services.quota_ledger import reset_monthly_usage
from clipforge.services.watchdog_service import run_watchdog

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/cron", tags=["cron"], dependencies=[Depends(require_cron_secret)])

SessionDep = Depends(get_session)


@router.api_route("/publish-scheduled", methods=["GET", "POST"], response_model=dict)
async def publish_scheduled(session: AsyncSession = SessionDep):
    report = await run_publishing_sweep(session)
    logger.info(f"[cron] publish-scheduled: {report['published']} published, {report['failed']} failed")
    return {"success": True, **report}


@router.api_route("/reset-usage", methods=["GET", "POST"], response_model=dict)
async def reset_usage(session: AsyncSession = SessionDep):
    return {"success": True, **(await reset_monthly_usage(session))}


@router.api_route("/watchdog", methods=["GET", "POST"], response_model=dict)
async def watchdog(dry_run: bool = False, session: AsyncSession = SessionDep):
    return await run_watchdog(session, dry_run=dry_run)
