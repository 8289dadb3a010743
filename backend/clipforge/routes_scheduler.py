"""
Operator view of the in-process periodic jobs (publishing sweep, monthly
usage reset, watchdog). Bearer-protected with CRON_SECRET like /api/cron.
"""
from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from clipforge.auth import require_cron_secret
from clipforge.services.scheduler import scheduler_service
from clipforge.settings import get_settings

router = APIRouter(prefix="/api/scheduler", tags=["scheduler"], dependencies=[Depends(require_cron_secret)])


class SchedulerStatus(BaseModel):
    enabled: bool
    running: bool
    jobs: list[dict]


@router.get("/status", response_model=SchedulerStatus)
async def get_scheduler_status():
    return SchedulerStatus(
        enabled=get_settings().scheduler_enabled,
        running=scheduler_service.is_running(),
        jobs=scheduler_service.get_jobs(),
    )


@router.post("/jobs/{job_id}/run", response_model=dict)
async def run_job_now(job_id: str):
    """Run one periodic job immediately, still behind its leader lock."""
    return await scheduler_service.run_now(job_id)
