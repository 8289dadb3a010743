"""
Job dispatch for background work.

With CELERY_ENABLED the job goes to the durable queue and the Celery task
id is returned. Otherwise it runs in-process as a fire-and-forget asyncio
task with its own session (local development only: not crash-safe).
"""
from __future__ import annotations

import asyncio
import logging

from clipforge.settings import get_settings

logger = logging.getLogger(__name__)

_background: set[asyncio.Task] = set()


def _spawn(coro) -> None:
    task = asyncio.get_running_loop().create_task(coro)
    _background.add(task)
    task.add_done_callback(_background.discard)


async def _content_job_background(content_id: int, run_id: str) -> None:
    from clipforge.db import AsyncSessionLocal
    from clipforge.services.pipeline_orchestrator import run_content_pipeline

    try:
        async with AsyncSessionLocal() as session:
            result = await run_content_pipeline(session, content_id, run_id)
            logger.info(f"[jobs] content {content_id} finished: {result.get('status')}")
    except Exception as e:
        logger.error(f"[jobs] content {content_id} background error: {e}")
        async with AsyncSessionLocal() as session:
            from clipforge.services.pipeline_orchestrator import mark_pipeline_failed

            await mark_pipeline_failed(session, content_id, run_id, str(e))


async def _render_job_background(clip_id: int) -> None:
    from clipforge.db import AsyncSessionLocal
    from clipforge.services.clip_renderer import render_clip

    try:
        async with AsyncSessionLocal() as session:
            result = await render_clip(session, clip_id)
            logger.info(f"[jobs] clip {clip_id} finished: {result.get('status')}")
    except Exception as e:
        logger.error(f"[jobs] clip {clip_id} background error: {e}")
        async with AsyncSessionLocal() as session:
            from clipforge.services.clip_renderer import mark_render_failed

            await mark_render_failed(session, clip_id, str(e))


def enqueue_content_job(content_id: int, run_id: str) -> str | None:
    """Queue the transcribe -> analyze -> plan job for ``content_id``."""
    settings = get_settings()
    if settings.celery_enabled:
        from clipforge.worker.tasks import process_content

        result = process_content.apply_async(args=[content_id, run_id], queue="pipeline")
        logger.info(f"[jobs] content {content_id} enqueued (celery_id={result.id}, run={run_id})")
        return result.id
    _spawn(_content_job_background(content_id, run_id))
    logger.info(f"[jobs] content {content_id} started in-process (run={run_id})")
    return None


def enqueue_render_job(clip_id: int) -> str | None:
    """Queue a render for a clip already moved to ``processing``."""
    settings = get_settings()
    if settings.celery_enabled:
        from clipforge.worker.tasks import render_clip_task

        result = render_clip_task.apply_async(args=[clip_id], queue="render")
        logger.info(f"[jobs] clip {clip_id} enqueued (celery_id={result.id})")
        return result.id
    _spawn(_render_job_background(clip_id))
    logger.info(f"[jobs] clip {clip_id} started in-process")
    return None
