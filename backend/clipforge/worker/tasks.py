"""
Celery tasks.

pipeline.process_content: runs the transcribe -> analyze -> plan job for
one Content; retried with backoff on unhandled errors, and the last failed
attempt moves the Content to ``error``.

clip.render: renders one Clip inside a Redis semaphore slot so renders stay
bounded across workers.
"""
from __future__ import annotations

import asyncio
import logging

from clipforge.settings import get_settings
from clipforge.worker.celery_app import celery_app

logger = logging.getLogger(__name__)

settings = get_settings()


def _session_factory():
    from sqlalchemy.ext.asyncio import async_sessionmaker

    from clipforge.db import make_engine

    engine = make_engine(settings.async_database_url)
    return engine, async_sessionmaker(engine, expire_on_commit=False)


async def _process_content_async(content_id: int, run_id: str, final_attempt: bool) -> dict:
    from clipforge.services.pipeline_orchestrator import mark_pipeline_failed, run_content_pipeline

    engine, session_factory = _session_factory()
    try:
        async with session_factory() as session:
            return await run_content_pipeline(session, content_id, run_id)
    except Exception as e:
        logger.error(f"[worker] content {content_id} failed: {e}")
        if final_attempt:
            try:
                async with session_factory() as session:
                    await mark_pipeline_failed(session, content_id, run_id, f"worker error: {e}")
            except Exception as e2:
                logger.error(f"[worker] failed to mark content {content_id} as error: {e2}")
        raise
    finally:
        await engine.dispose()


async def _render_clip_async(clip_id: int, final_attempt: bool) -> dict:
    from clipforge.services import redis_semaphore
    from clipforge.services.clip_renderer import mark_render_failed, render_clip

    engine, session_factory = _session_factory()
    try:
        async with redis_semaphore.slot("render", settings.max_render_concurrency):
            async with session_factory() as session:
                return await render_clip(session, clip_id)
    except Exception as e:
        logger.error(f"[worker] clip {clip_id} failed: {e}")
        if final_attempt:
            try:
                async with session_factory() as session:
                    await mark_render_failed(session, clip_id, f"worker error: {e}")
            except Exception as e2:
                logger.error(f"[worker] failed to mark clip {clip_id} as error: {e2}")
        raise
    finally:
        await engine.dispose()


@celery_app.task(
    bind=True,
    name="pipeline.process_content",
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_kwargs={"max_retries": settings.pipeline_max_retries},
    queue="pipeline",
)
def process_content(self, content_id: int, run_id: str) -> dict:
    attempt = self.request.retries + 1
    logger.info(f"[worker] content {content_id} run={run_id} (celery_id={self.request.id}, attempt={attempt})")
    final_attempt = self.request.retries >= settings.pipeline_max_retries
    return asyncio.run(_process_content_async(content_id, run_id, final_attempt))


@celery_app.task(
    bind=True,
    name="clip.render",
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_kwargs={"max_retries": settings.render_max_retries},
    queue="render",
)
def render_clip_task(self, clip_id: int) -> dict:
    attempt = self.request.retries + 1
    logger.info(f"[worker] clip {clip_id} render (celery_id={self.request.id}, attempt={attempt})")
    final_attempt = self.request.retries >= settings.render_max_retries
    return asyncio.run(_render_clip_async(clip_id, final_attempt))
