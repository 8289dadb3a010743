"""
Watchdog service: finds work that stopped making progress and fails it
so the user can retry.

Stuck criteria (age measured from ``updated_at``):
- Content in transcribing/analyzing  > STUCK_PIPELINE_MINUTES   -> error
- Content in processing              > STUCK_PIPELINE_MINUTES   -> error
  (aged from ``processing_started_at``; the job was lost before it started)
- Clip in processing                  > STUCK_RENDER_MINUTES     -> error
- ScheduledPost in publishing         > STUCK_PUBLISHING_MINUTES -> failed

Failed contents re-enter the pipeline through reprocess.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from clipforge.models import Clip, Content, ScheduledPost, as_utc
from clipforge.settings import get_settings
from clipforge.state import ClipStatus, ContentStatus, ScheduledPostStatus, transition

logger = logging.getLogger(__name__)


def _age_minutes(now: datetime, updated_at: datetime) -> float:
    return (now - as_utc(updated_at)).total_seconds() / 60


async def run_watchdog(
    session: AsyncSession, *, now: datetime | None = None, dry_run: bool = False,
) -> dict[str, Any]:
    """Fail stuck contents, clips and posts.

    Every change is a conditional transition on the status that was read,
    so work that finishes while the watchdog runs is left alone.
    Returns a report dict.
    """
    settings = get_settings()
    now = now or datetime.now(timezone.utc)

    pipeline_cutoff = now - timedelta(minutes=settings.stuck_pipeline_minutes)
    render_cutoff = now - timedelta(minutes=settings.stuck_render_minutes)
    publishing_cutoff = now - timedelta(minutes=settings.stuck_publishing_minutes)

    queued_since = func.coalesce(Content.processing_started_at, Content.updated_at)
    contents = (await session.execute(
        select(
            Content.id, Content.status, Content.updated_at, Content.processing_started_at, Content.pipeline_run_id,
        ).where(
            or_(
                and_(
                    Content.status.in_([ContentStatus.transcribing.value, ContentStatus.analyzing.value]),
                    Content.updated_at < pipeline_cutoff,
                ),
                and_(Content.status == ContentStatus.processing.value, queued_since < pipeline_cutoff),
            )
        ).order_by(Content.id)
    )).all()
    clips = (await session.execute(
        select(Clip.id, Clip.updated_at).where(
            Clip.status == ClipStatus.processing.value,
            Clip.updated_at < render_cutoff,
        )
    )).all()
    posts = (await session.execute(
        select(ScheduledPost.id, ScheduledPost.updated_at).where(
            ScheduledPost.status == ScheduledPostStatus.publishing.value,
            ScheduledPost.updated_at < publishing_cutoff,
        )
    )).all()

    report_items: list[dict] = []

    for content_id, status, updated_at, started_at, run_id in contents:
        since = started_at if status == ContentStatus.processing.value and started_at else updated_at
        age = _age_minutes(now, since)
        error_msg = f"watchdog: stuck {status} > {settings.stuck_pipeline_minutes}m (age={age:.0f}m)"
        item = {"entity": "content", "id": content_id, "old_status": status, "age_minutes": round(age)}
        if dry_run:
            item["action"] = "would_mark_error"
        else:
            from clipforge.services.pipeline_orchestrator import mark_pipeline_failed

            won = await mark_pipeline_failed(session, content_id, run_id, error_msg, stage=status)
            item["action"] = "marked_error" if won else "skipped"
        report_items.append(item)

    for clip_id, updated_at in clips:
        age = _age_minutes(now, updated_at)
        error_msg = f"watchdog: stuck rendering > {settings.stuck_render_minutes}m (age={age:.0f}m)"
        item = {"entity": "clip", "id": clip_id, "old_status": "processing", "age_minutes": round(age)}
        if dry_run:
            item["action"] = "would_mark_error"
        else:
            won = await transition(
                session, Clip, clip_id, ClipStatus.error,
                expected=[ClipStatus.processing], requested_aspect_ratio=None, error_message=error_msg,
            )
            item["action"] = "marked_error" if won else "skipped"
        report_items.append(item)

    for post_id, updated_at in posts:
        age = _age_minutes(now, updated_at)
        error_msg = f"watchdog: stuck publishing > {settings.stuck_publishing_minutes}m (age={age:.0f}m)"
        item = {"entity": "scheduled_post", "id": post_id, "old_status": "publishing", "age_minutes": round(age)}
        if dry_run:
            item["action"] = "would_mark_failed"
        else:
            won = await transition(
                session, ScheduledPost, post_id, ScheduledPostStatus.failed,
                expected=[ScheduledPostStatus.publishing], error=error_msg,
            )
            item["action"] = "marked_failed" if won else "skipped"
        report_items.append(item)

    if not dry_run:
        await session.commit()

    if report_items:
        logger.warning(f"[watchdog] {len(report_items)} stuck item(s): " + ", ".join(
            f"{it['entity']}#{it['id']}({it['old_status']} {it['age_minutes']}m)" for it in report_items[:10]
        ))

    return {
        "checked_at": now.isoformat(),
        "dry_run": dry_run,
        "stuck_contents": len(contents),
        "stuck_clips": len(clips),
        "stuck_posts": len(posts),
        "items": report_items,
    }
