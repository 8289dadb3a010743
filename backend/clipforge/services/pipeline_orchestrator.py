"""
Pipeline orchestrator: the Content state machine.

    uploading -> processing -> transcribing -> analyzing -> ready

with ``error`` reachable from processing, transcribing and analyzing, and
``error -> transcribing`` for a manual reprocess.

``start_processing`` reserves quota and records ``processing`` together with
a fresh ``pipeline_run_id`` before anything is queued. The queued job
(``run_content_pipeline``) only acts while the Content still carries that run
id, so duplicate deliveries and superseded runs are no-ops.

Each stage advance is a conditional UPDATE. The transcription output is
checkpointed on the Content when the job reaches ``analyzing``; a retried
job resumes from the checkpoint instead of transcribing again. The final
write (``ready`` + segments + pending Clips) is a single transaction, and
Clips are only inserted by the caller that won that transition.
"""
from __future__ import annotations

import logging
import re
import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from clipforge.errors import InvalidRequest, InvalidState, NotFound, QuotaExceeded, TranscriptionFailed
from clipforge.models import (
    AspectRatio,
    Clip,
    Content,
    GeneratedContent,
    ScheduledPost,
    SourceKind,
)
from clipforge.services import jobs, quota_ledger
from clipforge.services.clip_planner import plan_clips
from clipforge.services.clip_renderer import request_clip_render
from clipforge.services.highlight_analyzer import analyze_highlights
from clipforge.services.publisher_adapter import sanitize_error
from clipforge.services.storage import get_storage, resolve_media_url
from clipforge.services.transcription import Transcript, TranscriptSegment, transcribe_media
from clipforge.state import ClipStatus, ContentStatus, transition

logger = logging.getLogger("pipeline")

IN_FLIGHT = (ContentStatus.transcribing.value, ContentStatus.analyzing.value)
RUNNING = (ContentStatus.processing.value, *IN_FLIGHT)

SUPPORTED_VIDEO_TYPES = (
    "video/mp4", "video/webm", "video/quicktime", "video/x-msvideo", "video/x-matroska",
)
SUPPORTED_AUDIO_TYPES = (
    "audio/mpeg", "audio/wav", "audio/mp4", "audio/ogg", "audio/webm",
)

MB = 1024 * 1024
MAX_FILE_SIZES: dict[str, int] = {
    "free": 100 * MB,
    "starter": 500 * MB,
    "pro": 2 * 1024 * MB,
    "agency": 5 * 1024 * MB,
}

YOUTUBE_RE = re.compile(
    r"(?:youtube\.com/(?:[^/]+/.+/|(?:v|e(?:mbed)?)/|.*[?&]v=)|youtu\.be/)([^\"&?/\s]{11})"
)
TIKTOK_RE = re.compile(r"tiktok\.com/@[\w.-]+/video/(\d+)")
HTTP_URL_RE = re.compile(r"^https?://\S+$")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_run_id() -> str:
    return uuid.uuid4().hex


async def _get_owned_content(session: AsyncSession, user_id: str, content_id: int) -> Content:
    content = await session.get(Content, content_id, populate_existing=True)
    if not content or content.user_id != user_id:
        raise NotFound("Content not found")
    return content


def _ack(content: Content, started: bool, reason: str | None = None, **extra) -> dict[str, Any]:
    out = {"content_id": content.id, "status": content.status, "started": started}
    if reason:
        out["reason"] = reason
    out.update(extra)
    return out


# ── Intake ───────────────────────────────────────────────────


async def create_upload(
    session: AsyncSession,
    user_id: str,
    *,
    filename: str,
    content_type: str,
    data: bytes,
    title: str | None = None,
    description: str | None = None,
) -> Content:
    """Store an uploaded file and create its Content in ``uploading``.

    Quota is only checked here; it is reserved by ``start_processing``.
    """
    if not filename or not content_type:
        raise InvalidRequest("Missing required fields: filename, content_type")
    if content_type not in SUPPORTED_VIDEO_TYPES + SUPPORTED_AUDIO_TYPES:
        raise InvalidRequest("Unsupported file type. Please upload a video or audio file.")
    if not data:
        raise InvalidRequest("Empty file")

    counter = await quota_ledger.get_counter(session, user_id)
    max_size = MAX_FILE_SIZES.get(counter.plan, MAX_FILE_SIZES["free"])
    if len(data) > max_size:
        raise InvalidRequest(
            f"File size exceeds limit for {counter.plan} plan. Maximum: {max_size // MB} MB"
        )
    if not (counter.unlimited or counter.usage < counter.limit):
        await session.commit()
        raise QuotaExceeded(user_id, usage=counter.usage, limit=counter.limit)

    key = get_storage().put_upload(user_id, filename, data)
    content = Content(
        user_id=user_id,
        title=(title or filename.rsplit(".", 1)[0] or "Untitled")[:255],
        description=description,
        source_kind=SourceKind.upload.value,
        source_locator=filename,
        storage_key=key,
        status=ContentStatus.uploading,
    )
    session.add(content)
    await session.commit()
    logger.info(f"[pipeline][content={content.id}] uploaded {len(data)} bytes ({content_type})")
    return content


def parse_import_url(url: str, source_kind: str) -> tuple[str, str]:
    """Return (source_kind, default title) for an importable URL."""
    url = (url or "").strip()
    if source_kind == SourceKind.youtube.value:
        m = YOUTUBE_RE.search(url)
        if not m:
            raise InvalidRequest("Invalid YouTube URL")
        return source_kind, f"YouTube Video {m.group(1)}"
    if source_kind == SourceKind.tiktok.value:
        m = TIKTOK_RE.search(url)
        if not m:
            raise InvalidRequest("Invalid TikTok URL")
        return source_kind, f"TikTok Video {m.group(1)}"
    if source_kind == SourceKind.url.value:
        if not HTTP_URL_RE.match(url):
            raise InvalidRequest("Invalid media URL")
        return source_kind, url.rsplit("/", 1)[-1].split("?", 1)[0] or "Imported Media"
    raise InvalidRequest("Unsupported source type. Use youtube, tiktok or url.")


async def import_from_url(
    session: AsyncSession, user_id: str, url: str, source_kind: str, *, title: str | None = None
) -> dict[str, Any]:
    """Create a Content in ``processing`` for a remote URL and start its job."""
    kind, default_title = parse_import_url(url, source_kind)
    if not await quota_ledger.has_remaining(session, user_id):
        counter = await quota_ledger.get_counter(session, user_id)
        await session.commit()
        raise QuotaExceeded(user_id, usage=counter.usage, limit=counter.limit)

    content = Content(
        user_id=user_id,
        title=(title or default_title)[:255],
        source_kind=kind,
        source_locator=url.strip(),
        status=ContentStatus.processing,
    )
    session.add(content)
    await session.commit()
    content_id = content.id
    logger.info(f"[pipeline][content={content_id}] imported {kind} url")

    try:
        return await start_processing(session, user_id, content_id)
    except QuotaExceeded:
        # lost a race for the last unit; nothing was queued
        await session.rollback()
        await session.execute(delete(Content).where(Content.id == content_id))
        await session.commit()
        logger.info(f"[pipeline][content={content_id}] import dropped, quota taken concurrently")
        raise


# ── StartProcessing ──────────────────────────────────────────


async def start_processing(session: AsyncSession, user_id: str, content_id: int) -> dict[str, Any]:
    """Reserve quota, record ``processing`` with a new run id, then enqueue.

    Safe to call repeatedly: a Content whose job is already in flight is
    reported as such and nothing is reserved or queued a second time.
    """
    content = await _get_owned_content(session, user_id, content_id)

    if content.status in IN_FLIGHT or (
        content.status == ContentStatus.processing.value and content.pipeline_run_id
    ):
        return _ack(content, False, "already_processing")
    if content.status == ContentStatus.ready.value:
        return _ack(content, False, "already_ready")
    if content.status == ContentStatus.error.value:
        return await request_reprocess(session, user_id, content_id)

    # the ledger may roll back the session, which expires ``content``
    status = content.status
    await quota_ledger.check_and_reserve(session, user_id, content_id)

    run_id = _new_run_id()
    values = {
        "pipeline_run_id": run_id,
        "processing_started_at": _now(),
        "processing_finished_at": None,
        "error_stage": None,
        "error_message": None,
    }
    if status == ContentStatus.uploading.value:
        won = await transition(
            session, Content, content_id, ContentStatus.processing,
            expected=[ContentStatus.uploading], **values,
        )
    else:
        # imports are created in processing; the run id is the claim
        result = await session.execute(
            update(Content)
            .where(
                Content.id == content_id,
                Content.status == ContentStatus.processing.value,
                Content.pipeline_run_id.is_(None),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        won = result.rowcount == 1
    if not won:
        await session.rollback()
        content = await _get_owned_content(session, user_id, content_id)
        return _ack(content, False, "already_processing")
    await session.commit()

    return await _enqueue(session, content_id, run_id)


async def _enqueue(session: AsyncSession, content_id: int, run_id: str) -> dict[str, Any]:
    try:
        task_id = jobs.enqueue_content_job(content_id, run_id)
    except Exception as e:
        logger.error(f"[pipeline][content={content_id}] enqueue failed: {e}")
        await mark_pipeline_failed(session, content_id, run_id, f"enqueue failed: {e}", stage="queue")
        raise

    if task_id:
        await session.execute(
            update(Content).where(Content.id == content_id).values(celery_task_id=task_id)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
    content = await session.get(Content, content_id, populate_existing=True)
    logger.info(f"[pipeline][content={content_id}] queued run={run_id}")
    return _ack(content, True, run_id=run_id, celery_task_id=task_id)


# ── The job ──────────────────────────────────────────────────


async def run_content_pipeline(session: AsyncSession, content_id: int, run_id: str) -> dict[str, Any]:
    """transcribe -> analyze -> plan for one Content.

    Transcription failures end the run in ``error``. Analyzer and planner
    transport errors propagate so the queue can retry the job; the retry
    resumes from the transcription checkpoint.
    """
    content = await session.get(Content, content_id, populate_existing=True)
    if not content:
        return {"content_id": content_id, "status": "missing"}
    if content.pipeline_run_id != run_id:
        logger.info(f"[pipeline][content={content_id}] run {run_id} superseded, skipping")
        return {"content_id": content_id, "status": content.status, "skipped": True, "reason": "stale_run"}
    if content.status not in RUNNING:
        logger.info(f"[pipeline][content={content_id}] nothing to do in status {content.status}")
        return {"content_id": content_id, "status": content.status, "skipped": True}

    if content.status == ContentStatus.analyzing.value and content.transcript_checkpoint:
        transcript = Transcript.from_dict(content.transcript_checkpoint)
        logger.info(f"[pipeline][content={content_id}] resuming from transcript checkpoint")
    elif content.status == ContentStatus.analyzing.value:
        await mark_pipeline_failed(session, content_id, run_id, "transcript checkpoint missing")
        return {"content_id": content_id, "status": ContentStatus.error.value}
    else:
        if content.status == ContentStatus.processing.value:
            await transition(
                session, Content, content_id, ContentStatus.transcribing,
                expected=[ContentStatus.processing], where=[Content.pipeline_run_id == run_id],
            )
            await session.commit()
            logger.info(f"[pipeline][content={content_id}] transcribing")

        try:
            transcript = await transcribe_media(resolve_media_url(content) or "", language=content.language)
        except TranscriptionFailed as e:
            await mark_pipeline_failed(session, content_id, run_id, str(e), stage=ContentStatus.transcribing.value)
            return {"content_id": content_id, "status": ContentStatus.error.value, "error": str(e)}

        won = await transition(
            session, Content, content_id, ContentStatus.analyzing,
            expected=[ContentStatus.transcribing], where=[Content.pipeline_run_id == run_id],
            transcript_checkpoint=transcript.to_dict(),
            duration=transcript.duration,
            language=transcript.language,
        )
        await session.commit()
        if not won:
            return {"content_id": content_id, "status": "superseded"}
        logger.info(
            f"[pipeline][content={content_id}] analyzing ({len(transcript.segments)} segments)"
        )

    marked, highlight_report = await analyze_highlights(transcript.text, transcript.segments)
    plans, plan_report = await plan_clips(transcript.text, marked, duration=transcript.duration)

    won = await transition(
        session, Content, content_id, ContentStatus.ready,
        expected=[ContentStatus.analyzing], where=[Content.pipeline_run_id == run_id],
        transcript=transcript.text,
        transcript_segments=[s.to_dict() for s in marked],
        duration=transcript.duration,
        transcript_checkpoint=None,
        processing_finished_at=_now(),
        error_stage=None,
        error_message=None,
    )
    if not won:
        await session.rollback()
        logger.warning(f"[pipeline][content={content_id}] lost the ready transition, clips not created")
        return {"content_id": content_id, "status": "superseded"}

    existing = await session.execute(
        select(func.count(Clip.id)).where(Clip.content_id == content_id, Clip.origin == "planner")
    )
    created = 0
    if not existing.scalar():
        for plan in plans:
            session.add(Clip(
                content_id=content_id,
                user_id=content.user_id,
                title=plan.title[:255],
                start_time=plan.start_time,
                end_time=plan.end_time,
                start_segment_index=plan.start_segment_index,
                end_segment_index=plan.end_segment_index,
                aspect_ratio=AspectRatio.portrait.value,
                viral_score=plan.viral_score,
                reason=plan.reason,
                origin="planner",
                status=ClipStatus.pending,
            ))
            created += 1
    await session.commit()

    logger.info(
        f"[pipeline][content={content_id}] ready: highlights={highlight_report['highlights']} "
        f"clips={created} degraded={highlight_report['degraded'] or plan_report['degraded']}"
    )
    return {
        "content_id": content_id,
        "status": ContentStatus.ready.value,
        "segments": len(marked),
        "highlights": highlight_report,
        "plans": plan_report,
        "clips_created": created,
    }


async def mark_pipeline_failed(
    session: AsyncSession, content_id: int, run_id: str | None, error: str, *, stage: str | None = None
) -> bool:
    """Move a running Content to ``error``, recording the stage it reached."""
    content = await session.get(Content, content_id, populate_existing=True)
    if not content or content.status not in RUNNING:
        return False
    if run_id is not None and content.pipeline_run_id != run_id:
        return False

    values: dict[str, Any] = {
        "error_stage": stage or content.status,
        "error_message": (sanitize_error(error) or "pipeline failed")[:1000],
        "processing_finished_at": _now(),
    }
    if content.status == ContentStatus.analyzing.value and content.transcript_checkpoint:
        transcript = Transcript.from_dict(content.transcript_checkpoint)
        values["transcript"] = transcript.text
        values["transcript_segments"] = [s.to_dict() for s in transcript.segments]

    where = [Content.pipeline_run_id == run_id] if run_id is not None else []
    won = await transition(
        session, Content, content_id, ContentStatus.error,
        expected=[content.status], where=where, **values,
    )
    await session.commit()
    if won:
        logger.warning(f"[pipeline][content={content_id}] error at {values['error_stage']}: {values['error_message']}")
    return won


async def request_reprocess(session: AsyncSession, user_id: str, content_id: int) -> dict[str, Any]:
    """Re-enter a failed Content at ``transcribing`` with a fresh run id."""
    content = await _get_owned_content(session, user_id, content_id)
    if content.status != ContentStatus.error.value:
        raise InvalidState(f"Only failed content can be reprocessed (status is {content.status})")

    await quota_ledger.check_and_reserve(session, user_id, content_id)

    run_id = _new_run_id()
    won = await transition(
        session, Content, content_id, ContentStatus.transcribing,
        expected=[ContentStatus.error],
        pipeline_run_id=run_id,
        transcript=None,
        transcript_segments=None,
        transcript_checkpoint=None,
        error_stage=None,
        error_message=None,
        processing_started_at=_now(),
        processing_finished_at=None,
    )
    if not won:
        await session.rollback()
        content = await _get_owned_content(session, user_id, content_id)
        return _ack(content, False, "already_processing")
    await session.commit()
    logger.info(f"[pipeline][content={content_id}] reprocess requested")
    return await _enqueue(session, content_id, run_id)


# ── Queries ──────────────────────────────────────────────────


async def get_processing_status(session: AsyncSession, user_id: str, content_id: int) -> dict[str, Any]:
    content = await _get_owned_content(session, user_id, content_id)
    clip_count = await session.execute(select(func.count(Clip.id)).where(Clip.content_id == content.id))
    return {
        "content_id": content.id,
        "status": content.status,
        "duration": content.duration,
        "has_transcript": bool(content.transcript),
        "segments": len(content.transcript_segments or []),
        "clip_count": clip_count.scalar() or 0,
        "error_stage": content.error_stage,
        "error_message": content.error_message,
        "processing_started_at": content.processing_started_at,
        "processing_finished_at": content.processing_finished_at,
    }


async def list_contents(session: AsyncSession, user_id: str) -> list[Content]:
    rows = await session.execute(
        select(Content).where(Content.user_id == user_id).order_by(Content.created_at.desc(), Content.id.desc())
    )
    return list(rows.scalars().all())


async def get_content(session: AsyncSession, user_id: str, content_id: int) -> Content:
    return await _get_owned_content(session, user_id, content_id)


async def list_clips(session: AsyncSession, user_id: str, content_id: int | None = None) -> list[Clip]:
    stmt = select(Clip).where(Clip.user_id == user_id)
    if content_id is not None:
        stmt = stmt.where(Clip.content_id == content_id)
    rows = await session.execute(stmt.order_by(Clip.viral_score.desc().nulls_last(), Clip.id))
    return list(rows.scalars().all())


def segments_of(content: Content) -> list[TranscriptSegment]:
    return [TranscriptSegment.from_dict(s) for s in content.transcript_segments or []]


# ── Deletes and manual clips ─────────────────────────────────


async def delete_content(session: AsyncSession, user_id: str, content_id: int) -> dict[str, Any]:
    """Remove a Content with its Clips, GeneratedContent and their ScheduledPosts.

    The usage marker is kept so the Content stays counted for the period.
    """
    content = await _get_owned_content(session, user_id, content_id)
    storage_key = content.storage_key

    gc_ids = select(GeneratedContent.id).where(GeneratedContent.content_id == content.id)
    posts = await session.execute(
        delete(ScheduledPost)
        .where(ScheduledPost.generated_content_id.in_(gc_ids))
        .execution_options(synchronize_session=False)
    )
    gcs = await session.execute(delete(GeneratedContent).where(GeneratedContent.content_id == content.id))
    clips = await session.execute(delete(Clip).where(Clip.content_id == content.id))
    await session.execute(delete(Content).where(Content.id == content.id))
    await session.commit()

    if storage_key:
        try:
            get_storage().delete(storage_key)
        except OSError as e:
            logger.warning(f"[pipeline][content={content_id}] media file not removed: {e}")

    logger.info(
        f"[pipeline][content={content_id}] deleted (clips={clips.rowcount}, "
        f"generated={gcs.rowcount}, posts={posts.rowcount})"
    )
    return {
        "content_id": content_id,
        "deleted": True,
        "clips": clips.rowcount,
        "generated_contents": gcs.rowcount,
        "scheduled_posts": posts.rowcount,
    }


def _segment_range(segments: list[TranscriptSegment], start: float, end: float) -> tuple[int | None, int | None]:
    inside = [i for i, s in enumerate(segments) if s.end > start and s.start < end]
    if not inside:
        return None, None
    return inside[0], inside[-1]


async def create_manual_clip(
    session: AsyncSession,
    user_id: str,
    content_id: int,
    *,
    title: str,
    start_time: float,
    end_time: float,
    aspect_ratio: str = AspectRatio.portrait.value,
    render_now: bool = False,
) -> dict[str, Any]:
    """Create a user-defined Clip within the transcribed duration."""
    content = await _get_owned_content(session, user_id, content_id)
    if content.status != ContentStatus.ready.value or content.duration is None:
        raise InvalidState("Content must finish processing before clips can be created")
    if not (0 <= start_time < end_time <= content.duration):
        raise InvalidRequest(
            f"Clip range must satisfy 0 <= start < end <= {content.duration:.3f}"
        )
    try:
        ratio = AspectRatio(aspect_ratio).value
    except ValueError:
        raise InvalidRequest(f"Unsupported aspect ratio: {aspect_ratio}") from None

    first, last = _segment_range(segments_of(content), start_time, end_time)
    clip = Clip(
        content_id=content.id,
        user_id=user_id,
        title=(title or "Untitled clip")[:255],
        start_time=start_time,
        end_time=end_time,
        start_segment_index=first,
        end_segment_index=last,
        aspect_ratio=ratio,
        origin="manual",
        status=ClipStatus.pending,
    )
    session.add(clip)
    await session.commit()
    logger.info(f"[pipeline][content={content_id}] manual clip {clip.id} {start_time:.1f}-{end_time:.1f}s")

    out = {"clip_id": clip.id, "status": clip.status, "render": None}
    if render_now:
        out["render"] = await request_clip_render(session, user_id, clip.id)
        out["status"] = out["render"]["status"]
    return out


async def delete_clip(session: AsyncSession, user_id: str, clip_id: int) -> dict[str, Any]:
    clip = await session.get(Clip, clip_id)
    if not clip or clip.user_id != user_id:
        raise NotFound("Clip not found")
    await session.execute(
        update(GeneratedContent).where(GeneratedContent.clip_id == clip_id).values(clip_id=None)
        .execution_options(synchronize_session=False)
    )
    await session.execute(delete(Clip).where(Clip.id == clip_id))
    await session.commit()
    logger.info(f"[pipeline][clip={clip_id}] deleted")
    return {"clip_id": clip_id, "deleted": True}
