"""
Clip renderer.

``request_clip_render`` records ``-> processing`` before anything is queued
and returns an acknowledgement that rendering started. ``render_clip`` runs
in the worker, calls the render backend, and finishes with ``ready`` (new
URLs and the requested aspect ratio) or ``error`` (last good URLs and their
ratio kept unless the caller discarded them).
"""
from __future__ import annotations

import abc
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from clipforge.errors import InvalidRequest, InvalidState, NotFound, RenderFailed
from clipforge.integrations.replicate_api import ReplicateError, run_prediction
from clipforge.models import AspectRatio, Clip, Content
from clipforge.services import jobs
from clipforge.services.publisher_adapter import sanitize_error
from clipforge.services.storage import resolve_media_url
from clipforge.settings import get_settings
from clipforge.state import ClipStatus, transition

logger = logging.getLogger(__name__)

FRAME_SIZES: dict[str, tuple[int, int]] = {
    "16:9": (1920, 1080),
    "9:16": (1080, 1920),
    "1:1": (1080, 1080),
    "4:5": (1080, 1350),
}

THUMBNAIL_OFFSET_SEC = 1.0


@dataclass
class RenderOutput:
    clip_url: str
    thumbnail_url: str


class RenderBackend(abc.ABC):
    name: str = "unknown"

    @abc.abstractmethod
    async def render(self, source_url: str, start: float, end: float, aspect_ratio: str) -> RenderOutput:
        """Cut ``[start, end)`` from ``source_url`` framed for ``aspect_ratio``."""
        ...


def ffmpeg_clip_options(start: float, end: float, aspect_ratio: str) -> str:
    width, height = FRAME_SIZES[aspect_ratio]
    return " ".join([
        f"-ss {start:.3f}",
        f"-t {end - start:.3f}",
        f'-vf "scale={width}:{height}:force_original_aspect_ratio=decrease,'
        f'pad={width}:{height}:(ow-iw)/2:(oh-ih)/2"',
        "-c:v libx264 -crf 23 -preset medium",
        "-c:a aac -b:a 128k",
    ])


def ffmpeg_thumbnail_options(timestamp: float) -> str:
    return f'-ss {timestamp:.3f} -vframes 1 -vf "scale=640:360"'


class ReplicateRenderBackend(RenderBackend):
    name = "replicate"

    async def _ffmpeg(self, source_url: str, options: str, extension: str) -> str:
        settings = get_settings()
        output = await run_prediction(
            settings.replicate_ffmpeg_version,
            {"input_file": source_url, "ffmpeg_options": options, "output_extension": extension},
            timeout_s=settings.render_timeout_sec,
        )
        if isinstance(output, list):
            output = output[0] if output else None
        if not isinstance(output, str) or not output:
            raise RenderFailed(f"ffmpeg returned no {extension} output")
        return output

    async def render(self, source_url: str, start: float, end: float, aspect_ratio: str) -> RenderOutput:
        try:
            clip_url = await self._ffmpeg(source_url, ffmpeg_clip_options(start, end, aspect_ratio), "mp4")
            thumb_at = min(start + THUMBNAIL_OFFSET_SEC, end)
            thumbnail_url = await self._ffmpeg(source_url, ffmpeg_thumbnail_options(thumb_at), "jpg")
        except ReplicateError as e:
            raise RenderFailed(str(e)) from e
        return RenderOutput(clip_url=clip_url, thumbnail_url=thumbnail_url)


class MockRenderBackend(RenderBackend):
    """Development backend: returns demo media without rendering."""

    name = "mock"

    async def render(self, source_url: str, start: float, end: float, aspect_ratio: str) -> RenderOutput:
        return RenderOutput(
            clip_url="https://res.cloudinary.com/demo/video/upload/dog.mp4",
            thumbnail_url="https://res.cloudinary.com/demo/video/upload/dog.jpg",
        )


_backend: RenderBackend | None = None


def get_render_backend() -> RenderBackend:
    global _backend
    if _backend is None:
        settings = get_settings()
        if settings.render_backend == "replicate" and settings.replicate_api_token:
            _backend = ReplicateRenderBackend()
        else:
            _backend = MockRenderBackend()
    return _backend


def set_render_backend(backend: RenderBackend | None) -> None:
    global _backend
    _backend = backend


def _normalize_ratio(aspect_ratio: str | None) -> str | None:
    if aspect_ratio is None:
        return None
    try:
        return AspectRatio(aspect_ratio).value
    except ValueError:
        raise InvalidRequest(f"Unsupported aspect ratio: {aspect_ratio}") from None


async def _get_owned_clip(session: AsyncSession, user_id: str, clip_id: int) -> Clip:
    clip = await session.get(Clip, clip_id, populate_existing=True)
    if not clip or clip.user_id != user_id:
        raise NotFound("Clip not found")
    return clip


async def request_clip_render(
    session: AsyncSession,
    user_id: str,
    clip_id: int,
    aspect_ratio: str | None = None,
    *,
    discard_previous: bool = False,
) -> dict[str, Any]:
    """Move the clip to ``processing`` and queue the render.

    The acknowledgement means rendering started, not that it succeeded.
    """
    clip = await _get_owned_clip(session, user_id, clip_id)
    ratio = _normalize_ratio(aspect_ratio)

    if clip.status == ClipStatus.processing.value:
        return {"clip_id": clip.id, "status": clip.status, "started": False, "reason": "already_processing"}

    # ``aspect_ratio`` describes the stored render; it moves only on success
    target_ratio = ratio or clip.aspect_ratio
    values: dict[str, Any] = {
        "render_started_at": datetime.now(timezone.utc),
        "requested_aspect_ratio": target_ratio,
        "error_message": None,
    }
    if discard_previous:
        values["file_url"] = None
        values["thumbnail_url"] = None

    won = await transition(
        session, Clip, clip.id, ClipStatus.processing,
        expected=[ClipStatus.pending, ClipStatus.error, ClipStatus.ready],
        **values,
    )
    if not won:
        await session.rollback()
        await session.refresh(clip)
        if clip.status == ClipStatus.processing.value:
            return {"clip_id": clip.id, "status": clip.status, "started": False, "reason": "already_processing"}
        raise InvalidState(f"Clip cannot be rendered from status {clip.status}")
    await session.commit()

    try:
        task_id = jobs.enqueue_render_job(clip.id)
    except Exception as e:
        logger.error(f"[render][clip={clip.id}] enqueue failed: {e}")
        await transition(
            session, Clip, clip.id, ClipStatus.error,
            expected=[ClipStatus.processing],
            requested_aspect_ratio=None,
            error_message=f"enqueue failed: {sanitize_error(str(e))}"[:1000],
        )
        await session.commit()
        raise

    if task_id:
        await session.execute(
            update(Clip).where(Clip.id == clip.id).values(celery_task_id=task_id)
            .execution_options(synchronize_session=False)
        )
        await session.commit()

    logger.info(f"[render][clip={clip.id}] started ({target_ratio})")
    return {
        "clip_id": clip.id,
        "status": ClipStatus.processing.value,
        "started": True,
        "aspect_ratio": target_ratio,
        "celery_task_id": task_id,
    }


async def render_clip(session: AsyncSession, clip_id: int) -> dict[str, Any]:
    """Worker side of a render. Backend failures end in ``error``; never raises for them."""
    clip = await session.get(Clip, clip_id, populate_existing=True)
    if not clip:
        return {"clip_id": clip_id, "status": "missing"}
    if clip.status != ClipStatus.processing.value:
        logger.info(f"[render][clip={clip_id}] skipped, status is {clip.status}")
        return {"clip_id": clip_id, "status": clip.status, "skipped": True}

    content = await session.get(Content, clip.content_id)
    source_url = resolve_media_url(content) if content else None
    backend = get_render_backend()
    ratio = clip.requested_aspect_ratio or clip.aspect_ratio

    try:
        if not source_url:
            raise RenderFailed("source media unavailable")
        output = await backend.render(source_url, clip.start_time, clip.end_time, ratio)
    except Exception as e:
        error = sanitize_error(str(e)) or e.__class__.__name__
        logger.warning(f"[render][clip={clip_id}] {backend.name} failed: {error}")
        await mark_render_failed(session, clip_id, error)
        return {"clip_id": clip_id, "status": ClipStatus.error.value, "error": error}

    won = await transition(
        session, Clip, clip_id, ClipStatus.ready,
        expected=[ClipStatus.processing],
        aspect_ratio=ratio,
        requested_aspect_ratio=None,
        file_url=output.clip_url,
        thumbnail_url=output.thumbnail_url,
        error_message=None,
    )
    await session.commit()
    if not won:
        logger.warning(f"[render][clip={clip_id}] finished but clip left processing; result dropped")
        return {"clip_id": clip_id, "status": "superseded"}
    logger.info(f"[render][clip={clip_id}] ready ({ratio})")
    return {
        "clip_id": clip_id,
        "status": ClipStatus.ready.value,
        "aspect_ratio": ratio,
        "file_url": output.clip_url,
        "thumbnail_url": output.thumbnail_url,
    }


async def mark_render_failed(session: AsyncSession, clip_id: int, error: str) -> bool:
    won = await transition(
        session, Clip, clip_id, ClipStatus.error,
        expected=[ClipStatus.processing],
        requested_aspect_ratio=None,
        error_message=error[:1000],
    )
    await session.commit()
    return won
