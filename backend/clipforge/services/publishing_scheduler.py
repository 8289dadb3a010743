"""
Publishing scheduler: schedule, cancel, and the periodic due-post sweep.

A sweep claims each due post with a conditional ``scheduled -> publishing``
UPDATE committed before any network I/O, so concurrent sweeps never publish
the same post twice. After the claim:

- no active account / no adapter / unrefreshable token -> post ``failed``
- publish ok -> post ``published``, generated content ``published``
- publish error -> post ``failed`` with the error, generated content
  stays ``scheduled`` (the user may reschedule)
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from clipforge.errors import InvalidRequest, InvalidState, NotFound, TokenRefreshFailed
from clipforge.models import GeneratedContent, Platform, ScheduledPost, SocialAccount, as_utc, utcnow
from clipforge.services.publisher_adapter import get_publisher, sanitize_error
from clipforge.settings import get_settings
from clipforge.state import ACTIVE_POST_STATUSES, GeneratedContentStatus, ScheduledPostStatus, transition

logger = logging.getLogger(__name__)


def _normalize_platform(platform: str) -> str:
    try:
        return Platform(platform).value
    except ValueError:
        raise InvalidRequest(f"Unsupported platform: {platform}") from None


async def _get_owned_generated(session: AsyncSession, user_id: str, gc_id: int) -> GeneratedContent:
    item = await session.get(GeneratedContent, gc_id, populate_existing=True)
    if not item or item.user_id != user_id:
        raise NotFound("Generated content not found")
    return item


async def _has_active_post(session: AsyncSession, gc_id: int) -> bool:
    row = await session.execute(
        select(ScheduledPost.id).where(
            ScheduledPost.generated_content_id == gc_id,
            ScheduledPost.status.in_(ACTIVE_POST_STATUSES),
        ).limit(1)
    )
    return row.first() is not None


async def schedule_post(
    session: AsyncSession,
    user_id: str,
    *,
    platform: str,
    scheduled_for: datetime,
    generated_content_id: int | None = None,
    text: str | None = None,
    now: datetime | None = None,
) -> ScheduledPost:
    """Schedule an existing generated content, or manual ``text``, for ``scheduled_for``."""
    now = now or utcnow()
    platform = _normalize_platform(platform)
    if scheduled_for is None:
        raise InvalidRequest("scheduled_for is required")
    when = as_utc(scheduled_for).astimezone(timezone.utc)
    if when <= now:
        raise InvalidRequest("scheduled_for must be in the future")

    if generated_content_id is None:
        if not text or not text.strip():
            raise InvalidRequest("Either generated_content_id or text is required")
        item = GeneratedContent(
            content_id=None,
            user_id=user_id,
            type=f"{platform}_post",
            platform=platform,
            content=text.strip(),
            status=GeneratedContentStatus.draft,
        )
        session.add(item)
        await session.flush()
    else:
        item = await _get_owned_generated(session, user_id, generated_content_id)
        if item.status == GeneratedContentStatus.published.value:
            raise InvalidState("Generated content is already published")
        if await _has_active_post(session, item.id):
            raise InvalidState("Generated content already has an active scheduled post")

    won = await transition(
        session, GeneratedContent, item.id, GeneratedContentStatus.scheduled,
        expected=[GeneratedContentStatus.draft, GeneratedContentStatus.scheduled, GeneratedContentStatus.failed],
        scheduled_at=when,
    )
    if not won:
        await session.rollback()
        raise InvalidState("Generated content changed status while scheduling")

    post = ScheduledPost(
        user_id=user_id,
        generated_content_id=item.id,
        platform=platform,
        scheduled_for=when,
        status=ScheduledPostStatus.scheduled,
    )
    session.add(post)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise InvalidState("Generated content already has an active scheduled post") from None
    logger.info(f"[scheduler][post={post.id}] {platform} gc={item.id} at {when.isoformat()}")
    return post


async def cancel_scheduled_post(session: AsyncSession, user_id: str, post_id: int) -> dict[str, Any]:
    """Delete a post that has not been claimed yet; its content returns to draft."""
    post = await session.get(ScheduledPost, post_id, populate_existing=True)
    if not post or post.user_id != user_id:
        raise NotFound("Scheduled post not found")

    result = await session.execute(
        delete(ScheduledPost)
        .where(ScheduledPost.id == post_id, ScheduledPost.status == ScheduledPostStatus.scheduled.value)
    )
    if result.rowcount != 1:
        await session.rollback()
        raise InvalidState("Only scheduled posts can be cancelled")

    await transition(
        session, GeneratedContent, post.generated_content_id, GeneratedContentStatus.draft,
        expected=[GeneratedContentStatus.scheduled],
        scheduled_at=None,
    )
    await session.commit()
    logger.info(f"[scheduler][post={post_id}] cancelled")
    return {"post_id": post_id, "cancelled": True}


async def _active_account(session: AsyncSession, user_id: str, platform: str) -> SocialAccount | None:
    row = await session.execute(
        select(SocialAccount).where(
            SocialAccount.user_id == user_id,
            SocialAccount.platform == platform,
            SocialAccount.is_active.is_(True),
        )
    )
    return row.scalars().first()


async def _fail_post(session: AsyncSession, post_id: int, error: str) -> dict[str, Any]:
    error = sanitize_error(error) or "publish failed"
    await transition(
        session, ScheduledPost, post_id, ScheduledPostStatus.failed,
        expected=[ScheduledPostStatus.publishing],
        error=error[:1000],
    )
    await session.commit()
    logger.warning(f"[scheduler][post={post_id}] failed: {error}")
    return {"post_id": post_id, "status": ScheduledPostStatus.failed.value, "error": error}


async def _publish_claimed(session: AsyncSession, post_id: int, now: datetime) -> dict[str, Any]:
    post = await session.get(ScheduledPost, post_id, populate_existing=True)
    item = await session.get(GeneratedContent, post.generated_content_id, populate_existing=True)
    if item is None or not (item.content or "").strip():
        return await _fail_post(session, post_id, "No content to publish")

    adapter = get_publisher(post.platform)
    if adapter is None:
        return await _fail_post(session, post_id, f"Publishing to {post.platform} is not supported")

    account = await _active_account(session, post.user_id, post.platform)
    if account is None:
        return await _fail_post(session, post_id, f"No active {post.platform} account connected")

    if account.token_expired(now):
        if not adapter.supports_refresh or not account.refresh_token:
            return await _fail_post(session, post_id, "Access token expired; reconnect the account")
        try:
            tokens = await adapter.refresh_token(account.refresh_token)
        except TokenRefreshFailed as e:
            return await _fail_post(session, post_id, f"Failed to refresh token: {e}")
        account.access_token = tokens.access_token
        account.refresh_token = tokens.refresh_token
        account.token_expires_at = tokens.expires_at
        await session.commit()
        logger.info(f"[scheduler][post={post_id}] refreshed {post.platform} token for account={account.id}")

    try:
        result = await adapter.publish(account, item.content, item.type)
    except Exception as e:
        return await _fail_post(session, post_id, f"{e.__class__.__name__}: {e}")
    if not result.success:
        return await _fail_post(session, post_id, result.error or "publish failed")

    published_at = utcnow()
    await transition(
        session, ScheduledPost, post_id, ScheduledPostStatus.published,
        expected=[ScheduledPostStatus.publishing],
        error=None, published_at=published_at, published_url=result.url,
    )
    await transition(
        session, GeneratedContent, item.id, GeneratedContentStatus.published,
        published_at=published_at, published_url=result.url,
    )
    await session.commit()
    logger.info(f"[scheduler][post={post_id}] published: {result.url}")
    return {"post_id": post_id, "status": ScheduledPostStatus.published.value, "url": result.url}


async def claim_post(session: AsyncSession, post_id: int, now: datetime) -> bool:
    """Atomically take ownership of a due post. Commits."""
    won = await transition(
        session, ScheduledPost, post_id, ScheduledPostStatus.publishing,
        expected=[ScheduledPostStatus.scheduled],
        where=[ScheduledPost.scheduled_for <= now],
        claimed_at=now,
    )
    await session.commit()
    return won


async def run_publishing_sweep(
    session: AsyncSession, now: datetime | None = None, *, batch_size: int | None = None
) -> dict[str, Any]:
    """Publish every post due at ``now``; one post's failure does not stop the rest.

    Returns a report dict with processed / published / failed / skipped.
    """
    now = now or utcnow()
    batch_size = batch_size or get_settings().publish_sweep_batch_size

    due = await session.execute(
        select(ScheduledPost.id)
        .where(
            ScheduledPost.status == ScheduledPostStatus.scheduled.value,
            ScheduledPost.scheduled_for <= now,
        )
        .order_by(ScheduledPost.scheduled_for, ScheduledPost.id)
        .limit(batch_size)
    )
    post_ids = [r[0] for r in due.all()]

    report: dict[str, Any] = {
        "processed": 0, "published": 0, "failed": 0, "skipped": 0, "results": [],
    }
    for post_id in post_ids:
        if not await claim_post(session, post_id, now):
            report["skipped"] += 1
            continue
        report["processed"] += 1
        try:
            outcome = await _publish_claimed(session, post_id, now)
        except Exception as e:
            logger.exception(f"[scheduler][post={post_id}] unexpected error")
            await session.rollback()
            outcome = await _fail_post(session, post_id, f"{e.__class__.__name__}: {e}")
        report["results"].append(outcome)
        if outcome["status"] == ScheduledPostStatus.published.value:
            report["published"] += 1
        else:
            report["failed"] += 1

    if post_ids:
        logger.info(
            f"[scheduler] sweep: due={len(post_ids)} published={report['published']} "
            f"failed={report['failed']} skipped={report['skipped']}"
        )
    return report


async def publish_now(
    session: AsyncSession, user_id: str, generated_content_id: int, platform: str | None = None
) -> dict[str, Any]:
    """Publish immediately through the same claim path the sweep uses.

    Unlike a sweep failure, a failed immediate publish marks the generated
    content ``failed``.
    """
    item = await _get_owned_generated(session, user_id, generated_content_id)
    platform = _normalize_platform(platform or item.platform or "")
    if item.status == GeneratedContentStatus.published.value:
        raise InvalidState("Generated content is already published")
    if await _has_active_post(session, item.id):
        raise InvalidState("Generated content already has an active scheduled post")

    now = utcnow()
    await transition(
        session, GeneratedContent, item.id, GeneratedContentStatus.scheduled,
        expected=[GeneratedContentStatus.draft, GeneratedContentStatus.scheduled, GeneratedContentStatus.failed],
        scheduled_at=now,
    )
    post = ScheduledPost(
        user_id=user_id,
        generated_content_id=item.id,
        platform=platform,
        scheduled_for=now,
        status=ScheduledPostStatus.scheduled,
    )
    session.add(post)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise InvalidState("Generated content already has an active scheduled post") from None

    if not await claim_post(session, post.id, now):
        raise InvalidState("Post was claimed by a concurrent sweep")
    outcome = await _publish_claimed(session, post.id, now)
    if outcome["status"] == ScheduledPostStatus.failed.value:
        await transition(
            session, GeneratedContent, item.id, GeneratedContentStatus.failed,
            expected=[GeneratedContentStatus.scheduled],
        )
        await session.commit()
    return {"generated_content_id": item.id, **outcome}


async def list_scheduled_posts(session: AsyncSession, user_id: str) -> list[dict[str, Any]]:
    rows = await session.execute(
        select(ScheduledPost, GeneratedContent.content)
        .join(GeneratedContent, GeneratedContent.id == ScheduledPost.generated_content_id)
        .where(ScheduledPost.user_id == user_id)
        .order_by(ScheduledPost.scheduled_for)
    )
    return [
        {
            "id": post.id,
            "generated_content_id": post.generated_content_id,
            "platform": post.platform,
            "scheduled_for": as_utc(post.scheduled_for),
            "status": post.status,
            "error": post.error,
            "published_url": post.published_url,
            "content": text or "",
        }
        for post, text in rows.all()
    ]
