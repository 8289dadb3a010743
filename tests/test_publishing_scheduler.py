from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from clipforge.errors import InvalidRequest, InvalidState, TokenRefreshFailed
from clipforge.models import GeneratedContent, ScheduledPost, SocialAccount, as_utc
from clipforge.services.publisher_adapter import PublisherAdapter, PublishResult, TokenSet, sanitize_error
from clipforge.services.publishing_scheduler import (
    cancel_scheduled_post,
    claim_post,
    list_scheduled_posts,
    publish_now,
    run_publishing_sweep,
    schedule_post,
)

BASE = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)
DUE = BASE + timedelta(hours=2)


class FakePublisher(PublisherAdapter):
    def __init__(self, platform="twitter", *, supports_refresh=True, fail_with=None, refresh_error=None):
        super().__init__()
        self.platform = platform
        self.supports_refresh = supports_refresh
        self.fail_with = fail_with
        self.refresh_error = refresh_error
        self.published: list[tuple[int, str, str]] = []
        self.refreshed: list[str] = []

    async def publish(self, account, text, content_type=None):
        await asyncio.sleep(0)
        self.published.append((account.id, text, account.access_token))
        if self.fail_with:
            return PublishResult(success=False, platform=self.platform, error=self.fail_with)
        n = len(self.published)
        return PublishResult(
            success=True, external_id=str(n), url=f"https://social.example.com/{self.platform}/{n}",
            platform=self.platform,
        )

    async def refresh_token(self, refresh_token):
        self.refreshed.append(refresh_token)
        if self.refresh_error:
            raise TokenRefreshFailed(self.refresh_error)
        return TokenSet(access_token="fresh-access", refresh_token="fresh-refresh", expires_at=DUE + timedelta(hours=2))


async def _draft(session, user_id="u1", platform="twitter", text="Hello world"):
    item = GeneratedContent(
        user_id=user_id, type=f"{platform}_post", platform=platform, content=text, status="draft",
    )
    session.add(item)
    await session.commit()
    return item


async def _account(session, user_id="u1", platform="twitter", *, expires_at=None, refresh_token="refresh-1", active=True):
    account = SocialAccount(
        user_id=user_id,
        platform=platform,
        platform_user_id="42",
        access_token="access-1",
        refresh_token=refresh_token,
        token_expires_at=expires_at,
        is_active=active,
    )
    session.add(account)
    await session.commit()
    return account


async def _schedule(session, item, platform="twitter", at=BASE + timedelta(hours=1)):
    return await schedule_post(
        session, item.user_id, platform=platform, scheduled_for=at, generated_content_id=item.id, now=BASE,
    )


async def _reload(session, model, pk):
    return await session.get(model, pk, populate_existing=True)


class TestSchedule:
    def test_schedule_draft(self, db):
        async def scenario(session):
            item = await _draft(session)
            post = await _schedule(session, item)
            return post, await _reload(session, GeneratedContent, item.id)

        post, item = db.run(scenario)
        assert post.status == "scheduled"
        assert as_utc(post.scheduled_for) == BASE + timedelta(hours=1)
        assert item.status == "scheduled"
        assert as_utc(item.scheduled_at) == BASE + timedelta(hours=1)

    def test_schedule_in_the_past_rejected(self, db):
        async def scenario(session):
            item = await _draft(session)
            await _schedule(session, item, at=BASE - timedelta(minutes=1))

        with pytest.raises(InvalidRequest):
            db.run(scenario)

    def test_naive_time_treated_as_utc(self, db):
        async def scenario(session):
            item = await _draft(session)
            return await _schedule(session, item, at=datetime(2026, 10, 18, 15, 0))

        post = db.run(scenario)
        assert as_utc(post.scheduled_for) == datetime(2026, 10, 18, 15, 0, tzinfo=timezone.utc)

    def test_manual_text_creates_generated_content(self, db):
        async def scenario(session):
            post = await schedule_post(
                session, "u1", platform="linkedin", scheduled_for=BASE + timedelta(hours=1),
                text="  Written by hand  ", now=BASE,
            )
            return post, await _reload(session, GeneratedContent, post.generated_content_id)

        post, item = db.run(scenario)
        assert item.content == "Written by hand"
        assert item.content_id is None
        assert item.type == "linkedin_post"
        assert item.status == "scheduled"

    def test_one_active_post_per_generated_content(self, db):
        async def scenario(session):
            item = await _draft(session)
            await _schedule(session, item)
            await _schedule(session, item, at=BASE + timedelta(hours=3))

        with pytest.raises(InvalidState):
            db.run(scenario)

    def test_unknown_platform(self, db):
        async def scenario(session):
            item = await _draft(session)
            await _schedule(session, item, platform="myspace")

        with pytest.raises(InvalidRequest):
            db.run(scenario)


class TestCancel:
    def test_cancel_returns_content_to_draft(self, db):
        async def scenario(session):
            item = await _draft(session)
            post = await _schedule(session, item)
            result = await cancel_scheduled_post(session, "u1", post.id)
            remaining = (await session.execute(select(ScheduledPost))).scalars().all()
            return result, remaining, await _reload(session, GeneratedContent, item.id)

        result, remaining, item = db.run(scenario)
        assert result == {"post_id": 1, "cancelled": True}
        assert remaining == []
        assert item.status == "draft"
        assert item.scheduled_at is None

    def test_claimed_post_cannot_be_cancelled(self, db):
        async def scenario(session):
            item = await _draft(session)
            post = await _schedule(session, item)
            assert await claim_post(session, post.id, DUE)
            await cancel_scheduled_post(session, "u1", post.id)

        with pytest.raises(InvalidState):
            db.run(scenario)


class TestClaim:
    def test_claim_is_exclusive(self, db):
        async def scenario(session):
            item = await _draft(session)
            post = await _schedule(session, item)
            return await claim_post(session, post.id, DUE), await claim_post(session, post.id, DUE)

        assert db.run(scenario) == (True, False)

    def test_not_due_cannot_be_claimed(self, db):
        async def scenario(session):
            item = await _draft(session)
            post = await _schedule(session, item)
            return await claim_post(session, post.id, BASE)

        assert db.run(scenario) is False

    def test_concurrent_sweeps_publish_each_post_once(self, db, publishers):
        adapter = FakePublisher()
        publishers("twitter", adapter)

        async def setup():
            async with db.session() as session:
                await _account(session)
                for i in range(4):
                    item = await _draft(session, text=f"post {i}")
                    await _schedule(session, item)

        async def sweep():
            async with db.session() as session:
                return await run_publishing_sweep(session, DUE)

        async def scenario():
            await setup()
            reports = await asyncio.gather(sweep(), sweep(), sweep())
            async with db.session() as session:
                posts = (await session.execute(select(ScheduledPost))).scalars().all()
            return reports, posts

        reports, posts = asyncio.run(scenario())
        assert sum(r["published"] for r in reports) == 4
        assert sorted(text for _, text, _ in adapter.published) == ["post 0", "post 1", "post 2", "post 3"]
        assert all(p.status == "published" for p in posts)


class TestSweep:
    def test_publishes_due_posts(self, db, publishers):
        adapter = FakePublisher()
        publishers("twitter", adapter)

        async def scenario(session):
            await _account(session)
            item = await _draft(session)
            post = await _schedule(session, item)
            report = await run_publishing_sweep(session, DUE)
            return report, await _reload(session, ScheduledPost, post.id), await _reload(session, GeneratedContent, item.id)

        report, post, item = db.run(scenario)
        assert report["processed"] == 1
        assert report["published"] == 1
        assert post.status == "published"
        assert post.published_url == "https://social.example.com/twitter/1"
        assert post.claimed_at is not None
        assert item.status == "published"
        assert item.published_url == post.published_url

    def test_future_posts_left_alone(self, db, publishers):
        adapter = FakePublisher()
        publishers("twitter", adapter)

        async def scenario(session):
            await _account(session)
            item = await _draft(session)
            await _schedule(session, item, at=DUE + timedelta(hours=1))
            return await run_publishing_sweep(session, DUE)

        report = db.run(scenario)
        assert report["processed"] == 0
        assert adapter.published == []

    def test_expired_token_and_failed_refresh(self, db, publishers):
        adapter = FakePublisher(refresh_error="HTTP 400 invalid_grant")
        publishers("twitter", adapter)

        async def scenario(session):
            await _account(session, expires_at=BASE)
            item = await _draft(session)
            post = await _schedule(session, item)
            report = await run_publishing_sweep(session, DUE)
            return report, await _reload(session, ScheduledPost, post.id), await _reload(session, GeneratedContent, item.id)

        report, post, item = db.run(scenario)
        assert report["failed"] == 1
        assert post.status == "failed"
        assert post.error.startswith("Failed to refresh token")
        assert item.status == "scheduled"
        assert adapter.refreshed == ["refresh-1"]
        assert adapter.published == []

    def test_expired_token_refreshed_and_persisted(self, db, publishers):
        adapter = FakePublisher()
        publishers("twitter", adapter)

        async def scenario(session):
            account = await _account(session, expires_at=BASE)
            item = await _draft(session)
            await _schedule(session, item)
            report = await run_publishing_sweep(session, DUE)
            return report, await _reload(session, SocialAccount, account.id)

        report, account = db.run(scenario)
        assert report["published"] == 1
        assert account.access_token == "fresh-access"
        assert account.refresh_token == "fresh-refresh"
        assert adapter.published[0][2] == "fresh-access"

    def test_expired_token_without_refresh_support(self, db, publishers):
        adapter = FakePublisher("linkedin", supports_refresh=False)
        publishers("linkedin", adapter)

        async def scenario(session):
            await _account(session, "u1", "linkedin", expires_at=BASE)
            item = await _draft(session, platform="linkedin")
            post = await _schedule(session, item, platform="linkedin")
            await run_publishing_sweep(session, DUE)
            return await _reload(session, ScheduledPost, post.id)

        post = db.run(scenario)
        assert post.status == "failed"
        assert "reconnect" in post.error

    def test_missing_account_and_unsupported_platform(self, db, publishers):
        publishers("twitter", FakePublisher())

        async def scenario(session):
            tweet = await _draft(session)
            gram = await _draft(session, platform="instagram")
            tweet_post = await _schedule(session, tweet)
            gram_post = await _schedule(session, gram, platform="instagram")
            report = await run_publishing_sweep(session, DUE)
            return (
                report,
                await _reload(session, ScheduledPost, tweet_post.id),
                await _reload(session, ScheduledPost, gram_post.id),
            )

        report, tweet_post, gram_post = db.run(scenario)
        assert report["failed"] == 2
        assert tweet_post.error == "No active twitter account connected"
        assert gram_post.error == "Publishing to instagram is not supported"

    def test_publish_error_recorded_and_rest_continue(self, db, publishers):
        publishers("twitter", FakePublisher(fail_with="Twitter publish failed: 403 duplicate content"))
        publishers("linkedin", FakePublisher("linkedin"))

        async def scenario(session):
            await _account(session)
            await _account(session, platform="linkedin")
            tweet = await _draft(session)
            post_li = await _draft(session, platform="linkedin")
            first = await _schedule(session, tweet)
            second = await _schedule(session, post_li, platform="linkedin", at=BASE + timedelta(hours=1, minutes=5))
            report = await run_publishing_sweep(session, DUE)
            return (
                report,
                await _reload(session, ScheduledPost, first.id),
                await _reload(session, ScheduledPost, second.id),
                await _reload(session, GeneratedContent, tweet.id),
            )

        report, first, second, tweet = db.run(scenario)
        assert (report["published"], report["failed"]) == (1, 1)
        assert first.status == "failed"
        assert "duplicate content" in first.error
        assert tweet.status == "scheduled"
        assert second.status == "published"

    def test_credentials_scrubbed_from_errors(self, db, publishers):
        publishers("twitter", FakePublisher(fail_with="401 for Bearer abc.def-123 rejected"))

        async def scenario(session):
            await _account(session)
            item = await _draft(session)
            post = await _schedule(session, item)
            await run_publishing_sweep(session, DUE)
            return await _reload(session, ScheduledPost, post.id)

        post = db.run(scenario)
        assert "abc.def-123" not in post.error
        assert "Bearer ***" in post.error

    def test_rescheduling_after_failure(self, db, publishers):
        publishers("twitter", FakePublisher(fail_with="boom"))

        async def scenario(session):
            await _account(session)
            item = await _draft(session)
            await _schedule(session, item)
            await run_publishing_sweep(session, DUE)
            again = await schedule_post(
                session, "u1", platform="twitter", scheduled_for=DUE + timedelta(hours=1),
                generated_content_id=item.id, now=DUE,
            )
            return again

        assert db.run(scenario).status == "scheduled"


class TestPublishNow:
    def test_success(self, db, publishers):
        publishers("twitter", FakePublisher())

        async def scenario(session):
            await _account(session)
            item = await _draft(session)
            result = await publish_now(session, "u1", item.id)
            return result, await _reload(session, GeneratedContent, item.id)

        result, item = db.run(scenario)
        assert result["status"] == "published"
        assert result["url"] == "https://social.example.com/twitter/1"
        assert item.status == "published"

    def test_failure_marks_generated_content_failed(self, db, publishers):
        publishers("twitter", FakePublisher(fail_with="rate limit"))

        async def scenario(session):
            await _account(session)
            item = await _draft(session)
            result = await publish_now(session, "u1", item.id)
            return result, await _reload(session, GeneratedContent, item.id)

        result, item = db.run(scenario)
        assert result["status"] == "failed"
        assert item.status == "failed"

    def test_already_published(self, db, publishers):
        publishers("twitter", FakePublisher())

        async def scenario(session):
            await _account(session)
            item = await _draft(session)
            await publish_now(session, "u1", item.id)
            await publish_now(session, "u1", item.id)

        with pytest.raises(InvalidState):
            db.run(scenario)


class TestListScheduled:
    def test_lists_own_posts_with_text(self, db):
        async def scenario(session):
            mine = await _draft(session, text="mine")
            theirs = await _draft(session, user_id="u2", text="theirs")
            await _schedule(session, mine)
            await _schedule(session, theirs)
            return await list_scheduled_posts(session, "u1")

        rows = db.run(scenario)
        assert [r["content"] for r in rows] == ["mine"]
        assert rows[0]["scheduled_for"] == BASE + timedelta(hours=1)


class TestSanitizeError:
    def test_scrubs_bearer_and_token_fields(self):
        text = sanitize_error('401 Bearer abc.def-123 {"refresh_token": "r-456"}')
        assert "abc.def-123" not in text
        assert "r-456" not in text
        assert "Bearer ***" in text

    def test_passes_empty_through(self):
        assert sanitize_error(None) is None
        assert sanitize_error("") == ""
