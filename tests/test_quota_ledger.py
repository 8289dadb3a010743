from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select

from clipforge.errors import InvalidRequest, QuotaExceeded
from clipforge.models import UsageCounter, UsageEvent
from clipforge.services import quota_ledger


class TestReserve:
    def test_reserve_counts_once_per_content(self, db):
        async def scenario(session):
            first = await quota_ledger.check_and_reserve(session, "u1", 1)
            again = await quota_ledger.check_and_reserve(session, "u1", 1)
            usage = await quota_ledger.get_usage(session, "u1")
            return first, again, usage

        first, again, usage = db.run(scenario)
        assert first is True
        assert again is False
        assert usage["usage"] == 1
        assert usage["limit"] == 3
        assert usage["remaining"] == 2

    def test_free_plan_ceiling(self, db):
        async def scenario(session):
            for content_id in (1, 2, 3):
                await quota_ledger.check_and_reserve(session, "u1", content_id)
            with pytest.raises(QuotaExceeded) as exc_info:
                await quota_ledger.check_and_reserve(session, "u1", 4)
            usage = await quota_ledger.get_usage(session, "u1")
            return exc_info.value, usage

        error, usage = db.run(scenario)
        assert error.usage == 3
        assert error.limit == 3
        assert usage["usage"] == 3

    def test_counted_content_passes_even_at_limit(self, db):
        async def scenario(session):
            for content_id in (1, 2, 3):
                await quota_ledger.check_and_reserve(session, "u1", content_id)
            return await quota_ledger.check_and_reserve(session, "u1", 2)

        assert db.run(scenario) is False

    def test_unlimited_plan(self, db):
        async def scenario(session):
            await quota_ledger.set_plan(session, "u1", "agency")
            for content_id in range(1, 8):
                await quota_ledger.check_and_reserve(session, "u1", content_id)
            return await quota_ledger.get_usage(session, "u1")

        usage = db.run(scenario)
        assert usage["usage"] == 7
        assert usage["unlimited"] is True
        assert usage["limit"] is None
        assert usage["remaining"] is None

    def test_users_are_independent(self, db):
        async def scenario(session):
            for content_id in (1, 2, 3):
                await quota_ledger.check_and_reserve(session, "u1", content_id)
            return await quota_ledger.check_and_reserve(session, "u2", 4)

        assert db.run(scenario) is True


class TestConcurrentReserve:
    @pytest.mark.parametrize("submissions", [2, 5, 8])
    def test_final_usage_is_capped_at_limit(self, db, submissions):
        async def reserve(content_id):
            async with db.session() as session:
                try:
                    return await quota_ledger.check_and_reserve(session, "racer", content_id)
                except QuotaExceeded:
                    return None

        async def scenario():
            async with db.session() as session:
                await quota_ledger.set_plan(session, "racer", "free")
            outcomes = await asyncio.gather(*(reserve(i) for i in range(1, submissions + 1)))
            async with db.session() as session:
                counter = await quota_ledger.get_counter(session, "racer")
                events = await session.execute(
                    select(func.count(UsageEvent.id)).where(UsageEvent.user_id == "racer")
                )
                return outcomes, counter.usage, events.scalar()

        outcomes, usage, events = asyncio.run(scenario())
        expected = min(submissions, 3)
        assert usage == expected
        assert events == expected
        assert sum(1 for o in outcomes if o is True) == expected
        assert sum(1 for o in outcomes if o is None) == submissions - expected


class TestPlanAndReset:
    def test_set_plan_updates_limit(self, db):
        async def scenario(session):
            await quota_ledger.set_plan(session, "u1", "pro")
            return await quota_ledger.get_usage(session, "u1")

        usage = db.run(scenario)
        assert usage["plan"] == "pro"
        assert usage["limit"] == 50

    def test_unknown_plan_rejected(self, db):
        async def scenario(session):
            await quota_ledger.set_plan(session, "u1", "platinum")

        with pytest.raises(InvalidRequest):
            db.run(scenario)

    def test_monthly_reset_zeroes_usage_but_keeps_markers(self, db):
        period = datetime(2026, 11, 1, tzinfo=timezone.utc)

        async def scenario(session):
            await quota_ledger.check_and_reserve(session, "u1", 1)
            await quota_ledger.check_and_reserve(session, "u2", 2)
            report = await quota_ledger.reset_monthly_usage(session, now=period)
            recount = await quota_ledger.check_and_reserve(session, "u1", 1)
            rows = (await session.execute(
                select(UsageCounter).order_by(UsageCounter.user_id).execution_options(populate_existing=True)
            )).scalars().all()
            return report, recount, [(r.user_id, r.usage) for r in rows]

        report, recount, rows = db.run(scenario)
        assert report["reset"] == 2
        assert recount is False
        assert rows == [("u1", 0), ("u2", 0)]

    def test_increment_ignores_ceiling(self, db):
        async def scenario(session):
            for content_id in (1, 2, 3, 4):
                await quota_ledger.increment(session, "u1", content_id)
            duplicate = await quota_ledger.increment(session, "u1", 4)
            return duplicate, await quota_ledger.get_usage(session, "u1")

        duplicate, usage = db.run(scenario)
        assert duplicate is False
        assert usage["usage"] == 4
        assert usage["remaining"] == 0

    def test_has_remaining(self, db):
        async def scenario(session):
            before = await quota_ledger.has_remaining(session, "u1")
            for content_id in (1, 2, 3):
                await quota_ledger.check_and_reserve(session, "u1", content_id)
            after = await quota_ledger.has_remaining(session, "u1")
            return before, after

        assert db.run(scenario) == (True, False)
