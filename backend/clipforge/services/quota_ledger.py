"""
Quota ledger: per-user monthly processing counter with a plan ceiling.

Reservations are a single conditional UPDATE (increment-if-under-limit)
so concurrent submissions cannot push a user past their plan. Each
Content is counted at most once; the marker lives in ``usage_events``.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from clipforge.errors import InvalidRequest, QuotaExceeded, StorageUnavailable
from clipforge.models import PLAN_LIMITS, UNLIMITED, Plan, UsageCounter, UsageEvent
from clipforge.settings import get_settings

logger = logging.getLogger(__name__)


def _insert_for(session: AsyncSession):
    dialect = session.bind.dialect.name if session.bind is not None else "postgresql"
    return sqlite.insert if dialect == "sqlite" else postgresql.insert


async def _ensure_counter(session: AsyncSession, user_id: str) -> None:
    plan = get_settings().default_plan
    stmt = (
        _insert_for(session)(UsageCounter)
        .values(user_id=user_id, plan=plan, usage=0, limit=PLAN_LIMITS.get(plan, PLAN_LIMITS[Plan.free.value]))
        .on_conflict_do_nothing(index_elements=["user_id"])
    )
    await session.execute(stmt)


async def _already_counted(session: AsyncSession, content_id: int) -> bool:
    found = await session.execute(select(UsageEvent.id).where(UsageEvent.content_id == content_id))
    return found.scalar_one_or_none() is not None


async def get_counter(session: AsyncSession, user_id: str) -> UsageCounter:
    try:
        await _ensure_counter(session, user_id)
        counter = (
            await session.execute(
                select(UsageCounter).where(UsageCounter.user_id == user_id).execution_options(populate_existing=True)
            )
        ).scalar_one()
    except (OperationalError, DBAPIError) as e:
        raise StorageUnavailable(f"quota ledger unavailable: {e.__class__.__name__}") from e
    return counter


async def has_remaining(session: AsyncSession, user_id: str) -> bool:
    """Read-only check used before accepting an upload."""
    counter = await get_counter(session, user_id)
    return counter.unlimited or counter.usage < counter.limit


async def check_and_reserve(session: AsyncSession, user_id: str, content_id: int) -> bool:
    """Reserve one unit of quota for ``content_id``.

    Returns True when a unit was taken now, False when this Content was
    already counted earlier (retry or reprocess). Raises QuotaExceeded when
    the plan ceiling is reached and StorageUnavailable when the ledger
    cannot be reached. Commits on success.
    """
    try:
        await _ensure_counter(session, user_id)
        if await _already_counted(session, content_id):
            await session.commit()
            logger.info(f"[quota] user={user_id} content={content_id} already counted")
            return False

        result = await session.execute(
            update(UsageCounter)
            .where(
                UsageCounter.user_id == user_id,
                or_(UsageCounter.limit == UNLIMITED, UsageCounter.usage < UsageCounter.limit),
            )
            .values(usage=UsageCounter.usage + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            # the UPDATE matched no row; no rollback, so loaded instances stay valid
            counter = await get_counter(session, user_id)
            await session.commit()
            logger.info(f"[quota] user={user_id} denied (usage={counter.usage}, limit={counter.limit})")
            raise QuotaExceeded(user_id, usage=counter.usage, limit=counter.limit)

        session.add(UsageEvent(user_id=user_id, content_id=content_id))
        try:
            await session.commit()
        except IntegrityError:
            # a concurrent delivery for the same content counted it first
            await session.rollback()
            logger.info(f"[quota] user={user_id} content={content_id} counted concurrently, increment undone")
            return False
    except (OperationalError, DBAPIError) as e:
        await session.rollback()
        raise StorageUnavailable(f"quota ledger unavailable: {e.__class__.__name__}") from e

    logger.info(f"[quota] user={user_id} content={content_id} reserved")
    return True


async def increment(session: AsyncSession, user_id: str, content_id: int) -> bool:
    """Count ``content_id`` without checking the ceiling. Idempotent per content."""
    try:
        await _ensure_counter(session, user_id)
        if await _already_counted(session, content_id):
            await session.commit()
            return False
        await session.execute(
            update(UsageCounter)
            .where(UsageCounter.user_id == user_id)
            .values(usage=UsageCounter.usage + 1)
            .execution_options(synchronize_session=False)
        )
        session.add(UsageEvent(user_id=user_id, content_id=content_id))
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            return False
    except (OperationalError, DBAPIError) as e:
        await session.rollback()
        raise StorageUnavailable(f"quota ledger unavailable: {e.__class__.__name__}") from e
    return True


async def set_plan(session: AsyncSession, user_id: str, plan: str) -> UsageCounter:
    if plan not in PLAN_LIMITS:
        raise InvalidRequest(f"Unknown plan: {plan}")
    await _ensure_counter(session, user_id)
    await session.execute(
        update(UsageCounter)
        .where(UsageCounter.user_id == user_id)
        .values(plan=plan, limit=PLAN_LIMITS[plan])
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    logger.info(f"[quota] user={user_id} plan -> {plan}")
    return await get_counter(session, user_id)


async def get_usage(session: AsyncSession, user_id: str) -> dict[str, Any]:
    counter = await get_counter(session, user_id)
    await session.commit()
    return {
        "user_id": counter.user_id,
        "plan": counter.plan,
        "usage": counter.usage,
        "limit": None if counter.unlimited else counter.limit,
        "remaining": counter.remaining,
        "unlimited": counter.unlimited,
        "period_start": counter.period_start,
    }


async def reset_monthly_usage(session: AsyncSession, *, now: datetime | None = None) -> dict[str, Any]:
    """Zero every counter and start a new period. Counted-content markers
    are kept so a Content is never charged twice."""
    now = now or datetime.now(timezone.utc)
    result = await session.execute(
        update(UsageCounter).values(usage=0, period_start=now).execution_options(synchronize_session=False)
    )
    await session.commit()
    logger.info(f"[quota] monthly reset: {result.rowcount} counters")
    return {"reset": result.rowcount, "period_start": now.isoformat()}
