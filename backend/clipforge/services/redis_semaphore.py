"""
Render slots shared by every worker, kept in a Redis sorted set.

    sem:{name}  member = holder token, score = lease expiry (unix time)

A holder that crashes simply stops renewing; its lease falls out of the
set on the next acquire. Cleanup, insert and count run in one MULTI so two
workers cannot both see the last free slot.
"""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator

import redis.asyncio as aioredis

from clipforge.settings import get_settings

logger = logging.getLogger(__name__)

_redis_client: aioredis.Redis | None = None


def _get_redis() -> aioredis.Redis:
    global _redis_client
    if _redis_client is None:
        _redis_client = aioredis.from_url(get_settings().redis_url, decode_responses=True)
    return _redis_client


def set_redis(client: aioredis.Redis | None) -> None:
    global _redis_client
    _redis_client = client


def _key(name: str) -> str:
    return f"sem:{name}"


async def _try_take(r: aioredis.Redis, key: str, token: str, limit: int, lease_sec: int) -> int | None:
    """Add ``token`` and return the holder count, or None when over ``limit``."""
    now_ts = time.time()
    async with r.pipeline(transaction=True) as pipe:
        pipe.zremrangebyscore(key, "-inf", now_ts)
        pipe.zadd(key, {token: now_ts + lease_sec})
        pipe.zrank(key, token)
        pipe.zcard(key)
        _, _, rank, holders = await pipe.execute()
    # ranked by lease expiry: the newest lease is the one that backs out
    if rank is not None and rank < limit:
        return holders
    await r.zrem(key, token)
    return None


async def acquire(
    name: str,
    limit: int,
    *,
    ttl_sec: int | None = None,
    wait_timeout_sec: int | None = None,
) -> str:
    """Wait for a free slot and return the holder token.

    Raises TimeoutError after ``wait_timeout_sec``.
    """
    settings = get_settings()
    lease_sec = ttl_sec if ttl_sec is not None else settings.redis_semaphore_ttl_sec
    timeout = wait_timeout_sec if wait_timeout_sec is not None else settings.semaphore_wait_timeout_sec

    r = _get_redis()
    key = _key(name)
    token = uuid.uuid4().hex
    deadline = time.monotonic() + timeout
    delay = 1.0

    while True:
        holders = await _try_take(r, key, token, limit, lease_sec)
        if holders is not None:
            logger.info(f"[semaphore][{name}] slot taken {holders}/{limit} token={token[:8]}")
            return token

        left = deadline - time.monotonic()
        if left <= 0:
            raise TimeoutError(f"no free '{name}' slot within {timeout}s (limit={limit})")
        logger.debug(f"[semaphore][{name}] full, retry in {min(delay, left):.1f}s")
        await asyncio.sleep(min(delay, left))
        delay = min(delay * 1.5, 5.0)


async def release(name: str, token: str) -> None:
    if await _get_redis().zrem(_key(name), token):
        logger.info(f"[semaphore][{name}] slot freed token={token[:8]}")
    else:
        logger.warning(f"[semaphore][{name}] token {token[:8]} had already expired")


@asynccontextmanager
async def slot(name: str, limit: int, **kwargs) -> AsyncIterator[str]:
    """Hold one ``name`` slot for the duration of the block."""
    token = await acquire(name, limit, **kwargs)
    try:
        yield token
    finally:
        await release(name, token)
