"""Sliding-window rate limiting, persisted in the database or in Redis."""

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol
from uuid import uuid4

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.logging_config import get_logger
from marketplace.models import RateLimitRecord

logger = get_logger(__name__)

DAY_MS = 24 * 60 * 60 * 1000


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: datetime
    used: int
    limit: int

    @property
    def reset_at_iso(self) -> str:
        return self.reset_at.isoformat().replace("+00:00", "Z")


def _ms_to_datetime(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


def _now_ms() -> int:
    return int(time.time() * 1000)


class RateLimiter(Protocol):
    async def hit(
        self, db: AsyncSession, key: str, max_requests: int, window_ms: int
    ) -> RateLimitResult: ...

    async def count(self, db: AsyncSession, key: str, window_ms: int) -> int: ...


class SqlRateLimiter:
    """
    One row per accepted request in ``rate_limits``.

    Each call prunes rows older than the window for the key, counts what is
    left and inserts a new row only when the count is under the limit. Rows
    are written through the caller's session, so a request that fails later
    and rolls back does not consume quota. Concurrent callers can both read
    ``max - 1`` and both insert; the ceiling is soft.
    """

    def __init__(self, clock=_now_ms):
        self._clock = clock

    async def hit(
        self, db: AsyncSession, key: str, max_requests: int, window_ms: int
    ) -> RateLimitResult:
        now = self._clock()
        window_start = now - window_ms

        await db.execute(
            delete(RateLimitRecord).where(
                RateLimitRecord.key == key,
                RateLimitRecord.created_ms <= window_start,
            )
        )
        row = (
            await db.execute(
                select(func.count(), func.min(RateLimitRecord.created_ms)).where(
                    RateLimitRecord.key == key,
                    RateLimitRecord.created_ms > window_start,
                )
            )
        ).one()
        count, oldest = row[0] or 0, row[1]

        if count >= max_requests:
            reset_ms = (oldest if oldest is not None else now) + window_ms
            logger.warning("rate_limit_exceeded", key=key, count=count, limit=max_requests)
            return RateLimitResult(
                allowed=False,
                remaining=0,
                reset_at=_ms_to_datetime(reset_ms),
                used=count,
                limit=max_requests,
            )

        db.add(RateLimitRecord(key=key, created_ms=now))
        await db.flush()

        reset_ms = (oldest if oldest is not None else now) + window_ms
        return RateLimitResult(
            allowed=True,
            remaining=max_requests - count - 1,
            reset_at=_ms_to_datetime(reset_ms),
            used=count + 1,
            limit=max_requests,
        )

    async def count(self, db: AsyncSession, key: str, window_ms: int) -> int:
        window_start = self._clock() - window_ms
        result = await db.execute(
            select(func.count()).where(
                RateLimitRecord.key == key,
                RateLimitRecord.created_ms > window_start,
            )
        )
        return result.scalar() or 0


class RedisRateLimiter:
    """Redis sliding window (ZREMRANGEBYSCORE + ZCARD, then ZADD when allowed)."""

    def __init__(self, redis, prefix: str = "ratelimit:", clock=_now_ms):
        self._redis = redis
        self._prefix = prefix
        self._clock = clock

    async def hit(
        self, db: AsyncSession, key: str, max_requests: int, window_ms: int
    ) -> RateLimitResult:
        now = self._clock()
        window_start = now - window_ms
        redis_key = f"{self._prefix}{key}"

        pipe = self._redis.pipeline()
        pipe.zremrangebyscore(redis_key, 0, window_start)
        pipe.zcard(redis_key)
        pipe.zrange(redis_key, 0, 0, withscores=True)
        results = await pipe.execute()

        count = int(results[1] or 0)
        oldest_entries = results[2] or []
        oldest = int(oldest_entries[0][1]) if oldest_entries else now
        reset_at = _ms_to_datetime(oldest + window_ms)

        if count >= max_requests:
            logger.warning("rate_limit_exceeded", key=key, count=count, limit=max_requests)
            return RateLimitResult(False, 0, reset_at, count, max_requests)

        pipe = self._redis.pipeline()
        pipe.zadd(redis_key, {f"{now}:{uuid4().hex}": now})
        pipe.pexpire(redis_key, window_ms + 1000)
        await pipe.execute()

        return RateLimitResult(True, max_requests - count - 1, reset_at, count + 1, max_requests)

    async def count(self, db: AsyncSession, key: str, window_ms: int) -> int:
        redis_key = f"{self._prefix}{key}"
        window_start = self._clock() - window_ms
        return int(await self._redis.zcount(redis_key, f"({window_start}", "+inf"))


def build_rate_limiter(backend: str, redis=None) -> RateLimiter:
    """Pick the configured backend; ``redis`` requires a live client."""
    if backend == "redis":
        if redis is None:
            raise ValueError("RATE_LIMIT_BACKEND=redis requires REDIS_URL")
        return RedisRateLimiter(redis)
    if backend != "database":
        raise ValueError(f"Unknown rate limit backend: {backend}")
    return SqlRateLimiter()
