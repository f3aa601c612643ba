"""Tests for the database and Redis sliding-window rate limiters."""

from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select

from marketplace.models import RateLimitRecord
from marketplace.services.rate_limiter import (
    RedisRateLimiter,
    SqlRateLimiter,
    build_rate_limiter,
)


class FakeClock:
    def __init__(self, now: int = 1_000_000):
        self.now = now

    def __call__(self) -> int:
        return self.now


class TestSqlRateLimiter:
    """Sliding window over rows in ``rate_limits``."""

    @pytest.mark.asyncio
    async def test_three_allowed_fourth_denied(self, db_session):
        limiter = SqlRateLimiter(clock=FakeClock())

        results = [await limiter.hit(db_session, "k", 3, 1000) for _ in range(4)]

        assert [r.allowed for r in results] == [True, True, True, False]
        assert [r.remaining for r in results] == [2, 1, 0, 0]
        assert results[3].used == 3
        assert results[3].limit == 3

    @pytest.mark.asyncio
    async def test_window_slides(self, db_session):
        clock = FakeClock()
        limiter = SqlRateLimiter(clock=clock)
        for _ in range(3):
            await limiter.hit(db_session, "k", 3, 1000)
        assert not (await limiter.hit(db_session, "k", 3, 1000)).allowed

        clock.now += 1000
        result = await limiter.hit(db_session, "k", 3, 1000)

        assert result.allowed
        assert result.remaining == 2

    @pytest.mark.asyncio
    async def test_expired_rows_pruned(self, db_session):
        clock = FakeClock()
        limiter = SqlRateLimiter(clock=clock)
        for _ in range(3):
            await limiter.hit(db_session, "k", 5, 1000)

        clock.now += 5000
        await limiter.hit(db_session, "k", 5, 1000)

        rows = (
            await db_session.execute(
                select(func.count()).select_from(RateLimitRecord).where(RateLimitRecord.key == "k")
            )
        ).scalar()
        assert rows == 1

    @pytest.mark.asyncio
    async def test_keys_are_independent(self, db_session):
        limiter = SqlRateLimiter(clock=FakeClock())
        await limiter.hit(db_session, "forum-post:a", 1, 1000)

        assert not (await limiter.hit(db_session, "forum-post:a", 1, 1000)).allowed
        assert (await limiter.hit(db_session, "forum-vote:a", 1, 1000)).allowed

    @pytest.mark.asyncio
    async def test_reset_at_tracks_oldest_hit(self, db_session):
        clock = FakeClock(1_000_000)
        limiter = SqlRateLimiter(clock=clock)
        await limiter.hit(db_session, "k", 1, 1000)
        clock.now += 400

        denied = await limiter.hit(db_session, "k", 1, 1000)

        assert round(denied.reset_at.timestamp() * 1000) == 1_001_000

    @pytest.mark.asyncio
    async def test_count(self, db_session):
        limiter = SqlRateLimiter(clock=FakeClock())
        assert await limiter.count(db_session, "k", 1000) == 0
        await limiter.hit(db_session, "k", 5, 1000)
        await limiter.hit(db_session, "k", 5, 1000)
        assert await limiter.count(db_session, "k", 1000) == 2


class TestRedisRateLimiter:
    """ZSET-based limiter against a mocked pipeline."""

    @pytest.mark.asyncio
    async def test_allowed_adds_member(self, mock_redis_client):
        mock_redis_client.execute = AsyncMock(side_effect=[[0, 1, [("999500:x", 999_500)]], [1, True]])
        limiter = RedisRateLimiter(mock_redis_client, clock=FakeClock(1_000_000))

        result = await limiter.hit(None, "forum-vote:a", 3, 1000)

        assert result.allowed
        assert result.remaining == 1
        assert result.used == 2
        mock_redis_client.zremrangebyscore.assert_called_once_with(
            "ratelimit:forum-vote:a", 0, 999_000
        )
        mock_redis_client.zadd.assert_called_once()
        mock_redis_client.pexpire.assert_called_once_with("ratelimit:forum-vote:a", 2000)

    @pytest.mark.asyncio
    async def test_denied_does_not_add(self, mock_redis_client):
        mock_redis_client.execute = AsyncMock(return_value=[0, 3, [("999200:x", 999_200)]])
        limiter = RedisRateLimiter(mock_redis_client, clock=FakeClock(1_000_000))

        result = await limiter.hit(None, "k", 3, 1000)

        assert not result.allowed
        assert result.remaining == 0
        assert round(result.reset_at.timestamp() * 1000) == 1_000_200
        mock_redis_client.zadd.assert_not_called()

    @pytest.mark.asyncio
    async def test_count_uses_open_interval(self, mock_redis_client):
        mock_redis_client.zcount = AsyncMock(return_value=4)
        limiter = RedisRateLimiter(mock_redis_client, clock=FakeClock(5000))

        assert await limiter.count(None, "k", 1000) == 4
        mock_redis_client.zcount.assert_awaited_once_with("ratelimit:k", "(4000", "+inf")


class TestBuildRateLimiter:
    def test_database_backend(self):
        assert isinstance(build_rate_limiter("database"), SqlRateLimiter)

    def test_redis_backend_needs_client(self, mock_redis_client):
        with pytest.raises(ValueError):
            build_rate_limiter("redis", None)
        assert isinstance(build_rate_limiter("redis", mock_redis_client), RedisRateLimiter)

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            build_rate_limiter("memcached")
