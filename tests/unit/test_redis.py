"""Tests for the Redis connection helpers used by the app lifespan."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from marketplace.redis import close_redis, open_redis


class TestRedisConnection:
    @pytest.mark.asyncio
    async def test_open_pings_before_returning(self):
        client = MagicMock()
        client.ping = AsyncMock(return_value=True)
        with patch("marketplace.redis.aioredis.from_url", return_value=client) as from_url:
            opened = await open_redis("redis://localhost:6379/0")

        assert opened is client
        from_url.assert_called_once_with("redis://localhost:6379/0", decode_responses=True)
        client.ping.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_open_propagates_connection_error(self):
        client = MagicMock()
        client.ping = AsyncMock(side_effect=ConnectionError("refused"))
        with patch("marketplace.redis.aioredis.from_url", return_value=client):
            with pytest.raises(ConnectionError):
                await open_redis("redis://localhost:6379/0")

    @pytest.mark.asyncio
    async def test_close(self):
        client = MagicMock()
        client.aclose = AsyncMock()
        await close_redis(client)
        client.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_close_without_client_is_noop(self):
        await close_redis(None)
