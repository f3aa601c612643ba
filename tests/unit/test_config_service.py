"""Tests for the forum config row and its Redis cache."""

from unittest.mock import AsyncMock

import pytest
from pydantic import ValidationError

from marketplace.schemas import ForumConfigResponse, ForumConfigUpdate
from marketplace.services.config_service import (
    CACHE_KEY,
    CACHE_TTL_SECONDS,
    ForumConfigService,
)


class TestForumConfigService:
    @pytest.mark.asyncio
    async def test_defaults(self, db_session):
        config = await ForumConfigService().get(db_session)

        assert config.post_limit_per_day == 5
        assert config.vote_limit_per_day == 20
        assert config.title_max_chars == 200
        assert config.body_max_chars == 5000
        assert config.max_reply_depth == 3
        assert config.recommended_check_interval_ms == 14_400_000

    @pytest.mark.asyncio
    async def test_update_applies_only_given_fields(self, db_session):
        service = ForumConfigService()
        updated = await service.update(db_session, ForumConfigUpdate(post_limit_per_day=10))

        assert updated.post_limit_per_day == 10
        assert updated.vote_limit_per_day == 20
        assert (await service.get(db_session)).post_limit_per_day == 10

    @pytest.mark.asyncio
    async def test_cache_miss_populates_cache(self, db_session, mock_redis_client):
        service = ForumConfigService(mock_redis_client)

        await service.get(db_session)

        mock_redis_client.get.assert_awaited_once_with(CACHE_KEY)
        key, ttl, _ = mock_redis_client.setex.await_args.args
        assert key == CACHE_KEY
        assert ttl == CACHE_TTL_SECONDS

    @pytest.mark.asyncio
    async def test_cache_hit_skips_database(self, mock_redis_client):
        cached = ForumConfigResponse(
            post_limit_per_day=1,
            vote_limit_per_day=2,
            title_max_chars=3,
            body_max_chars=4,
            max_reply_depth=2,
            recommended_check_interval_ms=60_000,
        )
        mock_redis_client.get = AsyncMock(return_value=cached.model_dump_json())
        db = AsyncMock()

        config = await ForumConfigService(mock_redis_client).get(db)

        assert config == cached
        db.get.assert_not_called()

    @pytest.mark.asyncio
    async def test_update_invalidates_cache(self, db_session, mock_redis_client):
        service = ForumConfigService(mock_redis_client)

        await service.update(db_session, ForumConfigUpdate(vote_limit_per_day=50))

        mock_redis_client.delete.assert_awaited_once_with(CACHE_KEY)

    @pytest.mark.asyncio
    async def test_redis_failure_falls_back_to_database(self, db_session, mock_redis_client):
        mock_redis_client.get = AsyncMock(side_effect=ConnectionError("down"))
        mock_redis_client.setex = AsyncMock(side_effect=ConnectionError("down"))

        config = await ForumConfigService(mock_redis_client).get(db_session)

        assert config.post_limit_per_day == 5


class TestForumConfigUpdate:
    def test_interval_floor(self):
        with pytest.raises(ValidationError):
            ForumConfigUpdate(recommended_check_interval_ms=59_999)
        assert ForumConfigUpdate(recommended_check_interval_ms=60_000)

    def test_depth_ceiling(self):
        with pytest.raises(ValidationError):
            ForumConfigUpdate(max_reply_depth=4)

    @pytest.mark.parametrize("field", ["post_limit_per_day", "vote_limit_per_day", "title_max_chars"])
    def test_positive_ints(self, field):
        with pytest.raises(ValidationError):
            ForumConfigUpdate(**{field: 0})
        with pytest.raises(ValidationError):
            ForumConfigUpdate(**{field: "5"})
