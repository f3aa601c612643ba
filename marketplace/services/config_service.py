"""Persisted forum config row, with an optional 60 s Redis cache."""

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.logging_config import get_logger
from marketplace.models import ForumConfig, utcnow
from marketplace.schemas import ForumConfigResponse, ForumConfigUpdate

logger = get_logger(__name__)

CACHE_KEY = "marketplace:forum_config"
CACHE_TTL_SECONDS = 60


class ForumConfigService:
    """Reads and updates the single forum config row (id = 1)."""

    def __init__(self, redis=None):
        self._redis = redis

    async def _load_row(self, db: AsyncSession) -> ForumConfig:
        row = await db.get(ForumConfig, 1)
        if row is None:
            row = ForumConfig(id=1)
            db.add(row)
            await db.flush()
            logger.info("forum_config_defaults_created")
        return row

    async def get(self, db: AsyncSession) -> ForumConfigResponse:
        if self._redis is not None:
            try:
                cached = await self._redis.get(CACHE_KEY)
                if cached:
                    return ForumConfigResponse.model_validate_json(cached)
            except Exception as e:
                logger.warning("forum_config_cache_read_failed", error=str(e))

        config = ForumConfigResponse.model_validate(await self._load_row(db))
        await self._cache(config)
        return config

    async def update(self, db: AsyncSession, changes: ForumConfigUpdate) -> ForumConfigResponse:
        row = await self._load_row(db)
        updates = changes.model_dump(exclude_none=True)
        for field, value in updates.items():
            setattr(row, field, value)
        row.updated_at = utcnow()
        await db.commit()

        config = ForumConfigResponse.model_validate(row)
        if self._redis is not None:
            try:
                await self._redis.delete(CACHE_KEY)
            except Exception as e:
                logger.warning("forum_config_cache_invalidate_failed", error=str(e))
        logger.info("forum_config_updated", fields=sorted(updates))
        return config

    async def _cache(self, config: ForumConfigResponse) -> None:
        if self._redis is None:
            return
        try:
            await self._redis.setex(CACHE_KEY, CACHE_TTL_SECONDS, config.model_dump_json())
        except Exception as e:
            logger.warning("forum_config_cache_write_failed", error=str(e))


def get_config_service(request: Request) -> ForumConfigService:
    return request.app.state.config_service
