"""Release changelog managed by admins."""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.exceptions import ConflictError, ResourceNotFoundError
from marketplace.logging_config import get_logger
from marketplace.models import Release
from marketplace.schemas import ReleaseCreate

logger = get_logger(__name__)


async def list_releases(db: AsyncSession, limit: int = 50) -> list[Release]:
    result = await db.execute(
        select(Release).order_by(Release.created_at.desc(), Release.version.desc()).limit(limit)
    )
    return list(result.scalars().all())


async def latest_release(db: AsyncSession) -> Release | None:
    releases = await list_releases(db, limit=1)
    return releases[0] if releases else None


async def create_release(db: AsyncSession, body: ReleaseCreate) -> Release:
    existing = await db.execute(select(Release).where(Release.version == body.version))
    if existing.scalar_one_or_none() is not None:
        raise ConflictError(f"Release {body.version} already exists")
    release = Release(version=body.version, title=body.title, notes=body.notes)
    db.add(release)
    await db.commit()
    await db.refresh(release)
    logger.info("release_created", version=release.version)
    return release


async def delete_release(db: AsyncSession, release_id: str) -> None:
    release = await db.get(Release, release_id)
    if release is None:
        raise ResourceNotFoundError("Release")
    await db.delete(release)
    await db.commit()
    logger.info("release_deleted", version=release.version)
