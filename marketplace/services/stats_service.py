"""Public aggregates and store health."""

from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.logging_config import get_logger
from marketplace.models import FeatureRequest, ForumChannel, ForumPost, Instance
from marketplace.services.forum_service import build_post_views

logger = get_logger(__name__)


async def _count(db: AsyncSession, query) -> int:
    return (await db.execute(query)).scalar() or 0


async def public_stats(db: AsyncSession) -> dict:
    total_instances = await _count(db, select(func.count()).select_from(Instance))
    online_instances = await _count(
        db, select(func.count()).select_from(Instance).where(Instance.online.is_(True))
    )

    visible_channels = select(ForumChannel.id).where(ForumChannel.visible.is_(True))
    channel_count = await _count(
        db, select(func.count()).select_from(ForumChannel).where(ForumChannel.visible.is_(True))
    )
    root_posts = await _count(
        db,
        select(func.count())
        .select_from(ForumPost)
        .where(ForumPost.parent_id.is_(None), ForumPost.channel_id.in_(visible_channels)),
    )
    replies = await _count(
        db,
        select(func.count())
        .select_from(ForumPost)
        .where(ForumPost.parent_id.is_not(None), ForumPost.channel_id.in_(visible_channels)),
    )

    top_channels = (
        await db.execute(
            select(ForumChannel)
            .where(ForumChannel.visible.is_(True))
            .order_by(ForumChannel.post_count.desc(), ForumChannel.id.asc())
            .limit(5)
        )
    ).scalars().all()

    recent = list(
        (
            await db.execute(
                select(ForumPost)
                .where(ForumPost.parent_id.is_(None), ForumPost.channel_id.in_(visible_channels))
                .order_by(ForumPost.created_at.desc())
                .limit(5)
            )
        ).scalars().all()
    )
    recent_views = await build_post_views(db, recent)

    open_requests = await _count(
        db,
        select(func.count()).select_from(FeatureRequest).where(FeatureRequest.status == "open"),
    )

    return {
        "instances": {"total": total_instances, "online": online_instances},
        "forum": {
            "channels": channel_count,
            "posts": root_posts,
            "replies": replies,
            "top_channels": [
                {"id": c.id, "name": c.name, "post_count": c.post_count} for c in top_channels
            ],
            "recent_posts": [
                {
                    "id": v.id,
                    "channel_id": v.channel_id,
                    "title": v.title,
                    "author_nickname": v.author_nickname,
                    "upvotes": v.upvotes,
                    "reply_count": v.reply_count,
                    "created_at": v.created_at,
                }
                for v in recent_views
            ],
        },
        "feature_requests": {"open": open_requests},
    }


async def store_health(db: AsyncSession) -> dict:
    """Store reachability plus basic counts; never raises."""
    try:
        await db.execute(text("SELECT 1"))
        instances = await _count(db, select(func.count()).select_from(Instance))
        posts = await _count(db, select(func.count()).select_from(ForumPost))
        requests = await _count(db, select(func.count()).select_from(FeatureRequest))
    except Exception as e:
        logger.error("health_check_failed", error=str(e))
        return {"status": "error", "database": "unreachable"}
    return {
        "status": "ok",
        "database": "ok",
        "counts": {"instances": instances, "posts": posts, "feature_requests": requests},
    }
