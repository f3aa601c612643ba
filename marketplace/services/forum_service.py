"""Forum channels, bounded-depth threads, votes and polls."""

from datetime import datetime

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.exceptions import (
    ConflictError,
    DomainRuleError,
    ForbiddenError,
    ResourceNotFoundError,
    ThreadLockedError,
)
from marketplace.logging_config import get_logger
from marketplace.models import (
    ForumChannel,
    ForumPollVote,
    ForumPost,
    ForumPostVote,
    Instance,
    as_utc,
    utcnow,
)
from marketplace.schemas import (
    ChannelCreate,
    ForumConfigResponse,
    ForumPostCreate,
    ForumPostResponse,
    ForumReplyCreate,
)
from marketplace.services import forum_rules
from marketplace.services.registry_service import dialect_insert

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Channels
# ---------------------------------------------------------------------------


async def list_channels(db: AsyncSession, include_hidden: bool = False) -> list[ForumChannel]:
    query = select(ForumChannel)
    if not include_hidden:
        query = query.where(ForumChannel.visible.is_(True))
    query = query.order_by(ForumChannel.created_at.asc(), ForumChannel.id.asc())
    return list((await db.execute(query)).scalars().all())


async def get_channel(db: AsyncSession, slug: str, include_hidden: bool = False) -> ForumChannel:
    channel = await db.get(ForumChannel, slug)
    if channel is None or (not channel.visible and not include_hidden):
        raise ResourceNotFoundError("Channel")
    return channel


async def create_channel(db: AsyncSession, body: ChannelCreate) -> ForumChannel:
    if await db.get(ForumChannel, body.id) is not None:
        raise ConflictError(f"Channel '{body.id}' already exists")
    channel = ForumChannel(
        id=body.id,
        name=body.name.strip(),
        description=body.description,
        visible=body.visible,
    )
    db.add(channel)
    await db.commit()
    logger.info("forum_channel_created", channel_id=channel.id)
    return channel


async def set_channel_visibility(db: AsyncSession, slug: str, visible: bool) -> ForumChannel:
    channel = await db.get(ForumChannel, slug)
    if channel is None:
        raise ResourceNotFoundError("Channel")
    channel.visible = visible
    await db.commit()
    logger.info("forum_channel_visibility_changed", channel_id=slug, visible=visible)
    return channel


async def delete_channel(db: AsyncSession, slug: str) -> int:
    """Delete a channel with all of its posts and their votes; returns posts removed."""
    channel = await db.get(ForumChannel, slug)
    if channel is None:
        raise ResourceNotFoundError("Channel")

    post_ids = select(ForumPost.id).where(ForumPost.channel_id == slug)
    await db.execute(delete(ForumPollVote).where(ForumPollVote.post_id.in_(post_ids)))
    await db.execute(delete(ForumPostVote).where(ForumPostVote.post_id.in_(post_ids)))
    result = await db.execute(delete(ForumPost).where(ForumPost.channel_id == slug))
    await db.delete(channel)
    await db.commit()

    logger.info("forum_channel_deleted", channel_id=slug, posts_deleted=result.rowcount)
    return result.rowcount or 0


# ---------------------------------------------------------------------------
# Views
# ---------------------------------------------------------------------------


async def build_post_views(
    db: AsyncSession, posts: list[ForumPost], now: datetime | None = None
) -> list[ForumPostResponse]:
    """Attach author display fields and, for polls, live results and closed state."""
    if not posts:
        return []
    now = now or utcnow()

    author_ids = {p.instance_id for p in posts}
    authors = {
        inst.id: inst
        for inst in (
            await db.execute(select(Instance).where(Instance.id.in_(author_ids)))
        ).scalars()
    }

    poll_ids = [p.id for p in posts if p.poll_options]
    poll_votes: dict[str, list[int]] = {pid: [] for pid in poll_ids}
    if poll_ids:
        rows = await db.execute(
            select(ForumPollVote.post_id, ForumPollVote.option_index).where(
                ForumPollVote.post_id.in_(poll_ids)
            )
        )
        for post_id, option_index in rows.all():
            poll_votes[post_id].append(option_index)

    views = []
    for post in posts:
        view = ForumPostResponse.model_validate(post)
        author = authors.get(post.instance_id)
        if author is not None:
            view.author_nickname = author.nickname
            view.author_avatar_color = author.avatar_color
            view.author_avatar_icon = author.avatar_icon
            view.author_avatar_border = author.avatar_border
        if post.poll_options:
            results = forum_rules.tally_poll(post.poll_options, poll_votes[post.id])
            view.poll_results = results
            view.poll_total_votes = sum(results)
            view.poll_closed = forum_rules.is_poll_closed(
                post.poll_closed, as_utc(post.poll_closes_at), now
            )
        views.append(view)
    return views


async def list_channel_posts(
    db: AsyncSession,
    channel: ForumChannel,
    since: datetime | None = None,
    limit: int = 20,
    offset: int = 0,
) -> list[ForumPostResponse]:
    """Root posts in a channel, newest first."""
    query = select(ForumPost).where(
        ForumPost.channel_id == channel.id, ForumPost.parent_id.is_(None)
    )
    if since is not None:
        query = query.where(ForumPost.created_at > since)
    query = query.order_by(ForumPost.created_at.desc()).offset(offset).limit(limit)
    posts = list((await db.execute(query)).scalars().all())
    return await build_post_views(db, posts)


async def get_post(db: AsyncSession, post_id: str) -> ForumPost:
    post = await db.get(ForumPost, post_id)
    if post is None:
        raise ResourceNotFoundError("Post")
    return post


async def collect_descendants(db: AsyncSession, post_id: str) -> list[ForumPost]:
    """Every reply under ``post_id``, level by level (depth is bounded)."""
    descendants: list[ForumPost] = []
    frontier = [post_id]
    while frontier:
        children = list(
            (
                await db.execute(select(ForumPost).where(ForumPost.parent_id.in_(frontier)))
            ).scalars().all()
        )
        descendants.extend(children)
        frontier = [c.id for c in children]
    return descendants


async def get_thread(
    db: AsyncSession, post_id: str, include_hidden: bool = False
) -> tuple[ForumPostResponse, list[ForumPostResponse]]:
    post = await get_post(db, post_id)
    await get_channel(db, post.channel_id, include_hidden=include_hidden)

    replies = await collect_descendants(db, post.id)
    replies.sort(key=lambda p: (as_utc(p.created_at), p.id))
    views = await build_post_views(db, [post, *replies])
    return views[0], views[1:]


async def find_thread_root(db: AsyncSession, post: ForumPost) -> ForumPost:
    """Walk parent links up to the depth-0 post that owns the thread lock."""
    current = post
    while current.parent_id is not None:
        parent = await db.get(ForumPost, current.parent_id)
        if parent is None:
            break
        current = parent
    return current


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


async def _record_author_upvote(db: AsyncSession, post: ForumPost) -> None:
    db.add(ForumPostVote(post_id=post.id, instance_id=post.instance_id, value=1))


async def _bump_channel(db: AsyncSession, channel_id: str, now: datetime) -> None:
    await db.execute(
        update(ForumChannel)
        .where(ForumChannel.id == channel_id)
        .values(post_count=ForumChannel.post_count + 1, last_post_at=now)
        .execution_options(synchronize_session=False)
    )


async def create_post(
    db: AsyncSession,
    instance: Instance,
    payload: ForumPostCreate,
    config: ForumConfigResponse,
) -> ForumPost:
    """Root post with an optional poll; the author's own +1 is recorded."""
    await get_channel(db, payload.channel_id)

    title = payload.title.strip()
    body = payload.body.strip()
    if not title or not body:
        raise DomainRuleError("Title and body are required", "missing_content")
    forum_rules.check_text_bounds(title, body, config.title_max_chars, config.body_max_chars)

    now = utcnow()
    poll_options = None
    closes_at = None
    if payload.poll_options is not None:
        poll_options = forum_rules.validate_poll_options(payload.poll_options)
        closes_at = forum_rules.poll_closes_at(now, payload.poll_duration_days)

    post = ForumPost(
        channel_id=payload.channel_id,
        instance_id=instance.id,
        parent_id=None,
        depth=0,
        title=title,
        body=body,
        image_url=payload.image_url,
        upvotes=1,
        poll_options=poll_options,
        poll_closes_at=closes_at,
        created_at=now,
        updated_at=now,
    )
    db.add(post)
    await db.flush()
    await _record_author_upvote(db, post)
    await _bump_channel(db, post.channel_id, now)
    await db.commit()

    logger.info(
        "forum_post_created",
        post_id=post.id,
        channel_id=post.channel_id,
        has_poll=poll_options is not None,
    )
    return post


async def create_reply(
    db: AsyncSession,
    instance: Instance,
    parent: ForumPost,
    payload: ForumReplyCreate,
    config: ForumConfigResponse,
) -> ForumPost:
    """Reply under ``parent``. The thread root's lock applies at every depth."""
    root = await find_thread_root(db, parent)
    if root.locked:
        raise ThreadLockedError()
    depth = forum_rules.reply_depth(parent.depth, config.max_reply_depth)

    body = payload.body.strip()
    if not body:
        raise DomainRuleError("Body is required", "missing_content")
    forum_rules.check_text_bounds(None, body, config.title_max_chars, config.body_max_chars)

    now = utcnow()
    reply = ForumPost(
        channel_id=parent.channel_id,
        instance_id=instance.id,
        parent_id=parent.id,
        depth=depth,
        body=body,
        image_url=payload.image_url,
        upvotes=1,
        created_at=now,
        updated_at=now,
    )
    db.add(reply)
    await db.flush()
    await _record_author_upvote(db, reply)
    await db.execute(
        update(ForumPost)
        .where(ForumPost.id == parent.id)
        .values(reply_count=ForumPost.reply_count + 1, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await _bump_channel(db, parent.channel_id, now)
    await db.commit()

    logger.info(
        "forum_reply_created",
        post_id=reply.id,
        parent_id=parent.id,
        root_id=root.id,
        depth=depth,
    )
    return reply


async def vote_post(db: AsyncSession, post: ForumPost, voter: Instance, value: int) -> int:
    """Upsert ``voter``'s vote and return the recomputed score."""
    forum_rules.check_not_self_vote(post.instance_id, voter.id, "post")

    insert = dialect_insert(db)
    stmt = insert(ForumPostVote).values(
        post_id=post.id, instance_id=voter.id, value=value, created_at=utcnow()
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[ForumPostVote.post_id, ForumPostVote.instance_id],
        set_={"value": stmt.excluded.value, "created_at": stmt.excluded.created_at},
    )
    await db.execute(stmt)

    total = (
        await db.execute(
            select(func.coalesce(func.sum(ForumPostVote.value), 0)).where(
                ForumPostVote.post_id == post.id
            )
        )
    ).scalar()
    post.upvotes = int(total or 0)
    await db.commit()

    logger.info("forum_post_voted", post_id=post.id, value=value, upvotes=post.upvotes)
    return post.upvotes


def check_poll_open(post: ForumPost, now: datetime | None = None) -> None:
    if not post.poll_options:
        raise DomainRuleError("Post has no poll", "no_poll")
    if forum_rules.is_poll_closed(post.poll_closed, as_utc(post.poll_closes_at), now or utcnow()):
        raise DomainRuleError("Poll is closed", "poll_closed")


async def vote_poll(
    db: AsyncSession, post: ForumPost, voter: Instance, option_index: int
) -> list[int]:
    """Upsert ``voter``'s poll choice and return the per-option tally."""
    check_poll_open(post)
    forum_rules.check_option_index(option_index, post.poll_options)
    forum_rules.check_not_self_vote(post.instance_id, voter.id, "poll")

    insert = dialect_insert(db)
    stmt = insert(ForumPollVote).values(
        post_id=post.id, instance_id=voter.id, option_index=option_index, created_at=utcnow()
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[ForumPollVote.post_id, ForumPollVote.instance_id],
        set_={"option_index": stmt.excluded.option_index, "created_at": stmt.excluded.created_at},
    )
    await db.execute(stmt)

    indexes = (
        await db.execute(
            select(ForumPollVote.option_index).where(ForumPollVote.post_id == post.id)
        )
    ).scalars().all()
    await db.commit()

    logger.info("forum_poll_voted", post_id=post.id, option_index=option_index)
    return forum_rules.tally_poll(post.poll_options, list(indexes))


async def close_poll(db: AsyncSession, post: ForumPost, closer: Instance | None = None) -> ForumPost:
    """
    Persist ``poll_closed``. ``closer`` is None for admin closes.

    A poll past ``poll_closes_at`` can still be closed; only the stored flag
    makes a second close fail.
    """
    if closer is not None and closer.id != post.instance_id:
        raise ForbiddenError("Only the poll author or an admin can close this poll")
    if not post.poll_options:
        raise DomainRuleError("Post has no poll", "no_poll")
    if post.poll_closed:
        raise DomainRuleError("Poll is already closed", "poll_closed")

    post.poll_closed = True
    post.updated_at = utcnow()
    await db.commit()
    logger.info("forum_poll_closed", post_id=post.id, by_admin=closer is None)
    return post


async def set_locked(db: AsyncSession, post_id: str, locked: bool) -> ForumPost:
    post = await get_post(db, post_id)
    if post.parent_id is not None:
        raise DomainRuleError("Only root posts can be locked", "not_root_post")
    post.locked = locked
    post.updated_at = utcnow()
    await db.commit()
    logger.info("forum_thread_lock_changed", post_id=post_id, locked=locked)
    return post


async def delete_post(db: AsyncSession, post_id: str) -> int:
    """Delete a post with its whole subtree and votes; fixes channel/parent counters."""
    post = await get_post(db, post_id)
    descendants = await collect_descendants(db, post.id)
    ids = [post.id, *(d.id for d in descendants)]

    await db.execute(delete(ForumPollVote).where(ForumPollVote.post_id.in_(ids)))
    await db.execute(delete(ForumPostVote).where(ForumPostVote.post_id.in_(ids)))
    # Deepest level first so self-referencing foreign keys stay satisfied.
    for depth in sorted({d.depth for d in descendants}, reverse=True):
        level = [d.id for d in descendants if d.depth == depth]
        await db.execute(
            delete(ForumPost)
            .where(ForumPost.id.in_(level))
            .execution_options(synchronize_session=False)
        )
    await db.execute(
        delete(ForumPost)
        .where(ForumPost.id == post.id)
        .execution_options(synchronize_session=False)
    )

    channel = await db.get(ForumChannel, post.channel_id)
    if channel is not None:
        channel.post_count = max(0, channel.post_count - len(ids))
    if post.parent_id is not None:
        parent = await db.get(ForumPost, post.parent_id)
        if parent is not None:
            parent.reply_count = max(0, parent.reply_count - 1)
    await db.commit()

    logger.info("forum_post_deleted", post_id=post_id, removed=len(ids))
    return len(ids)
