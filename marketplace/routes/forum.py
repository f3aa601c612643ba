"""Forum endpoints: channels, threads, replies, votes, polls and the config row."""

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.auth import is_admin, require_admin, supplied_admin_key
from marketplace.database import get_db
from marketplace.exceptions import AdminAuthError, InstanceNotFoundError
from marketplace.logging_config import get_logger
from marketplace.models import Instance
from marketplace.schemas import (
    ChannelCreate,
    ChannelResponse,
    ChannelUpdate,
    ForumConfigResponse,
    ForumConfigUpdate,
    ForumPostCreate,
    ForumReplyCreate,
    ForumThreadResponse,
    PollVotePayload,
    PostLockUpdate,
    SignedPayload,
    VotePayload,
)
from marketplace.services import forum_service
from marketplace.services.config_service import ForumConfigService, get_config_service
from marketplace.services.gateway import AttestationGateway, get_gateway, read_json
from marketplace.services.rate_limiter import DAY_MS

logger = get_logger(__name__)
router = APIRouter(prefix="/api/forum", tags=["forum"])


def post_quota_key(instance_id: str) -> str:
    return f"forum-post:{instance_id}"


def vote_quota_key(instance_id: str) -> str:
    return f"forum-vote:{instance_id}"


# ---------------------------------------------------------------------------
# Channels
# ---------------------------------------------------------------------------


@router.get("/channels")
async def list_channels(request: Request, db: AsyncSession = Depends(get_db)):
    """Visible channels; admins also see hidden ones."""
    channels = await forum_service.list_channels(db, include_hidden=is_admin(request))
    return {"channels": [ChannelResponse.model_validate(c) for c in channels]}


@router.post(
    "/channels",
    response_model=ChannelResponse,
    status_code=201,
    dependencies=[Depends(require_admin)],
)
async def create_channel(body: ChannelCreate, db: AsyncSession = Depends(get_db)):
    return await forum_service.create_channel(db, body)


@router.patch("/channels", response_model=ChannelResponse, dependencies=[Depends(require_admin)])
async def update_channel(body: ChannelUpdate, db: AsyncSession = Depends(get_db)):
    return await forum_service.set_channel_visibility(db, body.id, body.visible)


@router.delete("/channels", dependencies=[Depends(require_admin)])
async def delete_channel(
    id: str = Query(..., min_length=1),
    db: AsyncSession = Depends(get_db),
):
    removed = await forum_service.delete_channel(db, id)
    return {"success": True, "deleted": id, "posts_deleted": removed}


@router.get("/channels/{slug}/posts")
async def list_channel_posts(
    slug: str,
    request: Request,
    since: datetime | None = Query(None),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    """Root posts in a channel, newest first."""
    channel = await forum_service.get_channel(db, slug, include_hidden=is_admin(request))
    if since is not None:
        since = since.astimezone(timezone.utc) if since.tzinfo else since.replace(tzinfo=timezone.utc)
    posts = await forum_service.list_channel_posts(
        db, channel, since=since, limit=limit, offset=offset
    )
    return {"channel": ChannelResponse.model_validate(channel), "posts": posts}


# ---------------------------------------------------------------------------
# Posts
# ---------------------------------------------------------------------------


@router.post("/posts", status_code=201)
async def create_post(
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: AttestationGateway = Depends(get_gateway),
    config_service: ForumConfigService = Depends(get_config_service),
):
    """Signed root post, optionally with a poll."""
    raw = await read_json(request)
    payload, instance = await gateway.authenticate(db, raw, ForumPostCreate)
    config = await config_service.get(db)
    quota = await gateway.enforce_quota(
        db,
        post_quota_key(instance.id),
        config.post_limit_per_day,
        DAY_MS,
        "Daily post limit reached",
    )
    gateway.touch(instance)

    post = await forum_service.create_post(db, instance, payload, config)
    (view,) = await forum_service.build_post_views(db, [post])
    return {"post": view, "limits": {"posts": {"used": quota.used, "limit": quota.limit}}}


@router.get("/posts/{post_id}", response_model=ForumThreadResponse)
async def get_thread(post_id: str, request: Request, db: AsyncSession = Depends(get_db)):
    """A post and its whole reply tree, oldest reply first."""
    post, replies = await forum_service.get_thread(db, post_id, include_hidden=is_admin(request))
    return ForumThreadResponse(post=post, replies=replies)


@router.patch("/posts/{post_id}", dependencies=[Depends(require_admin)])
async def lock_thread(post_id: str, body: PostLockUpdate, db: AsyncSession = Depends(get_db)):
    post = await forum_service.set_locked(db, post_id, body.locked)
    (view,) = await forum_service.build_post_views(db, [post])
    return {"success": True, "post": view}


@router.delete("/posts/{post_id}", dependencies=[Depends(require_admin)])
async def delete_post(post_id: str, db: AsyncSession = Depends(get_db)):
    removed = await forum_service.delete_post(db, post_id)
    return {"success": True, "deleted": post_id, "posts_deleted": removed}


@router.post("/posts/{post_id}/reply", status_code=201)
async def reply(
    post_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: AttestationGateway = Depends(get_gateway),
    config_service: ForumConfigService = Depends(get_config_service),
):
    """Signed reply. Shares the daily post quota with root posts."""
    raw = await read_json(request)
    payload, instance = await gateway.authenticate(db, raw, ForumReplyCreate)
    parent = await forum_service.get_post(db, post_id)
    await forum_service.get_channel(db, parent.channel_id)

    config = await config_service.get(db)
    quota = await gateway.enforce_quota(
        db,
        post_quota_key(instance.id),
        config.post_limit_per_day,
        DAY_MS,
        "Daily post limit reached",
    )
    gateway.touch(instance)

    reply_post = await forum_service.create_reply(db, instance, parent, payload, config)
    (view,) = await forum_service.build_post_views(db, [reply_post])
    return {"post": view, "limits": {"posts": {"used": quota.used, "limit": quota.limit}}}


@router.post("/posts/{post_id}/vote")
async def vote_post(
    post_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: AttestationGateway = Depends(get_gateway),
    config_service: ForumConfigService = Depends(get_config_service),
):
    raw = await read_json(request)
    payload, instance = await gateway.authenticate(db, raw, VotePayload)
    post = await forum_service.get_post(db, post_id)

    config = await config_service.get(db)
    quota = await gateway.enforce_quota(
        db,
        vote_quota_key(instance.id),
        config.vote_limit_per_day,
        DAY_MS,
        "Daily vote limit reached",
    )
    gateway.touch(instance)

    upvotes = await forum_service.vote_post(db, post, instance, payload.value)
    return {
        "success": True,
        "post_id": post_id,
        "upvotes": upvotes,
        "limits": {"votes": {"used": quota.used, "limit": quota.limit}},
    }


@router.post("/posts/{post_id}/poll-vote")
async def vote_poll(
    post_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: AttestationGateway = Depends(get_gateway),
    config_service: ForumConfigService = Depends(get_config_service),
):
    """Signed poll choice. Shares the daily vote quota with post votes."""
    raw = await read_json(request)
    payload, instance = await gateway.authenticate(db, raw, PollVotePayload)
    post = await forum_service.get_post(db, post_id)

    config = await config_service.get(db)
    quota = await gateway.enforce_quota(
        db,
        vote_quota_key(instance.id),
        config.vote_limit_per_day,
        DAY_MS,
        "Daily vote limit reached",
    )
    gateway.touch(instance)

    results = await forum_service.vote_poll(db, post, instance, payload.option_index)
    return {
        "success": True,
        "post_id": post_id,
        "option_index": payload.option_index,
        "poll_results": results,
        "poll_total_votes": sum(results),
        "limits": {"votes": {"used": quota.used, "limit": quota.limit}},
    }


@router.post("/posts/{post_id}/poll-close")
async def close_poll(
    post_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: AttestationGateway = Depends(get_gateway),
):
    """Close a poll early. Admin key, or a payload signed by the poll's author."""
    if is_admin(request):
        post = await forum_service.get_post(db, post_id)
        post = await forum_service.close_poll(db, post, closer=None)
    else:
        if supplied_admin_key(request) and not await request.body():
            raise AdminAuthError(missing=False)
        raw = await read_json(request)
        _, instance = await gateway.authenticate(db, raw, SignedPayload)
        post = await forum_service.get_post(db, post_id)
        gateway.touch(instance)
        post = await forum_service.close_poll(db, post, closer=instance)

    (view,) = await forum_service.build_post_views(db, [post])
    return {"success": True, "post": view}


# ---------------------------------------------------------------------------
# Config and quota pre-flight
# ---------------------------------------------------------------------------


@router.get("/config", response_model=ForumConfigResponse)
async def get_config(
    db: AsyncSession = Depends(get_db),
    config_service: ForumConfigService = Depends(get_config_service),
):
    config = await config_service.get(db)
    await db.commit()
    return config


@router.patch(
    "/config",
    response_model=ForumConfigResponse,
    dependencies=[Depends(require_admin)],
)
async def update_config(
    body: ForumConfigUpdate,
    db: AsyncSession = Depends(get_db),
    config_service: ForumConfigService = Depends(get_config_service),
):
    return await config_service.update(db, body)


@router.get("/rate-limit")
async def rate_limit_status(
    instance_id: str = Query(..., min_length=1),
    db: AsyncSession = Depends(get_db),
    gateway: AttestationGateway = Depends(get_gateway),
    config_service: ForumConfigService = Depends(get_config_service),
):
    """Current 24 h usage of both forum quotas for ``instance_id``."""
    if await db.get(Instance, instance_id) is None:
        raise InstanceNotFoundError(instance_id)
    config = await config_service.get(db)
    limiter = gateway.rate_limiter
    posts_used = await limiter.count(db, post_quota_key(instance_id), DAY_MS)
    votes_used = await limiter.count(db, vote_quota_key(instance_id), DAY_MS)
    return {
        "instance_id": instance_id,
        "posts_today": posts_used,
        "post_limit": config.post_limit_per_day,
        "posts_remaining": max(0, config.post_limit_per_day - posts_used),
        "votes_today": votes_used,
        "vote_limit": config.vote_limit_per_day,
        "votes_remaining": max(0, config.vote_limit_per_day - votes_used),
    }
