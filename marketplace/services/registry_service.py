"""Instance registry: registration, heartbeat, profile updates and directory reads."""

from datetime import timedelta

from sqlalchemy import func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.auth import instance_id_from_repo
from marketplace.exceptions import (
    ForbiddenError,
    MalformedRequestError,
    PublicKeyMismatchError,
)
from marketplace.logging_config import get_logger
from marketplace.models import FeatureRequest, ForumPost, Instance, utcnow
from marketplace.schemas import ProfileUpdatePayload, RegisterPayload

logger = get_logger(__name__)

MUTABLE_PROFILE_FIELDS = (
    "nickname",
    "org_name",
    "description",
    "avatar_color",
    "avatar_icon",
    "avatar_border",
    "featured_skills",
    "skills_writeup",
    "local_ports",
    "lan_hostname",
)


def dialect_insert(db: AsyncSession):
    """``insert`` construct with ON CONFLICT support for the bound dialect."""
    if db.get_bind().dialect.name == "postgresql":
        return postgresql.insert
    return sqlite.insert


async def register_instance(
    db: AsyncSession, payload: RegisterPayload, ip_hash: str
) -> tuple[Instance, bool]:
    """
    Create or refresh the instance row for ``payload.repo_url``.

    The id is derived from the repo URL, so re-registration is an upsert:
    mutable fields take the latest values. A claim already held by another
    public key is rejected, and the conflict update is guarded on the key so
    a racing registration cannot overwrite it either.

    Returns:
        (instance, created)
    """
    instance_id = instance_id_from_repo(payload.repo_url)
    if payload.instance_id and payload.instance_id != instance_id:
        raise MalformedRequestError("instance_id does not match repo_url")

    existing = await db.get(Instance, instance_id)
    if existing is not None and existing.public_key != payload.public_key:
        logger.warning("registration_key_mismatch", instance_id=instance_id)
        raise PublicKeyMismatchError()

    now = utcnow()
    values = {
        "id": instance_id,
        "public_key": payload.public_key,
        "repo_url": payload.repo_url.strip(),
        "repo_type": payload.repo_type,
        "nickname": payload.nickname.strip(),
        "org_name": payload.org_name,
        "description": payload.description,
        "avatar_color": payload.avatar_color,
        "avatar_icon": payload.avatar_icon,
        "avatar_border": payload.avatar_border,
        "featured_skills": payload.featured_skills,
        "skills_writeup": payload.skills_writeup,
        "local_ports": payload.local_ports,
        "lan_hostname": payload.lan_hostname,
        "ip_hash": ip_hash,
        "online": True,
        "last_heartbeat": now,
        "registered_at": now,
        "updated_at": now,
    }
    insert = dialect_insert(db)
    stmt = insert(Instance).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=[Instance.id],
        set_={
            key: stmt.excluded[key]
            for key in (*MUTABLE_PROFILE_FIELDS, "repo_url", "repo_type", "ip_hash", "online", "last_heartbeat", "updated_at")
        },
        where=Instance.public_key == stmt.excluded.public_key,
    )
    await db.execute(stmt)

    instance = await db.get(Instance, instance_id, populate_existing=True)
    if instance is None or instance.public_key != payload.public_key:
        raise PublicKeyMismatchError()

    await db.commit()
    created = existing is None
    logger.info(
        "instance_registered" if created else "instance_reregistered",
        instance_id=instance_id,
        ip_hash_prefix=ip_hash[:8],
    )
    return instance, created


async def heartbeat(db: AsyncSession, instance: Instance) -> Instance:
    instance.online = True
    instance.last_heartbeat = utcnow()
    await db.commit()
    logger.debug("instance_heartbeat", instance_id=instance.id)
    return instance


async def update_profile(
    db: AsyncSession, instance: Instance, path_id: str, payload: ProfileUpdatePayload
) -> Instance:
    """Apply the display fields present in ``payload``; only the holder may do so."""
    if payload.instance_id != path_id:
        raise ForbiddenError("Can only update your own profile")

    changes = payload.model_dump(include=set(MUTABLE_PROFILE_FIELDS), exclude_unset=True)
    if "nickname" in changes and changes["nickname"] is None:
        raise MalformedRequestError("nickname cannot be cleared")
    for field, value in changes.items():
        setattr(instance, field, value.strip() if field == "nickname" else value)

    now = utcnow()
    instance.updated_at = now
    instance.online = True
    instance.last_heartbeat = now
    await db.commit()
    logger.info("instance_profile_updated", instance_id=instance.id, fields=sorted(changes))
    return instance


async def list_instances(db: AsyncSession, limit: int = 50, offset: int = 0) -> tuple[list[Instance], int]:
    total = (await db.execute(select(func.count()).select_from(Instance))).scalar() or 0
    result = await db.execute(
        select(Instance)
        .order_by(Instance.online.desc(), Instance.last_heartbeat.desc())
        .offset(offset)
        .limit(limit)
    )
    return list(result.scalars().all()), total


async def find_lan_peers(db: AsyncSession, instance: Instance) -> list[Instance]:
    """Other instances registered from the same hashed network address."""
    if not instance.ip_hash:
        return []
    result = await db.execute(
        select(Instance)
        .where(Instance.ip_hash == instance.ip_hash, Instance.id != instance.id)
        .order_by(Instance.last_heartbeat.desc())
    )
    return list(result.scalars().all())


async def mark_stale_offline(db: AsyncSession, stale_after_minutes: int) -> int:
    """Flip ``online`` off for instances silent longer than the threshold."""
    cutoff = utcnow() - timedelta(minutes=stale_after_minutes)
    result = await db.execute(
        update(Instance)
        .where(Instance.online.is_(True), Instance.last_heartbeat < cutoff)
        .values(online=False)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount:
        logger.info("stale_instances_marked_offline", count=result.rowcount)
    return result.rowcount or 0


async def admin_directory(db: AsyncSession) -> list[dict]:
    """Full directory with ip-hash prefix and per-instance activity counts."""
    fr_counts = dict(
        (
            await db.execute(
                select(FeatureRequest.instance_id, func.count()).group_by(FeatureRequest.instance_id)
            )
        ).all()
    )
    post_counts = dict(
        (
            await db.execute(
                select(ForumPost.instance_id, func.count()).group_by(ForumPost.instance_id)
            )
        ).all()
    )
    instances = (
        await db.execute(
            select(Instance).order_by(Instance.online.desc(), Instance.last_heartbeat.desc())
        )
    ).scalars().all()
    return [
        {
            "instance": inst,
            "ip_hash_short": inst.ip_hash[:12] if inst.ip_hash else None,
            "feature_request_count": fr_counts.get(inst.id, 0),
            "post_count": post_counts.get(inst.id, 0),
        }
        for inst in instances
    ]
