"""SQLAlchemy ORM models for the marketplace registry, feature requests and forum."""

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    ForeignKey,
    Index,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import Boolean, DateTime, Integer

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only auto-increments INTEGER PRIMARY KEY columns.
BigIntId = BigInteger().with_variant(Integer(), "sqlite")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def new_id() -> str:
    return str(uuid4())


class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class Instance(Base):
    __tablename__ = "instances"
    __table_args__ = (
        Index("idx_instances_online", "online", "last_heartbeat"),
        Index("idx_instances_ip_hash", "ip_hash"),
    )

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    public_key: Mapped[str] = mapped_column(Text, nullable=False)
    repo_url: Mapped[str] = mapped_column(Text, nullable=False)
    repo_type: Mapped[str] = mapped_column(
        Text, nullable=False, server_default=text("'github'"), default="github"
    )
    nickname: Mapped[str] = mapped_column(Text, nullable=False)
    org_name: Mapped[str | None] = mapped_column(Text)
    description: Mapped[str | None] = mapped_column(Text)
    avatar_color: Mapped[str | None] = mapped_column(Text)
    avatar_icon: Mapped[str | None] = mapped_column(Text)
    avatar_border: Mapped[str | None] = mapped_column(Text)
    featured_skills: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    skills_writeup: Mapped[str | None] = mapped_column(Text)
    local_ports: Mapped[dict | None] = mapped_column(JSONType)
    lan_hostname: Mapped[str | None] = mapped_column(Text)
    ip_hash: Mapped[str | None] = mapped_column(Text)
    online: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=text("true"), default=True
    )
    last_heartbeat: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    registered_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("CURRENT_TIMESTAMP"), default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("CURRENT_TIMESTAMP"), default=utcnow
    )


# ---------------------------------------------------------------------------
# Feature requests
# ---------------------------------------------------------------------------


FEATURE_CATEGORIES = ("skill", "feature", "integration", "improvement")
FEATURE_STATUSES = ("open", "in_progress", "completed", "declined")


class FeatureRequest(Base):
    __tablename__ = "feature_requests"
    __table_args__ = (
        Index("idx_feature_requests_votes", "votes", "created_at"),
        CheckConstraint(
            "category IN ('skill','feature','integration','improvement')",
            name="ck_feature_request_category",
        ),
        CheckConstraint(
            "status IN ('open','in_progress','completed','declined')",
            name="ck_feature_request_status",
        ),
    )

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=new_id)
    instance_id: Mapped[str] = mapped_column(
        Text, ForeignKey("instances.id", ondelete="CASCADE"), nullable=False
    )
    title: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(Text, nullable=False)
    votes: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default=text("0"), default=0
    )
    status: Mapped[str] = mapped_column(
        Text, nullable=False, server_default=text("'open'"), default="open"
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("CURRENT_TIMESTAMP"), default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("CURRENT_TIMESTAMP"), default=utcnow
    )


class Vote(Base):
    __tablename__ = "votes"
    __table_args__ = (CheckConstraint("value IN (1, -1)", name="ck_vote_value"),)

    feature_request_id: Mapped[str] = mapped_column(
        Text, ForeignKey("feature_requests.id", ondelete="CASCADE"), primary_key=True
    )
    instance_id: Mapped[str] = mapped_column(
        Text, ForeignKey("instances.id", ondelete="CASCADE"), primary_key=True
    )
    value: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


# ---------------------------------------------------------------------------
# Forum
# ---------------------------------------------------------------------------


class ForumChannel(Base):
    __tablename__ = "forum_channels"

    id: Mapped[str] = mapped_column(Text, primary_key=True)  # slug
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    visible: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=text("true"), default=True
    )
    post_count: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default=text("0"), default=0
    )
    last_post_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("CURRENT_TIMESTAMP"), default=utcnow
    )


class ForumPost(Base):
    __tablename__ = "forum_posts"
    __table_args__ = (
        Index("idx_forum_posts_channel", "channel_id", "parent_id", "created_at"),
        Index("idx_forum_posts_parent", "parent_id"),
        CheckConstraint("depth >= 0 AND depth <= 3", name="ck_forum_post_depth"),
    )

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=new_id)
    channel_id: Mapped[str] = mapped_column(
        Text, ForeignKey("forum_channels.id", ondelete="CASCADE"), nullable=False
    )
    instance_id: Mapped[str] = mapped_column(
        Text, ForeignKey("instances.id", ondelete="CASCADE"), nullable=False
    )
    parent_id: Mapped[str | None] = mapped_column(
        Text, ForeignKey("forum_posts.id", ondelete="CASCADE")
    )
    depth: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default=text("0"), default=0
    )
    title: Mapped[str | None] = mapped_column(Text)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    image_url: Mapped[str | None] = mapped_column(Text)
    upvotes: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default=text("0"), default=0
    )
    reply_count: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default=text("0"), default=0
    )
    locked: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=text("false"), default=False
    )
    poll_options: Mapped[list | None] = mapped_column(JSONType)
    poll_closes_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    poll_closed: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=text("false"), default=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("CURRENT_TIMESTAMP"), default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("CURRENT_TIMESTAMP"), default=utcnow
    )


class ForumPostVote(Base):
    __tablename__ = "forum_post_votes"
    __table_args__ = (CheckConstraint("value IN (1, -1)", name="ck_forum_post_vote_value"),)

    post_id: Mapped[str] = mapped_column(
        Text, ForeignKey("forum_posts.id", ondelete="CASCADE"), primary_key=True
    )
    instance_id: Mapped[str] = mapped_column(
        Text, ForeignKey("instances.id", ondelete="CASCADE"), primary_key=True
    )
    value: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class ForumPollVote(Base):
    __tablename__ = "forum_poll_votes"
    __table_args__ = (CheckConstraint("option_index >= 0", name="ck_forum_poll_vote_index"),)

    post_id: Mapped[str] = mapped_column(
        Text, ForeignKey("forum_posts.id", ondelete="CASCADE"), primary_key=True
    )
    instance_id: Mapped[str] = mapped_column(
        Text, ForeignKey("instances.id", ondelete="CASCADE"), primary_key=True
    )
    option_index: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class ForumConfig(Base):
    """Single-row table of admin-tunable forum limits (id is always 1)."""

    __tablename__ = "forum_config"
    __table_args__ = (CheckConstraint("id = 1", name="ck_forum_config_singleton"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=1)
    post_limit_per_day: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    vote_limit_per_day: Mapped[int] = mapped_column(Integer, nullable=False, default=20)
    title_max_chars: Mapped[int] = mapped_column(Integer, nullable=False, default=200)
    body_max_chars: Mapped[int] = mapped_column(Integer, nullable=False, default=5000)
    max_reply_depth: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    recommended_check_interval_ms: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=14_400_000
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------


class RateLimitRecord(Base):
    """One row per accepted request; counted per key over a trailing window."""

    __tablename__ = "rate_limits"
    __table_args__ = (Index("idx_rate_limits_key_ts", "key", "created_ms"),)

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    key: Mapped[str] = mapped_column(Text, nullable=False)
    created_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)


# ---------------------------------------------------------------------------
# Releases
# ---------------------------------------------------------------------------


class Release(Base):
    __tablename__ = "releases"
    __table_args__ = (Index("idx_releases_created", "created_at"),)

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=new_id)
    version: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    title: Mapped[str | None] = mapped_column(Text)
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("CURRENT_TIMESTAMP"), default=utcnow
    )
