"""Initial schema: registry, feature requests, forum, rate limits, releases.

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # --- Instances ---
    op.create_table(
        "instances",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("public_key", sa.Text(), nullable=False),
        sa.Column("repo_url", sa.Text(), nullable=False),
        sa.Column("repo_type", sa.Text(), nullable=False, server_default=sa.text("'github'")),
        sa.Column("nickname", sa.Text(), nullable=False),
        sa.Column("org_name", sa.Text()),
        sa.Column("description", sa.Text()),
        sa.Column("avatar_color", sa.Text()),
        sa.Column("avatar_icon", sa.Text()),
        sa.Column("avatar_border", sa.Text()),
        sa.Column("featured_skills", JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("skills_writeup", sa.Text()),
        sa.Column("local_ports", JSONB()),
        sa.Column("lan_hostname", sa.Text()),
        sa.Column("ip_hash", sa.Text()),
        sa.Column("online", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("last_heartbeat", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("registered_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("idx_instances_online", "instances", ["online", "last_heartbeat"])
    op.create_index("idx_instances_ip_hash", "instances", ["ip_hash"])

    # --- Feature requests ---
    op.create_table(
        "feature_requests",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("instance_id", sa.Text(), sa.ForeignKey("instances.id", ondelete="CASCADE"), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("category", sa.Text(), nullable=False),
        sa.Column("votes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("status", sa.Text(), nullable=False, server_default=sa.text("'open'")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint(
            "category IN ('skill','feature','integration','improvement')",
            name="ck_feature_request_category",
        ),
        sa.CheckConstraint(
            "status IN ('open','in_progress','completed','declined')",
            name="ck_feature_request_status",
        ),
    )
    op.create_index("idx_feature_requests_votes", "feature_requests", ["votes", "created_at"])

    op.create_table(
        "votes",
        sa.Column("feature_request_id", sa.Text(), sa.ForeignKey("feature_requests.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("instance_id", sa.Text(), sa.ForeignKey("instances.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("value", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint("value IN (1, -1)", name="ck_vote_value"),
    )

    # --- Forum ---
    op.create_table(
        "forum_channels",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("visible", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("post_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_post_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )

    op.create_table(
        "forum_posts",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("channel_id", sa.Text(), sa.ForeignKey("forum_channels.id", ondelete="CASCADE"), nullable=False),
        sa.Column("instance_id", sa.Text(), sa.ForeignKey("instances.id", ondelete="CASCADE"), nullable=False),
        sa.Column("parent_id", sa.Text(), sa.ForeignKey("forum_posts.id", ondelete="CASCADE")),
        sa.Column("depth", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("title", sa.Text()),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("image_url", sa.Text()),
        sa.Column("upvotes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("reply_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("locked", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("poll_options", JSONB()),
        sa.Column("poll_closes_at", sa.DateTime(timezone=True)),
        sa.Column("poll_closed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint("depth >= 0 AND depth <= 3", name="ck_forum_post_depth"),
    )
    op.create_index("idx_forum_posts_channel", "forum_posts", ["channel_id", "parent_id", "created_at"])
    op.create_index("idx_forum_posts_parent", "forum_posts", ["parent_id"])

    op.create_table(
        "forum_post_votes",
        sa.Column("post_id", sa.Text(), sa.ForeignKey("forum_posts.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("instance_id", sa.Text(), sa.ForeignKey("instances.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("value", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint("value IN (1, -1)", name="ck_forum_post_vote_value"),
    )

    op.create_table(
        "forum_poll_votes",
        sa.Column("post_id", sa.Text(), sa.ForeignKey("forum_posts.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("instance_id", sa.Text(), sa.ForeignKey("instances.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("option_index", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint("option_index >= 0", name="ck_forum_poll_vote_index"),
    )

    op.create_table(
        "forum_config",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("post_limit_per_day", sa.Integer(), nullable=False, server_default=sa.text("5")),
        sa.Column("vote_limit_per_day", sa.Integer(), nullable=False, server_default=sa.text("20")),
        sa.Column("title_max_chars", sa.Integer(), nullable=False, server_default=sa.text("200")),
        sa.Column("body_max_chars", sa.Integer(), nullable=False, server_default=sa.text("5000")),
        sa.Column("max_reply_depth", sa.Integer(), nullable=False, server_default=sa.text("3")),
        sa.Column("recommended_check_interval_ms", sa.BigInteger(), nullable=False, server_default=sa.text("14400000")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint("id = 1", name="ck_forum_config_singleton"),
    )

    # --- Rate limits ---
    op.create_table(
        "rate_limits",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("key", sa.Text(), nullable=False),
        sa.Column("created_ms", sa.BigInteger(), nullable=False),
    )
    op.create_index("idx_rate_limits_key_ts", "rate_limits", ["key", "created_ms"])

    # --- Releases ---
    op.create_table(
        "releases",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("version", sa.Text(), nullable=False, unique=True),
        sa.Column("title", sa.Text()),
        sa.Column("notes", sa.Text()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("idx_releases_created", "releases", ["created_at"])


def downgrade() -> None:
    op.drop_table("releases")
    op.drop_table("rate_limits")
    op.drop_table("forum_config")
    op.drop_table("forum_poll_votes")
    op.drop_table("forum_post_votes")
    op.drop_table("forum_posts")
    op.drop_table("forum_channels")
    op.drop_table("votes")
    op.drop_table("feature_requests")
    op.drop_table("instances")
