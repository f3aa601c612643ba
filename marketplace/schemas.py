"""Pydantic v2 request/response schemas for all endpoints."""

from datetime import datetime
from typing import Annotated, Literal

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    StrictInt,
    field_validator,
)

from marketplace.models import as_utc

UtcDatetime = Annotated[datetime, AfterValidator(as_utc)]

FeatureCategory = Literal["skill", "feature", "integration", "improvement"]
FeatureStatus = Literal["open", "in_progress", "completed", "declined"]


def _check_vote_value(value: int) -> int:
    if value not in (1, -1):
        raise ValueError("value must be 1 or -1")
    return value


VoteValue = Annotated[StrictInt, AfterValidator(_check_vote_value)]


# ---------------------------------------------------------------------------
# Signed payloads
# ---------------------------------------------------------------------------


class SignedPayload(BaseModel):
    """Fields every instance-signed write carries. Extra fields are signed too."""

    model_config = ConfigDict(extra="allow")

    instance_id: str = Field(..., min_length=1, max_length=128)
    timestamp: StrictInt
    signature: str = Field(..., min_length=1)


class RegisterPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    public_key: str = Field(..., min_length=1)
    timestamp: StrictInt
    signature: str = Field(..., min_length=1)
    instance_id: str | None = None
    repo_url: str = Field(..., min_length=1, max_length=500)
    repo_type: Literal["github", "gitlab"] = "github"
    nickname: str = Field(..., min_length=1, max_length=24)
    org_name: str | None = Field(default=None, max_length=100)
    description: str | None = Field(default=None, max_length=500)
    avatar_color: str | None = Field(default=None, max_length=32)
    avatar_icon: str | None = Field(default=None, max_length=32)
    avatar_border: str | None = Field(default=None, max_length=32)
    featured_skills: list[Annotated[str, Field(max_length=100)]] = Field(
        default_factory=list, max_length=20
    )
    skills_writeup: str | None = Field(default=None, max_length=1000)
    local_ports: dict[str, int] | None = None
    lan_hostname: str | None = Field(default=None, max_length=253)

    @field_validator("repo_url", "nickname")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v


class ProfileUpdatePayload(SignedPayload):
    nickname: str | None = Field(default=None, min_length=1, max_length=24)
    org_name: str | None = Field(default=None, max_length=100)
    description: str | None = Field(default=None, max_length=500)
    avatar_color: str | None = Field(default=None, max_length=32)
    avatar_icon: str | None = Field(default=None, max_length=32)
    avatar_border: str | None = Field(default=None, max_length=32)
    featured_skills: list[Annotated[str, Field(max_length=100)]] | None = Field(
        default=None, max_length=20
    )
    skills_writeup: str | None = Field(default=None, max_length=1000)
    local_ports: dict[str, int] | None = None
    lan_hostname: str | None = Field(default=None, max_length=253)


class FeatureRequestCreate(SignedPayload):
    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1, max_length=2000)
    category: FeatureCategory


class VotePayload(SignedPayload):
    value: VoteValue


class ForumPostCreate(SignedPayload):
    """Root post. Title/body bounds come from the forum config row."""

    channel_id: str = Field(..., min_length=1, max_length=64)
    title: str = Field(..., min_length=1)
    body: str = Field(..., min_length=1)
    image_url: str | None = Field(default=None, max_length=2000)
    poll_options: list[str] | None = None
    poll_duration_days: StrictInt | None = None


class ForumReplyCreate(SignedPayload):
    body: str = Field(..., min_length=1)
    image_url: str | None = Field(default=None, max_length=2000)


class PollVotePayload(SignedPayload):
    option_index: StrictInt


# ---------------------------------------------------------------------------
# Admin requests
# ---------------------------------------------------------------------------


class FeatureRequestStatusUpdate(BaseModel):
    status: FeatureStatus


class ChannelCreate(BaseModel):
    id: str = Field(..., min_length=1, max_length=64, pattern=r"^[a-z0-9-]+$")
    name: str = Field(..., min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=500)
    visible: bool = True


class ChannelUpdate(BaseModel):
    id: str = Field(..., min_length=1)
    visible: bool


class PostLockUpdate(BaseModel):
    locked: bool


class ForumConfigUpdate(BaseModel):
    post_limit_per_day: StrictInt | None = Field(default=None, gt=0)
    vote_limit_per_day: StrictInt | None = Field(default=None, gt=0)
    title_max_chars: StrictInt | None = Field(default=None, gt=0)
    body_max_chars: StrictInt | None = Field(default=None, gt=0)
    max_reply_depth: StrictInt | None = Field(default=None, gt=0, le=3)
    recommended_check_interval_ms: StrictInt | None = Field(default=None, ge=60_000)


class ReleaseCreate(BaseModel):
    version: str = Field(..., min_length=1, max_length=50)
    title: str | None = Field(default=None, max_length=200)
    notes: str | None = Field(default=None, max_length=10_000)


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class InstanceProfile(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    public_key: str
    repo_url: str
    repo_type: str
    nickname: str
    org_name: str | None
    description: str | None
    avatar_color: str | None
    avatar_icon: str | None
    avatar_border: str | None
    featured_skills: list[str] = Field(default_factory=list)
    skills_writeup: str | None
    online: bool
    last_heartbeat: UtcDatetime
    registered_at: UtcDatetime
    updated_at: UtcDatetime


class LanPeer(InstanceProfile):
    local_ports: dict | None = None
    lan_hostname: str | None = None


class AdminInstance(LanPeer):
    ip_hash_short: str | None = None
    feature_request_count: int = 0
    post_count: int = 0


class RegisterResponse(BaseModel):
    success: bool = True
    instance_id: str
    created: bool
    profile: InstanceProfile


class FeatureRequestResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    instance_id: str
    instance_nickname: str | None = None
    title: str
    description: str
    category: str
    votes: int
    status: str
    created_at: UtcDatetime
    updated_at: UtcDatetime


class ChannelResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    description: str | None
    visible: bool
    post_count: int
    last_post_at: UtcDatetime | None
    created_at: UtcDatetime


class ForumPostResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    channel_id: str
    instance_id: str
    parent_id: str | None
    depth: int
    title: str | None
    body: str
    image_url: str | None
    upvotes: int
    reply_count: int
    locked: bool
    created_at: UtcDatetime
    updated_at: UtcDatetime
    author_nickname: str | None = None
    author_avatar_color: str | None = None
    author_avatar_icon: str | None = None
    author_avatar_border: str | None = None
    poll_options: list[str] | None = None
    poll_closes_at: UtcDatetime | None = None
    poll_closed: bool = False
    poll_results: list[int] | None = None
    poll_total_votes: int | None = None


class ForumThreadResponse(BaseModel):
    post: ForumPostResponse
    replies: list[ForumPostResponse]


class ForumConfigResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    post_limit_per_day: int
    vote_limit_per_day: int
    title_max_chars: int
    body_max_chars: int
    max_reply_depth: int
    recommended_check_interval_ms: int


class ReleaseResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    version: str
    title: str | None
    notes: str | None
    created_at: UtcDatetime
