from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from feed_relay.models import FeedKind


class SubscribeRequest(BaseModel):
    guild_id: str = Field(..., min_length=1, max_length=32)
    channel_id: str = Field(..., min_length=1, max_length=32)
    feed: FeedKind
    auto_publish: bool = False


class SubscriptionResponse(BaseModel):
    id: str
    guild_id: str
    channel_id: str
    feed: FeedKind
    auto_publish: bool
    last_comment_id: int | None = None
    tracked_incidents: int = 0


class RoleMentionRequest(BaseModel):
    guild_id: str = Field(..., min_length=1, max_length=32)
    feed: FeedKind
    key: str = Field(..., min_length=1, max_length=120)
    role_id: str | None = Field(None, min_length=1, max_length=32)  # None removes the mapping


class PollResponse(BaseModel):
    feed: FeedKind
    processed: int


class HealthResponse(BaseModel):
    ok: bool
    gates: dict[str, dict[str, Any]]
    scheduler_jobs: list[str]
    pending_crossposts: int
    credentials: dict[str, int]


class RecallStatusRequest(BaseModel):
    incident_id: str = Field(..., min_length=1, max_length=64)


class RecallCommentRequest(BaseModel):
    comment_id: int = Field(..., gt=0)


class RecallResponse(BaseModel):
    subscription_id: str
    message_id: str
