"""Schemas for the per-site social API."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class PostCreate(BaseModel):
    """Schema for creating a new post."""

    content: str = Field(..., min_length=1, max_length=5000, description="Post body")
    visibility: Literal["public", "followers", "private"] = "public"
    in_reply_to_id: int | None = Field(None, description="Post this one replies to")


class PostResponse(BaseModel):
    """Post as returned by the API."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    content: str
    visibility: str
    in_reply_to_id: int | None = None
    federation_id: str | None = None
    created_at: datetime


class FollowResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    follower_id: int | None = None
    following_id: int
    remote_actor: str | None = None
    status: str


class FollowDecision(BaseModel):
    accept: bool = True


class NotificationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    type: str
    actor_id: int | None = None
    post_id: int | None = None
    is_read: bool
    created_at: datetime


class MarkReadRequest(BaseModel):
    ids: list[int] | None = Field(None, description="Notifications to mark; all when omitted")


class ProfileUpdate(BaseModel):
    """Editable profile fields; omitted fields are left unchanged."""

    display_name: str | None = Field(None, max_length=100)
    bio: str | None = Field(None, max_length=500)
    avatar_url: str | None = None
    website: str | None = None
    location: str | None = Field(None, max_length=100)
    is_private: bool | None = None


class ProfileResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    username: str
    display_name: str | None = None
    bio: str | None = None
    avatar_url: str | None = None
    website: str | None = None
    location: str | None = None
    subdomain: str | None = None
    federation_id: str
    is_private: bool
    created_at: datetime
