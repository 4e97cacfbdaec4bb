"""Schemas for OAuth client management."""

from __future__ import annotations

from pydantic import BaseModel, Field


class ClientCreate(BaseModel):
    """Registration request for a new OAuth client."""

    name: str = Field(..., min_length=1, max_length=100)
    redirect_uris: list[str] = Field(..., min_length=1)
    grant_types: list[str] = Field(
        default_factory=lambda: ["authorization_code", "refresh_token"]
    )
    scope: str = Field("read", description="Space-delimited scope whitelist")


class ClientResponse(BaseModel):
    """Client metadata; ``client_secret`` is only present right after creation."""

    client_id: str
    name: str
    redirect_uris: list[str]
    grant_types: list[str]
    scope: str
    is_active: bool
    client_secret: str | None = None
