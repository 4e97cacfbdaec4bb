"""Schemas for the administrative JSON auth API."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class LoginRequest(BaseModel):
    """Credentials for ``/api/auth/login``."""

    username: str = Field(..., min_length=1, description="Username or email address")
    password: str = Field(..., min_length=1)


class RegisterRequest(BaseModel):
    """New account details for ``/api/auth/register``."""

    username: str = Field(..., description="3-30 letters, digits or underscores")
    email: str = Field(..., description="Contact email, unique per account")
    password: str = Field(..., description="8-128 characters")
    display_name: str | None = Field(None, max_length=100)


class UserSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    username: str
    email: str
    role: str
    subdomain: str | None = None
    display_name: str | None = None


class TokenResponse(BaseModel):
    """Admin JWT returned by login and registration."""

    token: str
    token_type: str = "Bearer"
    expires_in: int
    user: UserSummary
