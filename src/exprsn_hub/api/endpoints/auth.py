"""JSON authentication API of the administrative app.

Issues HS256 JWTs (``{"id": user_id}``) consumed by ``/api/sites`` and
``/api/v1/profile``.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, status

from exprsn_hub.api.dependencies import HubDep, JWTUserDep, SessionDep, rate_limit
from exprsn_hub.core.errors import AuthenticationFailure
from exprsn_hub.core.security import create_access_token
from exprsn_hub.models import User
from exprsn_hub.schemas.auth import LoginRequest, RegisterRequest, TokenResponse, UserSummary
from exprsn_hub.services.rate_limit import STRICT_POLICY
from exprsn_hub.services.users import authenticate, register_user

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/auth",
    tags=["authentication"],
    dependencies=[Depends(rate_limit(STRICT_POLICY, "api:auth"))],
)


def _token_response(hub: HubDep, user: User) -> TokenResponse:
    return TokenResponse(
        token=create_access_token(user.id, {"role": user.role}, hub.config),
        expires_in=hub.config.jwt_expires_seconds,
        user=UserSummary.model_validate(user),
    )


@router.post("/login", response_model=TokenResponse)
def login(payload: LoginRequest, hub: HubDep, db: SessionDep) -> TokenResponse:
    """Exchange a username (or email) and password for an admin API token.

    Raises:
        AuthenticationFailure: On any credential mismatch, without saying which part failed.
    """
    user = authenticate(db, payload.username, payload.password)
    if user is None:
        raise AuthenticationFailure("Invalid credentials")
    logger.info("API login for %s", user.username)
    return _token_response(hub, user)


@router.post("/register", response_model=TokenResponse, status_code=status.HTTP_201_CREATED)
def register(payload: RegisterRequest, hub: HubDep, db: SessionDep) -> TokenResponse:
    user = register_user(
        db,
        hub.config,
        username=payload.username,
        email=payload.email,
        password=payload.password,
        display_name=payload.display_name,
    )
    return _token_response(hub, user)


@router.get("/verify", response_model=UserSummary)
def verify(user: JWTUserDep) -> UserSummary:
    """Return the account behind a still-valid token."""
    return UserSummary.model_validate(user)
