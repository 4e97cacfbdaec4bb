"""Minimal OAuth client web app served on ``app.{base_domain}``.

It signs users in through the hub's own authorization server with the
bootstrapped system client, then keeps the tokens in HttpOnly cookies.
"""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import urlencode

import httpx
from fastapi import APIRouter, Request, status
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from exprsn_hub.api.dependencies import HubDep, SessionDep
from exprsn_hub.core.errors import AuthenticationFailure, UpstreamFailure, ValidationFailure
from exprsn_hub.core.security import constant_time_equals, generate_token
from exprsn_hub.hub import Hub
from exprsn_hub.models import OAuthClient
from exprsn_hub.services.bootstrap import WEB_APP_SCOPE
from exprsn_hub.services.users import get_user

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webapp"])

STATE_COOKIE = "exprsn_oauth_state"
ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"
STATE_TTL = 600


def callback_url(hub: Hub) -> str:
    return f"https://app.{hub.config.base_domain}/callback"


def _web_client(hub: Hub, db: Session) -> OAuthClient:
    client = db.get(OAuthClient, hub.web_client_id) if hub.web_client_id else None
    if client is None or not client.is_active:
        raise UpstreamFailure("The web app OAuth client is not configured")
    return client


@router.get("/")
def home(request: Request, hub: HubDep, db: SessionDep) -> dict[str, Any]:
    """Report whether the browser holds a valid access token."""
    token = request.cookies.get(ACCESS_COOKIE)
    principal = hub.tokens.validate_access_token(db, token) if token else None
    user = get_user(db, principal.user_id) if principal is not None else None
    return {
        "app": "exprsn-web",
        "baseDomain": hub.config.base_domain,
        "loggedIn": user is not None,
        "user": {"id": user.id, "username": user.username} if user else None,
    }


@router.get("/login")
def login(hub: HubDep, db: SessionDep) -> RedirectResponse:
    client = _web_client(hub, db)
    state = generate_token(16)
    params = {
        "response_type": "code",
        "client_id": client.id,
        "redirect_uri": callback_url(hub),
        "scope": WEB_APP_SCOPE,
        "state": state,
    }
    response = RedirectResponse(
        f"{hub.config.issuer}/authorize?{urlencode(params)}", status_code=status.HTTP_302_FOUND
    )
    response.set_cookie(
        STATE_COOKIE,
        state,
        max_age=STATE_TTL,
        httponly=True,
        samesite="lax",
        secure=hub.config.is_production,
    )
    return response


@router.get("/callback")
async def callback(
    request: Request,
    hub: HubDep,
    db: SessionDep,
    code: str = "",
    state: str = "",
    error: str = "",
) -> RedirectResponse:
    """Finish the authorization code flow started by ``/login``.

    Raises:
        AuthenticationFailure: If the server reported an error or ``state`` does not match.
        UpstreamFailure: If the token exchange fails.
    """
    if error:
        raise AuthenticationFailure(f"Authorization failed: {error}")
    expected = request.cookies.get(STATE_COOKIE, "")
    if not state or not expected or not constant_time_equals(state, expected):
        raise AuthenticationFailure("Invalid OAuth state")
    if not code:
        raise ValidationFailure("Missing authorization code", details={"field": "code"})

    client = _web_client(hub, db)
    form = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": callback_url(hub),
        "client_id": client.id,
        "client_secret": client.client_secret,
    }
    async with httpx.AsyncClient(
        transport=request.app.state.oauth_transport, timeout=10.0
    ) as http:
        try:
            reply = await http.post(f"{hub.config.issuer}/token", data=form)
        except httpx.HTTPError as exc:
            logger.error("Token exchange with %s failed: %s", hub.config.issuer, exc)
            raise UpstreamFailure("Token exchange failed") from exc
    if reply.status_code != status.HTTP_200_OK:
        logger.warning("Token endpoint answered %s", reply.status_code)
        raise AuthenticationFailure("Authorization code was rejected")
    tokens = reply.json()

    response = RedirectResponse("/", status_code=status.HTTP_302_FOUND)
    secure = hub.config.is_production
    response.delete_cookie(STATE_COOKIE)
    response.set_cookie(
        ACCESS_COOKIE,
        tokens["access_token"],
        max_age=int(tokens.get("expires_in", hub.config.access_token_ttl)),
        httponly=True,
        samesite="lax",
        secure=secure,
    )
    if tokens.get("refresh_token"):
        response.set_cookie(
            REFRESH_COOKIE,
            tokens["refresh_token"],
            max_age=hub.config.refresh_token_ttl,
            httponly=True,
            samesite="lax",
            secure=secure,
        )
    return response


@router.get("/logout")
def logout() -> RedirectResponse:
    response = RedirectResponse("/", status_code=status.HTTP_302_FOUND)
    for cookie in (ACCESS_COOKIE, REFRESH_COOKIE, STATE_COOKIE):
        response.delete_cookie(cookie)
    return response
