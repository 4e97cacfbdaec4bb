"""OAuth 2.0 and OpenID Connect endpoints served on ``auth.{base_domain}``."""

from __future__ import annotations

import base64
import binascii
import logging
from typing import Annotated, Any
from urllib.parse import unquote, urlencode

from fastapi import APIRouter, Depends, Form, Query, Request, Response, status
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse

from exprsn_hub.api.dependencies import (
    HubDep,
    OptionalSessionUserDep,
    SessionDep,
    SessionUserDep,
    WebSessionDep,
    rate_limit,
)
from exprsn_hub.core.errors import NotFound
from exprsn_hub.models import OAuthClient, User
from exprsn_hub.schemas.oauth import ClientCreate, ClientResponse
from exprsn_hub.services.jwks import SIGNING_ALGORITHM
from exprsn_hub.services.rate_limit import LOGIN_POLICY, STRICT_POLICY
from exprsn_hub.services.sessions import AUTHORIZE_STASH_KEY
from exprsn_hub.services.sessions import Session as WebSession
from exprsn_hub.services.tokens import (
    GRANT_AUTHORIZATION_CODE,
    GRANT_CLIENT_CREDENTIALS,
    GRANT_REFRESH_TOKEN,
    SUPPORTED_GRANTS,
    SUPPORTED_SCOPES,
    AuthorizationRequest,
    OAuthError,
    parse_scope,
    userinfo_claims,
)
from exprsn_hub.services.users import authenticate, is_admin

logger = logging.getLogger(__name__)

router = APIRouter(tags=["oauth"])

CONSENT_STASH_KEY = "consent_request"
USERINFO_SCOPES = ("openid", "profile", "read")
NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}

FormField = Annotated[str | None, Form()]


def _oauth_error_response(exc: OAuthError) -> Response:
    """Send a redirectable error back to the client, anything else as JSON."""
    location = exc.redirect_location()
    if location is not None:
        return RedirectResponse(location, status_code=status.HTTP_302_FOUND)
    return JSONResponse(exc.to_body(), status_code=exc.status_code, headers=exc.headers())


def _client_credentials(
    request: Request, client_id: str | None, client_secret: str | None
) -> tuple[str | None, str | None]:
    """Return client credentials from HTTP Basic auth, falling back to the form body."""
    header = request.headers.get("authorization", "")
    scheme, _, encoded = header.partition(" ")
    if scheme.lower() != "basic" or not encoded:
        return client_id, client_secret
    try:
        decoded = base64.b64decode(encoded.strip()).decode()
    except (binascii.Error, UnicodeDecodeError) as exc:
        raise OAuthError(
            "invalid_client",
            "Malformed client credentials",
            status_code=status.HTTP_401_UNAUTHORIZED,
        ) from exc
    basic_id, _, basic_secret = decoded.partition(":")
    return unquote(basic_id), unquote(basic_secret)


def _client_response(client: OAuthClient, secret: str | None = None) -> ClientResponse:
    return ClientResponse(
        client_id=client.id,
        name=client.name,
        redirect_uris=list(client.redirect_uris),
        grant_types=list(client.grant_types),
        scope=client.scope,
        is_active=client.is_active,
        client_secret=secret,
    )


# --- Authorization endpoint ---------------------------------------------------------
@router.get("/authorize")
def authorize(
    request: Request,
    hub: HubDep,
    db: SessionDep,
    web_session: WebSessionDep,
    user: OptionalSessionUserDep,
) -> Response:
    """Start or resume an authorization code flow.

    Anonymous callers have the request stashed in their session and are sent to
    ``/login``; the stash is consumed when login succeeds.
    """
    params = dict(request.query_params)
    try:
        client, auth_request = hub.tokens.validate_authorization_request(db, params)
    except OAuthError as exc:
        return _oauth_error_response(exc)

    if user is None:
        response = RedirectResponse("/login", status_code=status.HTTP_302_FOUND)
        web_session.data[AUTHORIZE_STASH_KEY] = auth_request.as_params()
        hub.sessions.save(web_session, response)
        return response

    if hub.tokens.needs_consent(db, client, user.id, auth_request.scope):
        response = RedirectResponse("/consent", status_code=status.HTTP_302_FOUND)
        web_session.data[CONSENT_STASH_KEY] = auth_request.as_params()
        hub.sessions.save(web_session, response)
        return response

    code = hub.tokens.issue_code(db, auth_request, user.id)
    return RedirectResponse(auth_request.success_location(code), status_code=status.HTTP_302_FOUND)


# --- Login and logout ----------------------------------------------------------------
@router.get("/login", response_class=HTMLResponse)
def login_page(
    hub: HubDep, next_url: Annotated[str, Query(alias="next")] = "/"
) -> HTMLResponse:
    return HTMLResponse(hub.renderer.render("login", {"title": "Sign in", "next": next_url}))


@router.post(
    "/login",
    dependencies=[Depends(rate_limit(LOGIN_POLICY, "auth:login"))],
    response_class=HTMLResponse,
)
def login(
    hub: HubDep,
    db: SessionDep,
    web_session: WebSessionDep,
    username: Annotated[str, Form()] = "",
    password: Annotated[str, Form()] = "",
    next_url: Annotated[str, Form(alias="next")] = "/",
) -> Response:
    """Verify credentials and resume a stashed authorize request if there is one."""
    user = authenticate(db, username, password)
    if user is None:
        context = {"title": "Sign in", "next": next_url, "error": "Invalid username or password"}
        page = hub.renderer.render("login", context)
        return HTMLResponse(page, status_code=status.HTTP_401_UNAUTHORIZED)

    stashed = web_session.data.pop(AUTHORIZE_STASH_KEY, None)
    if isinstance(stashed, dict):
        target = f"/authorize?{urlencode(stashed)}"
    else:
        target = next_url if next_url.startswith("/") and not next_url.startswith("//") else "/"
    response = RedirectResponse(target, status_code=status.HTTP_302_FOUND)
    web_session.data["user_id"] = user.id
    hub.sessions.regenerate(web_session, response)
    logger.info("User %s signed in", user.username)
    return response


@router.get("/logout")
def logout(hub: HubDep, web_session: WebSessionDep) -> Response:
    response = RedirectResponse("/login", status_code=status.HTTP_302_FOUND)
    hub.sessions.destroy(web_session, response)
    return response


# --- Consent -------------------------------------------------------------------------
def _pending_consent(web_session: WebSession) -> AuthorizationRequest:
    stashed = web_session.data.get(CONSENT_STASH_KEY)
    if not isinstance(stashed, dict):
        raise OAuthError("invalid_request", "No authorization request is awaiting consent")
    return AuthorizationRequest(**stashed)


@router.get("/consent", response_class=HTMLResponse)
def consent_page(
    hub: HubDep, db: SessionDep, web_session: WebSessionDep, user: SessionUserDep
) -> HTMLResponse:
    pending = _pending_consent(web_session)
    client = db.get(OAuthClient, pending.client_id)
    if client is None or not client.is_active:
        raise OAuthError("invalid_client", "Unknown or inactive client")
    page = hub.renderer.render(
        "consent",
        {
            "title": f"Authorize {client.name}",
            "client_name": client.name,
            "username": user.username,
            "scope_items": parse_scope(pending.scope),
        },
    )
    return HTMLResponse(page)


@router.post("/consent")
def consent(
    hub: HubDep,
    db: SessionDep,
    web_session: WebSessionDep,
    user: SessionUserDep,
    decision: Annotated[str, Form()] = "deny",
) -> Response:
    """Approve or deny the pending request; either way the stash is consumed."""
    pending = _pending_consent(web_session)
    web_session.data.pop(CONSENT_STASH_KEY, None)
    try:
        client, auth_request = hub.tokens.validate_authorization_request(db, pending.as_params())
    except OAuthError as exc:
        response = _oauth_error_response(exc)
    else:
        if decision != "approve":
            logger.info("User %s denied client %s", user.username, client.id)
            response = _oauth_error_response(
                auth_request.error("access_denied", "The resource owner denied the request")
            )
        else:
            hub.tokens.record_consent(db, user.id, client.id, auth_request.scope)
            code = hub.tokens.issue_code(db, auth_request, user.id)
            response = RedirectResponse(
                auth_request.success_location(code), status_code=status.HTTP_302_FOUND
            )
    hub.sessions.save(web_session, response)
    return response


# --- Token endpoint ------------------------------------------------------------------
@router.post("/token", dependencies=[Depends(rate_limit(STRICT_POLICY, "oauth:token"))])
def token(
    request: Request,
    hub: HubDep,
    db: SessionDep,
    grant_type: FormField = None,
    code: FormField = None,
    redirect_uri: FormField = None,
    refresh_token: FormField = None,
    scope: FormField = None,
    client_id: FormField = None,
    client_secret: FormField = None,
) -> JSONResponse:
    """Exchange a grant for tokens.

    Raises:
        OAuthError: Rendered as an RFC 6749 error body.
    """
    if not grant_type:
        raise OAuthError("invalid_request", "grant_type is required")
    if grant_type not in SUPPORTED_GRANTS:
        raise OAuthError("unsupported_grant_type", f"Unsupported grant type: {grant_type}")
    client_id, client_secret = _client_credentials(request, client_id, client_secret)
    client = hub.tokens.authenticate_client(db, client_id, client_secret)

    if grant_type == GRANT_AUTHORIZATION_CODE:
        grant = hub.tokens.exchange_code(db, client, code, redirect_uri)
    elif grant_type == GRANT_REFRESH_TOKEN:
        grant = hub.tokens.refresh(db, client, refresh_token, scope)
    else:
        grant = hub.tokens.client_credentials(db, client, scope)
    return JSONResponse(grant.to_response(), headers=NO_STORE_HEADERS)


@router.post("/revoke")
def revoke(
    request: Request,
    hub: HubDep,
    db: SessionDep,
    token: FormField = None,
    client_id: FormField = None,
    client_secret: FormField = None,
) -> dict[str, Any]:
    """Revoke an access or refresh token held by the calling client (RFC 7009)."""
    client_id, client_secret = _client_credentials(request, client_id, client_secret)
    client = hub.tokens.authenticate_client(db, client_id, client_secret)
    hub.tokens.revoke(db, client, token)
    return {}


# --- Userinfo ------------------------------------------------------------------------
@router.api_route("/userinfo", methods=["GET", "POST"])
def userinfo(request: Request, hub: HubDep, db: SessionDep) -> JSONResponse:
    principal = hub.authenticator.oauth_principal(db, request)
    if principal is None:
        raise OAuthError(
            "invalid_token",
            "Invalid or expired access token",
            status_code=status.HTTP_401_UNAUTHORIZED,
        )
    if not principal.has_any_scope(USERINFO_SCOPES):
        raise OAuthError(
            "insufficient_scope",
            "One of openid, profile or read is required",
            status_code=status.HTTP_403_FORBIDDEN,
        )
    user = db.get(User, principal.user_id) if principal.user_id is not None else None
    if user is None or not user.is_active:
        raise OAuthError(
            "invalid_token",
            "Token is not bound to an active user",
            status_code=status.HTTP_401_UNAUTHORIZED,
        )
    return JSONResponse(userinfo_claims(user, principal, hub.config.base_domain))


# --- Client registration -------------------------------------------------------------
@router.post("/clients", response_model=ClientResponse, status_code=status.HTTP_201_CREATED)
def create_client(
    payload: ClientCreate, hub: HubDep, db: SessionDep, user: SessionUserDep
) -> ClientResponse:
    """Register a client owned by the signed-in user; the secret is shown only here."""
    client, secret = hub.tokens.register_client(
        db,
        name=payload.name,
        redirect_uris=payload.redirect_uris,
        grant_types=payload.grant_types,
        scope=payload.scope,
        user_id=user.id,
    )
    return _client_response(client, secret)


@router.get("/clients", response_model=list[ClientResponse])
def list_clients(db: SessionDep, user: SessionUserDep) -> list[ClientResponse]:
    clients = (
        db.query(OAuthClient)
        .filter(OAuthClient.user_id == user.id)
        .order_by(OAuthClient.created_at)
        .all()
    )
    return [_client_response(client) for client in clients]


@router.delete("/clients/{client_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_client(client_id: str, hub: HubDep, db: SessionDep, user: SessionUserDep) -> Response:
    client = db.get(OAuthClient, client_id)
    if client is None or (client.user_id != user.id and not is_admin(user)):
        raise NotFound("Client not found")
    hub.tokens.deactivate_client(db, client)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# --- Discovery -----------------------------------------------------------------------
@router.get("/.well-known/openid-configuration")
def openid_configuration(hub: HubDep) -> dict[str, Any]:
    issuer = hub.config.issuer
    return {
        "issuer": issuer,
        "authorization_endpoint": f"{issuer}/authorize",
        "token_endpoint": f"{issuer}/token",
        "userinfo_endpoint": f"{issuer}/userinfo",
        "revocation_endpoint": f"{issuer}/revoke",
        "registration_endpoint": f"{issuer}/clients",
        "jwks_uri": f"{issuer}/.well-known/jwks.json",
        "scopes_supported": list(SUPPORTED_SCOPES),
        "response_types_supported": ["code"],
        "grant_types_supported": [
            GRANT_AUTHORIZATION_CODE,
            GRANT_REFRESH_TOKEN,
            GRANT_CLIENT_CREDENTIALS,
        ],
        "subject_types_supported": ["public"],
        "id_token_signing_alg_values_supported": [SIGNING_ALGORITHM],
        "token_endpoint_auth_methods_supported": ["client_secret_basic", "client_secret_post"],
        "claims_supported": [
            "sub",
            "preferred_username",
            "name",
            "picture",
            "website",
            "profile",
            "updated_at",
            "email",
            "email_verified",
        ],
    }


@router.get("/.well-known/jwks.json")
def jwks(hub: HubDep) -> dict[str, Any]:
    return hub.keys.jwks()
