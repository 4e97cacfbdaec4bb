"""Shared API dependencies for authentication, authorization and rate limiting."""

from __future__ import annotations

from collections.abc import Callable
from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from exprsn_hub.core.errors import (
    AuthenticationFailure,
    AuthorizationFailure,
    NotFound,
    RateLimited,
)
from exprsn_hub.db.session import get_db
from exprsn_hub.hosting.site import Site
from exprsn_hub.hub import Hub
from exprsn_hub.models import User
from exprsn_hub.models.user import ROLE_ADMIN
from exprsn_hub.services.identity import AUTH_OAUTH, Authenticator, Identity
from exprsn_hub.services.rate_limit import RateLimitPolicy
from exprsn_hub.services.sessions import Session as WebSession
from exprsn_hub.services.tokens import Principal, parse_scope
from exprsn_hub.services.users import get_user

# Type alias for database session dependency
SessionDep = Annotated[Session, Depends(get_db)]


def get_hub(request: Request) -> Hub:
    """Return the hub the current sub-application was built for."""
    hub: Hub = request.app.state.hub
    return hub


HubDep = Annotated[Hub, Depends(get_hub)]


def get_web_session(request: Request, hub: HubDep) -> WebSession:
    return hub.sessions.load(request)


WebSessionDep = Annotated[WebSession, Depends(get_web_session)]


def get_optional_session_user(web_session: WebSessionDep, db: SessionDep) -> User | None:
    return get_user(db, web_session.user_id)


def get_session_user(
    user: Annotated[User | None, Depends(get_optional_session_user)],
) -> User:
    """Require a logged-in browser session.

    Raises:
        AuthenticationFailure: If the session has no active user.
    """
    if user is None:
        raise AuthenticationFailure("Login required")
    return user


OptionalSessionUserDep = Annotated[User | None, Depends(get_optional_session_user)]
SessionUserDep = Annotated[User, Depends(get_session_user)]


def get_jwt_user(request: Request, hub: HubDep, db: SessionDep) -> User:
    """Get the current user from an admin API JWT.

    Raises:
        AuthenticationFailure: If the token is missing, invalid or the user inactive.
    """
    user = hub.authenticator.jwt_user(db, request)
    if user is None:
        raise AuthenticationFailure()
    return user


JWTUserDep = Annotated[User, Depends(get_jwt_user)]


def get_admin_user(user: JWTUserDep) -> User:
    if user.role != ROLE_ADMIN:
        raise AuthorizationFailure("Administrator role required", details={"required": "admin"})
    return user


AdminUserDep = Annotated[User, Depends(get_admin_user)]


def get_principal(request: Request, hub: HubDep, db: SessionDep) -> Principal:
    """Validate the OAuth bearer token of the request.

    Raises:
        AuthenticationFailure: When the token is missing, unknown or expired.
    """
    principal = hub.authenticator.oauth_principal(db, request)
    if principal is None:
        raise AuthenticationFailure("Invalid or expired access token")
    return principal


PrincipalDep = Annotated[Principal, Depends(get_principal)]


def require_scope(scope: str) -> Callable[[Principal], Principal]:
    """Dependency factory checking that the token grants every scope in ``scope``."""
    required = parse_scope(scope)

    def dependency(principal: PrincipalDep) -> Principal:
        Authenticator.authorize(Identity(mode=AUTH_OAUTH, principal=principal), scope=scope)
        return principal

    dependency.__name__ = f"require_scope_{'_'.join(required)}"
    return dependency


def get_token_user(principal: PrincipalDep, db: SessionDep) -> User:
    """Return the resource owner behind a user-bound access token.

    Raises:
        AuthorizationFailure: For client-credential tokens that have no user.
        AuthenticationFailure: If the user has been deactivated.
    """
    if principal.user_id is None:
        raise AuthorizationFailure("A user-bound access token is required")
    user = get_user(db, principal.user_id)
    if user is None:
        raise AuthenticationFailure("Invalid or expired access token")
    return user


TokenUserDep = Annotated[User, Depends(get_token_user)]


def rate_limit(policy: RateLimitPolicy, endpoint: str) -> Callable[[Request, Hub], None]:
    """Dependency factory enforcing ``policy`` per client address on ``endpoint``.

    Declared ahead of authentication dependencies so that rejected callers cost
    no credential checks.
    """

    def dependency(request: Request, hub: HubDep) -> None:
        address = request.client.host if request.client else "unknown"
        decision = hub.limiter.check(address, endpoint, policy)
        if decision is not None and not decision.allowed:
            raise RateLimited(decision.retry_after(hub.limiter.now()))

    return dependency


def get_site(request: Request) -> Site:
    """Return the site whose sub-application is serving the request."""
    site: Site = request.app.state.site
    return site


SiteDep = Annotated[Site, Depends(get_site)]


def get_site_owner(site: SiteDep, db: SessionDep) -> User:
    """Return the user owning a personal site.

    Raises:
        NotFound: If the site has no active owner.
    """
    owner = get_user(db, site.owner_id)
    if owner is None:
        raise NotFound(f"Site {site.name} has no owner")
    return owner


SiteOwnerDep = Annotated[User, Depends(get_site_owner)]
