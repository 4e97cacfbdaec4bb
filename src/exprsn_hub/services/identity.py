"""Resolve who is calling from a session cookie, an admin JWT or an OAuth token."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from sqlalchemy.orm import Session
from starlette.requests import HTTPConnection

from exprsn_hub.core.errors import AuthenticationFailure, AuthorizationFailure, ValidationFailure
from exprsn_hub.core.security import decode_access_token
from exprsn_hub.core.settings import Settings
from exprsn_hub.models import User
from exprsn_hub.models.user import ROLE_ADMIN
from exprsn_hub.services.sessions import SessionStore
from exprsn_hub.services.tokens import Principal, TokenService, format_scope, parse_scope
from exprsn_hub.services.users import get_user

AUTH_NONE = "none"
AUTH_SESSION = "session"
AUTH_JWT = "jwt"
AUTH_OAUTH = "oauth"


@dataclass(frozen=True)
class Identity:
    """The authenticated caller of one request."""

    mode: str
    user_id: int | None = None
    username: str | None = None
    role: str | None = None
    principal: Principal | None = None

    @classmethod
    def anonymous(cls) -> Identity:
        return cls(mode=AUTH_NONE)

    @classmethod
    def for_user(cls, mode: str, user: User, principal: Principal | None = None) -> Identity:
        return cls(
            mode=mode,
            user_id=user.id,
            username=user.username,
            role=user.role,
            principal=principal,
        )

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None or self.principal is not None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "mode": self.mode,
            "user_id": self.user_id,
            "username": self.username,
            "role": self.role,
        }
        if self.principal is not None:
            data["client_id"] = self.principal.client_id
            data["scope"] = format_scope(self.principal.scope)
        return data


def bearer_token(connection: HTTPConnection) -> str | None:
    """Return the bearer credential of a request or WebSocket handshake."""
    header = connection.headers.get("authorization", "")
    scheme, _, credentials = header.partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip()
    if connection.scope.get("type") == "websocket":
        return connection.query_params.get("access_token") or None
    return None


class Authenticator:
    """Authentication and authorization checks shared by routes and dependencies."""

    def __init__(self, config: Settings, tokens: TokenService, sessions: SessionStore) -> None:
        self.config = config
        self.tokens = tokens
        self.sessions = sessions

    def session_user(self, db: Session, connection: HTTPConnection) -> User | None:
        session = self.sessions.load(connection)
        return get_user(db, session.user_id)

    def jwt_user(self, db: Session, connection: HTTPConnection) -> User | None:
        token = bearer_token(connection)
        if token is None:
            return None
        return get_user(db, decode_access_token(token, self.config))

    def oauth_principal(self, db: Session, connection: HTTPConnection) -> Principal | None:
        token = bearer_token(connection)
        if token is None:
            return None
        return self.tokens.validate_access_token(db, token)

    def rate_limit_key(self, db: Session, connection: HTTPConnection) -> str:
        """Quota key for the caller: the known user or client, else the client address.

        Credentials that do not resolve are ignored here; ``authenticate`` rejects them.
        """
        user_id: int | None = None
        token = bearer_token(connection)
        if token is not None:
            principal = self.tokens.validate_access_token(db, token)
            if principal is not None and principal.user_id is None:
                return f"client:{principal.client_id}"
            if principal is not None:
                user_id = principal.user_id
            else:
                try:
                    user_id = decode_access_token(token, self.config)
                except AuthenticationFailure:
                    user_id = None
        if user_id is None:
            user_id = self.sessions.load(connection).user_id
        if user_id is not None:
            return f"user:{user_id}"
        return f"ip:{connection.client.host if connection.client else 'unknown'}"

    def authenticate(self, db: Session, connection: HTTPConnection, mode: str) -> Identity:
        """Resolve the caller for ``mode``.

        Raises:
            AuthenticationFailure: When credentials are missing or invalid.
            ValidationFailure: For an unknown mode.
        """
        if mode == AUTH_NONE:
            return Identity.anonymous()
        if mode == AUTH_SESSION:
            user = self.session_user(db, connection)
            if user is None:
                raise AuthenticationFailure()
            return Identity.for_user(mode, user)
        if mode == AUTH_JWT:
            user = self.jwt_user(db, connection)
            if user is None:
                raise AuthenticationFailure()
            return Identity.for_user(mode, user)
        if mode == AUTH_OAUTH:
            principal = self.oauth_principal(db, connection)
            if principal is None:
                raise AuthenticationFailure("Invalid or expired access token")
            if principal.user_id is None:
                return Identity(mode=mode, principal=principal)
            user = get_user(db, principal.user_id)
            if user is None:
                raise AuthenticationFailure("Invalid or expired access token")
            return Identity.for_user(mode, user, principal)
        raise ValidationFailure(f"Unknown auth mode {mode!r}")

    @staticmethod
    def authorize(identity: Identity, *, scope: str | None = None, role: str | None = None) -> None:
        """Check scope and role requirements.

        Scope applies to OAuth principals only; session and JWT callers act with
        their full account rights. Administrators satisfy every role.

        Raises:
            AuthorizationFailure: When a requirement is not met.
        """
        required = parse_scope(scope)
        if required and identity.principal is not None:
            if not identity.principal.has_scope(*required):
                raise AuthorizationFailure(
                    "Insufficient scope", details={"required": format_scope(required)}
                )
        if role and identity.role != role and identity.role != ROLE_ADMIN:
            raise AuthorizationFailure("Insufficient role", details={"required": role})
