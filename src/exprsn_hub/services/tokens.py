"""OAuth 2.0 / OpenID Connect token issuance, storage and validation.

Every grant is a linear sequence of checks that either returns a typed result
or raises ``OAuthError``. Codes and refresh tokens are consumed with a single
``DELETE ... RETURNING`` statement so that two concurrent requests presenting
the same credential cannot both succeed.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any
from urllib.parse import urlencode, urlsplit

from fastapi import status
from sqlalchemy import delete
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from exprsn_hub.core.errors import HubError, Internal
from exprsn_hub.core.security import constant_time_equals, generate_token
from exprsn_hub.core.settings import Settings
from exprsn_hub.db.time import utcnow
from exprsn_hub.models import (
    AccessToken,
    AuthorizationCode,
    OAuthClient,
    OAuthConsent,
    RefreshToken,
    User,
)
from exprsn_hub.services.cache import TTLCache
from exprsn_hub.services.jwks import KeyStore

logger = logging.getLogger(__name__)

SUPPORTED_SCOPES: tuple[str, ...] = ("openid", "profile", "email", "read", "write", "follow")

GRANT_AUTHORIZATION_CODE = "authorization_code"
GRANT_REFRESH_TOKEN = "refresh_token"
GRANT_CLIENT_CREDENTIALS = "client_credentials"
SUPPORTED_GRANTS: tuple[str, ...] = (
    GRANT_AUTHORIZATION_CODE,
    GRANT_REFRESH_TOKEN,
    GRANT_CLIENT_CREDENTIALS,
)

CODE_BYTES = 24
TOKEN_BYTES = 32
CLIENT_ID_BYTES = 16
CLIENT_SECRET_BYTES = 32


def parse_scope(scope: str | Iterable[str] | None) -> list[str]:
    """Split a space-delimited scope string into ordered, de-duplicated tokens."""
    if scope is None:
        return []
    items = scope.split() if isinstance(scope, str) else list(scope)
    seen: list[str] = []
    for item in items:
        if item and item not in seen:
            seen.append(item)
    return seen


def format_scope(scopes: Iterable[str]) -> str:
    """Join scopes in the canonical order of ``SUPPORTED_SCOPES``."""
    wanted = set(scopes)
    ordered = [scope for scope in SUPPORTED_SCOPES if scope in wanted]
    ordered.extend(sorted(wanted.difference(SUPPORTED_SCOPES)))
    return " ".join(ordered)


class OAuthError(HubError):
    """RFC 6749 error response.

    When ``redirect_uri`` is set the error may be delivered to the client by
    redirect; otherwise it is rendered as JSON.
    """

    status_code = status.HTTP_400_BAD_REQUEST
    reason = "invalid_request"

    def __init__(
        self,
        error: str,
        description: str = "",
        *,
        status_code: int | None = None,
        state: str | None = None,
        redirect_uri: str | None = None,
    ) -> None:
        super().__init__(description or error)
        self.error = error
        self.description = description
        self.state = state
        self.redirect_uri = redirect_uri
        if status_code is not None:
            self.status_code = status_code  # type: ignore[misc]

    def to_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.error}
        if self.description:
            body["error_description"] = self.description
        if self.state is not None:
            body["state"] = self.state
        return body

    def headers(self) -> dict[str, str] | None:
        if self.status_code == status.HTTP_401_UNAUTHORIZED:
            return {"WWW-Authenticate": f'Bearer error="{self.error}"'}
        return None

    def redirect_location(self) -> str | None:
        """Return the client redirect URI carrying this error, or None if it has none."""
        if self.redirect_uri is None:
            return None
        params = {"error": self.error}
        if self.description:
            params["error_description"] = self.description
        if self.state is not None:
            params["state"] = self.state
        return _append_query(self.redirect_uri, params)


def _append_query(uri: str, params: Mapping[str, str]) -> str:
    separator = "&" if urlsplit(uri).query else "?"
    return f"{uri}{separator}{urlencode(params)}"


@dataclass(frozen=True)
class Principal:
    """Identity attached to a validated access token."""

    token: str
    client_id: str
    user_id: int | None
    scope: frozenset[str]
    expires_at: float

    def has_scope(self, *required: str) -> bool:
        return set(required).issubset(self.scope)

    def has_any_scope(self, options: Iterable[str]) -> bool:
        return not self.scope.isdisjoint(options)

    def to_cache(self) -> dict[str, Any]:
        return {
            "token": self.token,
            "client_id": self.client_id,
            "user_id": self.user_id,
            "scope": format_scope(self.scope),
            "expires_at": self.expires_at,
        }

    @classmethod
    def from_cache(cls, data: Mapping[str, Any]) -> Principal:
        return cls(
            token=data["token"],
            client_id=data["client_id"],
            user_id=data.get("user_id"),
            scope=frozenset(parse_scope(data.get("scope"))),
            expires_at=float(data["expires_at"]),
        )


@dataclass(frozen=True)
class AuthorizationRequest:
    """Validated parameters of an ``/authorize`` call."""

    client_id: str
    redirect_uri: str
    scope: str
    state: str | None = None
    response_type: str = "code"
    nonce: str | None = None

    def as_params(self) -> dict[str, str]:
        params = {
            "response_type": self.response_type,
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": self.scope,
        }
        if self.state is not None:
            params["state"] = self.state
        if self.nonce is not None:
            params["nonce"] = self.nonce
        return params

    def success_location(self, code: str) -> str:
        params = {"code": code}
        if self.state is not None:
            params["state"] = self.state
        return _append_query(self.redirect_uri, params)

    def error(self, error: str, description: str = "") -> OAuthError:
        return OAuthError(error, description, state=self.state, redirect_uri=self.redirect_uri)


@dataclass(frozen=True)
class TokenGrant:
    """Result of a successful token request."""

    access_token: str
    expires_in: int
    scope: str
    refresh_token: str | None = None
    id_token: str | None = None
    token_type: str = "Bearer"

    def to_response(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
            "scope": self.scope,
        }
        if self.refresh_token is not None:
            body["refresh_token"] = self.refresh_token
        if self.id_token is not None:
            body["id_token"] = self.id_token
        return body


class TokenService:
    """Issues and validates OAuth artifacts against the database and cache."""

    def __init__(
        self,
        config: Settings,
        cache: TTLCache,
        keys: KeyStore | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.config = config
        self.cache = cache
        self.keys = keys
        self._clock = clock

    # --- Clients -------------------------------------------------------------------
    def register_client(
        self,
        db: Session,
        *,
        name: str,
        redirect_uris: Iterable[str],
        grant_types: Iterable[str] = (GRANT_AUTHORIZATION_CODE, GRANT_REFRESH_TOKEN),
        scope: str = "read",
        user_id: int | None = None,
    ) -> tuple[OAuthClient, str]:
        """Create a client and return it together with its one-time visible secret.

        Raises:
            OAuthError: If redirect URIs, grant types or scope are invalid.
        """
        uris = list(dict.fromkeys(redirect_uris))
        if not uris:
            raise OAuthError("invalid_redirect_uri", "At least one redirect URI is required")
        for uri in uris:
            parts = urlsplit(uri)
            if parts.scheme not in ("http", "https") or not parts.netloc or parts.fragment:
                raise OAuthError("invalid_redirect_uri", f"Invalid redirect URI: {uri}")
        grants = list(dict.fromkeys(grant_types))
        unknown = set(grants).difference(SUPPORTED_GRANTS)
        if not grants or unknown:
            raise OAuthError("invalid_client_metadata", "Unsupported grant types")
        scopes = parse_scope(scope)
        if not scopes or not set(scopes).issubset(SUPPORTED_SCOPES):
            raise OAuthError("invalid_scope", "Unsupported scope")

        secret = generate_token(CLIENT_SECRET_BYTES)
        client = OAuthClient(
            id=generate_token(CLIENT_ID_BYTES),
            client_secret=secret,
            name=name,
            redirect_uris=uris,
            grant_types=grants,
            scope=format_scope(scopes),
            user_id=user_id,
            is_active=True,
        )
        db.add(client)
        db.commit()
        logger.info("Registered OAuth client %s (%s)", client.id, name)
        return client, secret

    def deactivate_client(self, db: Session, client: OAuthClient) -> None:
        """Deactivate ``client`` and revoke every token it holds."""
        client.is_active = False
        db.execute(delete(AccessToken).where(AccessToken.client_id == client.id))
        db.execute(delete(RefreshToken).where(RefreshToken.client_id == client.id))
        db.execute(delete(AuthorizationCode).where(AuthorizationCode.client_id == client.id))
        db.commit()
        logger.info("Deactivated OAuth client %s", client.id)

    def authenticate_client(
        self, db: Session, client_id: str | None, client_secret: str | None
    ) -> OAuthClient:
        """Return the active client whose credentials match.

        Raises:
            OAuthError: ``invalid_client`` (401) on any mismatch.
        """
        failure = OAuthError(
            "invalid_client",
            "Client authentication failed",
            status_code=status.HTTP_401_UNAUTHORIZED,
        )
        if not client_id or not client_secret:
            raise failure
        client = db.get(OAuthClient, client_id)
        if client is None or not client.is_active:
            raise failure
        if not constant_time_equals(client.client_secret, client_secret):
            raise failure
        return client

    # --- Authorization endpoint ----------------------------------------------------
    def validate_authorization_request(
        self, db: Session, params: Mapping[str, str]
    ) -> tuple[OAuthClient, AuthorizationRequest]:
        """Check client, redirect URI, response type and scope of an authorize call.

        Raises:
            OAuthError: ``invalid_client`` without a redirect target when the client or
                redirect URI cannot be trusted; otherwise a redirectable error.
        """
        state = params.get("state")
        client_id = params.get("client_id")
        if not client_id:
            raise OAuthError("invalid_request", "client_id is required", state=state)
        client = db.get(OAuthClient, client_id)
        if client is None or not client.is_active:
            raise OAuthError("invalid_client", "Unknown or inactive client", state=state)
        redirect_uri = params.get("redirect_uri", "")
        if not client.has_redirect_uri(redirect_uri):
            raise OAuthError("invalid_client", "redirect_uri is not registered", state=state)

        request_scopes = parse_scope(params.get("scope")) or parse_scope(client.scope)
        request = AuthorizationRequest(
            client_id=client.id,
            redirect_uri=redirect_uri,
            scope=format_scope(request_scopes),
            state=state,
            response_type=params.get("response_type", ""),
            nonce=params.get("nonce"),
        )
        if request.response_type != "code":
            raise request.error("unsupported_response_type", "Only response_type=code is supported")
        if not client.allows_grant(GRANT_AUTHORIZATION_CODE):
            raise request.error("unauthorized_client", "Client may not use authorization_code")
        if not set(request_scopes).issubset(client.scope_set.intersection(SUPPORTED_SCOPES)):
            raise request.error("invalid_scope", "Requested scope exceeds the client scope")
        return client, request

    def needs_consent(self, db: Session, client: OAuthClient, user_id: int, scope: str) -> bool:
        """Return False for system clients, own clients and previously approved scope."""
        if client.user_id is None or client.user_id == user_id:
            return False
        consent = (
            db.query(OAuthConsent)
            .filter(OAuthConsent.user_id == user_id, OAuthConsent.client_id == client.id)
            .first()
        )
        if consent is None:
            return True
        return not set(parse_scope(scope)).issubset(parse_scope(consent.scope))

    def record_consent(self, db: Session, user_id: int, client_id: str, scope: str) -> None:
        consent = (
            db.query(OAuthConsent)
            .filter(OAuthConsent.user_id == user_id, OAuthConsent.client_id == client_id)
            .first()
        )
        if consent is None:
            db.add(OAuthConsent(user_id=user_id, client_id=client_id, scope=scope))
        else:
            consent.scope = format_scope(set(parse_scope(consent.scope)) | set(parse_scope(scope)))
            consent.granted_at = self._clock()
        db.commit()

    def issue_code(self, db: Session, request: AuthorizationRequest, user_id: int) -> str:
        """Persist a single-use authorization code bound to the request."""
        code = generate_token(CODE_BYTES)
        db.add(
            AuthorizationCode(
                code=code,
                client_id=request.client_id,
                user_id=user_id,
                redirect_uri=request.redirect_uri,
                scope=request.scope,
                nonce=request.nonce,
                expires_at=self._clock() + timedelta(seconds=self.config.authorization_code_ttl),
            )
        )
        db.commit()
        return code

    # --- Token endpoint ------------------------------------------------------------
    def exchange_code(
        self, db: Session, client: OAuthClient, code: str | None, redirect_uri: str | None
    ) -> TokenGrant:
        """Consume an authorization code and mint access and refresh tokens.

        An expired code or one presented with the wrong client or redirect URI
        is left untouched.

        Raises:
            OAuthError: ``unauthorized_client`` or ``invalid_grant``.
        """
        if not client.allows_grant(GRANT_AUTHORIZATION_CODE):
            raise OAuthError("unauthorized_client", "Client may not use authorization_code")
        if not code or not redirect_uri:
            raise OAuthError("invalid_request", "code and redirect_uri are required")

        consume = (
            delete(AuthorizationCode)
            .where(
                AuthorizationCode.code == code,
                AuthorizationCode.client_id == client.id,
                AuthorizationCode.redirect_uri == redirect_uri,
                AuthorizationCode.expires_at > self._clock(),
            )
            .returning(AuthorizationCode.user_id, AuthorizationCode.scope, AuthorizationCode.nonce)
            .execution_options(synchronize_session=False)
        )
        try:
            row = db.execute(consume).first()
            if row is None:
                raise OAuthError("invalid_grant", "Invalid or expired authorization code")
            user = db.get(User, row.user_id)
            if user is None or not user.is_active:
                raise OAuthError("invalid_grant", "Resource owner is no longer active")
            grant = self._mint(
                db,
                client,
                user,
                row.scope,
                with_refresh=client.allows_grant(GRANT_REFRESH_TOKEN),
                nonce=row.nonce,
            )
            db.commit()
        except OAuthError:
            db.rollback()
            raise
        except OperationalError as exc:
            db.rollback()
            logger.info("Concurrent authorization code exchange lost: %s", exc)
            raise OAuthError("invalid_grant", "Invalid or expired authorization code") from exc
        logger.info("Exchanged authorization code for client %s user %s", client.id, row.user_id)
        return grant

    def refresh(
        self, db: Session, client: OAuthClient, refresh_token: str | None, scope: str | None = None
    ) -> TokenGrant:
        """Rotate ``refresh_token``: delete it and mint a new refresh and access token.

        Rotation happens in one transaction, so a failure at any step leaves the
        presented refresh token valid.

        Raises:
            OAuthError: ``unauthorized_client``, ``invalid_grant`` or ``invalid_scope``.
        """
        if not client.allows_grant(GRANT_REFRESH_TOKEN):
            raise OAuthError("unauthorized_client", "Client may not use refresh_token")
        if not refresh_token:
            raise OAuthError("invalid_request", "refresh_token is required")

        consume = (
            delete(RefreshToken)
            .where(
                RefreshToken.token == refresh_token,
                RefreshToken.client_id == client.id,
                RefreshToken.expires_at > self._clock(),
            )
            .returning(RefreshToken.user_id, RefreshToken.scope)
            .execution_options(synchronize_session=False)
        )
        try:
            row = db.execute(consume).first()
            if row is None:
                raise OAuthError("invalid_grant", "Invalid or expired refresh token")
            granted = parse_scope(row.scope)
            requested = parse_scope(scope) or granted
            if not set(requested).issubset(granted):
                raise OAuthError("invalid_scope", "Requested scope exceeds the original grant")
            user = db.get(User, row.user_id)
            if user is None or not user.is_active:
                raise OAuthError("invalid_grant", "Resource owner is no longer active")
            grant = self._mint(db, client, user, format_scope(requested), with_refresh=True)
            db.commit()
        except OAuthError:
            db.rollback()
            raise
        except OperationalError as exc:
            db.rollback()
            logger.info("Concurrent refresh token rotation lost: %s", exc)
            raise OAuthError("invalid_grant", "Invalid or expired refresh token") from exc
        return grant

    def client_credentials(
        self, db: Session, client: OAuthClient, scope: str | None = None
    ) -> TokenGrant:
        """Mint an access token whose subject is the client itself."""
        if not client.allows_grant(GRANT_CLIENT_CREDENTIALS):
            raise OAuthError("unauthorized_client", "Client may not use client_credentials")
        allowed = client.scope_set.intersection(SUPPORTED_SCOPES)
        requested = parse_scope(scope) or sorted(allowed)
        if not set(requested).issubset(allowed):
            raise OAuthError("invalid_scope", "Requested scope exceeds the client scope")
        grant = self._mint(db, client, None, format_scope(requested), with_refresh=False)
        db.commit()
        return grant

    def revoke(self, db: Session, client: OAuthClient, token: str | None) -> None:
        """Delete an access or refresh token owned by ``client`` (RFC 7009)."""
        if not token:
            return
        db.execute(
            delete(AccessToken).where(AccessToken.token == token, AccessToken.client_id == client.id)
        )
        db.execute(
            delete(RefreshToken).where(
                RefreshToken.token == token, RefreshToken.client_id == client.id
            )
        )
        db.commit()
        self.cache.delete(_cache_key(token))

    def _mint(
        self,
        db: Session,
        client: OAuthClient,
        user: User | None,
        scope: str,
        *,
        with_refresh: bool,
        nonce: str | None = None,
    ) -> TokenGrant:
        now = self._clock()
        access_token = generate_token(TOKEN_BYTES)
        db.add(
            AccessToken(
                token=access_token,
                client_id=client.id,
                user_id=user.id if user else None,
                scope=scope,
                expires_at=now + timedelta(seconds=self.config.access_token_ttl),
            )
        )
        refresh_token = None
        if with_refresh and user is not None:
            refresh_token = generate_token(TOKEN_BYTES)
            db.add(
                RefreshToken(
                    token=refresh_token,
                    client_id=client.id,
                    user_id=user.id,
                    scope=scope,
                    expires_at=now + timedelta(seconds=self.config.refresh_token_ttl),
                )
            )
        id_token = None
        if user is not None and "openid" in parse_scope(scope) and self.keys is not None:
            id_token = self.issue_id_token(client, user, scope, nonce=nonce, issued_at=now)
        db.flush()
        return TokenGrant(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.config.access_token_ttl,
            scope=scope,
            id_token=id_token,
        )

    def issue_id_token(
        self,
        client: OAuthClient,
        user: User,
        scope: str,
        *,
        nonce: str | None = None,
        issued_at: datetime | None = None,
    ) -> str:
        """Sign an OpenID Connect id_token for ``user``.

        Raises:
            Internal: If no signing key store is configured.
        """
        if self.keys is None:
            raise Internal("No signing key is configured for id_tokens")
        issued = issued_at or self._clock()
        claims: dict[str, Any] = {
            "iss": self.config.issuer,
            "sub": str(user.id),
            "aud": client.id,
            "iat": int(issued.timestamp()),
            "exp": int(issued.timestamp()) + self.config.access_token_ttl,
            "preferred_username": user.username,
        }
        if nonce:
            claims["nonce"] = nonce
        if "email" in parse_scope(scope):
            claims["email"] = user.email
            claims["email_verified"] = user.email_verified
        return self.keys.sign(claims)

    # --- Read path -----------------------------------------------------------------
    def validate_access_token(self, db: Session, token: str) -> Principal | None:
        """Resolve a bearer token to its principal, or None when absent or expired."""
        key = _cache_key(token)
        now = self._clock()
        now_ts = now.timestamp()
        cached = self.cache.get(key)
        if cached is not None:
            try:
                principal = Principal.from_cache(cached)
            except (KeyError, TypeError, ValueError):
                self.cache.delete(key)
            else:
                if principal.expires_at > now_ts:
                    return principal
                self.cache.delete(key)

        row = db.get(AccessToken, token)
        if row is None:
            return None
        if row.expires_at <= now:
            try:
                db.delete(row)
                db.commit()
            except SQLAlchemyError as exc:
                db.rollback()
                logger.debug("Could not purge expired token: %s", exc)
            return None

        principal = Principal(
            token=row.token,
            client_id=row.client_id,
            user_id=row.user_id,
            scope=frozenset(parse_scope(row.scope)),
            expires_at=row.expires_at.timestamp(),
        )
        remaining = principal.expires_at - now_ts
        self.cache.set(key, principal.to_cache(), min(remaining, self.cache.default_ttl))
        return principal

    def purge_expired(self, db: Session) -> int:
        """Delete expired codes and tokens; returns the number of rows removed."""
        now = self._clock()
        removed = 0
        for model in (AuthorizationCode, AccessToken, RefreshToken):
            result = db.execute(delete(model).where(model.expires_at <= now))
            removed += result.rowcount or 0
        db.commit()
        return removed


def _cache_key(token: str) -> str:
    return f"access_token:{token}"


def userinfo_claims(user: User, principal: Principal, base_domain: str) -> dict[str, Any]:
    """Return the claims ``principal`` may see about ``user``."""
    claims: dict[str, Any] = {
        "sub": str(user.id),
        "preferred_username": user.username,
        "name": user.name,
    }
    if principal.has_any_scope(("profile", "read")):
        host = f"{user.subdomain or user.username}.{base_domain}"
        claims.update(
            {
                "picture": user.avatar_url,
                "website": user.website,
                "profile": f"https://{host}/@{user.username}",
                "updated_at": int(user.updated_at.timestamp()) if user.updated_at else None,
            }
        )
    if principal.has_scope("email", "openid"):
        claims["email"] = user.email
        claims["email_verified"] = user.email_verified
    return claims
