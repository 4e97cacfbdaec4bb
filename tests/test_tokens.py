"""TokenService behavior that depends on time and on the lookup cache."""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Any
from urllib.parse import parse_qs, urlsplit

import pytest

from exprsn_hub.core.errors import Internal
from exprsn_hub.core.settings import Settings
from exprsn_hub.db.session import SessionLocal
from exprsn_hub.db.time import utcnow
from exprsn_hub.hub import Hub
from exprsn_hub.models import AccessToken, OAuthClient, RefreshToken, User
from exprsn_hub.services.cache import TTLCache
from exprsn_hub.services.tokens import (
    SUPPORTED_GRANTS,
    OAuthError,
    TokenService,
    format_scope,
    parse_scope,
)
from tests.conftest import CLIENT_REDIRECT, FULL_SCOPE


class Clock:
    def __init__(self) -> None:
        self.now = utcnow()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture()
def clock() -> Clock:
    return Clock()


@pytest.fixture()
def tokens(config: Settings, clock: Clock) -> TokenService:
    return TokenService(config, TTLCache(config.cache_ttl), None, clock=clock)


@pytest.fixture()
def registered(tokens: TokenService, db: Any) -> OAuthClient:
    client, _secret = tokens.register_client(
        db,
        name="Service",
        redirect_uris=[CLIENT_REDIRECT],
        grant_types=SUPPORTED_GRANTS,
        scope=FULL_SCOPE,
    )
    return client


def _code(tokens: TokenService, db: Any, client: OAuthClient, user: User, scope: str) -> str:
    _client, request = tokens.validate_authorization_request(
        db,
        {
            "response_type": "code",
            "client_id": client.id,
            "redirect_uri": CLIENT_REDIRECT,
            "scope": scope,
        },
    )
    return tokens.issue_code(db, request, user.id)


def test_scope_helpers() -> None:
    assert parse_scope("read  write read") == ["read", "write"]
    assert parse_scope(None) == []
    assert format_scope({"write", "openid", "custom"}) == "openid write custom"


def test_register_client_validation(tokens: TokenService, db: Any) -> None:
    with pytest.raises(OAuthError) as no_uri:
        tokens.register_client(db, name="x", redirect_uris=[])
    assert no_uri.value.error == "invalid_redirect_uri"

    with pytest.raises(OAuthError) as fragment:
        tokens.register_client(db, name="x", redirect_uris=["https://a.test/cb#frag"])
    assert fragment.value.error == "invalid_redirect_uri"

    with pytest.raises(OAuthError) as grant:
        tokens.register_client(
            db, name="x", redirect_uris=["https://a.test/cb"], grant_types=["implicit"]
        )
    assert grant.value.error == "invalid_client_metadata"

    with pytest.raises(OAuthError) as scope:
        tokens.register_client(db, name="x", redirect_uris=["https://a.test/cb"], scope="admin")
    assert scope.value.error == "invalid_scope"


def test_expired_code_is_rejected(
    tokens: TokenService,
    db: Any,
    registered: OAuthClient,
    make_user: Callable[..., User],
    clock: Clock,
) -> None:
    user = make_user("carol")
    code = _code(tokens, db, registered, user, "read")
    clock.advance(601)

    with pytest.raises(OAuthError) as exc:
        tokens.exchange_code(db, registered, code, CLIENT_REDIRECT)
    assert exc.value.error == "invalid_grant"


def test_code_is_bound_to_its_client(
    tokens: TokenService, db: Any, registered: OAuthClient, make_user: Callable[..., User]
) -> None:
    other, _secret = tokens.register_client(
        db, name="Other", redirect_uris=[CLIENT_REDIRECT], scope="read"
    )
    user = make_user("carol")
    code = _code(tokens, db, registered, user, "read")

    with pytest.raises(OAuthError):
        tokens.exchange_code(db, other, code, CLIENT_REDIRECT)
    grant = tokens.exchange_code(db, registered, code, CLIENT_REDIRECT)
    assert grant.scope == "read"


def test_deactivated_user_cannot_exchange(
    tokens: TokenService, db: Any, registered: OAuthClient, make_user: Callable[..., User]
) -> None:
    user = make_user("carol")
    code = _code(tokens, db, registered, user, "read")
    user.is_active = False
    db.commit()

    with pytest.raises(OAuthError) as exc:
        tokens.exchange_code(db, registered, code, CLIENT_REDIRECT)
    assert exc.value.error == "invalid_grant"


def test_validation_is_cached_until_revoked(
    tokens: TokenService, db: Any, registered: OAuthClient
) -> None:
    grant = tokens.client_credentials(db, registered, "read")
    principal = tokens.validate_access_token(db, grant.access_token)
    assert principal is not None
    assert principal.user_id is None
    assert principal.scope == frozenset({"read"})
    assert tokens.cache.get(f"access_token:{grant.access_token}") is not None

    # A cached principal does not need the row.
    db.query(AccessToken).filter(AccessToken.token == grant.access_token).delete()
    db.commit()
    assert tokens.validate_access_token(db, grant.access_token) == principal

    tokens.revoke(db, registered, grant.access_token)
    assert tokens.validate_access_token(db, grant.access_token) is None


def test_expired_token_is_purged(
    tokens: TokenService, db: Any, registered: OAuthClient, clock: Clock
) -> None:
    grant = tokens.client_credentials(db, registered)
    assert tokens.validate_access_token(db, grant.access_token) is not None

    clock.advance(tokens.config.access_token_ttl + 1)
    assert tokens.validate_access_token(db, grant.access_token) is None
    assert db.get(AccessToken, grant.access_token) is None


def test_client_credentials_scope_is_capped(
    tokens: TokenService, db: Any, registered: OAuthClient
) -> None:
    grant = tokens.client_credentials(db, registered)
    assert grant.scope == FULL_SCOPE
    assert grant.refresh_token is None

    with pytest.raises(OAuthError) as exc:
        tokens.client_credentials(db, registered, "read admin")
    assert exc.value.error == "invalid_scope"


def test_grant_type_must_be_registered(tokens: TokenService, db: Any) -> None:
    limited, _secret = tokens.register_client(
        db, name="Code only", redirect_uris=[CLIENT_REDIRECT], grant_types=["authorization_code"]
    )
    with pytest.raises(OAuthError) as exc:
        tokens.client_credentials(db, limited)
    assert exc.value.error == "unauthorized_client"

    with pytest.raises(OAuthError) as refresh:
        tokens.refresh(db, limited, "whatever")
    assert refresh.value.error == "unauthorized_client"


def test_purge_expired(
    tokens: TokenService,
    db: Any,
    registered: OAuthClient,
    make_user: Callable[..., User],
    clock: Clock,
) -> None:
    user = make_user("carol")
    _code(tokens, db, registered, user, "read")
    tokens.client_credentials(db, registered)
    assert tokens.purge_expired(db) == 0

    clock.advance(tokens.config.refresh_token_ttl + 1)
    assert tokens.purge_expired(db) == 2


def test_deactivating_client_revokes_tokens(
    tokens: TokenService, db: Any, registered: OAuthClient
) -> None:
    grant = tokens.client_credentials(db, registered)
    tokens.deactivate_client(db, registered)
    tokens.cache.clear()
    assert tokens.validate_access_token(db, grant.access_token) is None
    with pytest.raises(OAuthError) as exc:
        tokens.authenticate_client(db, registered.id, registered.client_secret)
    assert exc.value.status_code == 401


def _race(count: int, attempt: Callable[[Any], str]) -> list[str]:
    """Run ``attempt`` from ``count`` threads released together, each with its own session."""
    barrier = threading.Barrier(count)

    def worker() -> str:
        with SessionLocal() as session:
            barrier.wait(timeout=10)
            return attempt(session)

    with ThreadPoolExecutor(max_workers=count) as pool:
        futures = [pool.submit(worker) for _ in range(count)]
        return sorted(future.result(timeout=60) for future in futures)


def test_concurrent_code_exchange_has_one_winner(
    tokens: TokenService, db: Any, registered: OAuthClient, make_user: Callable[..., User]
) -> None:
    user = make_user("carol")
    code = _code(tokens, db, registered, user, "read")
    client_id = registered.id

    def exchange(session: Any) -> str:
        client = session.get(OAuthClient, client_id)
        try:
            tokens.exchange_code(session, client, code, CLIENT_REDIRECT)
        except OAuthError as exc:
            return exc.error
        return "ok"

    results = _race(6, exchange)

    assert results == ["invalid_grant"] * 5 + ["ok"]
    db.expire_all()
    assert db.query(AccessToken).filter(AccessToken.user_id == user.id).count() == 1


def test_concurrent_refresh_has_one_winner(
    tokens: TokenService, db: Any, registered: OAuthClient, make_user: Callable[..., User]
) -> None:
    user = make_user("carol")
    code = _code(tokens, db, registered, user, "read")
    refresh_token = tokens.exchange_code(db, registered, code, CLIENT_REDIRECT).refresh_token
    client_id = registered.id

    def rotate(session: Any) -> str:
        client = session.get(OAuthClient, client_id)
        try:
            tokens.refresh(session, client, refresh_token)
        except OAuthError as exc:
            return exc.error
        return "ok"

    results = _race(6, rotate)

    assert results == ["invalid_grant"] * 5 + ["ok"]
    db.expire_all()
    assert db.query(RefreshToken).filter(RefreshToken.user_id == user.id).count() == 1


@pytest.mark.asyncio
async def test_hub_purges_expired_tokens_in_background(config: Settings, db: Any) -> None:
    hub = Hub(config.model_copy(update={"token_purge_interval": 0.05}))
    await hub.start(watch=False, deliver=False)
    try:
        client, _secret = hub.tokens.register_client(
            db, name="svc", redirect_uris=[CLIENT_REDIRECT], grant_types=SUPPORTED_GRANTS
        )
        live = hub.tokens.client_credentials(db, client).access_token
        stale = hub.tokens.client_credentials(db, client).access_token
        db.get(AccessToken, stale).expires_at = utcnow() - timedelta(seconds=1)
        db.commit()

        for _ in range(100):
            db.expire_all()
            if db.get(AccessToken, stale) is None:
                break
            await asyncio.sleep(0.05)

        assert db.get(AccessToken, stale) is None
        assert db.get(AccessToken, live) is not None
    finally:
        await hub.stop()


def test_id_token_requires_signing_keys(
    tokens: TokenService, registered: OAuthClient, make_user: Callable[..., User]
) -> None:
    user = make_user("carol")
    with pytest.raises(Internal):
        tokens.issue_id_token(registered, user, "openid")


def test_error_redirect_location() -> None:
    assert OAuthError("invalid_request").redirect_location() is None

    error = OAuthError(
        "access_denied", state="s1", redirect_uri="https://client.test/cb?keep=1"
    )
    query = parse_qs(urlsplit(error.redirect_location()).query)
    assert query == {"keep": ["1"], "error": ["access_denied"], "state": ["s1"]}
