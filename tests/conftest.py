# tests/conftest.py
from __future__ import annotations

import os
import shutil
import tempfile
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest
from fastapi.testclient import TestClient

_TEST_ROOT = Path(tempfile.mkdtemp(prefix="exprsn-hub-tests-"))
os.environ["DB_PATH"] = str(_TEST_ROOT / "hub.db")
os.environ["BASE_DOMAIN"] = "example.io"
os.environ["NODE_ENV"] = "test"
os.environ["ADMIN_USERNAME"] = "admin"
os.environ["ADMIN_PASSWORD"] = "admin-password"
os.environ["JWKS_PATH"] = str(_TEST_ROOT / "jwks.json")
os.environ["STATUS_POLLING_INTERVAL"] = "3600000"
os.environ["SITE_DRAIN_SECONDS"] = "0"
os.environ["LOG_LEVEL"] = "WARNING"
for _name in ("DATABASE_URL", "REDIS_URL", "OAUTH_ISSUER", "FEDERATION_WHITELIST"):
    os.environ.pop(_name, None)

from exprsn_hub.apps import create_dispatcher  # noqa: E402
from exprsn_hub.core.settings import Settings, settings  # noqa: E402
from exprsn_hub.db.session import Base, SessionLocal, create_tables, engine  # noqa: E402
from exprsn_hub.hosting.dispatcher import Dispatcher  # noqa: E402
from exprsn_hub.hub import Hub  # noqa: E402
from exprsn_hub.models import OAuthClient, User  # noqa: E402
from exprsn_hub.services.tokens import SUPPORTED_GRANTS  # noqa: E402
from exprsn_hub.services.users import register_user  # noqa: E402

BASE_DOMAIN = "example.io"
AUTH_URL = f"http://auth.{BASE_DOMAIN}"
CLIENT_REDIRECT = "https://client.test/callback"
FULL_SCOPE = "openid profile email read write follow"
PASSWORD = "correct-horse-battery"


@dataclass
class FakeRemote:
    """``httpx.MockTransport`` handler recording requests and answering a fixed status."""

    status_code: int = 202
    body: Any = field(default_factory=dict)
    error: Exception | None = None
    requests: list[httpx.Request] = field(default_factory=list)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return httpx.Response(self.status_code, json=self.body)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture(scope="session", autouse=True)
def _database() -> Iterator[None]:
    create_tables()
    yield
    engine.dispose()
    shutil.rmtree(_TEST_ROOT, ignore_errors=True)


@pytest.fixture(autouse=True)
def _truncate() -> Iterator[None]:
    yield
    with engine.begin() as connection:
        for table in reversed(Base.metadata.sorted_tables):
            connection.execute(table.delete())


@pytest.fixture()
def db() -> Iterator[Any]:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def config(tmp_path: Path) -> Settings:
    return settings.model_copy(
        update={
            "sites_dir": tmp_path / "sites",
            "routes_dir": tmp_path / "routes",
            "config_dir": tmp_path / "config",
            "backups_dir": tmp_path / "backups",
            "ssl_certs_dir": tmp_path / "ssl",
            "uploads_dir": tmp_path / "uploads",
            "media_dir": tmp_path / "media",
        }
    )


@pytest.fixture()
def remote() -> FakeRemote:
    """Stands in for remote inboxes and proxied site services."""
    return FakeRemote()


@pytest.fixture()
def hub(config: Settings, remote: FakeRemote) -> Hub:
    return Hub(
        config,
        delivery_transport=remote.transport(),
        status_transport=remote.transport(),
        proxy_transport=remote.transport(),
    )


@pytest.fixture()
def dispatcher(hub: Hub) -> Dispatcher:
    return create_dispatcher(hub, watch=False, deliver=False)


@pytest.fixture()
def client(dispatcher: Dispatcher) -> Iterator[TestClient]:
    with TestClient(
        dispatcher, base_url=f"http://{BASE_DOMAIN}", follow_redirects=False
    ) as test_client:
        yield test_client


@pytest.fixture()
def make_user(db: Any, config: Settings) -> Callable[..., User]:
    def _make(username: str, *, subdomain: str | None = None, **kwargs: Any) -> User:
        user = register_user(
            db,
            config,
            username=username,
            email=f"{username}@mail.test",
            password=PASSWORD,
            subdomain=subdomain,
            **kwargs,
        )
        return user

    return _make


@pytest.fixture()
def alice(make_user: Callable[..., User], config: Settings) -> User:
    """User owning the ``alice`` subdomain site."""
    user = make_user("alice", subdomain="alice")
    site_dir = Path(config.sites_dir) / "alice"
    site_dir.mkdir(parents=True, exist_ok=True)
    (site_dir / "index.html").write_text("<h1>alice</h1>", encoding="utf-8")
    return user


@pytest.fixture()
def bob(make_user: Callable[..., User]) -> User:
    return make_user("bob")


@pytest.fixture()
def oauth_client(hub: Hub, db: Any) -> tuple[OAuthClient, str]:
    """System client allowed every grant and scope; system clients skip consent."""
    return hub.tokens.register_client(
        db,
        name="Test Client",
        redirect_uris=[CLIENT_REDIRECT],
        grant_types=SUPPORTED_GRANTS,
        scope=FULL_SCOPE,
    )


def login(client: TestClient, username: str, password: str = PASSWORD) -> httpx.Response:
    """Sign in on the auth app; the session cookie is shared by every subdomain."""
    return client.post(
        f"{AUTH_URL}/login", data={"username": username, "password": password}
    )


def authorize_code(
    client: TestClient, oauth_client: OAuthClient, scope: str = FULL_SCOPE, state: str = "xyz"
) -> str:
    response = client.get(
        f"{AUTH_URL}/authorize",
        params={
            "response_type": "code",
            "client_id": oauth_client.id,
            "redirect_uri": CLIENT_REDIRECT,
            "scope": scope,
            "state": state,
        },
    )
    assert response.status_code == 302, response.text
    location = urlsplit(response.headers["location"])
    query = parse_qs(location.query)
    assert query["state"] == [state]
    return query["code"][0]


def exchange_code(
    client: TestClient, oauth_client: OAuthClient, secret: str, code: str
) -> httpx.Response:
    return client.post(
        f"{AUTH_URL}/token",
        data={
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": CLIENT_REDIRECT,
            "client_id": oauth_client.id,
            "client_secret": secret,
        },
    )


def obtain_tokens(
    client: TestClient,
    oauth_client: tuple[OAuthClient, str],
    username: str,
    scope: str = FULL_SCOPE,
) -> dict[str, Any]:
    """Run the authorization code flow for ``username`` and return the token response."""
    registered, secret = oauth_client
    assert login(client, username).status_code == 302
    code = authorize_code(client, registered, scope)
    response = exchange_code(client, registered, secret, code)
    assert response.status_code == 200, response.text
    return response.json()


def admin_token(client: TestClient) -> str:
    response = client.post(
        "/api/auth/login", json={"username": "admin", "password": "admin-password"}
    )
    assert response.status_code == 200, response.text
    return response.json()["token"]
