"""Host-header dispatch order, site table updates and failure isolation."""

from __future__ import annotations

import pytest
from fastapi import FastAPI
from fastapi.responses import PlainTextResponse
from fastapi.testclient import TestClient

from exprsn_hub.core.errors import Conflict
from exprsn_hub.hosting.dispatcher import Dispatcher, SiteTable, normalize_host


def _app(label: str) -> FastAPI:
    app = FastAPI()

    @app.get("/")
    def root() -> PlainTextResponse:
        return PlainTextResponse(label)

    @app.get("/boom")
    def boom() -> None:
        raise RuntimeError("boom")

    return app


@pytest.fixture()
def table() -> SiteTable:
    return SiteTable()


@pytest.fixture()
def plain_dispatcher(table: SiteTable) -> Dispatcher:
    return Dispatcher(
        "example.io",
        table,
        _app("admin"),
        {"auth": _app("auth"), "status": _app("status")},
    )


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("Alice.Example.IO", "alice.example.io"),
        ("alice.example.io:8443", "alice.example.io"),
        ("example.io.", "example.io"),
        ("[::1]:80", "[::1]"),
    ],
)
def test_normalize_host(raw: str, expected: str) -> None:
    assert normalize_host(raw) == expected


@pytest.mark.asyncio
async def test_resolution_order(plain_dispatcher: Dispatcher, table: SiteTable) -> None:
    site_app = _app("alice")
    await table.publish("alice", site_app, ["alice.blog"])

    assert plain_dispatcher.resolve("auth.example.io")[0] == "reserved"
    assert plain_dispatcher.resolve("alice.blog") == ("custom", site_app)
    assert plain_dispatcher.resolve("ALICE.example.io:80") == ("site", site_app)
    assert plain_dispatcher.resolve("nobody.example.io") == ("site", None)
    assert plain_dispatcher.resolve("example.io")[0] == "admin"
    assert plain_dispatcher.resolve("www.example.io")[0] == "admin"
    assert plain_dispatcher.resolve("elsewhere.test")[0] == "admin"


@pytest.mark.asyncio
async def test_reserved_label_wins_over_site_with_same_name(
    plain_dispatcher: Dispatcher, table: SiteTable
) -> None:
    await table.publish("status", _app("hijack"))
    kind, app = plain_dispatcher.resolve("status.example.io")
    assert kind == "reserved"
    assert app is plain_dispatcher.reserved["status.example.io"]


@pytest.mark.asyncio
async def test_custom_domain_conflict_leaves_table_unchanged(table: SiteTable) -> None:
    await table.publish("alice", _app("alice"), ["shared.test"])
    before = table.state

    with pytest.raises(Conflict):
        await table.publish("bob", _app("bob"), ["shared.test"])

    assert table.state is before
    assert "bob" not in table.state.sites


@pytest.mark.asyncio
async def test_publish_replaces_domains_and_retire_drops_them(table: SiteTable) -> None:
    first = _app("v1")
    second = _app("v2")
    assert await table.publish("alice", first, ["a.test", "b.test"]) is None
    assert await table.publish("alice", second, ["b.test"]) is first
    assert dict(table.state.custom_domains) == {"b.test": "alice"}

    assert await table.retire("alice") is second
    assert not table.state.custom_domains
    assert await table.retire("alice") is None


@pytest.mark.asyncio
async def test_readers_keep_their_snapshot(table: SiteTable) -> None:
    await table.publish("alice", _app("alice"))
    snapshot = table.state
    await table.retire("alice")
    assert "alice" in snapshot.sites
    assert "alice" not in table.state.sites


def test_inactive_site_is_404_and_failures_are_contained(
    plain_dispatcher: Dispatcher,
) -> None:
    with TestClient(plain_dispatcher, base_url="http://example.io") as client:
        missing = client.get("http://ghost.example.io/")
        assert missing.status_code == 404
        assert missing.json()["error"] == "not_found"

        assert client.get("http://auth.example.io/").text == "auth"
        assert client.get("/").text == "admin"

        crashed = client.get("/boom")
        assert crashed.status_code == 500
        # The dispatcher keeps serving after a sub-application failure.
        assert client.get("/").status_code == 200


def test_full_stack_routes_reserved_hosts(client: TestClient) -> None:
    openid = client.get("http://auth.example.io/.well-known/openid-configuration")
    assert openid.status_code == 200
    assert openid.json()["issuer"] == "https://auth.example.io"

    status_api = client.get("http://status.example.io/api/status")
    assert status_api.status_code == 200
    assert status_api.json()["baseDomain"] == "example.io"

    register_info = client.get("http://register.example.io/")
    assert register_info.json()["service"] == "register"

    web = client.get("http://app.example.io/")
    assert web.json() == {
        "app": "exprsn-web",
        "baseDomain": "example.io",
        "loggedIn": False,
        "user": None,
    }

    unknown = client.get("http://nobody.example.io/")
    assert unknown.status_code == 404


def test_security_headers_on_reserved_apps(client: TestClient) -> None:
    response = client.get("http://status.example.io/api/status")
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["X-Frame-Options"] == "SAMEORIGIN"
    assert "Strict-Transport-Security" not in response.headers
