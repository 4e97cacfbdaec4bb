"""Site materialization, reloads, configuration and the proxy handler."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import httpx
import pytest
from fastapi.testclient import TestClient

from exprsn_hub.core.errors import Conflict, Internal, NotFound, ValidationFailure
from exprsn_hub.core.settings import Settings
from exprsn_hub.hosting.proxy import proxy_port, proxy_target_for
from exprsn_hub.hosting.site import KIND_LOCAL, KIND_PROXY, KIND_STATIC
from exprsn_hub.hosting.site_config import SiteConfig
from exprsn_hub.hub import Hub
from exprsn_hub.models import User
from exprsn_hub.services import events
from tests.conftest import FakeRemote

LOCAL_HANDLER = """
from fastapi import APIRouter

router = APIRouter()


@router.get("/hello")
def hello():
    return {"greeting": "%s"}
"""


def _site_dir(config: Settings, name: str) -> Path:
    directory = Path(config.sites_dir) / name
    directory.mkdir(parents=True, exist_ok=True)
    return directory


def _write_local(config: Settings, name: str, greeting: str) -> None:
    (_site_dir(config, name) / "index.py").write_text(LOCAL_HANDLER % greeting, encoding="utf-8")


def _recorded(hub: Hub, *topics: str) -> list[tuple[str, dict[str, Any]]]:
    seen: list[tuple[str, dict[str, Any]]] = []
    for topic in topics:

        async def handler(payload: dict[str, Any], topic: str = topic) -> None:
            seen.append((topic, payload))

        hub.events.subscribe(topic, handler)
    return seen


def _proxied(remote: FakeRemote) -> list[httpx.Request]:
    """Requests the proxy forwarded, without the health poller's probes."""
    return [request for request in remote.requests if "x-proxied-by" in request.headers]


def test_static_user_site(client: TestClient, hub: Hub, alice: User) -> None:
    site = client.portal.call(hub.sites.materialize, "alice")
    assert site.kind == KIND_STATIC
    assert site.owner_username == "alice"
    assert hub.sites.is_active("alice")

    page = client.get("http://alice.example.io/")
    assert page.status_code == 200
    assert "<h1>alice</h1>" in page.text
    assert page.headers["X-Content-Type-Options"] == "nosniff"
    assert "X-RateLimit-Limit" in page.headers

    health = client.get("http://alice.example.io/api/health")
    assert health.json() == {"status": "ok", "site": "alice"}

    status = client.get("http://alice.example.io/status").json()
    assert status["site"] == "alice"
    assert status["kind"] == KIND_STATIC
    assert status["maintenance"] is False


def test_materialize_is_idempotent(client: TestClient, hub: Hub, alice: User) -> None:
    seen = _recorded(hub, events.SITE_ADDED, events.SITE_RELOADED)
    first = client.portal.call(hub.sites.materialize, "alice")
    again = client.portal.call(hub.sites.materialize, "alice")
    assert again is first

    reloaded = client.portal.call(hub.sites.reload, "alice")
    assert reloaded is not first
    assert [topic for topic, _ in seen].count(events.SITE_RELOADED) == 1


def test_materialize_rejects_bad_names(client: TestClient, hub: Hub, config: Settings) -> None:
    with pytest.raises(ValidationFailure):
        client.portal.call(hub.sites.materialize, "Bad_Name")
    _site_dir(config, "auth")
    with pytest.raises(ValidationFailure):
        client.portal.call(hub.sites.materialize, "auth")
    with pytest.raises(NotFound):
        client.portal.call(hub.sites.materialize, "missing")


def test_local_site_reload_and_failed_reload(
    client: TestClient, hub: Hub, config: Settings
) -> None:
    _write_local(config, "demo", "v1")
    site = client.portal.call(hub.sites.materialize, "demo")
    assert site.kind == KIND_LOCAL
    assert not site.is_user_site
    assert client.get("http://demo.example.io/hello").json() == {"greeting": "v1"}

    _write_local(config, "demo", "v2")
    client.portal.call(hub.sites.reload, "demo")
    assert client.get("http://demo.example.io/hello").json() == {"greeting": "v2"}

    (_site_dir(config, "demo") / "index.py").write_text("raise RuntimeError('x')\n")
    with pytest.raises(Internal):
        client.portal.call(hub.sites.reload, "demo")
    # The previous build keeps serving.
    assert client.get("http://demo.example.io/hello").json() == {"greeting": "v2"}


def test_demolish(client: TestClient, hub: Hub, config: Settings) -> None:
    seen = _recorded(hub, events.SITE_REMOVED)
    (_site_dir(config, "demo") / "index.html").write_text("demo")
    client.portal.call(hub.sites.materialize, "demo")
    assert client.get("http://demo.example.io/").status_code == 200

    assert client.portal.call(hub.sites.demolish, "demo") is True
    assert client.get("http://demo.example.io/").status_code == 404
    assert hub.sites.get("demo") is None
    assert seen == [(events.SITE_REMOVED, {"site": "demo"})]

    assert client.portal.call(hub.sites.demolish, "demo") is False


def test_maintenance_mode(client: TestClient, hub: Hub, alice: User) -> None:
    client.portal.call(hub.sites.materialize, "alice")
    client.portal.call(hub.sites.update_config, "alice", {"maintenance": True})

    blocked = client.get("http://alice.example.io/")
    assert blocked.status_code == 503
    assert blocked.json()["error"] == "maintenance"
    assert blocked.headers["Retry-After"] == "300"

    html = client.get("http://alice.example.io/", headers={"Accept": "text/html"})
    assert html.status_code == 503
    assert html.headers["content-type"].startswith("text/html")

    status = client.get("http://alice.example.io/status")
    assert status.status_code == 200
    assert status.json()["maintenance"] is True

    client.portal.call(hub.sites.update_config, "alice", {"maintenance": False})
    assert client.get("http://alice.example.io/").status_code == 200


def test_custom_domains(client: TestClient, hub: Hub, alice: User, config: Settings) -> None:
    client.portal.call(hub.sites.materialize, "alice")
    updated = client.portal.call(
        hub.sites.update_config, "alice", {"customDomains": ["Alice.Blog."]}
    )
    assert updated.custom_domains == ("alice.blog",)
    assert "<h1>alice</h1>" in client.get("http://alice.blog/").text

    mirror = json.loads((Path(config.config_dir) / "sites.json").read_text())
    assert mirror["customDomains"] == {"alice.blog": "alice"}
    assert mirror["sites"]["alice"]["customDomains"] == ["alice.blog"]

    (_site_dir(config, "demo") / "index.html").write_text("demo")
    client.portal.call(hub.sites.materialize, "demo")
    with pytest.raises(Conflict):
        client.portal.call(hub.sites.update_config, "demo", {"customDomains": ["alice.blog"]})
    assert hub.site_configs.load("demo").custom_domains == ()

    with pytest.raises(ValidationFailure):
        client.portal.call(hub.sites.update_config, "alice", {"customDomains": ["not a host"]})


def test_proxy_site_forwards_requests(
    client: TestClient, hub: Hub, config: Settings, remote: FakeRemote
) -> None:
    (_site_dir(config, "api") / "server.py").write_text("# service\n")
    remote.status_code = 200
    remote.body = {"from": "upstream"}
    client.portal.call(hub.sites.materialize, "api")
    site = hub.sites.get("api")
    assert site is not None
    assert site.kind == KIND_PROXY
    assert site.proxy_target == f"http://127.0.0.1:{config.port + ord('a') % 1000}"

    response = client.get(
        "http://api.example.io/things?page=2", headers={"X-Forwarded-For": "10.0.0.1"}
    )
    assert response.status_code == 200
    assert response.json() == {"from": "upstream"}

    forwarded = _proxied(remote)[-1]
    assert forwarded.url.path == "/things"
    assert forwarded.url.query == b"page=2"
    assert forwarded.headers["X-Site-Name"] == "api"
    assert forwarded.headers["X-Proxied-By"].startswith("exprsn-hub/")
    assert forwarded.headers["X-Forwarded-Host"] == "api.example.io"
    assert forwarded.headers["X-Forwarded-For"] == "10.0.0.1, testclient"

    # Hub routes are answered before the proxy.
    assert client.get("http://api.example.io/status").json()["kind"] == KIND_PROXY


def test_proxy_upstream_failures(
    client: TestClient, hub: Hub, config: Settings, remote: FakeRemote
) -> None:
    hub.site_configs.save(
        SiteConfig(subdomain="api", proxy_target="http://backend.test:9000", env={"MODE": "blue"})
    )
    _site_dir(config, "api")
    client.portal.call(hub.sites.materialize, "api")

    remote.status_code = 200
    client.get("http://api.example.io/")
    assert _proxied(remote)[-1].headers["X-Env-MODE"] == "blue"
    assert _proxied(remote)[-1].url.host == "backend.test"

    remote.error = httpx.ReadTimeout("slow")
    timeout = client.get("http://api.example.io/")
    assert timeout.status_code == 504
    assert timeout.json()["error"] == "upstream_timeout"

    remote.error = httpx.ConnectError("refused")
    failure = client.get("http://api.example.io/")
    assert failure.status_code == 502
    assert failure.json()["error"] == "upstream_failure"


def test_proxy_port_derivation(config: Settings) -> None:
    assert proxy_port(config, "alice") == config.port + 97
    assert proxy_target_for(config, "alice") == f"http://127.0.0.1:{config.port + 97}"
    assert proxy_target_for(config, "alice", "http://svc:1/") == "http://svc:1"


def test_site_config_merge_validation() -> None:
    base = SiteConfig(subdomain="alice")
    merged = base.merged(
        {
            "healthCheckPath": "/ping",
            "proxyTarget": "https://svc.test/",
            "env": {"A": 1},
            "maintenance": 1,
        }
    )
    assert merged.to_dict() == {
        "subdomain": "alice",
        "customDomains": [],
        "maintenance": True,
        "healthCheckPath": "/ping",
        "proxyTarget": "https://svc.test",
        "env": {"A": "1"},
    }
    assert base.maintenance is False

    for bad in (
        {"healthCheckPath": "ping"},
        {"proxyTarget": "ftp://svc"},
        {"customDomains": "alice.blog"},
        {"env": ["A"]},
    ):
        with pytest.raises(ValidationFailure):
            base.merged(bad)


def test_site_config_is_seeded_from_mirror(hub: Hub, config: Settings) -> None:
    mirror = Path(config.config_dir) / "sites.json"
    mirror.parent.mkdir(parents=True, exist_ok=True)
    mirror.write_text(
        json.dumps(
            {
                "sites": {
                    "seeded": {"customDomains": ["seeded.test"], "maintenance": True},
                    "broken": {"healthCheckPath": "no-slash"},
                }
            }
        )
    )

    seeded = hub.site_configs.load("seeded")
    assert seeded.custom_domains == ("seeded.test",)
    assert seeded.maintenance is True
    assert hub.site_configs.domain_owner("seeded.test") == "seeded"

    assert hub.site_configs.load("broken") == SiteConfig(subdomain="broken")
