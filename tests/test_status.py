"""Health polling, the per-site status endpoint and site WebSockets."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import httpx
import pytest
from fastapi.testclient import TestClient

from exprsn_hub.core.settings import Settings
from exprsn_hub.hosting.site import Site
from exprsn_hub.hosting.site_config import SiteConfig
from exprsn_hub.hosting.status import (
    HISTORY_LIMIT,
    STATUS_ACTIVE,
    STATUS_ERROR,
    STATUS_MAINTENANCE,
    STATUS_UNKNOWN,
    STATUS_WARNING,
    StatusPoller,
    classify,
)
from exprsn_hub.hub import Hub
from exprsn_hub.models import OAuthClient, User
from exprsn_hub.services import events
from exprsn_hub.services.events import EventBus
from tests.conftest import FakeRemote, login, obtain_tokens

SITE = "http://alice.example.io"


@pytest.fixture()
def site(client: TestClient, hub: Hub, alice: User) -> Site:
    materialized = client.portal.call(hub.sites.materialize, "alice")
    # Cancel the background poll so only explicit checks record entries.
    client.portal.call(hub.poller.stop)
    return materialized


@pytest.fixture()
def bus() -> EventBus:
    return EventBus()


@pytest.fixture()
def poller(config: Settings, bus: EventBus, remote: FakeRemote) -> StatusPoller:
    """A poller that is not watching anything, so only explicit checks run."""
    return StatusPoller(config, bus, transport=remote.transport())


@pytest.mark.parametrize(
    ("code", "expected"),
    [(200, STATUS_ACTIVE), (204, STATUS_ACTIVE), (301, STATUS_WARNING), (503, STATUS_WARNING)],
)
def test_classify(code: int, expected: str) -> None:
    assert classify(code) == expected


def test_check_local_site(client: TestClient, site: Site, poller: StatusPoller) -> None:
    entry = client.portal.call(poller.check, site)
    assert entry.status == STATUS_ACTIVE
    assert entry.message == "HTTP 200"
    assert entry.response_time_ms is not None

    status = poller.status("alice")
    assert status.status == STATUS_ACTIVE
    assert status.last_checked == entry.timestamp


def test_history_is_newest_first_and_bounded(
    client: TestClient, site: Site, poller: StatusPoller, bus: EventBus
) -> None:
    published: list[dict[str, Any]] = []

    async def record(payload: dict[str, Any]) -> None:
        published.append(payload)

    bus.subscribe(events.SERVICE_STATUS_UPDATE, record)
    for index in range(HISTORY_LIMIT + 5):
        client.portal.call(poller.record, site, STATUS_WARNING, f"check {index}")

    history = poller.status("alice").to_dict(with_history=True)["history"]
    assert len(history) == HISTORY_LIMIT
    assert history[0]["message"] == f"check {HISTORY_LIMIT + 4}"
    assert history[-1]["message"] == "check 5"
    assert published[-1]["site"] == "alice"
    assert published[-1]["status"] == STATUS_WARNING
    assert "history" not in poller.status("alice").to_dict()


def test_maintenance_skips_probe(
    client: TestClient, site: Site, poller: StatusPoller, remote: FakeRemote
) -> None:
    site.config = site.config.merged({"maintenance": True})
    entry = client.portal.call(poller.check, site)
    assert entry.status == STATUS_MAINTENANCE
    assert entry.response_time_ms is None


def test_proxy_site_probes_upstream(
    client: TestClient, hub: Hub, poller: StatusPoller, remote: FakeRemote, config: Settings
) -> None:
    Path(config.sites_dir, "api").mkdir(parents=True)
    hub.site_configs.save(SiteConfig(subdomain="api", proxy_target="http://backend.test:9000"))
    proxied = client.portal.call(hub.sites.materialize, "api")
    client.portal.call(hub.poller.stop)

    remote.status_code = 503
    entry = client.portal.call(poller.check, proxied)
    assert entry.status == STATUS_WARNING
    assert entry.message == "HTTP 503"
    assert str(remote.requests[-1].url) == "http://backend.test:9000/api/health"

    remote.error = httpx.ConnectError("refused")
    entry = client.portal.call(poller.check, proxied)
    assert entry.status == STATUS_ERROR
    assert entry.message.startswith("ConnectError")


def test_unwatch_broadcasts_unknown(
    client: TestClient, site: Site, poller: StatusPoller, bus: EventBus
) -> None:
    published: list[dict[str, Any]] = []

    async def record(payload: dict[str, Any]) -> None:
        published.append(payload)

    bus.subscribe(events.SERVICE_STATUS_UPDATE, record)
    client.portal.call(poller.watch, site)
    assert poller.is_watching("alice")

    client.portal.call(poller.unwatch, "alice")
    assert not poller.is_watching("alice")
    assert published[-1]["status"] == STATUS_UNKNOWN
    assert published[-1]["message"] == "site removed"
    assert "alice" not in poller.snapshot()


def test_site_status_endpoint(client: TestClient, site: Site, hub: Hub) -> None:
    client.portal.call(hub.poller.check, site)
    data = client.get(f"{SITE}/status").json()
    assert data["site"] == "alice"
    assert data["status"] == STATUS_ACTIVE
    assert data["kind"] == site.kind
    assert data["maintenance"] is False
    assert data["history"][0]["status"] == STATUS_ACTIVE


def test_status_app(client: TestClient, site: Site, hub: Hub, bob: User) -> None:
    client.portal.call(hub.poller.check, site)
    summary = client.get("http://status.example.io/api/status").json()
    assert summary["baseDomain"] == "example.io"
    assert summary["total"] == 1
    assert summary["counts"] == {STATUS_ACTIVE: 1}
    assert summary["services"]["alice"]["status"] == STATUS_ACTIVE

    assert client.get("http://status.example.io/").status_code == 401
    login(client, "bob")
    dashboard = client.get("http://status.example.io/").json()
    assert dashboard["user"] == "bob"


def test_site_socket_status_and_notifications(
    client: TestClient,
    site: Site,
    hub: Hub,
    bob: User,
    oauth_client: tuple[OAuthClient, str],
    db: Any,
) -> None:
    token = obtain_tokens(client, oauth_client, "alice")["access_token"]
    with client.websocket_connect("ws://alice.example.io/ws") as socket:
        assert socket.receive_json()["type"] == "status-update"

        client.portal.call(hub.poller.record, site, STATUS_WARNING, "slow")
        update = socket.receive_json()
        assert update["type"] == "status-update"
        assert update["data"]["message"] == "slow"

        socket.send_text("not json")
        assert socket.receive_json()["type"] == "error"

        socket.send_json({"type": "auth", "token": "bogus"})
        assert socket.receive_json()["type"] == "auth-error"

        socket.send_json({"type": "auth", "token": token})
        assert socket.receive_json() == {
            "type": "auth-success",
            "data": {"userId": site.owner_id},
        }

        db.expire_all()
        alice = db.get(User, site.owner_id)
        client.portal.call(hub.social.follow, db, bob, alice.id)
        notification = socket.receive_json()
        assert notification["type"] == events.NOTIFICATION
        assert notification["data"]["type"] == "follow"
        assert notification["data"]["actor_id"] == bob.id
