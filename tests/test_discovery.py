"""WebFinger, NodeInfo and the ActivityPub actor endpoints of a user site."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from exprsn_hub.api.endpoints.discovery import parse_acct
from exprsn_hub.core.errors import ValidationFailure
from exprsn_hub.core.settings import Settings
from exprsn_hub.hub import Hub
from exprsn_hub.models import User

SITE = "http://alice.example.io"


@pytest.fixture()
def site(client: TestClient, hub: Hub, alice: User) -> Iterator[TestClient]:
    client.portal.call(hub.sites.materialize, "alice")
    yield client


@pytest.mark.parametrize(
    ("resource", "expected"),
    [
        ("acct:alice@example.io", ("alice", "example.io")),
        ("acct:alice@Alice.Example.IO", ("alice", "alice.example.io")),
        ("acct:a@b@example.io", ("a@b", "example.io")),
    ],
)
def test_parse_acct(resource: str, expected: tuple[str, str]) -> None:
    assert parse_acct(resource) == expected


@pytest.mark.parametrize(
    "resource", [None, "", "mailto:alice@example.io", "acct:alice", "acct:@x"]
)
def test_parse_acct_rejects(resource: str | None) -> None:
    with pytest.raises(ValidationFailure):
        parse_acct(resource)


def test_webfinger(site: TestClient) -> None:
    for resource in ("acct:alice@example.io", "acct:alice@alice.example.io"):
        response = site.get(f"{SITE}/.well-known/webfinger", params={"resource": resource})
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/jrd+json")
        document = response.json()
        assert document["subject"] == resource
        self_link = next(link for link in document["links"] if link["rel"] == "self")
        assert self_link["href"] == "https://alice.example.io/user/alice"
        assert self_link["type"] == "application/activity+json"


def test_webfinger_errors(site: TestClient) -> None:
    url = f"{SITE}/.well-known/webfinger"
    assert site.get(url).status_code == 400
    assert site.get(url, params={"resource": "https://alice"}).status_code == 400
    assert site.get(url, params={"resource": "acct:nobody@example.io"}).status_code == 404
    assert site.get(url, params={"resource": "acct:alice@elsewhere.test"}).status_code == 404


def test_host_meta_and_nodeinfo(site: TestClient) -> None:
    host_meta = site.get(f"{SITE}/.well-known/host-meta")
    assert host_meta.headers["content-type"].startswith("application/xrd+xml")
    assert "https://example.io/.well-known/webfinger?resource={uri}" in host_meta.text

    links = site.get(f"{SITE}/.well-known/nodeinfo").json()["links"]
    assert links[0]["href"] == "https://example.io/nodeinfo/2.0"

    info = site.get(f"{SITE}/nodeinfo/2.0").json()
    assert info["software"]["name"] == "exprsn-hub"
    assert info["protocols"] == ["activitypub"]
    # alice plus the bootstrap administrator
    assert info["usage"]["users"]["total"] == 2
    assert info["usage"]["localPosts"] == 0


def test_actor_document(site: TestClient) -> None:
    response = site.get(f"{SITE}/user/alice")
    assert response.headers["content-type"].startswith("application/activity+json")
    actor = response.json()
    assert actor["type"] == "Person"
    assert actor["id"] == "https://alice.example.io/user/alice"
    assert actor["inbox"] == "https://alice.example.io/user/alice/inbox"
    assert actor["endpoints"] == {"sharedInbox": "https://alice.example.io/inbox"}

    assert site.get(f"{SITE}/user/bob").status_code == 404

    page = site.get(f"{SITE}/@alice")
    assert page.status_code == 200
    assert "alice" in page.text


@pytest.mark.parametrize("name", ["inbox", "outbox", "followers", "following"])
def test_collections_are_empty(site: TestClient, name: str) -> None:
    collection = site.get(f"{SITE}/user/alice/{name}").json()
    assert collection["type"] == "OrderedCollection"
    assert collection["totalItems"] == 0
    assert collection["orderedItems"] == []


def test_unknown_collection(site: TestClient) -> None:
    assert site.get(f"{SITE}/user/alice/likes").status_code == 404


def test_inboxes_accept_activities(site: TestClient) -> None:
    activity = {"type": "Follow", "actor": "https://remote.test/users/bob"}
    personal = site.post(f"{SITE}/user/alice/inbox", json=activity)
    assert personal.status_code == 202
    assert personal.json() == {"status": "accepted"}
    assert site.post(f"{SITE}/inbox", json=activity).status_code == 202


def test_non_user_sites_have_no_discovery(
    client: TestClient, hub: Hub, config: Settings
) -> None:
    directory = Path(config.sites_dir) / "docs"
    directory.mkdir(parents=True, exist_ok=True)
    (directory / "index.html").write_text("docs")
    client.portal.call(hub.sites.materialize, "docs")
    assert client.get("http://docs.example.io/nodeinfo/2.0").status_code == 404
