from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

import pytest
from fastapi.testclient import TestClient

from exprsn_hub.core.errors import AuthorizationFailure, NotFound, ValidationFailure
from exprsn_hub.core.settings import Settings
from exprsn_hub.hub import Hub
from exprsn_hub.models import FederationQueueItem, OAuthClient, User
from exprsn_hub.services import events
from exprsn_hub.services.events import EventBus
from exprsn_hub.services.federation import FederationQueue
from exprsn_hub.services.social import SocialService
from tests.conftest import AUTH_URL, obtain_tokens

SITE = "http://alice.example.io"


@pytest.fixture()
def bus() -> EventBus:
    return EventBus()


@pytest.fixture()
def social(config: Settings, bus: EventBus) -> SocialService:
    return SocialService(config, FederationQueue(config), bus)


@pytest.fixture()
def published(bus: EventBus) -> list[dict[str, Any]]:
    seen: list[dict[str, Any]] = []

    async def record(payload: dict[str, Any]) -> None:
        seen.append(payload)

    bus.subscribe(events.NOTIFICATION, record)
    return seen


@pytest.fixture()
def site(client: TestClient, hub: Hub, alice: User) -> TestClient:
    client.portal.call(hub.sites.materialize, "alice")
    return client


def _auth(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


# --- Service -------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_post_validation(
    social: SocialService, make_user: Callable[..., User], db: Any
) -> None:
    author = make_user("carol")
    with pytest.raises(ValidationFailure):
        await social.create_post(db, author, "   ")
    with pytest.raises(ValidationFailure):
        await social.create_post(db, author, "x" * 5001)
    with pytest.raises(ValidationFailure):
        await social.create_post(db, author, "hi", visibility="secret")
    with pytest.raises(NotFound):
        await social.create_post(db, author, "hi", in_reply_to_id=999)


@pytest.mark.asyncio
async def test_likes_are_idempotent_and_notify(
    social: SocialService,
    published: list[dict[str, Any]],
    make_user: Callable[..., User],
    db: Any,
) -> None:
    author = make_user("carol")
    fan = make_user("dave")
    post = await social.create_post(db, author, "hello")

    assert await social.like(db, fan, post.id) is True
    assert await social.like(db, fan, post.id) is False
    assert [event["type"] for event in published] == ["like"]
    assert published[0]["user_id"] == author.id
    assert published[0]["actor_id"] == fan.id

    # Liking your own post does not notify.
    assert await social.like(db, author, post.id) is True
    assert len(published) == 1

    assert social.unlike(db, fan, post.id) is True
    assert social.unlike(db, fan, post.id) is False


@pytest.mark.asyncio
async def test_reposts(
    social: SocialService, make_user: Callable[..., User], db: Any
) -> None:
    author = make_user("carol")
    fan = make_user("dave")
    public = await social.create_post(db, author, "share me")
    private = await social.create_post(db, author, "mine", visibility="private")

    assert await social.repost(db, fan, public.id) is True
    assert await social.repost(db, fan, public.id) is False
    with pytest.raises(NotFound):
        await social.repost(db, fan, private.id)
    with pytest.raises(AuthorizationFailure):
        await social.repost(db, author, private.id)


@pytest.mark.asyncio
async def test_follow_private_account(
    social: SocialService,
    published: list[dict[str, Any]],
    make_user: Callable[..., User],
    db: Any,
) -> None:
    target = make_user("carol")
    follower = make_user("dave")
    social.update_profile(db, target, {"is_private": True})

    follow = await social.follow(db, follower, target.id)
    assert follow.status == "pending"
    assert (await social.follow(db, follower, target.id)).id == follow.id
    assert published[-1]["type"] == "follow_request"
    assert not social.is_following(db, follower, target)

    await social.respond_to_follow(db, target, follow.id, accept=True)
    assert social.is_following(db, follower, target)
    assert published[-1]["type"] == "follow_accepted"
    assert published[-1]["user_id"] == follower.id
    assert social.stats(db, target) == {"posts": 0, "followers": 1, "following": 0}

    with pytest.raises(NotFound):
        await social.respond_to_follow(db, target, follow.id, accept=True)
    with pytest.raises(ValidationFailure):
        await social.follow(db, follower, follower.id)


@pytest.mark.asyncio
async def test_visibility_and_timeline(
    social: SocialService, make_user: Callable[..., User], db: Any
) -> None:
    author = make_user("carol")
    reader = make_user("dave")
    stranger = make_user("erin")
    await social.create_post(db, author, "everyone")
    followers_only = await social.create_post(db, author, "friends", visibility="followers")
    await social.follow(db, reader, author.id)

    assert [p.content for p in social.list_user_posts(db, author, stranger)] == ["everyone"]
    assert {p.content for p in social.list_user_posts(db, author, reader)} == {
        "everyone",
        "friends",
    }
    assert social.get_post(db, followers_only.id, reader).id == followers_only.id
    with pytest.raises(NotFound):
        social.get_post(db, followers_only.id, stranger)

    own = await social.create_post(db, reader, "mine")
    timeline = social.timeline(db, reader)
    assert timeline[0].id == own.id
    assert {p.content for p in timeline} == {"everyone", "friends", "mine"}


@pytest.mark.asyncio
async def test_delete_post_checks_ownership(
    social: SocialService, make_user: Callable[..., User], db: Any
) -> None:
    author = make_user("carol")
    other = make_user("dave")
    post = await social.create_post(db, author, "bye")
    with pytest.raises(AuthorizationFailure):
        await social.delete_post(db, other, post.id)
    await social.delete_post(db, author, post.id)
    with pytest.raises(NotFound):
        await social.delete_post(db, author, post.id)


def test_profile_update_rejects_unknown_fields(
    social: SocialService, make_user: Callable[..., User], db: Any
) -> None:
    with pytest.raises(ValidationFailure):
        social.update_profile(db, make_user("carol"), {"role": "admin"})


# --- Site API ------------------------------------------------------------------------
def test_public_api(site: TestClient, alice: User, hub: Hub, db: Any) -> None:
    site.portal.call(hub.social.create_post, db, alice, "public hello")
    profile = site.get(f"{SITE}/api/user").json()
    assert profile["username"] == "alice"
    assert profile["stats"]["posts"] == 1

    posts = site.get(f"{SITE}/api/posts").json()
    assert [post["content"] for post in posts] == ["public hello"]
    assert site.get(f"{SITE}/api/posts/{posts[0]['id']}").status_code == 200
    assert site.get(f"{SITE}/api/posts/999").status_code == 404


def test_owner_api_requires_scopes(
    site: TestClient, oauth_client: tuple[OAuthClient, str]
) -> None:
    read_only = obtain_tokens(site, oauth_client, "alice", "read")["access_token"]
    full = obtain_tokens(site, oauth_client, "alice")["access_token"]

    assert site.post(f"{SITE}/api/auth/posts", json={"content": "x"}).status_code == 401
    denied = site.post(f"{SITE}/api/auth/posts", json={"content": "x"}, headers=_auth(read_only))
    assert denied.status_code == 403

    created = site.post(
        f"{SITE}/api/auth/posts", json={"content": "first post"}, headers=_auth(full)
    )
    assert created.status_code == 201
    post_id = created.json()["id"]
    assert created.json()["post"]["content"] == "first post"

    mine = site.get(f"{SITE}/api/auth/posts", headers=_auth(read_only)).json()
    assert [post["id"] for post in mine] == [post_id]

    liked = site.post(f"{SITE}/api/auth/posts/{post_id}/like", headers=_auth(full)).json()
    assert liked == {"liked": True, "created": True}
    again = site.post(f"{SITE}/api/auth/posts/{post_id}/like", headers=_auth(full)).json()
    assert again["created"] is False

    deleted = site.delete(f"{SITE}/api/auth/posts/{post_id}", headers=_auth(full))
    assert deleted.status_code == 204
    assert site.get(f"{SITE}/api/auth/posts", headers=_auth(full)).json() == []


def test_owner_api_rejects_other_users_and_clients(
    site: TestClient, bob: User, oauth_client: tuple[OAuthClient, str]
) -> None:
    bob_token = obtain_tokens(site, oauth_client, "bob")["access_token"]
    foreign = site.get(f"{SITE}/api/auth/timeline", headers=_auth(bob_token))
    assert foreign.status_code == 403

    registered, secret = oauth_client
    machine = site.post(
        f"{AUTH_URL}/token",
        data={
            "grant_type": "client_credentials",
            "client_id": registered.id,
            "client_secret": secret,
        },
    ).json()["access_token"]
    assert site.get(f"{SITE}/api/auth/timeline", headers=_auth(machine)).status_code == 403


def test_owner_follow_requests_and_notifications(
    site: TestClient,
    hub: Hub,
    alice: User,
    bob: User,
    oauth_client: tuple[OAuthClient, str],
    db: Any,
) -> None:
    token = obtain_tokens(site, oauth_client, "alice")["access_token"]
    headers = _auth(token)

    profile = site.patch(f"{SITE}/api/auth/profile", json={"is_private": True}, headers=headers)
    assert profile.status_code == 200
    assert profile.json()["is_private"] is True

    db.expire_all()
    site.portal.call(hub.social.follow, db, bob, alice.id)
    requests = site.get(f"{SITE}/api/auth/follow-requests", headers=headers).json()
    assert [item["follower_id"] for item in requests] == [bob.id]
    assert requests[0]["status"] == "pending"

    decided = site.post(
        f"{SITE}/api/auth/follow-requests/{requests[0]['id']}",
        json={"accept": True},
        headers=headers,
    ).json()
    assert decided["accepted"] is True
    assert decided["follow"]["status"] == "accepted"

    followers = site.get(f"{SITE}/api/auth/followers", headers=headers).json()
    assert [item["follower_id"] for item in followers] == [bob.id]

    inbox = site.get(f"{SITE}/api/auth/notifications", headers=headers).json()
    assert [item["type"] for item in inbox] == ["follow_request"]
    assert inbox[0]["is_read"] is False

    marked = site.post(f"{SITE}/api/auth/notifications/read", json={}, headers=headers).json()
    assert marked == {"updated": 1}
    unread = site.get(
        f"{SITE}/api/auth/notifications", params={"unread": "true"}, headers=headers
    ).json()
    assert unread == []

    missing = site.post(
        f"{SITE}/api/auth/follow-requests/999", json={"accept": False}, headers=headers
    )
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_remote_follow_requests_are_answered_by_federation(
    social: SocialService, make_user: Callable[..., User], db: Any
) -> None:
    carol = make_user("carol")
    kept = social.add_remote_follower(
        db,
        carol,
        actor="https://remote.test/users/x",
        inbox="https://remote.test/x/inbox",
        accepted=False,
    )
    dropped = social.add_remote_follower(
        db,
        carol,
        actor="https://remote.test/users/y",
        inbox="https://remote.test/y/inbox",
        accepted=False,
    )

    await social.respond_to_follow(db, carol, kept.id, accept=True)
    await social.respond_to_follow(db, carol, dropped.id, accept=False)

    items = db.query(FederationQueueItem).order_by(FederationQueueItem.id).all()
    assert [(item.action, item.target) for item in items] == [
        ("accept", "https://remote.test/x/inbox"),
        ("reject", "https://remote.test/y/inbox"),
    ]
    assert json.loads(items[1].object_payload)["actor"] == "https://remote.test/users/y"
