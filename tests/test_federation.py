from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

import httpx
import pytest

from exprsn_hub.core.settings import Settings
from exprsn_hub.models import FederationQueueItem, User
from exprsn_hub.models.federation import STATUS_COMPLETED, STATUS_FAILED, STATUS_PENDING
from exprsn_hub.services.events import EventBus
from exprsn_hub.services.federation import (
    PUBLIC_COLLECTION,
    DeliveryClient,
    FederationQueue,
    FederationWorker,
    UnsupportedActivityError,
    federation_id_for,
    serialize_activity,
)
from exprsn_hub.services.social import SocialService
from tests.conftest import FakeRemote

INBOX = "https://remote.test/inbox"
ACTOR = "https://alice.example.io/user/alice"


@pytest.fixture()
def queue(config: Settings) -> FederationQueue:
    return FederationQueue(config)


@pytest.fixture()
def worker(config: Settings, remote: FakeRemote) -> FederationWorker:
    return FederationWorker(config, DeliveryClient(5.0, transport=remote.transport()))


def _item(**overrides: Any) -> FederationQueueItem:
    values: dict[str, Any] = {
        "id": 7,
        "actor": ACTOR,
        "action": "create",
        "object_payload": json.dumps({"id": "https://alice.example.io/posts/1", "type": "Note"}),
        "target": INBOX,
    }
    values.update(overrides)
    return FederationQueueItem(**values)


def test_federation_id_for() -> None:
    assert federation_id_for("alice", None, "example.io") == ACTOR
    assert federation_id_for("alice", "blog", "example.io") == "https://blog.example.io/user/alice"


def test_policy_lists(config: Settings) -> None:
    assert FederationQueue(config).is_allowed(INBOX)
    assert not FederationQueue(config).is_allowed("not a url")

    blocked = FederationQueue(config.model_copy(update={"federation_blacklist": "remote.test"}))
    assert not blocked.is_allowed(INBOX)

    listed = FederationQueue(config.model_copy(update={"federation_whitelist": "friends.test"}))
    assert listed.is_allowed("https://FRIENDS.test/inbox")
    assert not listed.is_allowed(INBOX)

    disabled = FederationQueue(config.model_copy(update={"federation_enabled": False}))
    assert not disabled.is_allowed(INBOX)


def test_enqueue(queue: FederationQueue, config: Settings, db: Any) -> None:
    item = queue.enqueue(db, actor=ACTOR, action="like", payload={"id": "x"}, target=INBOX)
    assert item is not None
    assert item.status == STATUS_PENDING
    assert item.attempts == 0
    assert queue.stats(db) == {STATUS_PENDING: 1, STATUS_COMPLETED: 0, STATUS_FAILED: 0}

    with pytest.raises(UnsupportedActivityError):
        queue.enqueue(db, actor=ACTOR, action="poke", payload={}, target=INBOX)

    refusing = FederationQueue(config.model_copy(update={"federation_blacklist": "remote.test"}))
    assert refusing.enqueue(db, actor=ACTOR, action="like", payload={}, target=INBOX) is None
    assert db.query(FederationQueueItem).count() == 1


def test_serialize_activity() -> None:
    create = serialize_activity(_item())
    assert create["@context"] == "https://www.w3.org/ns/activitystreams"
    assert create["id"] == f"{ACTOR}/activities/7"
    assert create["type"] == "Create"
    assert create["object"]["type"] == "Note"
    assert create["to"] == [PUBLIC_COLLECTION]

    like = serialize_activity(_item(action="like"))
    assert like["object"] == "https://alice.example.io/posts/1"

    follow = serialize_activity(_item(action="follow", object_payload="{}"))
    assert follow["object"] == INBOX

    with pytest.raises(UnsupportedActivityError):
        serialize_activity(_item(action="poke"))
    with pytest.raises(UnsupportedActivityError):
        serialize_activity(_item(object_payload="{nope"))


@pytest.mark.asyncio
async def test_worker_delivers(
    worker: FederationWorker, queue: FederationQueue, remote: FakeRemote, db: Any
) -> None:
    queue.enqueue(db, actor=ACTOR, action="announce", payload={"id": "p1"}, target=INBOX)

    assert await worker.process_once() == 1
    db.expire_all()
    item = db.query(FederationQueueItem).one()
    assert item.status == STATUS_COMPLETED
    assert item.attempts == 1
    assert item.last_attempt is not None

    sent = remote.requests[0]
    assert str(sent.url) == INBOX
    assert sent.headers["Content-Type"] == "application/activity+json"
    assert json.loads(sent.content)["type"] == "Announce"

    assert await worker.process_once() == 0
    await worker.close()


@pytest.mark.asyncio
async def test_worker_retries_then_fails(
    worker: FederationWorker,
    queue: FederationQueue,
    remote: FakeRemote,
    config: Settings,
    db: Any,
) -> None:
    remote.status_code = 500
    queue.enqueue(db, actor=ACTOR, action="create", payload={"id": "p1"}, target=INBOX)

    for attempt in range(1, config.federation_max_attempts + 1):
        assert await worker.process_once() == 1
        db.expire_all()
        item = db.query(FederationQueueItem).one()
        assert item.attempts == attempt
        assert item.last_error == f"HTTP 500 from {INBOX}"
        expected = STATUS_FAILED if attempt == config.federation_max_attempts else STATUS_PENDING
        assert item.status == expected

    assert await worker.process_once() == 0
    assert len(remote.requests) == config.federation_max_attempts
    await worker.close()


@pytest.mark.asyncio
async def test_transport_errors_count_as_attempts(
    worker: FederationWorker, queue: FederationQueue, remote: FakeRemote, db: Any
) -> None:
    remote.error = httpx.ConnectError("refused")
    queue.enqueue(db, actor=ACTOR, action="create", payload={"id": "p1"}, target=INBOX)

    await worker.process_once()
    db.expire_all()
    item = db.query(FederationQueueItem).one()
    assert item.status == STATUS_PENDING
    assert item.last_error.startswith("ConnectError")

    remote.error = None
    await worker.process_once()
    db.expire_all()
    assert db.query(FederationQueueItem).one().status == STATUS_COMPLETED
    await worker.close()


@pytest.mark.asyncio
async def test_unknown_action_fails_without_delivery(
    worker: FederationWorker, remote: FakeRemote, db: Any
) -> None:
    db.add(_item(id=None, action="poke", attempts=0, status=STATUS_PENDING))
    db.commit()

    await worker.process_once()
    db.expire_all()
    item = db.query(FederationQueueItem).one()
    assert item.status == STATUS_FAILED
    assert item.attempts == 1
    assert remote.requests == []
    await worker.close()


@pytest.mark.asyncio
async def test_priority_order(
    worker: FederationWorker, queue: FederationQueue, remote: FakeRemote, db: Any
) -> None:
    queue.enqueue(db, actor=ACTOR, action="create", payload={"id": "late"}, target=INBOX)
    queue.enqueue(
        db, actor=ACTOR, action="accept", payload={"id": "first"}, target=INBOX, priority=1
    )

    await worker.process_once()
    kinds = [json.loads(request.content)["type"] for request in remote.requests]
    assert kinds == ["Accept", "Create"]
    await worker.close()


@pytest.mark.asyncio
async def test_public_posts_reach_remote_followers(
    config: Settings, queue: FederationQueue, make_user: Callable[..., User], db: Any
) -> None:
    social = SocialService(config, queue, EventBus())
    alice = make_user("alice", subdomain="alice")
    social.add_remote_follower(db, alice, actor="https://remote.test/users/bob", inbox=INBOX)

    post = await social.create_post(db, alice, "hello fediverse")
    await social.create_post(db, alice, "followers only", visibility="followers")

    rows = db.query(FederationQueueItem).all()
    assert len(rows) == 1
    assert rows[0].action == "create"
    assert rows[0].target == INBOX
    assert rows[0].actor == alice.federation_id
    note = json.loads(rows[0].object_payload)
    assert note["id"] == f"https://alice.example.io/posts/{post.id}"
    assert note["content"] == "hello fediverse"


@pytest.mark.asyncio
async def test_accepting_remote_follow_enqueues_accept(
    config: Settings, queue: FederationQueue, make_user: Callable[..., User], db: Any
) -> None:
    social = SocialService(config, queue, EventBus())
    alice = make_user("alice")
    follow = social.add_remote_follower(
        db, alice, actor="https://remote.test/users/bob", inbox=INBOX, accepted=False
    )

    await social.respond_to_follow(db, alice, follow.id, accept=True)
    row = db.query(FederationQueueItem).one()
    assert row.action == "accept"
    assert row.priority == 1
    assert json.loads(row.object_payload)["actor"] == "https://remote.test/users/bob"
