"""Outbound federation: the durable delivery queue and its worker.

Activities are enqueued as ``federation_queue`` rows by social events and
delivered to remote inboxes by a single background worker. Delivery is
at-least-once with a bounded number of attempts; ``attempts`` and
``last_attempt`` are committed before every network call so no item is lost
if the process stops mid-delivery.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping
from typing import Any
from urllib.parse import urlsplit

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from exprsn_hub import __version__
from exprsn_hub.core.settings import Settings
from exprsn_hub.db.session import SessionLocal
from exprsn_hub.db.time import utcnow
from exprsn_hub.models import FederationQueueItem, User
from exprsn_hub.models.federation import (
    DEFAULT_PRIORITY,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING,
)

logger = logging.getLogger(__name__)

ACTIVITY_STREAMS_CONTEXT = "https://www.w3.org/ns/activitystreams"
PUBLIC_COLLECTION = "https://www.w3.org/ns/activitystreams#Public"
ACTIVITY_CONTENT_TYPE = "application/activity+json"

# action -> ActivityStreams activity type
ACTIVITY_TYPES: dict[str, str] = {
    "create": "Create",
    "update": "Update",
    "delete": "Delete",
    "follow": "Follow",
    "accept": "Accept",
    "reject": "Reject",
    "like": "Like",
    "announce": "Announce",
    "undo": "Undo",
}


class DeliveryError(RuntimeError):
    """Raised when a remote inbox rejects or cannot receive an activity."""


class UnsupportedActivityError(ValueError):
    """Raised when a queue row carries an unknown action."""


def user_host(user: User, base_domain: str) -> str:
    """Return the host serving ``user``'s personal site."""
    return f"{user.subdomain or user.username}.{base_domain}"


def federation_id_for(username: str, subdomain: str | None, base_domain: str) -> str:
    """Return the immutable actor URL assigned at registration time."""
    return f"https://{subdomain or username}.{base_domain}/user/{username}"


def serialize_activity(item: FederationQueueItem) -> dict[str, Any]:
    """Build the wire activity for a queue row.

    ``create``/``update``/``delete``/``undo``/``accept``/``reject`` wrap the stored
    payload as ``object``. ``follow`` addresses the followed actor, taken from the
    payload's ``object`` or else the row target. ``like``/``announce`` reference
    the object id.

    Raises:
        UnsupportedActivityError: For unknown actions or unreadable payloads.
    """
    activity_type = ACTIVITY_TYPES.get(item.action)
    if activity_type is None:
        raise UnsupportedActivityError(f"Unsupported federation action: {item.action}")
    try:
        payload = json.loads(item.object_payload)
    except ValueError as exc:
        raise UnsupportedActivityError(f"Unreadable payload for item {item.id}") from exc

    activity: dict[str, Any] = {
        "@context": ACTIVITY_STREAMS_CONTEXT,
        "id": f"{item.actor}/activities/{item.id}",
        "type": activity_type,
        "actor": item.actor,
    }
    if item.action == "follow":
        followed = payload.get("object") if isinstance(payload, Mapping) else None
        activity["object"] = followed or item.target
    elif item.action in ("like", "announce"):
        activity["object"] = payload.get("id", payload) if isinstance(payload, Mapping) else payload
    else:
        activity["object"] = payload

    if item.action in ("create", "update", "delete", "announce") and isinstance(payload, Mapping):
        activity["to"] = payload.get("to", [PUBLIC_COLLECTION])
        if "cc" in payload:
            activity["cc"] = payload["cc"]
    if isinstance(payload, Mapping) and payload.get("published"):
        activity["published"] = payload["published"]
    return activity


class FederationQueue:
    """Enqueue side of the delivery queue, applying the federation policy."""

    def __init__(self, config: Settings) -> None:
        self.config = config

    def is_allowed(self, target: str) -> bool:
        """Return True if ``target`` may receive deliveries under the host lists."""
        if not self.config.federation_enabled:
            return False
        host = (urlsplit(target).hostname or "").lower()
        if not host:
            return False
        if host in self.config.federation_blacklist_hosts:
            return False
        whitelist = self.config.federation_whitelist_hosts
        return not whitelist or host in whitelist

    def enqueue(
        self,
        db: Session,
        *,
        actor: str,
        action: str,
        payload: Mapping[str, Any] | str,
        target: str,
        priority: int = DEFAULT_PRIORITY,
        commit: bool = True,
    ) -> FederationQueueItem | None:
        """Add a pending delivery; returns None when policy refuses the target."""
        if not self.is_allowed(target):
            logger.info("Federation to %s refused by policy", target)
            return None
        if action not in ACTIVITY_TYPES:
            raise UnsupportedActivityError(f"Unsupported federation action: {action}")
        item = FederationQueueItem(
            actor=actor,
            action=action,
            object_payload=payload if isinstance(payload, str) else json.dumps(payload),
            target=target,
            priority=priority,
            attempts=0,
            status=STATUS_PENDING,
        )
        db.add(item)
        if commit:
            db.commit()
        else:
            db.flush()
        logger.debug("Enqueued %s from %s to %s", action, actor, target)
        return item

    def stats(self, db: Session) -> dict[str, int]:
        counts = {STATUS_PENDING: 0, STATUS_COMPLETED: 0, STATUS_FAILED: 0}
        for status_value in counts:
            counts[status_value] = (
                db.query(FederationQueueItem)
                .filter(FederationQueueItem.status == status_value)
                .count()
            )
        return counts


class DeliveryClient:
    """HTTP client posting activities to remote inboxes."""

    def __init__(
        self,
        timeout: float,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            transport=transport,
            headers={
                "Content-Type": ACTIVITY_CONTENT_TYPE,
                "Accept": ACTIVITY_CONTENT_TYPE,
                "User-Agent": f"exprsn-hub/{__version__}",
            },
        )

    async def deliver(self, target: str, activity: Mapping[str, Any]) -> None:
        """POST ``activity`` to ``target``.

        Raises:
            DeliveryError: On transport errors or any non-2xx response.
        """
        try:
            response = await self._client.post(target, content=json.dumps(activity))
        except httpx.HTTPError as exc:
            raise DeliveryError(f"{type(exc).__name__}: {exc}") from exc
        if not response.is_success:
            raise DeliveryError(f"HTTP {response.status_code} from {target}")

    async def close(self) -> None:
        await self._client.aclose()


class FederationWorker:
    """Single background worker draining the queue in (priority, created_at) order."""

    def __init__(
        self,
        config: Settings,
        client: DeliveryClient | None = None,
        *,
        session_factory: sessionmaker[Session] | None = None,
    ) -> None:
        self.config = config
        self.client = client or DeliveryClient(config.federation_delivery_timeout)
        self._session_factory = session_factory or SessionLocal
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the background delivery loop."""
        if self._task is None or self._task.done():
            self._stopping.clear()
            self._task = asyncio.create_task(self._run())
            logger.info("Federation worker started")

    async def stop(self) -> None:
        """Stop the loop after the in-flight item finishes."""
        if self._task is None:
            return
        self._stopping.set()
        await self._task
        self._task = None
        logger.info("Federation worker stopped")

    async def close(self) -> None:
        await self.stop()
        await self.client.close()

    async def _run(self) -> None:
        interval = max(0.05, float(self.config.federation_poll_interval))
        while not self._stopping.is_set():
            try:
                await self.process_once()
            except SQLAlchemyError as exc:
                logger.error("Federation worker database error: %s", exc, exc_info=True)
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=interval)
            except TimeoutError:
                pass

    async def process_once(self) -> int:
        """Deliver one batch of pending items; returns how many were attempted."""
        attempted = 0
        with self._session_factory() as db:
            items = (
                db.query(FederationQueueItem)
                .filter(
                    FederationQueueItem.status == STATUS_PENDING,
                    FederationQueueItem.attempts < self.config.federation_max_attempts,
                )
                .order_by(
                    FederationQueueItem.priority.asc(),
                    FederationQueueItem.created_at.asc(),
                    FederationQueueItem.id.asc(),
                )
                .limit(self.config.federation_batch_size)
                .all()
            )
            if items:
                logger.debug("Processing %d federation items", len(items))
            for item in items:
                if self._stopping.is_set():
                    break
                await self._deliver_item(db, item)
                attempted += 1
        return attempted

    async def _deliver_item(self, db: Session, item: FederationQueueItem) -> None:
        item.attempts += 1
        item.last_attempt = utcnow()
        db.commit()

        try:
            activity = serialize_activity(item)
        except UnsupportedActivityError as exc:
            item.status = STATUS_FAILED
            item.last_error = str(exc)
            db.commit()
            logger.warning("Federation item %s failed permanently: %s", item.id, exc)
            return

        try:
            await self.client.deliver(item.target, activity)
        except DeliveryError as exc:
            item.last_error = str(exc)[:1000]
            # attempts was already incremented, so this is the maxAttempts-th try
            if item.attempts >= self.config.federation_max_attempts:
                item.status = STATUS_FAILED
                logger.warning(
                    "Federation item %s to %s failed after %d attempts: %s",
                    item.id,
                    item.target,
                    item.attempts,
                    exc,
                )
            else:
                logger.info(
                    "Federation item %s attempt %d failed: %s", item.id, item.attempts, exc
                )
            db.commit()
            return

        item.status = STATUS_COMPLETED
        item.last_error = None
        db.commit()
        logger.info("Delivered %s activity %s to %s", item.action, item.id, item.target)
