"""ActivityPub actor endpoints served on personal user sites.

Only the actor document is complete. Inbox, outbox and the follow collections
answer with empty ``OrderedCollection`` documents; inbound activities are
acknowledged and dropped.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Request, status
from fastapi.responses import HTMLResponse, JSONResponse

from exprsn_hub.api.dependencies import HubDep, SiteOwnerDep
from exprsn_hub.core.errors import NotFound
from exprsn_hub.models import User
from exprsn_hub.services.federation import (
    ACTIVITY_CONTENT_TYPE,
    ACTIVITY_STREAMS_CONTEXT,
    user_host,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["federation"])

SECURITY_CONTEXT = "https://w3id.org/security/v1"


def _owner_named(owner: User, username: str) -> User:
    if username != owner.username:
        raise NotFound("User not found")
    return owner


def actor_document(user: User, base_domain: str) -> dict[str, Any]:
    """Return the ``Person`` document describing ``user``."""
    host = user_host(user, base_domain)
    actor_id = f"https://{host}/user/{user.username}"
    actor: dict[str, Any] = {
        "@context": [ACTIVITY_STREAMS_CONTEXT, SECURITY_CONTEXT],
        "id": actor_id,
        "type": "Person",
        "preferredUsername": user.username,
        "name": user.name,
        "summary": user.bio or "",
        "url": f"https://{host}/@{user.username}",
        "inbox": f"{actor_id}/inbox",
        "outbox": f"{actor_id}/outbox",
        "followers": f"{actor_id}/followers",
        "following": f"{actor_id}/following",
        "endpoints": {"sharedInbox": f"https://{host}/inbox"},
    }
    if user.avatar_url:
        url = user.avatar_url
        if not url.startswith("http"):
            url = f"https://{host}{url}"
        actor["icon"] = {"type": "Image", "url": url}
    return actor


def empty_collection(collection_id: str) -> dict[str, Any]:
    return {
        "@context": ACTIVITY_STREAMS_CONTEXT,
        "id": collection_id,
        "type": "OrderedCollection",
        "totalItems": 0,
        "orderedItems": [],
    }


@router.get("/user/{username}")
def actor(username: str, hub: HubDep, owner: SiteOwnerDep) -> JSONResponse:
    user = _owner_named(owner, username)
    return JSONResponse(
        actor_document(user, hub.config.base_domain), media_type=ACTIVITY_CONTENT_TYPE
    )


@router.get("/@{username}", response_class=HTMLResponse)
def profile_page(username: str, hub: HubDep, owner: SiteOwnerDep) -> HTMLResponse:
    user = _owner_named(owner, username)
    page = hub.renderer.render(
        "profile",
        {"title": user.name, "name": user.name, "username": user.username, "bio": user.bio},
    )
    return HTMLResponse(page)


@router.get("/user/{username}/{collection}")
def collection(
    username: str, collection: str, request: Request, owner: SiteOwnerDep
) -> JSONResponse:
    _owner_named(owner, username)
    if collection not in ("inbox", "outbox", "followers", "following"):
        raise NotFound("Collection not found")
    return JSONResponse(empty_collection(str(request.url)), media_type=ACTIVITY_CONTENT_TYPE)


@router.post("/user/{username}/inbox", status_code=status.HTTP_202_ACCEPTED)
async def inbox(username: str, request: Request, owner: SiteOwnerDep) -> dict[str, Any]:
    _owner_named(owner, username)
    await _acknowledge(request, owner)
    return {"status": "accepted"}


@router.post("/inbox", status_code=status.HTTP_202_ACCEPTED)
async def shared_inbox(request: Request, owner: SiteOwnerDep) -> dict[str, Any]:
    await _acknowledge(request, owner)
    return {"status": "accepted"}


async def _acknowledge(request: Request, owner: User) -> None:
    body = await request.body()
    logger.info(
        "Discarding inbound activity for %s (%d bytes, %s)",
        owner.username,
        len(body),
        request.headers.get("content-type", "unknown"),
    )
