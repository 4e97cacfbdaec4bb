"""Instance discovery: WebFinger, host-meta and NodeInfo."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Query, Response
from fastapi.responses import JSONResponse

from exprsn_hub import __version__
from exprsn_hub.api.dependencies import HubDep, SessionDep
from exprsn_hub.core.errors import NotFound, ValidationFailure
from exprsn_hub.models import Post, User
from exprsn_hub.services.federation import ACTIVITY_CONTENT_TYPE, user_host
from exprsn_hub.services.users import get_user_by_username

router = APIRouter(tags=["discovery"])

JRD_CONTENT_TYPE = "application/jrd+json"
XRD_CONTENT_TYPE = "application/xrd+xml"
NODEINFO_SCHEMA = "http://nodeinfo.diaspora.software/ns/schema/2.0"
PROFILE_PAGE_REL = "http://webfinger.net/rel/profile-page"


def parse_acct(resource: str | None) -> tuple[str, str]:
    """Split ``acct:user@host`` into its username and lower-cased host.

    Raises:
        ValidationFailure: If the resource is missing or not an ``acct:`` URI.
    """
    if not resource:
        raise ValidationFailure("Resource parameter required", details={"field": "resource"})
    scheme, _, identifier = resource.partition(":")
    if scheme != "acct" or not identifier:
        raise ValidationFailure("Unsupported resource type", details={"field": "resource"})
    username, _, host = identifier.rpartition("@")
    if not username or not host:
        raise ValidationFailure("Invalid resource format", details={"field": "resource"})
    return username, host.lower()


def actor_url(user: User, base_domain: str) -> str:
    return f"https://{user_host(user, base_domain)}/user/{user.username}"


def profile_url(user: User, base_domain: str) -> str:
    return f"https://{user_host(user, base_domain)}/@{user.username}"


def webfinger_document(resource: str, user: User, base_domain: str) -> dict[str, Any]:
    return {
        "subject": resource,
        "aliases": [actor_url(user, base_domain), profile_url(user, base_domain)],
        "links": [
            {"rel": "self", "type": ACTIVITY_CONTENT_TYPE, "href": actor_url(user, base_domain)},
            {"rel": PROFILE_PAGE_REL, "type": "text/html", "href": profile_url(user, base_domain)},
        ],
    }


@router.get("/.well-known/webfinger")
def webfinger(
    hub: HubDep, db: SessionDep, resource: str = Query("")
) -> JSONResponse:
    """Resolve ``acct:user@base`` or ``acct:user@user.base`` to the user's actor.

    Raises:
        ValidationFailure: For a missing or malformed resource.
        NotFound: For unknown users or foreign hosts.
    """
    username, host = parse_acct(resource)
    base_domain = hub.config.base_domain
    user = get_user_by_username(db, username)
    if user is None:
        raise NotFound("User not found")
    if host not in (base_domain, user_host(user, base_domain)):
        raise NotFound("Resource not found")
    return JSONResponse(
        webfinger_document(resource, user, base_domain), media_type=JRD_CONTENT_TYPE
    )


@router.get("/.well-known/host-meta")
def host_meta(hub: HubDep) -> Response:
    template = f"https://{hub.config.base_domain}/.well-known/webfinger?resource={{uri}}"
    body = (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        '<XRD xmlns="http://docs.oasis-open.org/ns/xri/xrd-1.0">\n'
        f'  <Link rel="lrdd" type="{JRD_CONTENT_TYPE}" template="{template}"/>\n'
        "</XRD>\n"
    )
    return Response(body, media_type=XRD_CONTENT_TYPE)


@router.get("/.well-known/nodeinfo")
def nodeinfo_links(hub: HubDep) -> dict[str, Any]:
    return {
        "links": [
            {"rel": NODEINFO_SCHEMA, "href": f"https://{hub.config.base_domain}/nodeinfo/2.0"}
        ]
    }


@router.get("/nodeinfo/2.0")
def nodeinfo(hub: HubDep, db: SessionDep) -> dict[str, Any]:
    """Summarize the instance for NodeInfo crawlers."""
    return {
        "version": "2.0",
        "software": {"name": "exprsn-hub", "version": __version__},
        "protocols": ["activitypub"],
        "services": {"inbound": [], "outbound": []},
        "openRegistrations": True,
        "usage": {
            "users": {"total": db.query(User).filter(User.is_active.is_(True)).count()},
            "localPosts": db.query(Post).count(),
        },
        "metadata": {"nodeName": hub.config.base_domain},
    }
