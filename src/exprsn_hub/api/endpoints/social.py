"""Social API of personal user sites.

``/api`` is public and read-only. ``/api/auth`` requires an OAuth access token
issued to the site owner, with the scope each operation declares.
"""

from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, Query, status

from exprsn_hub.api.dependencies import (
    HubDep,
    SessionDep,
    SiteOwnerDep,
    TokenUserDep,
    rate_limit,
    require_scope,
)
from exprsn_hub.core.errors import AuthorizationFailure, NotFound
from exprsn_hub.models import User
from exprsn_hub.schemas.social import (
    FollowDecision,
    FollowResponse,
    MarkReadRequest,
    NotificationResponse,
    PostCreate,
    PostResponse,
    ProfileResponse,
    ProfileUpdate,
)
from exprsn_hub.services.rate_limit import MODERATE_POLICY

public_router = APIRouter(
    prefix="/api",
    tags=["social"],
    dependencies=[Depends(rate_limit(MODERATE_POLICY, "site:api"))],
)
router = APIRouter(prefix="/api/auth", tags=["social"])

ReadScope = Depends(require_scope("read"))
WriteScope = Depends(require_scope("write"))
FollowScope = Depends(require_scope("follow"))

Limit = Annotated[int, Query(ge=1, le=100)]
Offset = Annotated[int, Query(ge=0)]


def get_owner_user(user: TokenUserDep, owner: SiteOwnerDep) -> User:
    """Return the token's user if it owns the site being addressed.

    Raises:
        AuthorizationFailure: When the token belongs to someone else.
    """
    if user.id != owner.id:
        raise AuthorizationFailure("Only the site owner may use this API")
    return user


OwnerUserDep = Annotated[User, Depends(get_owner_user)]


# --- Public --------------------------------------------------------------------------
@public_router.get("/user")
def site_user(hub: HubDep, db: SessionDep, owner: SiteOwnerDep) -> dict[str, Any]:
    data = ProfileResponse.model_validate(owner).model_dump(mode="json")
    data["stats"] = hub.social.stats(db, owner)
    return data


@public_router.get("/posts", response_model=list[PostResponse])
def public_posts(
    hub: HubDep, db: SessionDep, owner: SiteOwnerDep, limit: Limit = 20, offset: Offset = 0
) -> list[PostResponse]:
    posts = hub.social.list_user_posts(db, owner, None, limit=limit, offset=offset)
    return [PostResponse.model_validate(post) for post in posts]


@public_router.get("/posts/{post_id}", response_model=PostResponse)
def public_post(post_id: int, hub: HubDep, db: SessionDep, owner: SiteOwnerDep) -> PostResponse:
    post = hub.social.get_post(db, post_id)
    if post.user_id != owner.id:
        raise NotFound("Post not found")
    return PostResponse.model_validate(post)


# --- Posts ---------------------------------------------------------------------------
@router.post("/posts", dependencies=[WriteScope], status_code=status.HTTP_201_CREATED)
async def create_post(
    payload: PostCreate, hub: HubDep, db: SessionDep, user: OwnerUserDep
) -> dict[str, Any]:
    """Publish a post; public posts are queued for delivery to remote followers."""
    post = await hub.social.create_post(
        db,
        user,
        payload.content,
        visibility=payload.visibility,
        in_reply_to_id=payload.in_reply_to_id,
    )
    return {"id": post.id, "post": PostResponse.model_validate(post).model_dump(mode="json")}


@router.get("/posts", dependencies=[ReadScope], response_model=list[PostResponse])
def own_posts(
    hub: HubDep, db: SessionDep, user: OwnerUserDep, limit: Limit = 20, offset: Offset = 0
) -> list[PostResponse]:
    posts = hub.social.list_user_posts(db, user, user, limit=limit, offset=offset)
    return [PostResponse.model_validate(post) for post in posts]


@router.delete(
    "/posts/{post_id}", dependencies=[WriteScope], status_code=status.HTTP_204_NO_CONTENT
)
async def delete_post(post_id: int, hub: HubDep, db: SessionDep, user: OwnerUserDep) -> None:
    await hub.social.delete_post(db, user, post_id)


@router.get("/timeline", dependencies=[ReadScope], response_model=list[PostResponse])
def timeline(
    hub: HubDep, db: SessionDep, user: OwnerUserDep, limit: Limit = 20, offset: Offset = 0
) -> list[PostResponse]:
    posts = hub.social.timeline(db, user, limit=limit, offset=offset)
    return [PostResponse.model_validate(post) for post in posts]


# --- Likes and reposts ---------------------------------------------------------------
@router.post("/posts/{post_id}/like", dependencies=[WriteScope])
async def like(post_id: int, hub: HubDep, db: SessionDep, user: OwnerUserDep) -> dict[str, Any]:
    created = await hub.social.like(db, user, post_id)
    return {"liked": True, "created": created}


@router.delete("/posts/{post_id}/like", dependencies=[WriteScope])
def unlike(post_id: int, hub: HubDep, db: SessionDep, user: OwnerUserDep) -> dict[str, Any]:
    return {"liked": False, "removed": hub.social.unlike(db, user, post_id)}


@router.post("/posts/{post_id}/repost", dependencies=[WriteScope])
async def repost(
    post_id: int, hub: HubDep, db: SessionDep, user: OwnerUserDep
) -> dict[str, Any]:
    created = await hub.social.repost(db, user, post_id)
    return {"reposted": True, "created": created}


@router.delete("/posts/{post_id}/repost", dependencies=[WriteScope])
def unrepost(post_id: int, hub: HubDep, db: SessionDep, user: OwnerUserDep) -> dict[str, Any]:
    return {"reposted": False, "removed": hub.social.unrepost(db, user, post_id)}


# --- Follows -------------------------------------------------------------------------
@router.post("/follow/{user_id}", dependencies=[FollowScope], response_model=FollowResponse)
async def follow(
    user_id: int, hub: HubDep, db: SessionDep, user: OwnerUserDep
) -> FollowResponse:
    return FollowResponse.model_validate(await hub.social.follow(db, user, user_id))


@router.delete("/follow/{user_id}", dependencies=[FollowScope])
def unfollow(user_id: int, hub: HubDep, db: SessionDep, user: OwnerUserDep) -> dict[str, Any]:
    return {"following": False, "removed": hub.social.unfollow(db, user, user_id)}


@router.get(
    "/follow-requests", dependencies=[FollowScope], response_model=list[FollowResponse]
)
def follow_requests(hub: HubDep, db: SessionDep, user: OwnerUserDep) -> list[FollowResponse]:
    return [
        FollowResponse.model_validate(item)
        for item in hub.social.pending_follow_requests(db, user)
    ]


@router.post("/follow-requests/{follow_id}", dependencies=[FollowScope])
async def respond_to_follow(
    follow_id: int,
    decision: FollowDecision,
    hub: HubDep,
    db: SessionDep,
    user: OwnerUserDep,
) -> dict[str, Any]:
    """Accept or reject a pending follow request.

    Raises:
        NotFound: If no pending request with that id is addressed to the caller.
    """
    result = await hub.social.respond_to_follow(db, user, follow_id, accept=decision.accept)
    return {
        "accepted": decision.accept,
        "follow": FollowResponse.model_validate(result).model_dump() if result else None,
    }


@router.get("/followers", dependencies=[ReadScope], response_model=list[FollowResponse])
def followers(hub: HubDep, db: SessionDep, user: OwnerUserDep) -> list[FollowResponse]:
    return [FollowResponse.model_validate(item) for item in hub.social.followers(db, user)]


# --- Notifications -------------------------------------------------------------------
@router.get(
    "/notifications", dependencies=[ReadScope], response_model=list[NotificationResponse]
)
def notifications(
    hub: HubDep,
    db: SessionDep,
    user: OwnerUserDep,
    unread: bool = False,
    limit: Limit = 50,
) -> list[NotificationResponse]:
    items = hub.social.notifications(db, user, unread_only=unread, limit=limit)
    return [NotificationResponse.model_validate(item) for item in items]


@router.post("/notifications/read", dependencies=[WriteScope])
def mark_notifications_read(
    payload: MarkReadRequest, hub: HubDep, db: SessionDep, user: OwnerUserDep
) -> dict[str, int]:
    return {"updated": hub.social.mark_notifications_read(db, user, payload.ids)}


# --- Profile -------------------------------------------------------------------------
@router.patch("/profile", dependencies=[WriteScope], response_model=ProfileResponse)
def update_profile(
    payload: ProfileUpdate, hub: HubDep, db: SessionDep, user: OwnerUserDep
) -> ProfileResponse:
    updated = hub.social.update_profile(db, user, payload.model_dump(exclude_unset=True))
    return ProfileResponse.model_validate(updated)
