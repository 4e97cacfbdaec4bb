"""Social persistence hooks invoked by user-site APIs.

Each hook persists its change, enqueues federation deliveries where needed and
publishes notifications on the event bus after the transaction commits. Hooks
are idempotent on their own identifiers: liking twice leaves one like.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from exprsn_hub.core.errors import AuthorizationFailure, Conflict, NotFound, ValidationFailure
from exprsn_hub.core.settings import Settings
from exprsn_hub.models import Follow, Like, Notification, Post, Repost, User
from exprsn_hub.models.social import (
    FOLLOW_ACCEPTED,
    FOLLOW_PENDING,
    VISIBILITIES,
    VISIBILITY_FOLLOWERS,
    VISIBILITY_PUBLIC,
)
from exprsn_hub.services import events
from exprsn_hub.services.events import EventBus
from exprsn_hub.services.federation import PUBLIC_COLLECTION, FederationQueue, user_host

logger = logging.getLogger(__name__)

MAX_POST_LENGTH = 5000
PROFILE_FIELDS = ("display_name", "bio", "avatar_url", "website", "location", "is_private")


@dataclass
class _PendingEvents:
    notifications: list[Notification] = field(default_factory=list)


class SocialService:
    """Posts, follows, likes, reposts and notifications for local users."""

    def __init__(self, config: Settings, queue: FederationQueue, bus: EventBus) -> None:
        self.config = config
        self.queue = queue
        self.bus = bus

    # --- URLs ----------------------------------------------------------------------
    def post_url(self, author: User, post: Post) -> str:
        return f"https://{user_host(author, self.config.base_domain)}/posts/{post.id}"

    def followers_url(self, user: User) -> str:
        return f"{user.federation_id}/followers"

    def note_object(self, author: User, post: Post) -> dict[str, Any]:
        """Return the ActivityStreams ``Note`` for ``post``."""
        to = [PUBLIC_COLLECTION] if post.visibility == VISIBILITY_PUBLIC else []
        return {
            "id": post.federation_id or self.post_url(author, post),
            "type": "Note",
            "attributedTo": author.federation_id,
            "content": post.content,
            "published": post.created_at.isoformat() if post.created_at else None,
            "to": to,
            "cc": [self.followers_url(author)],
        }

    # --- Posts ---------------------------------------------------------------------
    async def create_post(
        self,
        db: Session,
        author: User,
        content: str,
        *,
        visibility: str = VISIBILITY_PUBLIC,
        in_reply_to_id: int | None = None,
    ) -> Post:
        """Persist a post and federate it to remote followers when public.

        Raises:
            ValidationFailure: For empty or oversized content or unknown visibility.
            NotFound: If the replied-to post does not exist.
        """
        text = (content or "").strip()
        if not text:
            raise ValidationFailure("Post content is required", details={"field": "content"})
        if len(text) > MAX_POST_LENGTH:
            raise ValidationFailure(
                f"Post content exceeds {MAX_POST_LENGTH} characters",
                details={"field": "content"},
            )
        if visibility not in VISIBILITIES:
            raise ValidationFailure("Unknown visibility", details={"field": "visibility"})

        parent = None
        if in_reply_to_id is not None:
            parent = db.get(Post, in_reply_to_id)
            if parent is None:
                raise NotFound("Replied-to post not found")

        post = Post(
            user_id=author.id,
            content=text,
            visibility=visibility,
            in_reply_to_id=in_reply_to_id,
        )
        db.add(post)
        db.flush()
        post.federation_id = self.post_url(author, post)

        pending = _PendingEvents()
        if parent is not None and parent.user_id != author.id:
            pending.notifications.append(
                self._notification(parent.user_id, "reply", author.id, post.id)
            )
        if visibility == VISIBILITY_PUBLIC:
            note = self.note_object(author, post)
            for inbox in self._remote_follower_inboxes(db, author):
                self.queue.enqueue(
                    db,
                    actor=author.federation_id,
                    action="create",
                    payload=note,
                    target=inbox,
                    commit=False,
                )
        self._commit(db, pending)
        db.refresh(post)
        await self._publish(pending)
        return post

    def get_post(self, db: Session, post_id: int, viewer: User | None = None) -> Post:
        post = db.get(Post, post_id)
        if post is None or not self._can_view(db, post, viewer):
            raise NotFound("Post not found")
        return post

    def list_user_posts(
        self,
        db: Session,
        author: User,
        viewer: User | None = None,
        *,
        limit: int = 20,
        offset: int = 0,
    ) -> list[Post]:
        query = db.query(Post).filter(Post.user_id == author.id)
        if viewer is None or viewer.id != author.id:
            allowed = [VISIBILITY_PUBLIC]
            if viewer is not None and self.is_following(db, viewer, author):
                allowed.append(VISIBILITY_FOLLOWERS)
            query = query.filter(Post.visibility.in_(allowed))
        return query.order_by(Post.created_at.desc(), Post.id.desc()).offset(offset).limit(limit).all()

    async def delete_post(self, db: Session, user: User, post_id: int) -> None:
        post = db.get(Post, post_id)
        if post is None:
            raise NotFound("Post not found")
        if post.user_id != user.id:
            raise AuthorizationFailure("You can only delete your own posts")
        tombstone = {"id": post.federation_id, "type": "Tombstone"}
        was_public = post.visibility == VISIBILITY_PUBLIC
        db.delete(post)
        if was_public:
            for inbox in self._remote_follower_inboxes(db, user):
                self.queue.enqueue(
                    db,
                    actor=user.federation_id,
                    action="delete",
                    payload=tombstone,
                    target=inbox,
                    commit=False,
                )
        db.commit()

    def timeline(self, db: Session, user: User, *, limit: int = 20, offset: int = 0) -> list[Post]:
        """Return posts by ``user`` and the accounts they follow, newest first."""
        followed = [
            row.following_id
            for row in db.query(Follow.following_id).filter(
                Follow.follower_id == user.id, Follow.status == FOLLOW_ACCEPTED
            )
        ]
        return (
            db.query(Post)
            .filter(
                or_(
                    Post.user_id == user.id,
                    Post.user_id.in_(followed) & Post.visibility.in_(
                        [VISIBILITY_PUBLIC, VISIBILITY_FOLLOWERS]
                    ),
                )
            )
            .order_by(Post.created_at.desc(), Post.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )

    # --- Likes and reposts ---------------------------------------------------------
    async def like(self, db: Session, user: User, post_id: int) -> bool:
        """Like a post; returns False if it was already liked."""
        post = self.get_post(db, post_id, user)
        if db.query(Like).filter(Like.user_id == user.id, Like.post_id == post.id).first():
            return False
        db.add(Like(user_id=user.id, post_id=post.id))
        pending = _PendingEvents()
        if post.user_id != user.id:
            pending.notifications.append(self._notification(post.user_id, "like", user.id, post.id))
        if not self._commit(db, pending, conflict_ok=True):
            return False
        await self._publish(pending)
        return True

    def unlike(self, db: Session, user: User, post_id: int) -> bool:
        deleted = db.query(Like).filter(Like.user_id == user.id, Like.post_id == post_id).delete()
        db.commit()
        return bool(deleted)

    async def repost(self, db: Session, user: User, post_id: int) -> bool:
        """Repost a public post; returns False if it was already reposted."""
        post = self.get_post(db, post_id, user)
        if post.visibility != VISIBILITY_PUBLIC:
            raise AuthorizationFailure("Only public posts can be reposted")
        if db.query(Repost).filter(Repost.user_id == user.id, Repost.post_id == post.id).first():
            return False
        db.add(Repost(user_id=user.id, post_id=post.id))
        pending = _PendingEvents()
        if post.user_id != user.id:
            pending.notifications.append(
                self._notification(post.user_id, "repost", user.id, post.id)
            )
        if not self._commit(db, pending, conflict_ok=True):
            return False
        await self._publish(pending)
        return True

    def unrepost(self, db: Session, user: User, post_id: int) -> bool:
        deleted = (
            db.query(Repost).filter(Repost.user_id == user.id, Repost.post_id == post_id).delete()
        )
        db.commit()
        return bool(deleted)

    # --- Follows -------------------------------------------------------------------
    def is_following(self, db: Session, follower: User, target: User) -> bool:
        return (
            db.query(Follow)
            .filter(
                Follow.follower_id == follower.id,
                Follow.following_id == target.id,
                Follow.status == FOLLOW_ACCEPTED,
            )
            .first()
            is not None
        )

    async def follow(self, db: Session, follower: User, target_id: int) -> Follow:
        """Follow a local user; private accounts receive a pending request.

        Raises:
            ValidationFailure: When following yourself.
            NotFound: If the target does not exist.
        """
        if follower.id == target_id:
            raise ValidationFailure("You cannot follow yourself")
        target = db.get(User, target_id)
        if target is None or not target.is_active:
            raise NotFound("User not found")
        existing = (
            db.query(Follow)
            .filter(Follow.follower_id == follower.id, Follow.following_id == target.id)
            .first()
        )
        if existing is not None:
            return existing

        follow_status = FOLLOW_PENDING if target.is_private else FOLLOW_ACCEPTED
        follow = Follow(follower_id=follower.id, following_id=target.id, status=follow_status)
        db.add(follow)
        pending = _PendingEvents()
        kind = "follow_request" if follow_status == FOLLOW_PENDING else "follow"
        pending.notifications.append(self._notification(target.id, kind, follower.id, None))
        if not self._commit(db, pending, conflict_ok=True):
            existing = (
                db.query(Follow)
                .filter(Follow.follower_id == follower.id, Follow.following_id == target.id)
                .first()
            )
            if existing is None:
                raise Conflict("Follow could not be recorded")
            return existing
        db.refresh(follow)
        await self._publish(pending)
        return follow

    def unfollow(self, db: Session, follower: User, target_id: int) -> bool:
        deleted = (
            db.query(Follow)
            .filter(Follow.follower_id == follower.id, Follow.following_id == target_id)
            .delete()
        )
        db.commit()
        return bool(deleted)

    async def respond_to_follow(
        self, db: Session, user: User, follow_id: int, *, accept: bool
    ) -> Follow | None:
        """Accept or reject a pending request addressed to ``user``."""
        follow = db.get(Follow, follow_id)
        if follow is None or follow.following_id != user.id or follow.status != FOLLOW_PENDING:
            raise NotFound("Follow request not found")

        pending = _PendingEvents()
        if not accept:
            remote_actor, remote_inbox = follow.remote_actor, follow.remote_inbox
            db.delete(follow)
            db.commit()
            if remote_inbox:
                self._federate_follow_response(db, user, remote_actor, remote_inbox, "reject")
            return None

        follow.status = FOLLOW_ACCEPTED
        if follow.follower_id is not None:
            pending.notifications.append(
                self._notification(follow.follower_id, "follow_accepted", user.id, None)
            )
        self._commit(db, pending)
        if follow.remote_inbox:
            self._federate_follow_response(
                db, user, follow.remote_actor, follow.remote_inbox, "accept"
            )
        await self._publish(pending)
        return follow

    def followers(self, db: Session, user: User) -> list[Follow]:
        return (
            db.query(Follow)
            .filter(Follow.following_id == user.id, Follow.status == FOLLOW_ACCEPTED)
            .all()
        )

    def pending_follow_requests(self, db: Session, user: User) -> list[Follow]:
        return (
            db.query(Follow)
            .filter(Follow.following_id == user.id, Follow.status == FOLLOW_PENDING)
            .all()
        )

    def add_remote_follower(
        self, db: Session, user: User, *, actor: str, inbox: str, accepted: bool = True
    ) -> Follow:
        """Record a follower living on another server."""
        follow = (
            db.query(Follow)
            .filter(Follow.following_id == user.id, Follow.remote_actor == actor)
            .first()
        )
        if follow is None:
            follow = Follow(following_id=user.id, remote_actor=actor, remote_inbox=inbox)
            db.add(follow)
        follow.remote_inbox = inbox
        follow.status = FOLLOW_ACCEPTED if accepted else FOLLOW_PENDING
        db.commit()
        return follow

    # --- Notifications -------------------------------------------------------------
    def notifications(
        self, db: Session, user: User, *, unread_only: bool = False, limit: int = 50
    ) -> list[Notification]:
        query = db.query(Notification).filter(Notification.user_id == user.id)
        if unread_only:
            query = query.filter(Notification.is_read.is_(False))
        return query.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit).all()

    def mark_notifications_read(
        self, db: Session, user: User, ids: list[int] | None = None
    ) -> int:
        query = db.query(Notification).filter(
            Notification.user_id == user.id, Notification.is_read.is_(False)
        )
        if ids:
            query = query.filter(Notification.id.in_(ids))
        updated = query.update({Notification.is_read: True}, synchronize_session=False)
        db.commit()
        return updated

    # --- Profile -------------------------------------------------------------------
    def update_profile(self, db: Session, user: User, changes: dict[str, Any]) -> User:
        unknown = set(changes).difference(PROFILE_FIELDS)
        if unknown:
            raise ValidationFailure(
                "Unknown profile fields", details={"fields": sorted(unknown)}
            )
        for key, value in changes.items():
            setattr(user, key, value)
        db.commit()
        db.refresh(user)
        return user

    def stats(self, db: Session, user: User) -> dict[str, int]:
        return {
            "posts": db.query(Post).filter(Post.user_id == user.id).count(),
            "followers": db.query(Follow)
            .filter(Follow.following_id == user.id, Follow.status == FOLLOW_ACCEPTED)
            .count(),
            "following": db.query(Follow)
            .filter(Follow.follower_id == user.id, Follow.status == FOLLOW_ACCEPTED)
            .count(),
        }

    # --- Internals -----------------------------------------------------------------
    def _can_view(self, db: Session, post: Post, viewer: User | None) -> bool:
        if post.visibility == VISIBILITY_PUBLIC:
            return True
        if viewer is None:
            return False
        if viewer.id == post.user_id:
            return True
        if post.visibility == VISIBILITY_FOLLOWERS:
            author = db.get(User, post.user_id)
            return author is not None and self.is_following(db, viewer, author)
        return False

    def _remote_follower_inboxes(self, db: Session, user: User) -> list[str]:
        rows = (
            db.query(Follow.remote_inbox)
            .filter(
                Follow.following_id == user.id,
                Follow.status == FOLLOW_ACCEPTED,
                Follow.remote_inbox.is_not(None),
            )
            .distinct()
            .all()
        )
        return [row.remote_inbox for row in rows if row.remote_inbox]

    def _federate_follow_response(
        self, db: Session, user: User, remote_actor: str | None, inbox: str, action: str
    ) -> None:
        self.queue.enqueue(
            db,
            actor=user.federation_id,
            action=action,
            payload={"type": "Follow", "actor": remote_actor, "object": user.federation_id},
            target=inbox,
            priority=1,
        )

    def _notification(
        self, user_id: int, kind: str, actor_id: int | None, post_id: int | None
    ) -> Notification:
        return Notification(user_id=user_id, type=kind, actor_id=actor_id, post_id=post_id, data={})

    def _commit(self, db: Session, pending: _PendingEvents, *, conflict_ok: bool = False) -> bool:
        for notification in pending.notifications:
            db.add(notification)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            pending.notifications.clear()
            if conflict_ok:
                return False
            raise
        return True

    async def _publish(self, pending: _PendingEvents) -> None:
        for notification in pending.notifications:
            await self.bus.publish(
                events.NOTIFICATION,
                {
                    "id": notification.id,
                    "user_id": notification.user_id,
                    "type": notification.type,
                    "actor_id": notification.actor_id,
                    "post_id": notification.post_id,
                    "created_at": notification.created_at.isoformat()
                    if notification.created_at
                    else None,
                },
            )
