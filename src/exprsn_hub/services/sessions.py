"""Server-side sessions addressed by a signed cookie.

The cookie carries only a random session id and its HMAC; the session body
(logged-in user, stashed authorize request) lives in a ``TTLCache``.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass, field
from typing import Any

from starlette.requests import HTTPConnection
from starlette.responses import Response

from exprsn_hub.core.settings import Settings
from exprsn_hub.services.cache import TTLCache

SESSION_COOKIE = "exprsn.sid"
AUTHORIZE_STASH_KEY = "authorization_request"


@dataclass
class Session:
    """Mutable view of one session body."""

    id: str | None
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def user_id(self) -> int | None:
        value = self.data.get("user_id")
        return value if isinstance(value, int) else None


class SessionStore:
    """Create, load and destroy sessions."""

    def __init__(self, config: Settings, cache: TTLCache) -> None:
        self._config = config
        self._cache = cache
        self._secret = config.session_secret.encode()

    def _sign(self, session_id: str) -> str:
        digest = hmac.new(self._secret, session_id.encode(), hashlib.sha256).hexdigest()
        return f"{session_id}.{digest}"

    def _unsign(self, cookie: str) -> str | None:
        session_id, _, signature = cookie.partition(".")
        if not session_id or not signature:
            return None
        expected = self._sign(session_id)
        return session_id if hmac.compare_digest(expected, cookie) else None

    def load(self, connection: HTTPConnection) -> Session:
        """Return the session referenced by the request cookie, or an empty one."""
        cookie = connection.cookies.get(SESSION_COOKIE)
        if not cookie:
            return Session(id=None)
        session_id = self._unsign(cookie)
        if session_id is None:
            return Session(id=None)
        data = self._cache.get(f"session:{session_id}")
        if not isinstance(data, dict):
            return Session(id=None)
        return Session(id=session_id, data=data)

    def save(self, session: Session, response: Response) -> Session:
        """Persist ``session`` and make sure the response carries its cookie."""
        if session.id is None:
            session.id = secrets.token_hex(32)
        self._cache.set(f"session:{session.id}", session.data, self._config.session_ttl)
        response.set_cookie(
            SESSION_COOKIE,
            self._sign(session.id),
            max_age=self._config.session_ttl,
            httponly=True,
            samesite="lax",
            secure=self._config.is_production,
            domain=self._config.session_cookie_domain,
        )
        return session

    def regenerate(self, session: Session, response: Response) -> Session:
        """Issue a fresh id for ``session``, dropping the old one (used at login)."""
        if session.id is not None:
            self._cache.delete(f"session:{session.id}")
        return self.save(Session(id=None, data=dict(session.data)), response)

    def destroy(self, session: Session, response: Response) -> None:
        if session.id is not None:
            self._cache.delete(f"session:{session.id}")
        response.delete_cookie(SESSION_COOKIE, domain=self._config.session_cookie_domain)
