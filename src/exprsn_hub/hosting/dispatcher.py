"""Host-header dispatch to per-site sub-applications.

Resolution order, first match wins:

1. reserved hosts ``status.``, ``register.``, ``auth.`` and ``app.`` of the base domain;
2. a registered custom domain;
3. ``{label}.{base}`` for an active site (404 when the site is not active);
4. the administrative application.

The site table is copy-on-write: writers build a new ``DispatcherState`` under
a lock and swap it in; a request reads the state once and keeps that reference.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from starlette.datastructures import Headers
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from exprsn_hub.core.errors import Conflict

logger = logging.getLogger(__name__)

LifespanHook = Callable[[], Awaitable[None]]


def _frozen(mapping: Mapping[str, object] | None = None) -> Mapping:
    return MappingProxyType(dict(mapping or {}))


@dataclass(frozen=True)
class DispatcherState:
    """Immutable snapshot of the active sites and custom-domain map."""

    sites: Mapping[str, ASGIApp] = field(default_factory=_frozen)
    custom_domains: Mapping[str, str] = field(default_factory=_frozen)


class SiteTable:
    """Holds the current ``DispatcherState`` and serializes its mutations."""

    def __init__(self) -> None:
        self._state = DispatcherState()
        self._lock = asyncio.Lock()

    @property
    def state(self) -> DispatcherState:
        return self._state

    def check_domains(self, site: str, domains: Iterable[str]) -> None:
        """Raise ``Conflict`` if another active site already claims one of ``domains``."""
        state = self._state
        for domain in domains:
            owner = state.custom_domains.get(domain)
            if owner is not None and owner != site:
                raise Conflict(
                    f"Custom domain {domain} is already used by {owner}",
                    details={"domain": domain, "site": owner},
                )

    async def publish(self, site: str, app: ASGIApp, domains: Iterable[str] = ()) -> ASGIApp | None:
        """Activate ``site`` with ``app`` and ``domains``; returns the app it replaced.

        Raises:
            Conflict: If a domain belongs to another site. Nothing changes then.
        """
        domains = list(domains)
        async with self._lock:
            self.check_domains(site, domains)
            state = self._state
            sites = dict(state.sites)
            previous = sites.get(site)
            sites[site] = app
            custom = {d: owner for d, owner in state.custom_domains.items() if owner != site}
            custom.update({domain: site for domain in domains})
            self._state = DispatcherState(sites=_frozen(sites), custom_domains=_frozen(custom))
        return previous

    async def retire(self, site: str) -> ASGIApp | None:
        """Deactivate ``site`` and drop its custom domains; returns the removed app."""
        async with self._lock:
            state = self._state
            if site not in state.sites:
                return None
            sites = dict(state.sites)
            previous = sites.pop(site)
            custom = {d: owner for d, owner in state.custom_domains.items() if owner != site}
            self._state = DispatcherState(sites=_frozen(sites), custom_domains=_frozen(custom))
        return previous


def normalize_host(raw: str) -> str:
    """Lower-case host without port or trailing dot."""
    host = raw.strip().lower()
    if host.startswith("["):
        end = host.find("]")
        return host[: end + 1] if end != -1 else host
    host = host.rsplit(":", 1)[0] if host.count(":") == 1 else host
    return host.rstrip(".")


_SITE_NOT_FOUND = JSONResponse({"error": "not_found", "message": "Site not found"}, status_code=404)


class Dispatcher:
    """Top-level ASGI application selecting a sub-application by Host header."""

    def __init__(
        self,
        base_domain: str,
        table: SiteTable,
        admin_app: ASGIApp,
        reserved: Mapping[str, ASGIApp],
        *,
        on_startup: LifespanHook | None = None,
        on_shutdown: LifespanHook | None = None,
    ) -> None:
        self.base_domain = base_domain.lower()
        self.table = table
        self.admin_app = admin_app
        self.reserved = {f"{label}.{self.base_domain}": app for label, app in reserved.items()}
        self.on_startup = on_startup
        self.on_shutdown = on_shutdown

    def resolve(self, host: str) -> tuple[str, ASGIApp | None]:
        """Return ``(kind, app)``; ``app`` is None for an inactive site."""
        host = normalize_host(host)
        reserved = self.reserved.get(host)
        if reserved is not None:
            return "reserved", reserved

        state = self.table.state
        owner = state.custom_domains.get(host)
        if owner is not None:
            app = state.sites.get(owner)
            if app is not None:
                return "custom", app

        suffix = f".{self.base_domain}"
        if host.endswith(suffix):
            label = host[: -len(suffix)]
            if label and "." not in label and label != "www":
                return "site", state.sites.get(label)
        return "admin", self.admin_app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "lifespan":
            await self._lifespan(receive, send)
            return

        host = Headers(scope=scope).get("host", "")
        kind, app = self.resolve(host)
        if app is None:
            if scope["type"] == "websocket":
                await send({"type": "websocket.close", "code": 1008, "reason": "Site not found"})
            else:
                await _SITE_NOT_FOUND(scope, receive, send)
            return
        await self._call_guarded(app, kind, host, scope, receive, send)

    async def _call_guarded(
        self, app: ASGIApp, kind: str, host: str, scope: Scope, receive: Receive, send: Send
    ) -> None:
        response_started = False

        async def tracking_send(message: Message) -> None:
            nonlocal response_started
            if message["type"] in ("http.response.start", "websocket.accept", "websocket.close"):
                response_started = True
            await send(message)

        try:
            await app(scope, receive, tracking_send)
        except Exception:
            logger.exception("Unhandled error in %s application for host %s", kind, host)
            if response_started:
                return
            if scope["type"] == "http":
                response = JSONResponse(
                    {"error": "internal_error", "message": "Internal server error"},
                    status_code=500,
                )
                await response(scope, receive, send)
            elif scope["type"] == "websocket":
                await send({"type": "websocket.close", "code": 1011})

    async def _lifespan(self, receive: Receive, send: Send) -> None:
        while True:
            message = await receive()
            if message["type"] == "lifespan.startup":
                try:
                    if self.on_startup is not None:
                        await self.on_startup()
                except Exception as exc:
                    logger.exception("Startup failed")
                    await send({"type": "lifespan.startup.failed", "message": str(exc)})
                    return
                await send({"type": "lifespan.startup.complete"})
            elif message["type"] == "lifespan.shutdown":
                try:
                    if self.on_shutdown is not None:
                        await self.on_shutdown()
                except Exception as exc:
                    logger.exception("Shutdown failed")
                    await send({"type": "lifespan.shutdown.failed", "message": str(exc)})
                    return
                await send({"type": "lifespan.shutdown.complete"})
                return
