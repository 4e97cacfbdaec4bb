"""Copy-on-write registry of manifest-declared routes.

Each registered route owns a small ASGI application: the handler wrapped in a
guard that enforces, in this order, the allowed methods, the rate limit, the
authentication mode and the scope/role requirements. ``RegistryMiddleware``
consults the current snapshot for every request and falls through to the
wrapped application when no registered prefix matches.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from threading import Lock
from types import MappingProxyType
from typing import Any

from fastapi import APIRouter, FastAPI
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import MutableHeaders
from starlette.requests import HTTPConnection
from starlette.responses import JSONResponse
from starlette.routing import Match, Mount
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from exprsn_hub.core.errors import HubError, RateLimited, error_response, install_error_handlers
from exprsn_hub.db.session import SessionLocal
from exprsn_hub.routing.builtin import resolve_handler
from exprsn_hub.routing.manifest import ManifestError, RouteManifest, load_manifest
from exprsn_hub.services.identity import AUTH_NONE, Authenticator, Identity
from exprsn_hub.services.rate_limit import RateLimitDecision, RateLimiter, RateLimitPolicy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RouteDescriptor:
    """What a route declares, independent of its handler object."""

    path: str
    handler: str
    methods: tuple[str, ...] = ("GET",)
    auth: str = AUTH_NONE
    scope: str | None = None
    role: str | None = None
    rate_limit: RateLimitPolicy | None = None
    file_path: str | None = None
    version: int = 1

    @classmethod
    def from_manifest(cls, manifest: RouteManifest, file_path: Path | None = None) -> RouteDescriptor:
        policy = None
        if manifest.rate_limit is not None:
            try:
                policy = RateLimitPolicy.from_mapping(manifest.rate_limit)
            except (TypeError, ValueError) as exc:
                raise ManifestError(f"Invalid rateLimit for {manifest.path}: {exc}") from exc
        return cls(
            path=manifest.path,
            handler=manifest.handler,
            methods=tuple(manifest.methods),
            auth=manifest.auth,
            scope=manifest.scope,
            role=manifest.role,
            rate_limit=policy,
            file_path=str(file_path.resolve()) if file_path is not None else None,
            version=manifest.version,
        )

    def allows(self, method: str) -> bool:
        return method in self.methods or (method == "HEAD" and "GET" in self.methods)

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "filePath": self.file_path,
            "handler": self.handler,
            "methods": list(self.methods),
            "auth": self.auth,
            "scope": self.scope,
            "role": self.role,
            "rateLimit": self.rate_limit.to_dict() if self.rate_limit else None,
            "version": self.version,
        }


class RouteGuard:
    """ASGI wrapper enforcing a descriptor's annotations before the handler runs."""

    def __init__(
        self,
        app: ASGIApp,
        descriptor: RouteDescriptor,
        authenticator: Authenticator,
        limiter: RateLimiter,
    ) -> None:
        self.app = app
        self.descriptor = descriptor
        self.authenticator = authenticator
        self.limiter = limiter

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] not in ("http", "websocket"):
            await self.app(scope, receive, send)
            return

        connection = HTTPConnection(scope)
        if scope["type"] == "http" and not self.descriptor.allows(scope["method"]):
            response = JSONResponse(
                {"error": "method_not_allowed", "message": "Method not allowed"},
                status_code=405,
                headers={"Allow": ", ".join(self.descriptor.methods)},
            )
            await response(scope, receive, send)
            return

        try:
            decision = await self._check_rate_limit(connection)
            identity = await run_in_threadpool(self._authenticate, connection)
        except HubError as exc:
            await self._reject(exc, scope, receive, send)
            return

        scope.setdefault("state", {})["identity"] = identity
        if decision is None or scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        async def send_with_limits(message: Message) -> None:
            if message["type"] == "http.response.start":
                headers = MutableHeaders(scope=message)
                for name, value in decision.headers().items():
                    headers.append(name, value)
            await send(message)

        await self.app(scope, receive, send_with_limits)

    async def _check_rate_limit(self, connection: HTTPConnection) -> RateLimitDecision | None:
        policy = self.descriptor.rate_limit
        if policy is None:
            return None
        key = await run_in_threadpool(self._rate_limit_key, connection)
        if policy.db:
            decision = await run_in_threadpool(
                self.limiter.check, key, self.descriptor.path, policy
            )
        else:
            decision = self.limiter.check(key, self.descriptor.path, policy)
        if decision is not None and not decision.allowed:
            raise RateLimited(decision.retry_after(self.limiter.now()))
        return decision

    def _rate_limit_key(self, connection: HTTPConnection) -> str:
        with SessionLocal() as db:
            return self.authenticator.rate_limit_key(db, connection)

    def _authenticate(self, connection: HTTPConnection) -> Identity:
        if self.descriptor.auth == AUTH_NONE:
            identity = Identity.anonymous()
        else:
            with SessionLocal() as db:
                identity = self.authenticator.authenticate(db, connection, self.descriptor.auth)
        self.authenticator.authorize(
            identity, scope=self.descriptor.scope, role=self.descriptor.role
        )
        return identity

    @staticmethod
    async def _reject(exc: HubError, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "websocket":
            await send({"type": "websocket.close", "code": 1008, "reason": exc.message})
            return
        await error_response(exc)(scope, receive, send)


@dataclass(frozen=True)
class RegisteredRoute:
    descriptor: RouteDescriptor
    mount: Mount = field(compare=False)

    @property
    def path(self) -> str:
        return self.descriptor.path


def build_handler_app(handler: Any, descriptor: RouteDescriptor) -> ASGIApp:
    """Wrap a resolved handler so it can be mounted on its own."""
    if isinstance(handler, APIRouter):
        app = FastAPI(
            title=f"route {descriptor.path}",
            docs_url=None,
            redoc_url=None,
            openapi_url=None,
        )
        install_error_handlers(app)
        app.include_router(handler)
        return app
    return handler


class RouteRegistry:
    """Ordered mapping of path prefixes to guarded handlers.

    Writers are serialized by a lock and publish a fresh read-only mapping;
    readers take the current mapping once per request and never see a partial
    update.
    """

    def __init__(self, authenticator: Authenticator, limiter: RateLimiter) -> None:
        self.authenticator = authenticator
        self.limiter = limiter
        self._lock = Lock()
        self._routes: Mapping[str, RegisteredRoute] = MappingProxyType({})
        self._files: dict[str, str] = {}

    @property
    def snapshot(self) -> Mapping[str, RegisteredRoute]:
        return self._routes

    def describe(self) -> list[dict[str, Any]]:
        return [route.descriptor.to_dict() for route in self._routes.values()]

    def register(self, descriptor: RouteDescriptor, handler: Any | None = None) -> RegisteredRoute:
        """Register ``descriptor``, replacing any route already on the same path.

        Raises:
            ManifestError: If the handler cannot be resolved.
        """
        if handler is None:
            handler = resolve_handler(descriptor.handler)
        guarded = RouteGuard(
            build_handler_app(handler, descriptor), descriptor, self.authenticator, self.limiter
        )
        route = RegisteredRoute(descriptor=descriptor, mount=Mount(descriptor.path, app=guarded))
        with self._lock:
            routes = dict(self._routes)
            replaced = descriptor.path in routes
            routes[descriptor.path] = route
            if descriptor.file_path is not None:
                previous_path = self._files.get(descriptor.file_path)
                if previous_path is not None and previous_path != descriptor.path:
                    routes.pop(previous_path, None)
                self._files[descriptor.file_path] = descriptor.path
            self._routes = MappingProxyType(routes)
        logger.info(
            "%s route %s (%s, auth=%s)",
            "Replaced" if replaced else "Registered",
            descriptor.path,
            descriptor.handler,
            descriptor.auth,
        )
        return route

    def unregister_path(self, path: str) -> bool:
        with self._lock:
            if path not in self._routes:
                return False
            routes = dict(self._routes)
            del routes[path]
            for file_path in [key for key, value in self._files.items() if value == path]:
                del self._files[file_path]
            self._routes = MappingProxyType(routes)
        logger.info("Unregistered route %s", path)
        return True

    def unregister_file(self, file_path: Path | str) -> str | None:
        """Drop the route loaded from ``file_path``; returns its path if one was registered."""
        path = self._files.get(str(Path(file_path).resolve()))
        if path is None:
            return None
        self.unregister_path(path)
        return path

    def load_file(self, file_path: Path) -> RouteDescriptor | None:
        """Load or reload the manifest at ``file_path``.

        Errors are logged and leave the previous registration in place; the
        return value is None in that case. A disabled manifest unregisters the
        route loaded from the same file.
        """
        try:
            manifest = load_manifest(file_path)
            if not manifest.enabled:
                self.unregister_file(file_path)
                logger.info("Route manifest %s is disabled", file_path)
                return None
            descriptor = RouteDescriptor.from_manifest(manifest, file_path)
            self.register(descriptor)
        except ManifestError as exc:
            logger.error("Failed to load route manifest %s: %s", file_path, exc)
            return None
        return descriptor

    def load_directory(self, directory: Path) -> int:
        """Load every ``*.json`` manifest in ``directory``; returns how many loaded."""
        if not directory.is_dir():
            return 0
        loaded = 0
        for path in sorted(directory.glob("*.json")):
            if self.load_file(path) is not None:
                loaded += 1
        return loaded

    def match(self, scope: Scope) -> tuple[RegisteredRoute, Scope] | None:
        """Return the longest registered prefix matching ``scope`` and its child scope."""
        routes = self._routes
        if not routes:
            return None
        path = scope.get("path", "")
        for prefix in sorted(routes, key=len, reverse=True):
            if path != prefix and not path.startswith(prefix + "/"):
                continue
            route = routes[prefix]
            probe = scope
            if path == prefix:
                probe = dict(scope)
                probe["path"] = prefix + "/"
                probe["raw_path"] = (prefix + "/").encode()
            matched, child_scope = route.mount.matches(probe)
            if matched == Match.FULL:
                return route, {**probe, **child_scope}
        return None


class RegistryMiddleware:
    """Serve registered routes ahead of the wrapped application."""

    def __init__(self, app: ASGIApp, registry: RouteRegistry) -> None:
        self.app = app
        self.registry = registry

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] in ("http", "websocket"):
            found = self.registry.match(scope)
            if found is not None:
                route, child_scope = found
                await route.mount.handle(child_scope, receive, send)
                return
        await self.app(scope, receive, send)
