"""Handlers a route manifest can reference by name, and resolution of the rest."""

from __future__ import annotations

import importlib
from collections.abc import Callable
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from exprsn_hub import __version__
from exprsn_hub.db.session import get_db
from exprsn_hub.models import User
from exprsn_hub.routing.manifest import ManifestError

SessionDep = Annotated[Session, Depends(get_db)]


def _identity_summary(request: Request) -> dict[str, Any] | None:
    identity = getattr(request.state, "identity", None)
    if identity is None:
        return None
    return identity.to_dict()


def echo_handler() -> APIRouter:
    """Echo the request back; handy to check a manifest's guards."""
    router = APIRouter()

    @router.api_route("/", methods=["GET", "POST", "PUT", "PATCH", "DELETE"])
    @router.api_route("/{rest:path}", methods=["GET", "POST", "PUT", "PATCH", "DELETE"])
    async def echo(request: Request) -> dict[str, Any]:
        body = await request.body()
        return {
            "method": request.method,
            "path": request.url.path,
            "query": dict(request.query_params),
            "body": body.decode("utf-8", errors="replace") if body else None,
            "identity": _identity_summary(request),
        }

    return router


def users_handler() -> APIRouter:
    """Public directory of active users."""
    router = APIRouter()

    @router.get("/")
    async def list_users(
        db: SessionDep,
        limit: int = Query(20, ge=1, le=100),
        offset: int = Query(0, ge=0),
    ) -> dict[str, Any]:
        query = db.query(User).filter(User.is_active.is_(True), User.is_private.is_(False))
        total = query.count()
        users = query.order_by(User.id.asc()).offset(offset).limit(limit).all()
        return {
            "total": total,
            "users": [
                {
                    "id": user.id,
                    "username": user.username,
                    "display_name": user.display_name,
                    "subdomain": user.subdomain,
                    "federation_id": user.federation_id,
                }
                for user in users
            ],
        }

    return router


def health_handler() -> APIRouter:
    router = APIRouter()

    @router.get("/")
    async def health() -> dict[str, str]:
        return {"status": "ok", "version": __version__}

    return router


BUILTIN_HANDLERS: dict[str, Callable[[], APIRouter]] = {
    "echo": echo_handler,
    "users": users_handler,
    "health": health_handler,
}


def resolve_handler(reference: str) -> Any:
    """Return the router or ASGI app a manifest ``handler`` names.

    ``reference`` is either a built-in name or ``package.module:attribute`` naming
    an ``APIRouter`` or an ASGI application.

    Raises:
        ManifestError: If the reference cannot be resolved.
    """
    factory = BUILTIN_HANDLERS.get(reference)
    if factory is not None:
        return factory()

    module_name, _, attribute = reference.partition(":")
    if not module_name or not attribute:
        raise ManifestError(f"Unknown handler {reference!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ManifestError(f"Cannot import handler module {module_name!r}: {exc}") from exc
    target = getattr(module, attribute, None)
    if target is None:
        raise ManifestError(f"Module {module_name!r} has no attribute {attribute!r}")
    if isinstance(target, APIRouter):
        return target
    if callable(target):
        return target
    raise ManifestError(f"Handler {reference!r} is neither a router nor an ASGI app")
