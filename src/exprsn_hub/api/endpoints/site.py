"""Routes every materialized site serves itself, ahead of its own handler."""

from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.concurrency import run_in_threadpool

from exprsn_hub.api.dependencies import HubDep, SiteDep
from exprsn_hub.core.security import generate_token
from exprsn_hub.db.session import SessionLocal
from exprsn_hub.hosting.site import Site
from exprsn_hub.hub import Hub

logger = logging.getLogger(__name__)

router = APIRouter(tags=["site"])

# Served only by sites without an upstream service of their own.
health_router = APIRouter(tags=["site"])


@router.get("/status")
def site_status(hub: HubDep, site: SiteDep) -> dict[str, Any]:
    """Current health of the site; answered even in maintenance mode."""
    data = hub.poller.status(site.name).to_dict(with_history=True)
    data["kind"] = site.kind
    data["maintenance"] = site.config.maintenance
    return data


@health_router.get("/api/health")
def health(site: SiteDep) -> dict[str, str]:
    return {"status": "ok", "site": site.name}


def _token_user_id(hub: Hub, token: str) -> int | None:
    with SessionLocal() as db:
        principal = hub.tokens.validate_access_token(db, token)
    return principal.user_id if principal is not None else None


@router.websocket("/ws")
async def site_socket(websocket: WebSocket) -> None:
    """Push status updates; an ``auth`` message from the owner adds notifications."""
    hub: Hub = websocket.app.state.hub
    site: Site = websocket.app.state.site
    conn_id = generate_token(8)
    sockets = site.sockets
    await sockets.connect(websocket, conn_id)
    try:
        await sockets.send(
            conn_id, "status-update", hub.poller.status(site.name).to_dict()
        )
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                await sockets.send(conn_id, "error", {"message": "Invalid JSON"})
                continue
            if not isinstance(message, dict) or message.get("type") != "auth":
                continue
            token = message.get("token")
            user_id = (
                await run_in_threadpool(_token_user_id, hub, token)
                if isinstance(token, str) and token
                else None
            )
            if user_id is None or user_id != site.owner_id:
                await sockets.send(conn_id, "auth-error", {"message": "Authentication failed"})
                continue
            sockets.authenticate(conn_id, user_id)
            await sockets.send(conn_id, "auth-success", {"userId": user_id})
    except WebSocketDisconnect:
        pass
    finally:
        await sockets.disconnect(conn_id)
