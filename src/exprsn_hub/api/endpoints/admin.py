"""Browser-facing pages and the live WebSocket of the administrative app."""

from __future__ import annotations

import json
import logging
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Form, Query, WebSocket, WebSocketDisconnect, status
from fastapi.responses import HTMLResponse, RedirectResponse, Response
from starlette.concurrency import run_in_threadpool

from exprsn_hub.api.dependencies import (
    HubDep,
    OptionalSessionUserDep,
    SessionDep,
    SessionUserDep,
    WebSessionDep,
    rate_limit,
)
from exprsn_hub.api.endpoints.sites import site_summary
from exprsn_hub.core.errors import AuthenticationFailure, AuthorizationFailure
from exprsn_hub.core.security import generate_token
from exprsn_hub.db.session import SessionLocal
from exprsn_hub.hub import Hub
from exprsn_hub.models import User
from exprsn_hub.services.rate_limit import LOGIN_POLICY
from exprsn_hub.services.users import authenticate, is_admin

logger = logging.getLogger(__name__)

router = APIRouter(tags=["admin"])

# WebSocket close code for policy violations (RFC 6455).
WS_POLICY_VIOLATION = 1008


@router.get("/login", response_class=HTMLResponse)
def login_page(
    hub: HubDep,
    user: OptionalSessionUserDep,
    error: Annotated[str | None, Query()] = None,
) -> Response:
    if user is not None:
        return RedirectResponse("/", status_code=status.HTTP_302_FOUND)
    context = {"title": "Exprsn Site Manager - Login", "next": "/", "error": error}
    return HTMLResponse(hub.renderer.render("login", context))


@router.post("/login", dependencies=[Depends(rate_limit(LOGIN_POLICY, "admin:login"))])
def login(
    hub: HubDep,
    db: SessionDep,
    web_session: WebSessionDep,
    username: Annotated[str, Form()] = "",
    password: Annotated[str, Form()] = "",
) -> RedirectResponse:
    user = authenticate(db, username, password)
    if user is None:
        return RedirectResponse("/login?error=1", status_code=status.HTTP_302_FOUND)
    response = RedirectResponse("/", status_code=status.HTTP_302_FOUND)
    web_session.data["user_id"] = user.id
    hub.sessions.regenerate(web_session, response)
    logger.info("Administrator console login for %s", user.username)
    return response


@router.get("/logout")
def logout(hub: HubDep, web_session: WebSessionDep) -> RedirectResponse:
    response = RedirectResponse("/login", status_code=status.HTTP_302_FOUND)
    hub.sessions.destroy(web_session, response)
    return response


def dashboard_data(hub: Hub) -> dict[str, Any]:
    sites = [site_summary(hub, site) for site in hub.sites.list()]
    return {
        "baseDomain": hub.config.base_domain,
        "sites": sites,
        "routes": hub.registry.describe(),
        "connections": hub.admin_sockets.get_stats(),
    }


@router.get("/")
def dashboard(hub: HubDep, db: SessionDep, user: SessionUserDep) -> dict[str, Any]:
    """Summarize sites, routes and live connections for an administrator.

    Raises:
        AuthorizationFailure: When the signed-in user is not an administrator.
    """
    if not is_admin(user):
        raise AuthorizationFailure("Administrator role required", details={"required": "admin"})
    data = dashboard_data(hub)
    data["user"] = {"id": user.id, "username": user.username}
    data["federation"] = hub.queue.stats(db)
    return data


def _socket_admin(hub: Hub, websocket: WebSocket) -> User | None:
    with SessionLocal() as db:
        try:
            user = hub.authenticator.session_user(db, websocket) or hub.authenticator.jwt_user(
                db, websocket
            )
        except AuthenticationFailure:
            return None
        return user if is_admin(user) else None


@router.websocket("/ws")
async def admin_socket(websocket: WebSocket) -> None:
    """Stream site lifecycle and status events to an administrator."""
    hub: Hub = websocket.app.state.hub
    user = await run_in_threadpool(_socket_admin, hub, websocket)
    if user is None:
        await websocket.close(code=WS_POLICY_VIOLATION)
        return

    conn_id = generate_token(8)
    sockets = hub.admin_sockets
    await sockets.connect(websocket, conn_id)
    sockets.authenticate(conn_id, user.id)
    try:
        await sockets.send(conn_id, "sites-list", dashboard_data(hub)["sites"])
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                continue
            if isinstance(message, dict) and message.get("type") == "get-sites":
                await sockets.send(conn_id, "sites-list", dashboard_data(hub)["sites"])
    except WebSocketDisconnect:
        pass
    finally:
        await sockets.disconnect(conn_id)
