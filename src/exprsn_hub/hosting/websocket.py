"""WebSocket connection manager used by each site namespace and the admin app.

Frames are JSON objects ``{"type": ..., "data": ...}``.
"""

from __future__ import annotations

import json
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

from fastapi import WebSocket
from starlette.websockets import WebSocketDisconnect, WebSocketState

logger = logging.getLogger(__name__)


@dataclass
class ClientConnection:
    """A single WebSocket client."""

    websocket: WebSocket
    user_id: int | None = None
    connected_at: float = field(default_factory=time.time)
    messages_sent: int = 0


class ConnectionManager:
    """Tracks the sockets of one namespace and fans messages out to them."""

    def __init__(self, namespace: str = "") -> None:
        self.namespace = namespace
        self._connections: dict[str, ClientConnection] = {}
        self._user_connections: dict[int, set[str]] = defaultdict(set)

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    async def connect(self, websocket: WebSocket, conn_id: str) -> None:
        await websocket.accept()
        self._connections[conn_id] = ClientConnection(websocket=websocket)
        logger.debug("WebSocket %s connected to %s", conn_id, self.namespace or "admin")

    def authenticate(self, conn_id: str, user_id: int) -> bool:
        """Attach ``user_id`` so the socket receives that user's notifications."""
        client = self._connections.get(conn_id)
        if client is None:
            return False
        if client.user_id is not None:
            self._forget_user(conn_id, client.user_id)
        client.user_id = user_id
        self._user_connections[user_id].add(conn_id)
        return True

    async def disconnect(self, conn_id: str) -> None:
        client = self._connections.pop(conn_id, None)
        if client is None:
            return
        if client.user_id is not None:
            self._forget_user(conn_id, client.user_id)
        logger.debug("WebSocket %s disconnected from %s", conn_id, self.namespace or "admin")

    def _forget_user(self, conn_id: str, user_id: int) -> None:
        connections = self._user_connections.get(user_id)
        if connections is None:
            return
        connections.discard(conn_id)
        if not connections:
            del self._user_connections[user_id]

    async def send(self, conn_id: str, message_type: str, data: Any) -> bool:
        client = self._connections.get(conn_id)
        if client is None:
            return False
        return await self._send(conn_id, client, _frame(message_type, data))

    async def broadcast(self, message_type: str, data: Any) -> int:
        """Send a frame to every connection; returns how many received it."""
        payload = _frame(message_type, data)
        sent = 0
        for conn_id, client in list(self._connections.items()):
            if await self._send(conn_id, client, payload):
                sent += 1
        return sent

    async def send_to_user(self, user_id: int, message_type: str, data: Any) -> int:
        payload = _frame(message_type, data)
        sent = 0
        for conn_id in list(self._user_connections.get(user_id, ())):
            client = self._connections.get(conn_id)
            if client is not None and await self._send(conn_id, client, payload):
                sent += 1
        return sent

    async def _send(self, conn_id: str, client: ClientConnection, payload: str) -> bool:
        try:
            await client.websocket.send_text(payload)
        except (RuntimeError, OSError, WebSocketDisconnect) as exc:
            logger.debug("Dropping WebSocket %s: %s", conn_id, exc)
            await self.disconnect(conn_id)
            return False
        client.messages_sent += 1
        return True

    async def close_all(self, code: int = 1001, reason: str = "") -> None:
        """Close every socket, e.g. when the site is demolished."""
        for conn_id, client in list(self._connections.items()):
            if client.websocket.application_state == WebSocketState.CONNECTED:
                try:
                    await client.websocket.close(code=code, reason=reason)
                except (RuntimeError, OSError) as exc:
                    logger.debug("Error closing WebSocket %s: %s", conn_id, exc)
            await self.disconnect(conn_id)

    def get_stats(self) -> dict[str, int]:
        return {
            "total_connections": len(self._connections),
            "authenticated_users": len(self._user_connections),
        }


def _frame(message_type: str, data: Any) -> str:
    return json.dumps({"type": message_type, "data": data}, default=str)
