"""Dashboard notification channel over WebSockets.

``publish`` is fire-and-forget: a dead socket or a broadcast error is
logged and dropped, never raised into the dispatch path.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import WebSocket

logger = logging.getLogger(__name__)

DASHBOARD_GROUP = "dashboard"

EVENT_TYPES = {
    "new_message",
    "state_changed",
}


class ConnectionManager:
    """Manages WebSocket connections with group support."""

    def __init__(self):
        # client_id -> WebSocket
        self.active_connections: dict[str, WebSocket] = {}
        # group_name -> set of client_ids
        self.groups: dict[str, set[str]] = {}

    async def connect(self, websocket: WebSocket, client_id: str, group: Optional[str] = None):
        """Accept a WebSocket and optionally add it to a group."""
        await websocket.accept()
        self.active_connections[client_id] = websocket
        if group:
            self.groups.setdefault(group, set()).add(client_id)

    def disconnect(self, client_id: str):
        """Remove a client from all groups and drop its connection."""
        self.active_connections.pop(client_id, None)
        for group_members in self.groups.values():
            group_members.discard(client_id)

    async def send_json(self, client_id: str, data: dict):
        """Send JSON to a specific client."""
        ws = self.active_connections.get(client_id)
        if ws:
            await ws.send_json(data)

    async def broadcast_to_group(self, group: str, data: dict):
        """Broadcast a JSON message to every client in a group."""
        disconnected: list[str] = []
        for cid in list(self.groups.get(group, set())):
            ws = self.active_connections.get(cid)
            if ws:
                try:
                    await ws.send_json(data)
                except Exception:
                    logger.warning("Broadcast failed for %s, removing", cid)
                    disconnected.append(cid)
        for cid in disconnected:
            self.disconnect(cid)


manager = ConnectionManager()


async def publish(event: str, payload: dict) -> None:
    """Push an event to every connected dashboard client."""
    if event not in EVENT_TYPES:
        logger.warning("Unknown dashboard event type: %s", event)
    message = {
        "type": event,
        "data": payload,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    try:
        await manager.broadcast_to_group(DASHBOARD_GROUP, message)
    except Exception as exc:
        logger.warning("publish(%s) failed: %s", event, exc)
