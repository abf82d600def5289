"""WebSocket observer channel for the broker dashboard."""

import json
import logging
import uuid as uuid_mod

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from mca_platform.services.notification_service import DASHBOARD_GROUP, manager

logger = logging.getLogger(__name__)
router = APIRouter(tags=["websocket"])


@router.websocket("/ws/dashboard")
async def dashboard(websocket: WebSocket):
    """WebSocket endpoint for dashboard real-time updates.

    Clients simply connect; the server pushes ``new_message`` events as
    they occur.
    Supported incoming messages:
        {"type": "ping"}  ->  server replies {"type": "pong"}
    """
    client_id = f"dashboard_{uuid_mod.uuid4().hex[:8]}"
    await manager.connect(websocket, client_id, group=DASHBOARD_GROUP)
    logger.info("Dashboard client connected: %s", client_id)

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                msg = json.loads(raw)
            except json.JSONDecodeError:
                continue
            # Handle ping / keep-alive
            if isinstance(msg, dict) and msg.get("type") == "ping":
                await manager.send_json(client_id, {"type": "pong"})
    except WebSocketDisconnect:
        manager.disconnect(client_id)
        logger.info("Dashboard client disconnected: %s", client_id)
    except Exception as e:
        logger.error("Dashboard WebSocket error for %s: %s", client_id, e)
        manager.disconnect(client_id)
