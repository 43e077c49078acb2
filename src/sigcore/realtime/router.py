"""
WebSocket endpoint for realtime workspace updates.

Browsers cannot set headers on a WebSocket handshake, so the workspace is
read from ``X-Workspace-Id`` or, failing that, the ``workspace_id`` query
parameter.
"""

import json
from uuid import UUID

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from sigcore.realtime.hub import RealtimeHub
from sigcore.shared.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["realtime"])


def _workspace_id(websocket: WebSocket) -> UUID | None:
    raw = websocket.headers.get("x-workspace-id") or websocket.query_params.get("workspace_id")
    if not raw:
        return None
    try:
        return UUID(raw)
    except ValueError:
        return None


@router.websocket("/ws/events")
async def workspace_events(websocket: WebSocket) -> None:
    """Stream ``message:*``, ``call:*`` and ``conversation:*`` frames for one workspace.

    Clients may send ``{"event": "ping"}`` and get ``{"event": "pong"}`` back;
    anything else they send is ignored.
    """
    hub: RealtimeHub | None = getattr(websocket.app.state, "realtime", None)
    if hub is None:
        await websocket.close(code=status.WS_1013_TRY_AGAIN_LATER)
        return

    workspace_id = _workspace_id(websocket)
    if workspace_id is None:
        logger.warning("Realtime connection without a valid workspace")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await hub.connect(websocket, workspace_id)
    try:
        while True:
            text = await websocket.receive_text()
            try:
                message = json.loads(text)
            except ValueError:
                continue
            if isinstance(message, dict) and message.get("event") == "ping":
                await websocket.send_json({"event": "pong", "data": {}})
    except WebSocketDisconnect:
        pass
    finally:
        hub.disconnect(websocket, workspace_id)
