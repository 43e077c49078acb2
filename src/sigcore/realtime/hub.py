"""
Per-workspace WebSocket rooms fed by domain events.

Every connected client sits in the room ``workspace:{id}`` and receives one
JSON frame per change::

    {"event": "message:new", "data": {...}}

Frame names follow the thread lifecycle: ``message:new``/``message:update``,
``call:new``/``call:update``, and ``conversation:new``/``conversation:update``
alongside every new message or call.
"""

from collections import defaultdict
from typing import Any
from uuid import UUID

from fastapi import WebSocket

from sigcore.outbound.events import DomainEvent
from sigcore.shared.logging import get_logger

logger = get_logger(__name__)

Frame = tuple[str, dict[str, Any]]


def room_name(workspace_id: UUID) -> str:
    return f"workspace:{workspace_id}"


def realtime_frames(event: DomainEvent) -> list[Frame]:
    """Translate a domain event into the frames pushed to the workspace room."""
    kind = event.event_type.value.split(".", 1)[0]
    frames: list[Frame] = [(f"{kind}:{'new' if event.created else 'update'}", event.data)]
    if event.conversation is not None:
        name = "conversation:new" if event.conversation_created else "conversation:update"
        frames.append((name, event.conversation))
    return frames


class RealtimeHub:
    """Registry of open client connections, grouped by workspace room.

    Implements ``EventNotifier``. A socket that fails to receive a frame is
    dropped from its room; publishing never raises.
    """

    def __init__(self) -> None:
        self._rooms: dict[str, set[WebSocket]] = defaultdict(set)

    def connection_count(self, workspace_id: UUID) -> int:
        return len(self._rooms.get(room_name(workspace_id), ()))

    async def connect(self, websocket: WebSocket, workspace_id: UUID) -> None:
        """Accept the handshake and join the workspace room."""
        await websocket.accept()
        room = room_name(workspace_id)
        self._rooms[room].add(websocket)
        await websocket.send_json({"event": "joined", "data": {"workspaceId": str(workspace_id)}})
        logger.info(
            "Realtime client connected",
            extra={"room": room, "connections": len(self._rooms[room])},
        )

    def disconnect(self, websocket: WebSocket, workspace_id: UUID) -> None:
        room = room_name(workspace_id)
        members = self._rooms.get(room)
        if members is None:
            return
        members.discard(websocket)
        if not members:
            del self._rooms[room]
        logger.info("Realtime client disconnected", extra={"room": room})

    async def publish(self, event: DomainEvent) -> None:
        room = room_name(event.workspace_id)
        members = list(self._rooms.get(room, ()))
        if not members:
            return

        frames = realtime_frames(event)
        for websocket in members:
            try:
                for name, data in frames:
                    await websocket.send_json({"event": name, "data": data})
            except Exception:
                logger.warning(
                    "Dropping unreachable realtime client",
                    extra={"room": room, "event_type": event.event_type.value},
                    exc_info=True,
                )
                self.disconnect(websocket, event.workspace_id)

        logger.debug(
            "Realtime frames pushed",
            extra={"room": room, "frames": [name for name, _ in frames], "connections": len(members)},
        )

    async def close_all(self) -> None:
        """Close every open connection; used on shutdown."""
        for room, members in list(self._rooms.items()):
            for websocket in list(members):
                try:
                    await websocket.close()
                except RuntimeError:
                    # Already closed by the client
                    pass
            self._rooms.pop(room, None)
