"""
Tests for realtime WebSocket push.
"""

from typing import Any
from uuid import UUID, uuid4

import pytest
from fastapi import FastAPI, WebSocketDisconnect
from fastapi.testclient import TestClient
from httpx import AsyncClient

from sigcore.integrations.models import Workspace
from sigcore.main import create_app
from sigcore.outbound.events import CompositeNotifier, DomainEvent, EventType
from sigcore.realtime.hub import RealtimeHub, realtime_frames

WORKSPACE = UUID("00000000-0000-0000-0000-0000000000aa")


class FakeSocket:
    """Stand-in for a Starlette WebSocket recording sent frames."""

    def __init__(self, broken: bool = False) -> None:
        self.broken = broken
        self.accepted = False
        self.frames: list[dict[str, Any]] = []

    async def accept(self) -> None:
        self.accepted = True

    async def send_json(self, data: dict[str, Any]) -> None:
        if self.broken and self.frames:
            raise RuntimeError("Cannot call 'send' once a close message has been sent.")
        self.frames.append(data)

    async def close(self, code: int = 1000) -> None:
        self.broken = True

    def events(self) -> list[str]:
        return [f["event"] for f in self.frames]


def new_message(workspace_id: UUID = WORKSPACE, conversation_created: bool = True) -> DomainEvent:
    return DomainEvent(
        workspace_id,
        EventType.MESSAGE_INBOUND,
        {"messageId": "m1", "body": "Hi"},
        created=True,
        conversation={"id": "c1", "lastMessage": "Hi"},
        conversation_created=conversation_created,
    )


class TestRealtimeFrames:
    def test_new_message_on_new_thread(self) -> None:
        assert realtime_frames(new_message()) == [
            ("message:new", {"messageId": "m1", "body": "Hi"}),
            ("conversation:new", {"id": "c1", "lastMessage": "Hi"}),
        ]

    def test_new_message_on_existing_thread(self) -> None:
        names = [name for name, _ in realtime_frames(new_message(conversation_created=False))]

        assert names == ["message:new", "conversation:update"]

    def test_status_change_is_update_only(self) -> None:
        event = DomainEvent(WORKSPACE, EventType.MESSAGE_DELIVERED, {"messageId": "m1"})

        assert realtime_frames(event) == [("message:update", {"messageId": "m1"})]

    @pytest.mark.parametrize(
        ("event_type", "created", "expected"),
        [
            (EventType.CALL_STARTED, True, "call:new"),
            (EventType.CALL_MISSED, True, "call:new"),
            (EventType.CALL_COMPLETED, False, "call:update"),
        ],
    )
    def test_call_frames(self, event_type: EventType, created: bool, expected: str) -> None:
        event = DomainEvent(WORKSPACE, event_type, {"callId": "c1"}, created=created)

        assert realtime_frames(event)[0] == (expected, {"callId": "c1"})


class TestRealtimeHub:
    @pytest.mark.asyncio
    async def test_publish_reaches_only_the_workspace_room(self) -> None:
        hub = RealtimeHub()
        mine, theirs = FakeSocket(), FakeSocket()
        await hub.connect(mine, WORKSPACE)  # type: ignore[arg-type]
        await hub.connect(theirs, uuid4())  # type: ignore[arg-type]

        await hub.publish(new_message())

        assert mine.accepted
        assert mine.events() == ["joined", "message:new", "conversation:new"]
        assert theirs.events() == ["joined"]

    @pytest.mark.asyncio
    async def test_broken_client_dropped_without_raising(self) -> None:
        hub = RealtimeHub()
        healthy, broken = FakeSocket(), FakeSocket(broken=True)
        await hub.connect(healthy, WORKSPACE)  # type: ignore[arg-type]
        await hub.connect(broken, WORKSPACE)  # type: ignore[arg-type]

        await hub.publish(new_message())

        assert healthy.events() == ["joined", "message:new", "conversation:new"]
        assert hub.connection_count(WORKSPACE) == 1

    @pytest.mark.asyncio
    async def test_disconnect_and_close_all(self) -> None:
        hub = RealtimeHub()
        first, second = FakeSocket(), FakeSocket()
        await hub.connect(first, WORKSPACE)  # type: ignore[arg-type]
        await hub.connect(second, WORKSPACE)  # type: ignore[arg-type]

        hub.disconnect(first, WORKSPACE)
        assert hub.connection_count(WORKSPACE) == 1

        await hub.close_all()
        assert hub.connection_count(WORKSPACE) == 0
        assert second.broken

    @pytest.mark.asyncio
    async def test_publish_to_empty_room(self) -> None:
        await CompositeNotifier([RealtimeHub()]).publish(new_message())


class TestRealtimeEndpoint:
    @pytest.fixture
    def hub(self) -> RealtimeHub:
        return RealtimeHub()

    @pytest.fixture
    def client(self, hub: RealtimeHub) -> TestClient:
        # Lifespan is not run: collaborators are placed on app.state directly
        application = create_app()
        application.state.realtime = hub
        return TestClient(application)

    def test_stream_for_header_workspace(self, client: TestClient, hub: RealtimeHub) -> None:
        with client.websocket_connect("/ws/events", headers={"X-Workspace-Id": str(WORKSPACE)}) as ws:
            assert ws.receive_json() == {"event": "joined", "data": {"workspaceId": str(WORKSPACE)}}
            assert hub.connection_count(WORKSPACE) == 1

            ws.portal.call(hub.publish, new_message())

            assert ws.receive_json() == {"event": "message:new", "data": {"messageId": "m1", "body": "Hi"}}
            assert ws.receive_json()["event"] == "conversation:new"

    def test_query_workspace_and_ping(self, client: TestClient) -> None:
        with client.websocket_connect(f"/ws/events?workspace_id={WORKSPACE}") as ws:
            ws.receive_json()
            ws.send_text("not json")
            ws.send_json({"event": "ping"})

            assert ws.receive_json() == {"event": "pong", "data": {}}

    @pytest.mark.parametrize("path", ["/ws/events", "/ws/events?workspace_id=not-a-uuid"])
    def test_workspace_required(self, client: TestClient, path: str) -> None:
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect(path):
                pass

        assert exc_info.value.code == 1008

    def test_not_ready_before_startup(self) -> None:
        client = TestClient(create_app())

        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/ws/events", headers={"X-Workspace-Id": str(WORKSPACE)}):
                pass

        assert exc_info.value.code == 1013


class TestRealtimeFromApi:
    @pytest.mark.asyncio
    async def test_sent_messages_push_thread_frames(
        self,
        app: FastAPI,
        async_client: AsyncClient,
        workspace: Workspace,
        make_integration,
    ) -> None:
        await make_integration(workspace.id)
        hub = RealtimeHub()
        socket = FakeSocket()
        await hub.connect(socket, workspace.id)  # type: ignore[arg-type]
        app.state.notifier = CompositeNotifier([hub])
        headers = {"X-Workspace-Id": str(workspace.id)}

        for text in ("one", "two"):
            response = await async_client.post(
                "/api/messages", json={"to": "+15553334444", "body": text}, headers=headers
            )
            assert response.status_code == 201

        assert socket.events() == [
            "joined",
            "message:new",
            "conversation:new",
            "message:new",
            "conversation:update",
        ]
        assert socket.frames[-1]["data"]["lastMessage"] == "two"
