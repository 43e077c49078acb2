"""Tests for forwarding message status changes to the workspace status URL."""

import json

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from sigcore.config import Settings
from sigcore.integrations.models import Workspace
from sigcore.outbound.events import DomainEvent, EventType
from sigcore.outbound.tenant import STATUS_UPDATE_EVENT, TenantStatusForwarder
from sigcore.shared.database import DatabaseManager


def status_event(workspace: Workspace, event_type: EventType = EventType.MESSAGE_SENT) -> DomainEvent:
    return DomainEvent(
        workspace_id=workspace.id,
        event_type=event_type,
        data={
            "messageId": "m1",
            "providerMessageId": "SM1",
            "status": "sent",
            "from": "+15550001111",
            "to": "+15553334444",
        },
    )


class TestTenantStatusForwarder:
    @pytest.fixture
    def seen(self) -> list[httpx.Request]:
        return []

    @pytest.fixture
    def forwarder(self, db_manager: DatabaseManager, seen: list[httpx.Request]) -> TenantStatusForwarder:
        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return TenantStatusForwarder(db_manager.session, client, Settings())

    @pytest.mark.asyncio
    async def test_sent_is_forwarded_as_status_update(
        self,
        forwarder: TenantStatusForwarder,
        seen: list[httpx.Request],
        db_session: AsyncSession,
        workspace: Workspace,
    ) -> None:
        workspace.status_webhook_url = "https://tenant.example.com/status"
        await db_session.commit()

        await forwarder.publish(status_event(workspace))

        assert len(seen) == 1
        request = seen[0]
        assert str(request.url) == "https://tenant.example.com/status"
        assert request.headers["X-Sigcore-Event"] == STATUS_UPDATE_EVENT
        assert request.headers["X-Sigcore-Workspace-Id"] == str(workspace.id)
        payload = json.loads(request.content)
        assert payload["event"] == STATUS_UPDATE_EVENT
        assert payload["data"]["providerMessageId"] == "SM1"
        assert payload["data"]["fromNumber"] == "+15550001111"
        assert payload["data"]["workspaceId"] == str(workspace.id)

    @pytest.mark.asyncio
    async def test_delivered_keeps_its_name(
        self,
        forwarder: TenantStatusForwarder,
        seen: list[httpx.Request],
        db_session: AsyncSession,
        workspace: Workspace,
    ) -> None:
        workspace.status_webhook_url = "https://tenant.example.com/status"
        await db_session.commit()

        await forwarder.publish(status_event(workspace, EventType.MESSAGE_DELIVERED))

        assert seen[0].headers["X-Sigcore-Event"] == "message.delivered"

    @pytest.mark.asyncio
    async def test_other_events_ignored(
        self,
        forwarder: TenantStatusForwarder,
        seen: list[httpx.Request],
        db_session: AsyncSession,
        workspace: Workspace,
    ) -> None:
        workspace.status_webhook_url = "https://tenant.example.com/status"
        await db_session.commit()

        await forwarder.publish(status_event(workspace, EventType.MESSAGE_INBOUND))
        await forwarder.publish(status_event(workspace, EventType.CALL_MISSED))

        assert seen == []

    @pytest.mark.asyncio
    async def test_no_url_configured(
        self, forwarder: TenantStatusForwarder, seen: list[httpx.Request], workspace: Workspace
    ) -> None:
        await forwarder.publish(status_event(workspace))

        assert seen == []

    @pytest.mark.asyncio
    async def test_endpoint_errors_are_logged_only(
        self, db_manager: DatabaseManager, db_session: AsyncSession, workspace: Workspace
    ) -> None:
        workspace.status_webhook_url = "https://tenant.example.com/status"
        await db_session.commit()
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500)))

        await TenantStatusForwarder(db_manager.session, client, Settings()).publish(status_event(workspace))
