"""
Forward message status changes to the workspace's own status webhook.

A single URL per workspace (``Workspace.status_webhook_url``); no
subscriptions, no failure tracking. Delivery problems are logged only.
"""

from typing import Any

import httpx
from sqlalchemy.exc import SQLAlchemyError

from sigcore.config import Settings, get_settings
from sigcore.integrations.repository import WorkspaceRepository
from sigcore.outbound.dispatcher import encode_payload
from sigcore.outbound.events import DomainEvent, EventType
from sigcore.shared.database import SessionFactory
from sigcore.shared.logging import get_logger

logger = get_logger(__name__)

STATUS_UPDATE_EVENT = "message.status_update"

_FORWARDED_EVENTS = {
    EventType.MESSAGE_SENT: STATUS_UPDATE_EVENT,
    EventType.MESSAGE_DELIVERED: EventType.MESSAGE_DELIVERED.value,
    EventType.MESSAGE_FAILED: EventType.MESSAGE_FAILED.value,
}


def tenant_status_data(event: DomainEvent) -> dict[str, Any]:
    data = event.data
    return {
        "messageId": data.get("messageId"),
        "providerMessageId": data.get("providerMessageId"),
        "status": data.get("status"),
        "fromNumber": data.get("from"),
        "toNumber": data.get("to"),
        "workspaceId": str(event.workspace_id),
        "errorCode": data.get("errorCode"),
        "errorMessage": data.get("errorMessage"),
    }


class TenantStatusForwarder:
    """``EventNotifier`` posting message status events to the tenant URL."""

    def __init__(
        self,
        session_factory: SessionFactory,
        http_client: httpx.AsyncClient | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings or get_settings()
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient()

    async def _status_url(self, event: DomainEvent) -> str | None:
        async with self._session_factory() as session:
            workspace = await WorkspaceRepository(session).get_by_id(event.workspace_id)
            return workspace.status_webhook_url if workspace else None

    async def publish(self, event: DomainEvent) -> None:
        event_name = _FORWARDED_EVENTS.get(event.event_type)
        if event_name is None:
            return

        try:
            url = await self._status_url(event)
        except SQLAlchemyError:
            logger.exception("Failed to load workspace for status forwarding")
            return
        if not url:
            logger.debug(
                "Workspace has no status webhook URL",
                extra={"workspace_id": str(event.workspace_id)},
            )
            return

        prefix = self._settings.outbound_header_prefix
        timestamp = event.occurred_at.isoformat()
        body = encode_payload(event_name, timestamp, tenant_status_data(event))
        headers = {
            "Content-Type": "application/json",
            f"X-{prefix}-Event": event_name,
            f"X-{prefix}-Timestamp": timestamp,
            f"X-{prefix}-Workspace-Id": str(event.workspace_id),
        }
        try:
            response = await self._client.post(
                url,
                content=body,
                headers=headers,
                timeout=self._settings.tenant_status_webhook_timeout_seconds,
            )
            response.raise_for_status()
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.error(
                "Status forwarding failed",
                extra={"workspace_id": str(event.workspace_id), "event_type": event_name, "error": str(e)},
            )
            return

        logger.info(
            "Status forwarded to workspace",
            extra={"workspace_id": str(event.workspace_id), "event_type": event_name},
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
