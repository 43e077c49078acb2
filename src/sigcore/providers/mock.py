"""
In-memory provider for local development and tests.

Never touches a real provider; history is whatever was seeded.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import datetime
from itertools import count
from typing import Any

from sigcore.providers.config import ChannelType, ProviderSettings, ProviderType
from sigcore.providers.interface import (
    CallData,
    ContactData,
    ConversationData,
    InitiateCallRequest,
    InitiateCallResult,
    MessageData,
    MessageStatus,
    PhoneLine,
    ProviderAdapter,
    ProviderError,
    ProviderWebhookEvent,
    SendMessageRequest,
    SendMessageResult,
    WebhookKind,
)
from sigcore.shared.timeutils import utcnow
from sigcore.webhooks.signatures import verify_hmac_sha256_hex


class MockProviderAdapter(ProviderAdapter):
    """Mock provider backed by in-memory lists."""

    provider = ProviderType.MOCK
    supported_channels = frozenset({ChannelType.SMS, ChannelType.VOICE, ChannelType.WHATSAPP})

    def __init__(self, settings: ProviderSettings | None = None) -> None:
        super().__init__(settings or ProviderSettings())
        self.conversations: list[ConversationData] = []
        self.messages: dict[str, list[MessageData]] = {}
        self.calls: dict[str, list[CallData]] = {}
        self.contacts: list[ContactData] | None = None
        self.phone_lines: list[PhoneLine] = []
        self.sent: list[SendMessageRequest] = []
        # Set to make the corresponding operation raise ProviderError
        self.fail_listing = False
        self.fail_messages_for: set[str] = set()
        self.fail_send = False
        self._ids = count(1)

    async def send_message(
        self,
        credentials: dict[str, Any],
        request: SendMessageRequest,
    ) -> SendMessageResult:
        if self.fail_send:
            raise ProviderError("Mock send failure", error_code="MOCK_FAILURE")
        self.sent.append(request)
        return SendMessageResult(
            provider_message_id=f"MOCK_MSG_{next(self._ids):06d}",
            status=MessageStatus.SENT,
            sent_at=utcnow(),
            raw_response={"mock": True},
        )

    async def iter_conversations(
        self,
        credentials: dict[str, Any],
        *,
        phone_line_id: str | None = None,
        since: datetime | None = None,
    ) -> AsyncIterator[ConversationData]:
        if self.fail_listing:
            raise ProviderError("Mock listing failure", error_code="MOCK_FAILURE")
        for conversation in list(self.conversations):
            yield conversation

    async def get_messages(
        self,
        credentials: dict[str, Any],
        conversation_external_id: str,
        phone_line_id: str | None = None,
        participant: str | None = None,
    ) -> list[MessageData]:
        if conversation_external_id in self.fail_messages_for:
            raise ProviderError("Mock message listing failure", error_code="MOCK_FAILURE")
        return list(self.messages.get(conversation_external_id, []))

    async def get_calls(
        self,
        credentials: dict[str, Any],
        conversation_external_id: str,
        phone_line_id: str | None = None,
        participant: str | None = None,
    ) -> list[CallData]:
        return list(self.calls.get(conversation_external_id, []))

    async def get_contacts(self, credentials: dict[str, Any]) -> list[ContactData] | None:
        return self.contacts

    async def initiate_call(
        self,
        credentials: dict[str, Any],
        request: InitiateCallRequest,
    ) -> InitiateCallResult:
        return InitiateCallResult(
            provider_call_id=f"MOCK_CALL_{next(self._ids):06d}",
            status="queued",
            created_at=utcnow(),
            raw_response={"mock": True, "to": request.to_number, "from": request.from_number},
        )

    async def validate_credentials(self, credentials: dict[str, Any]) -> bool:
        return True

    async def get_phone_numbers(self, credentials: dict[str, Any]) -> list[PhoneLine]:
        return list(self.phone_lines)

    def parse_webhook(
        self,
        payload: dict[str, Any],
        kind: WebhookKind = WebhookKind.AUTO,
    ) -> ProviderWebhookEvent | None:
        return None

    def verify_webhook_signature(
        self,
        secret: str,
        raw_body: bytes,
        signature: str | None,
        url: str,
        params: dict[str, Any],
    ) -> bool:
        return verify_hmac_sha256_hex(secret, raw_body, signature)
