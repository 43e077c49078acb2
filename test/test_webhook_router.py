"""
Tests for the inbound webhook endpoints.

Exercises the full path: route -> signature -> idempotency ledger ->
reconciliation -> outbound notifier.
"""

import asyncio
import json
from typing import Any

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from sigcore.conversations.models import Call, Conversation, Message
from sigcore.integrations.models import Workspace
from sigcore.providers.config import ProviderSettings, ProviderType
from sigcore.providers.interface import CallStatus, MessageStatus
from sigcore.providers.openphone import OpenPhoneAdapter
from sigcore.providers.registry import ProviderRegistry
from sigcore.providers.twilio import TwilioAdapter
from sigcore.webhooks.models import WebhookEvent
from sigcore.webhooks.rate_limit import SlidingWindowRateLimiter
from sigcore.webhooks.signatures import compute_hmac_sha256_hex, compute_twilio_signature

AUTH_TOKEN = "twilio_auth_token"
ACCOUNT_SID = "AC123"
OUR_NUMBER = "+15550001111"
CALLER = "+15553334444"


def inbound_sms(sid: str = "SM111", body: str = "Hello") -> dict[str, str]:
    return {
        "MessageSid": sid,
        "AccountSid": ACCOUNT_SID,
        "From": CALLER,
        "To": OUR_NUMBER,
        "Body": body,
        "NumMedia": "0",
    }


def signed(path: str, params: dict[str, str]) -> dict[str, str]:
    """Twilio signature header for a request to the test client's base URL."""
    return {"X-Twilio-Signature": compute_twilio_signature(AUTH_TOKEN, f"http://test{path}", params)}


class TestTwilioWebhooks:
    @pytest_asyncio.fixture(autouse=True)
    async def twilio_integration(
        self,
        registry: ProviderRegistry,
        workspace: Workspace,
        make_integration,
    ) -> None:
        """Register the Twilio adapter and connect the workspace to account AC123."""
        registry.register(TwilioAdapter(ProviderSettings()))
        await make_integration(
            workspace.id,
            ProviderType.TWILIO,
            credentials={"accountSid": ACCOUNT_SID, "authToken": AUTH_TOKEN, "phoneNumber": OUR_NUMBER},
            external_account_id=ACCOUNT_SID,
        )

    @pytest.mark.asyncio
    async def test_duplicate_delivery_processed_once(
        self,
        async_client: AsyncClient,
        db_session: AsyncSession,
        notifier,
        row_count,
    ) -> None:
        path = "/webhooks/twilio/sms/tok_acme"
        params = inbound_sms()

        first = await async_client.post(path, data=params, headers=signed(path, params))
        second = await async_client.post(path, data=params, headers=signed(path, params))

        assert first.status_code == 200
        assert first.headers["content-type"].startswith("application/xml")
        assert "<Response>" in first.text
        assert second.status_code == 200

        assert await row_count(db_session, Conversation) == 1
        assert await row_count(db_session, Message) == 1
        assert await row_count(db_session, WebhookEvent) == 1
        assert notifier.types() == ["message.inbound"]

        conversation = (await db_session.execute(select(Conversation))).scalar_one()
        assert conversation.external_id == f"{OUR_NUMBER}:{CALLER}"
        assert conversation.phone_number == OUR_NUMBER
        assert conversation.participant_key == CALLER

    @pytest.mark.asyncio
    async def test_concurrent_duplicate_deliveries(
        self,
        async_client: AsyncClient,
        db_session: AsyncSession,
        notifier,
        row_count,
    ) -> None:
        path = "/webhooks/twilio/sms/tok_acme"
        params = inbound_sms()

        responses = await asyncio.gather(
            *(async_client.post(path, data=params, headers=signed(path, params)) for _ in range(2))
        )

        assert [r.status_code for r in responses] == [200, 200]
        assert await row_count(db_session, WebhookEvent) == 1
        assert await row_count(db_session, Message) == 1
        assert notifier.types() == ["message.inbound"]

    @pytest.mark.asyncio
    async def test_concurrent_messages_open_one_conversation(
        self,
        async_client: AsyncClient,
        db_session: AsyncSession,
        notifier,
        row_count,
    ) -> None:
        path = "/webhooks/twilio/sms/tok_acme"
        deliveries = [inbound_sms("SM1", "first"), inbound_sms("SM2", "second")]

        responses = await asyncio.gather(
            *(async_client.post(path, data=params, headers=signed(path, params)) for params in deliveries)
        )

        assert [r.status_code for r in responses] == [200, 200]
        assert await row_count(db_session, Conversation) == 1
        messages = (await db_session.execute(select(Message))).scalars().all()
        assert sorted(m.provider_message_id for m in messages) == ["SM1", "SM2"]
        assert len({m.conversation_id for m in messages}) == 1
        assert notifier.types() == ["message.inbound", "message.inbound"]

    @pytest.mark.asyncio
    async def test_status_path_not_captured_as_token(self, async_client: AsyncClient) -> None:
        params = {"MessageSid": "SM999", "MessageStatus": "delivered", "AccountSid": "AC_other"}

        response = await async_client.post("/webhooks/twilio/sms/status", data=params)

        assert response.status_code == 200
        assert response.json() == {"received": True, "status": "ignored"}

    @pytest.mark.asyncio
    async def test_status_callback_updates_message(
        self,
        async_client: AsyncClient,
        db_session: AsyncSession,
        notifier,
    ) -> None:
        sms_path = "/webhooks/twilio/sms/tok_acme"
        await async_client.post(sms_path, data=inbound_sms(), headers=signed(sms_path, inbound_sms()))

        status_path = "/webhooks/twilio/sms/status"
        params = {
            "MessageSid": "SM111",
            "MessageStatus": "undelivered",
            "AccountSid": ACCOUNT_SID,
            "ErrorCode": "30003",
        }
        response = await async_client.post(status_path, data=params, headers=signed(status_path, params))

        assert response.status_code == 200
        assert response.json()["status"] == "processed"
        message = (await db_session.execute(select(Message))).scalar_one()
        assert message.status == MessageStatus.FAILED
        assert message.error_code == "30003"
        assert notifier.types() == ["message.inbound", "message.failed"]

    @pytest.mark.asyncio
    async def test_status_callback_rejects_bad_signature(self, async_client: AsyncClient) -> None:
        params = {"MessageSid": "SM111", "MessageStatus": "delivered", "AccountSid": ACCOUNT_SID}

        response = await async_client.post(
            "/webhooks/twilio/sms/status",
            data=params,
            headers={"X-Twilio-Signature": "bogus"},
        )

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "INVALID_SIGNATURE"

    @pytest.mark.asyncio
    async def test_unknown_token(self, async_client: AsyncClient) -> None:
        response = await async_client.post("/webhooks/twilio/sms/tok_nobody", data=inbound_sms())

        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "UNKNOWN_WEBHOOK_TOKEN"

    @pytest.mark.asyncio
    async def test_invalid_signature_not_recorded(
        self,
        async_client: AsyncClient,
        db_session: AsyncSession,
        row_count,
    ) -> None:
        response = await async_client.post(
            "/webhooks/twilio/sms/tok_acme",
            data=inbound_sms(),
            headers={"X-Twilio-Signature": "bogus"},
        )

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "INVALID_SIGNATURE"
        assert await row_count(db_session, WebhookEvent) == 0
        assert await row_count(db_session, Message) == 0

    @pytest.mark.asyncio
    async def test_malformed_sms_rejected(self, async_client: AsyncClient) -> None:
        path = "/webhooks/twilio/sms/tok_acme"
        params = {"Body": "no sid"}

        response = await async_client.post(path, data=params, headers=signed(path, params))

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "INVALID_REQUEST"

    @pytest.mark.asyncio
    async def test_inbound_call_gets_voicemail_then_completes(
        self,
        async_client: AsyncClient,
        db_session: AsyncSession,
        notifier,
    ) -> None:
        voice_path = "/webhooks/twilio/voice/tok_acme"
        ringing = {
            "CallSid": "CA1",
            "AccountSid": ACCOUNT_SID,
            "CallStatus": "ringing",
            "Direction": "inbound",
            "From": CALLER,
            "To": OUR_NUMBER,
        }
        response = await async_client.post(voice_path, data=ringing, headers=signed(voice_path, ringing))

        assert response.status_code == 200
        assert "<Record" in response.text

        status_path = "/webhooks/twilio/voice/status"
        completed = {**ringing, "CallStatus": "no-answer", "CallDuration": "0"}
        response = await async_client.post(
            status_path, data=completed, headers=signed(status_path, completed)
        )

        assert response.status_code == 200
        call = (await db_session.execute(select(Call))).scalar_one()
        assert call.status == CallStatus.MISSED
        assert call.ended_at is not None
        assert notifier.types() == ["call.started", "call.missed"]

    @pytest.mark.asyncio
    async def test_rate_limited(self, app: FastAPI, async_client: AsyncClient) -> None:
        app.state.webhook_rate_limiter = SlidingWindowRateLimiter(limit=2, window_seconds=60)

        codes = [
            (await async_client.post("/webhooks/twilio/sms/tok_nobody", data=inbound_sms())).status_code
            for _ in range(3)
        ]

        assert codes == [404, 404, 429]
        limited = await async_client.post("/webhooks/twilio/sms/tok_nobody", data=inbound_sms())
        assert limited.headers["retry-after"]
        assert limited.json()["detail"]["code"] == "RATE_LIMITED"


class TestOpenPhoneWebhooks:
    @staticmethod
    def _phone_numbers(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/phone-numbers"):
            return httpx.Response(
                200,
                json={"data": [{"id": "PN1", "number": OUR_NUMBER, "name": "Sales"}]},
            )
        return httpx.Response(404, json={"message": "not found"})

    @pytest_asyncio.fixture(autouse=True)
    async def openphone_integration(
        self,
        registry: ProviderRegistry,
        workspace: Workspace,
        make_integration,
    ) -> None:
        """Register OpenPhone over a mocked REST API with a signing secret."""
        client = httpx.AsyncClient(transport=httpx.MockTransport(self._phone_numbers))
        registry.register(OpenPhoneAdapter(ProviderSettings(), client))
        await make_integration(
            workspace.id,
            ProviderType.OPENPHONE,
            credentials={"apiKey": "op_key"},
            webhook_secret="op_secret",
        )

    @staticmethod
    def _envelope(event_id: str = "EV1", message_id: str = "AC1") -> dict[str, Any]:
        return {
            "id": event_id,
            "type": "message.received",
            "data": {
                "object": {
                    "id": message_id,
                    "direction": "incoming",
                    "from": CALLER,
                    "to": [OUR_NUMBER],
                    "text": "Hi from OpenPhone",
                    "status": "received",
                    "phoneNumberId": "PN1",
                    "conversationId": "CN1",
                    "createdAt": "2024-05-01T12:00:00.000Z",
                }
            },
        }

    async def _post(self, client: AsyncClient, body: bytes, secret: str = "op_secret") -> httpx.Response:
        return await client.post(
            "/webhooks/openphone/tok_acme",
            content=body,
            headers={
                "Content-Type": "application/json",
                "openphone-signature": compute_hmac_sha256_hex(secret, body),
            },
        )

    @pytest.mark.asyncio
    async def test_message_resolves_phone_line(
        self,
        async_client: AsyncClient,
        db_session: AsyncSession,
        notifier,
    ) -> None:
        body = json.dumps(self._envelope()).encode()

        response = await self._post(async_client, body)

        assert response.status_code == 200
        assert response.json() == {"received": True, "status": "processed"}
        conversation = (await db_session.execute(select(Conversation))).scalar_one()
        assert conversation.external_id == "CN1"
        assert conversation.phone_number == OUR_NUMBER
        assert conversation.extra_metadata["phoneNumberName"] == "Sales"
        assert notifier.types() == ["message.inbound"]

    @pytest.mark.asyncio
    async def test_duplicate_envelope(self, async_client: AsyncClient, db_session: AsyncSession, row_count) -> None:
        body = json.dumps(self._envelope()).encode()

        await self._post(async_client, body)
        response = await self._post(async_client, body)

        assert response.json()["status"] == "duplicate"
        assert await row_count(db_session, Message) == 1

    @pytest.mark.asyncio
    async def test_wrong_secret(self, async_client: AsyncClient) -> None:
        body = json.dumps(self._envelope()).encode()

        response = await self._post(async_client, body, secret="nope")

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "INVALID_SIGNATURE"

    @pytest.mark.asyncio
    async def test_malformed_json(self, async_client: AsyncClient) -> None:
        response = await self._post(async_client, b"{not json")

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "INVALID_REQUEST"

    @pytest.mark.asyncio
    async def test_envelope_without_object_id(self, async_client: AsyncClient) -> None:
        envelope = self._envelope()
        del envelope["data"]["object"]["id"]
        body = json.dumps(envelope).encode()

        response = await self._post(async_client, body)

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_unhandled_type_ignored(self, async_client: AsyncClient) -> None:
        envelope = {"id": "EV9", "type": "contact.updated", "data": {"object": {"id": "CT1"}}}
        body = json.dumps(envelope).encode()

        response = await self._post(async_client, body)

        assert response.status_code == 200
        assert response.json()["status"] == "ignored"


class TestGenericWebhookRoute:
    @pytest.mark.asyncio
    async def test_unknown_provider(self, async_client: AsyncClient, workspace: Workspace) -> None:
        response = await async_client.post("/webhooks/carrier-pigeon/tok_acme", json={"id": "1"})

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "INVALID_REQUEST"

    @pytest.mark.asyncio
    async def test_mock_provider_signature(
        self,
        async_client: AsyncClient,
        workspace: Workspace,
        make_integration,
    ) -> None:
        await make_integration(workspace.id, webhook_secret="mock_secret")
        body = b'{"id": "evt_1"}'

        unsigned = await async_client.post(
            "/webhooks/mock/tok_acme",
            content=body,
            headers={"Content-Type": "application/json"},
        )
        accepted = await async_client.post(
            "/webhooks/mock/tok_acme",
            content=body,
            headers={
                "Content-Type": "application/json",
                "x-mock-signature": compute_hmac_sha256_hex("mock_secret", body),
            },
        )

        assert unsigned.status_code == 400
        assert accepted.status_code == 200
        assert accepted.json() == {"received": True, "status": "ignored"}
