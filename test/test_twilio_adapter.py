"""Tests for the Twilio provider adapter.

HTTP is served by ``httpx.MockTransport``; no network, no database.
"""

from collections.abc import Callable
from datetime import datetime, timezone
from urllib.parse import parse_qs

import httpx
import pytest

from sigcore.providers.config import ChannelType, ProviderSettings
from sigcore.providers.interface import (
    CallEvent,
    CallStatus,
    Direction,
    InboundMessageEvent,
    InitiateCallRequest,
    MessageSendError,
    MessageStatus,
    MessageStatusEvent,
    ProviderAuthError,
    RecordingEvent,
    SendMessageRequest,
    WebhookKind,
    WebhookParseError,
)
from sigcore.providers.twilio import TwilioAdapter, empty_twiml, voicemail_twiml
from sigcore.webhooks.signatures import compute_twilio_signature

CREDENTIALS = {"accountSid": "AC123", "authToken": "token", "phoneNumber": "+15550001111"}
OUR = "+15550001111"
ACCOUNT_PATH = "/2010-04-01/Accounts/AC123"

Handler = Callable[[httpx.Request], httpx.Response]


def make_adapter(handler: Handler) -> TwilioAdapter:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return TwilioAdapter(ProviderSettings(), client)


def form(request: httpx.Request) -> dict[str, list[str]]:
    return parse_qs(request.content.decode("utf-8"))


def message_record(sid: str, direction: str, from_: str, to: str, date: str) -> dict[str, str]:
    return {
        "sid": sid,
        "direction": direction,
        "from": from_,
        "to": to,
        "body": f"body {sid}",
        "status": "delivered" if direction == "inbound" else "sent",
        "date_sent": date,
    }


class TestTwilioSendMessage:
    @pytest.mark.asyncio
    async def test_send_sms(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                201,
                json={"sid": "SM1", "status": "queued", "date_created": "Wed, 01 May 2024 12:00:00 +0000"},
            )

        adapter = make_adapter(handler)
        result = await adapter.send_message(
            CREDENTIALS,
            SendMessageRequest(
                from_number="",
                to_number="+15553334444",
                body="Hello",
                status_callback_url="https://api.example.com/webhooks/twilio/sms/status",
            ),
        )

        assert result.provider_message_id == "SM1"
        assert result.status == MessageStatus.PENDING
        assert result.sent_at == datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

        request = seen[0]
        assert request.url.path == f"{ACCOUNT_PATH}/Messages.json"
        assert request.headers["authorization"].startswith("Basic ")
        body = form(request)
        assert body["From"] == [OUR]
        assert body["To"] == ["+15553334444"]
        assert body["Body"] == ["Hello"]
        assert body["StatusCallback"] == ["https://api.example.com/webhooks/twilio/sms/status"]

    @pytest.mark.asyncio
    async def test_whatsapp_addresses_prefixed(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(201, json={"sid": "SM2", "status": "sent"})

        await make_adapter(handler).send_message(
            CREDENTIALS,
            SendMessageRequest(from_number=OUR, to_number="+15553334444", body="Hi", channel=ChannelType.WHATSAPP),
        )

        body = form(seen[0])
        assert body["To"] == ["whatsapp:+15553334444"]
        assert body["From"] == [f"whatsapp:{OUR}"]

    @pytest.mark.asyncio
    async def test_template_replaces_body(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(201, json={"sid": "SM3", "status": "queued"})

        await make_adapter(handler).send_message(
            CREDENTIALS,
            SendMessageRequest(from_number=OUR, to_number="+15553334444", body="", template_id="HX123"),
        )

        body = form(seen[0])
        assert body["ContentSid"] == ["HX123"]
        assert "Body" not in body

    @pytest.mark.asyncio
    async def test_rejected_message(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"code": 21211, "message": "Invalid 'To' Phone Number"})

        with pytest.raises(MessageSendError) as exc_info:
            await make_adapter(handler).send_message(
                CREDENTIALS,
                SendMessageRequest(from_number=OUR, to_number="bogus", body="Hi"),
            )

        assert exc_info.value.error_code == "21211"
        assert "Invalid" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_unauthorized(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, json={"code": 20003, "message": "Authenticate"})

        with pytest.raises(ProviderAuthError):
            await make_adapter(handler).send_message(
                CREDENTIALS,
                SendMessageRequest(from_number=OUR, to_number="+15553334444", body="Hi"),
            )

    @pytest.mark.asyncio
    async def test_missing_credentials(self) -> None:
        adapter = make_adapter(lambda request: httpx.Response(500))

        with pytest.raises(ProviderAuthError):
            await adapter.send_message(
                {"phoneNumber": OUR},
                SendMessageRequest(from_number=OUR, to_number="+15553334444", body="Hi"),
            )


class TestTwilioListing:
    @staticmethod
    def history_handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path.startswith(ACCOUNT_PATH)
        if "Page=1" in str(request.url):
            return httpx.Response(
                200,
                json={
                    "messages": [
                        message_record("SM4", "inbound", "+15557778888", OUR, "Mon, 29 Apr 2024 09:00:00 +0000"),
                    ],
                    "next_page_uri": None,
                },
            )
        return httpx.Response(
            200,
            json={
                "messages": [
                    message_record("SM3", "inbound", "+15553334444", OUR, "Wed, 01 May 2024 12:00:00 +0000"),
                    message_record("SM2", "outbound-api", OUR, "+15553334444", "Tue, 30 Apr 2024 12:00:00 +0000"),
                    message_record("SM1", "inbound", "+15556667777", OUR, "Tue, 30 Apr 2024 08:00:00 +0000"),
                ],
                "next_page_uri": f"{ACCOUNT_PATH}/Messages.json?PageSize=100&Page=1&PageToken=PA1",
            },
        )

    @pytest.mark.asyncio
    async def test_conversations_derived_from_history(self) -> None:
        adapter = make_adapter(self.history_handler)

        conversations = [c async for c in adapter.iter_conversations(CREDENTIALS)]

        assert [c.external_id for c in conversations] == [
            f"{OUR}:+15553334444",
            f"{OUR}:+15556667777",
            f"{OUR}:+15557778888",
        ]
        first = conversations[0]
        assert first.phone_number == OUR
        assert first.participant_phone_number == "+15553334444"
        assert first.last_activity_at == datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_conversation_limit(self) -> None:
        conversations = await make_adapter(self.history_handler).get_conversations(CREDENTIALS, limit=2)

        assert len(conversations) == 2

    @pytest.mark.asyncio
    async def test_messages_merge_both_directions(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.params.get("From") == "+15553334444":
                records = [message_record("SM3", "inbound", "+15553334444", OUR, "Wed, 01 May 2024 12:00:00 +0000")]
            else:
                records = [
                    message_record("SM2", "outbound-api", OUR, "+15553334444", "Tue, 30 Apr 2024 12:00:00 +0000"),
                    message_record("SM3", "inbound", "+15553334444", OUR, "Wed, 01 May 2024 12:00:00 +0000"),
                ]
            return httpx.Response(200, json={"messages": records, "next_page_uri": None})

        messages = await make_adapter(handler).get_messages(CREDENTIALS, f"{OUR}:+15553334444")

        assert [m.provider_message_id for m in messages] == ["SM2", "SM3"]
        assert messages[0].direction == Direction.OUTBOUND
        assert messages[0].status == MessageStatus.SENT
        assert messages[1].direction == Direction.INBOUND

    @pytest.mark.asyncio
    async def test_phone_numbers(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == f"{ACCOUNT_PATH}/IncomingPhoneNumbers.json"
            return httpx.Response(
                200,
                json={
                    "incoming_phone_numbers": [
                        {"sid": "PN1", "phone_number": OUR, "friendly_name": "Main"},
                    ],
                    "next_page_uri": None,
                },
            )

        lines = await make_adapter(handler).get_phone_numbers(CREDENTIALS)

        assert [(line.id, line.number, line.name) for line in lines] == [("PN1", OUR, "Main")]

    @pytest.mark.asyncio
    async def test_initiate_call(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(201, json={"sid": "CA1", "status": "queued"})

        result = await make_adapter(handler).initiate_call(
            CREDENTIALS,
            InitiateCallRequest(
                from_number=OUR,
                to_number="+15553334444",
                status_callback_url="https://api.example.com/webhooks/twilio/voice/status",
            ),
        )

        assert result.provider_call_id == "CA1"
        assert result.status == "queued"
        assert seen[0].url.path == f"{ACCOUNT_PATH}/Calls.json"
        body = form(seen[0])
        assert body["StatusCallback"] == ["https://api.example.com/webhooks/twilio/voice/status"]
        assert "Twiml" in body


class TestTwilioParseWebhook:
    def setup_method(self) -> None:
        self.adapter = TwilioAdapter(ProviderSettings())

    def test_inbound_sms(self) -> None:
        event = self.adapter.parse_webhook(
            {"MessageSid": "SM1", "From": "+15553334444", "To": OUR, "Body": "Hi"},
            WebhookKind.MESSAGE,
        )

        assert isinstance(event, InboundMessageEvent)
        assert event.event_id == "SM1"
        assert event.participant_number == "+15553334444"
        assert event.our_number == OUR
        assert event.external_conversation_id == f"{OUR}:+15553334444"
        assert event.message.direction == Direction.INBOUND
        assert event.message.channel == ChannelType.SMS

    def test_whatsapp_inbound(self) -> None:
        event = self.adapter.parse_webhook(
            {"MessageSid": "SM2", "From": "whatsapp:+15553334444", "To": f"whatsapp:{OUR}", "Body": "Hi"},
        )

        assert isinstance(event, InboundMessageEvent)
        assert event.message.channel == ChannelType.WHATSAPP
        assert event.participant_number == "+15553334444"

    def test_status_keyed_per_transition(self) -> None:
        event = self.adapter.parse_webhook(
            {"MessageSid": "SM1", "MessageStatus": "delivered", "AccountSid": "AC123"},
            WebhookKind.MESSAGE_STATUS,
        )

        assert isinstance(event, MessageStatusEvent)
        assert event.event_id == "SM1:delivered"
        assert event.status == MessageStatus.DELIVERED
        assert event.account_id == "AC123"

    def test_status_auto_detected(self) -> None:
        event = self.adapter.parse_webhook({"MessageSid": "SM1", "MessageStatus": "undelivered"})

        assert isinstance(event, MessageStatusEvent)
        assert event.status == MessageStatus.FAILED

    @pytest.mark.parametrize(
        ("raw_status", "ended", "status"),
        [
            ("ringing", False, CallStatus.COMPLETED),
            ("completed", True, CallStatus.COMPLETED),
            ("no-answer", True, CallStatus.MISSED),
            ("canceled", True, CallStatus.CANCELLED),
        ],
    )
    def test_call_status(self, raw_status: str, ended: bool, status: CallStatus) -> None:
        event = self.adapter.parse_webhook(
            {
                "CallSid": "CA1",
                "CallStatus": raw_status,
                "Direction": "inbound",
                "From": "+15553334444",
                "To": OUR,
            },
            WebhookKind.CALL_STATUS,
        )

        assert isinstance(event, CallEvent)
        assert event.ended is ended
        assert event.call.status == status
        assert event.event_id == f"CA1:{raw_status}"
        assert event.participant_number == "+15553334444"

    def test_outbound_call_participant_is_callee(self) -> None:
        event = self.adapter.parse_webhook(
            {"CallSid": "CA2", "CallStatus": "initiated", "Direction": "outbound-api", "From": OUR, "To": "+15553334444"},
            WebhookKind.CALL,
        )

        assert isinstance(event, CallEvent)
        assert event.ended is False
        assert event.event_id == "CA2"
        assert event.participant_number == "+15553334444"
        assert event.our_number == OUR

    def test_recording(self) -> None:
        event = self.adapter.parse_webhook(
            {
                "CallSid": "CA1",
                "RecordingSid": "RE1",
                "RecordingUrl": "https://api.twilio.com/recordings/RE1",
                "RecordingDuration": "12",
            },
            WebhookKind.RECORDING,
        )

        assert isinstance(event, RecordingEvent)
        assert event.provider_call_id == "CA1"
        assert event.duration == 12

    @pytest.mark.parametrize(
        ("payload", "kind"),
        [
            ({"From": "+15553334444", "To": OUR}, WebhookKind.MESSAGE),
            ({"MessageSid": "SM1", "To": OUR}, WebhookKind.MESSAGE),
            ({"MessageSid": "SM1"}, WebhookKind.MESSAGE_STATUS),
            ({"CallStatus": "ringing"}, WebhookKind.CALL),
            ({"CallSid": "CA1", "RecordingSid": "RE1"}, WebhookKind.RECORDING),
        ],
    )
    def test_malformed(self, payload: dict[str, str], kind: WebhookKind) -> None:
        with pytest.raises(WebhookParseError):
            self.adapter.parse_webhook(payload, kind)

    def test_signature(self) -> None:
        url = "https://api.example.com/webhooks/twilio/sms/tok"
        params = {"MessageSid": "SM1", "Body": "Hi"}
        signature = compute_twilio_signature("token", url, params)

        assert self.adapter.verify_webhook_signature("token", b"", signature, url, params)
        assert not self.adapter.verify_webhook_signature("token", b"", signature, url, {"MessageSid": "SM2"})


class TestTwiml:
    def test_empty(self) -> None:
        assert empty_twiml().strip().endswith("</Response>")
        assert "<Say>" not in empty_twiml()

    def test_voicemail_escapes_and_callback(self) -> None:
        twiml = voicemail_twiml(
            greeting="Tom & Jerry <away>",
            recording_status_url="https://api.example.com/webhooks/twilio/recording-status",
        )

        assert "Tom &amp; Jerry &lt;away&gt;" in twiml
        assert 'recordingStatusCallback="https://api.example.com/webhooks/twilio/recording-status"' in twiml
        assert "<Record" in twiml
