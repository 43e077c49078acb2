"""
OpenPhone provider adapter.

OpenPhone addresses a line by its phone-number ID (``PN...``), not by the
number itself; callers must resolve the ID before showing or storing a number.
"""

from collections.abc import AsyncIterator
from dataclasses import replace
from datetime import datetime
from typing import Any

from sigcore.providers.config import ChannelType, ProviderType
from sigcore.providers.interface import (
    CallData,
    CallEvent,
    CallInitiationError,
    CallStatus,
    ContactData,
    ConversationData,
    Direction,
    InboundMessageEvent,
    InitiateCallRequest,
    InitiateCallResult,
    MessageData,
    MessageSendError,
    MessageStatus,
    MessageStatusEvent,
    PhoneLine,
    ProviderAdapter,
    ProviderAuthError,
    ProviderWebhookEvent,
    RecordingEvent,
    SendMessageRequest,
    SendMessageResult,
    WebhookKind,
    WebhookParseError,
)
from sigcore.shared.logging import get_logger
from sigcore.shared.phone import normalize_phone_number
from sigcore.shared.timeutils import parse_iso_datetime, utcnow
from sigcore.webhooks.signatures import verify_hmac_sha256_hex

logger = get_logger(__name__)

MAX_RESULTS = 100
MAX_PAGES = 50

OPENPHONE_MESSAGE_STATUS_MAP: dict[str, MessageStatus] = {
    "delivered": MessageStatus.DELIVERED,
    "received": MessageStatus.DELIVERED,
    "sent": MessageStatus.SENT,
    "failed": MessageStatus.FAILED,
    "undelivered": MessageStatus.FAILED,
}

OPENPHONE_CALL_STATUS_MAP: dict[str, CallStatus] = {
    "completed": CallStatus.COMPLETED,
    "missed": CallStatus.MISSED,
    "no-answer": CallStatus.MISSED,
    "busy": CallStatus.MISSED,
    "cancelled": CallStatus.CANCELLED,
    "canceled": CallStatus.CANCELLED,
    "abandoned": CallStatus.CANCELLED,
    "voicemail": CallStatus.VOICEMAIL,
}

MESSAGE_EVENT_TYPES = {"message.received", "message.sent"}
MESSAGE_STATUS_EVENT_TYPES = {"message.delivered", "message.failed"}
CALL_EVENT_TYPES = {"call.completed", "call.ringing", "voicemail.received"}
RECORDING_EVENT_TYPES = {"call.recording.completed"}


def map_message_status(raw: str | None) -> MessageStatus:
    return OPENPHONE_MESSAGE_STATUS_MAP.get((raw or "").lower(), MessageStatus.PENDING)


def map_call_status(raw: str | None, voicemail_url: str | None = None) -> CallStatus:
    if voicemail_url:
        return CallStatus.VOICEMAIL
    return OPENPHONE_CALL_STATUS_MAP.get((raw or "").lower(), CallStatus.COMPLETED)


def _first(value: Any) -> str:
    """OpenPhone sends ``to`` either as a string or a list."""
    if isinstance(value, (list, tuple)):
        return str(value[0]) if value else ""
    return str(value or "")


def _voicemail_url(record: dict[str, Any]) -> str | None:
    voicemail = record.get("voicemail")
    if isinstance(voicemail, dict):
        return voicemail.get("url")
    return record.get("voicemailUrl")


def _recording_url(record: dict[str, Any]) -> str | None:
    if record.get("recordingUrl"):
        return record["recordingUrl"]
    for media in record.get("media") or []:
        if isinstance(media, dict) and media.get("url") and media.get("type", "").startswith("audio"):
            return media["url"]
    return None


class OpenPhoneAdapter(ProviderAdapter):
    """OpenPhone REST + webhook adapter.

    Credentials: ``{"apiKey": ...}``.
    """

    provider = ProviderType.OPENPHONE
    supported_channels = frozenset({ChannelType.SMS, ChannelType.VOICE})

    def _headers(self, credentials: dict[str, Any]) -> dict[str, str]:
        api_key = credentials.get("apiKey") or credentials.get("api_key")
        if not api_key:
            raise ProviderAuthError("OpenPhone credentials missing apiKey", error_code="MISSING_CREDENTIALS")
        return {"Authorization": str(api_key), "Content-Type": "application/json"}

    def _url(self, path: str) -> str:
        return f"{self._settings.openphone_api_base_url.rstrip('/')}/{path.lstrip('/')}"

    async def _paginate(
        self,
        credentials: dict[str, Any],
        path: str,
        params: dict[str, Any],
    ) -> AsyncIterator[dict[str, Any]]:
        """Walk ``pageToken``/``nextPageToken`` pages of a list endpoint."""
        headers = self._headers(credentials)
        page_token: str | None = None
        for _ in range(MAX_PAGES):
            query = {"maxResults": MAX_RESULTS, **params}
            if page_token:
                query["pageToken"] = page_token
            data = await self._request("GET", self._url(path), params=query, headers=headers)
            for item in data.get("data") or []:
                yield item
            page_token = data.get("nextPageToken")
            if not page_token:
                break

    async def send_message(
        self,
        credentials: dict[str, Any],
        request: SendMessageRequest,
    ) -> SendMessageResult:
        """Send an SMS via OpenPhone.

        ``from_number`` may be either a number or a phone-number ID.
        """
        payload: dict[str, Any] = {
            "content": request.body,
            "from": request.from_number,
            "to": [request.to_number],
        }
        logger.info("Sending OpenPhone message", extra={"to": request.to_number})

        data = await self._request(
            "POST",
            self._url("messages"),
            json=payload,
            headers=self._headers(credentials),
            error_cls=MessageSendError,
        )
        record = data.get("data") or data
        message_id = record.get("id") if isinstance(record, dict) else None
        if not message_id:
            raise MessageSendError("OpenPhone response missing id", provider_response=data)

        return SendMessageResult(
            provider_message_id=str(message_id),
            status=map_message_status(record.get("status")) if record.get("status") else MessageStatus.SENT,
            sent_at=parse_iso_datetime(record.get("createdAt")) or utcnow(),
            raw_response=data,
        )

    async def iter_conversations(
        self,
        credentials: dict[str, Any],
        *,
        phone_line_id: str | None = None,
        since: datetime | None = None,
    ) -> AsyncIterator[ConversationData]:
        lines = {line.id: line for line in await self.get_phone_numbers(credentials)}

        params: dict[str, Any] = {}
        if phone_line_id:
            params["phoneNumbers[]"] = [phone_line_id]
        if since is not None:
            params["updatedAfter"] = since.isoformat()

        async for record in self._paginate(credentials, "conversations", params):
            participants = [normalize_phone_number(p) for p in record.get("participants") or [] if p]
            if not participants:
                continue
            line_id = record.get("phoneNumberId")
            line = lines.get(line_id) if line_id else None
            yield ConversationData(
                external_id=str(record.get("id")),
                phone_number=line.number if line else "",
                participant_phone_number=participants[0],
                participant_phone_numbers=tuple(participants),
                phone_line_id=line_id,
                name=record.get("name"),
                created_at=parse_iso_datetime(record.get("createdAt")),
                last_message_at=parse_iso_datetime(record.get("lastActivityAt")),
                last_activity_at=parse_iso_datetime(record.get("lastActivityAt") or record.get("updatedAt")),
                metadata={
                    "phoneNumberId": line_id,
                    "phoneNumberName": line.name if line else None,
                    "lastActivityId": record.get("lastActivityId"),
                },
            )

    async def get_messages(
        self,
        credentials: dict[str, Any],
        conversation_external_id: str,
        phone_line_id: str | None = None,
        participant: str | None = None,
    ) -> list[MessageData]:
        """List messages; OpenPhone scopes history by line + participant."""
        if not phone_line_id or not participant:
            logger.warning(
                "OpenPhone message listing needs phone line and participant",
                extra={"conversation_external_id": conversation_external_id},
            )
            return []

        params = {"phoneNumberId": phone_line_id, "participants[]": [participant]}
        messages = [
            self._message_from_record(record)
            async for record in self._paginate(credentials, "messages", params)
        ]
        return sorted(messages, key=lambda m: m.created_at or utcnow())

    async def get_calls(
        self,
        credentials: dict[str, Any],
        conversation_external_id: str,
        phone_line_id: str | None = None,
        participant: str | None = None,
    ) -> list[CallData]:
        if not phone_line_id or not participant:
            return []

        params = {"phoneNumberId": phone_line_id, "participants[]": [participant]}
        calls = [
            self._call_from_record(record)
            async for record in self._paginate(credentials, "calls", params)
        ]
        return sorted(calls, key=lambda c: c.created_at or utcnow())

    async def get_contacts(self, credentials: dict[str, Any]) -> list[ContactData] | None:
        contacts: list[ContactData] = []
        async for record in self._paginate(credentials, "contacts", {}):
            fields = record.get("defaultFields") or record
            first = (fields.get("firstName") or "").strip()
            last = (fields.get("lastName") or "").strip()
            name = " ".join(part for part in (first, last) if part) or fields.get("company") or None
            numbers = tuple(
                normalize_phone_number(entry.get("value") if isinstance(entry, dict) else entry)
                for entry in fields.get("phoneNumbers") or []
            )
            contacts.append(
                ContactData(
                    id=str(record.get("id")),
                    name=name,
                    phone_numbers=tuple(n for n in numbers if n),
                )
            )
        return contacts

    async def initiate_call(
        self,
        credentials: dict[str, Any],
        request: InitiateCallRequest,
    ) -> InitiateCallResult:
        """OpenPhone places calls from its own apps only."""
        raise CallInitiationError(
            "OpenPhone does not support API-initiated calls",
            error_code="UNSUPPORTED",
        )

    async def validate_credentials(self, credentials: dict[str, Any]) -> bool:
        try:
            await self._request("GET", self._url("phone-numbers"), headers=self._headers(credentials))
        except ProviderAuthError:
            return False
        return True

    async def get_phone_numbers(self, credentials: dict[str, Any]) -> list[PhoneLine]:
        data = await self._request("GET", self._url("phone-numbers"), headers=self._headers(credentials))
        lines: list[PhoneLine] = []
        for record in data.get("data") or []:
            if not record.get("id"):
                continue
            lines.append(
                PhoneLine(
                    id=str(record["id"]),
                    number=normalize_phone_number(record.get("number") or record.get("phoneNumber")),
                    name=record.get("name"),
                )
            )
        return lines

    def _message_from_record(self, record: dict[str, Any]) -> MessageData:
        inbound = record.get("direction") == "incoming"
        return MessageData(
            provider_message_id=str(record.get("id")),
            direction=Direction.INBOUND if inbound else Direction.OUTBOUND,
            body=record.get("text") or record.get("content") or record.get("body") or "",
            from_number=normalize_phone_number(record.get("from")),
            to_number=normalize_phone_number(_first(record.get("to"))),
            status=map_message_status(record.get("status")),
            created_at=parse_iso_datetime(record.get("createdAt")),
            metadata={"phoneNumberId": record.get("phoneNumberId"), "userId": record.get("userId")},
        )

    def _call_from_record(self, record: dict[str, Any]) -> CallData:
        inbound = record.get("direction") == "incoming"
        voicemail_url = _voicemail_url(record)
        participants = record.get("participants") or []
        from_number = record.get("from") or (participants[0] if inbound and participants else "")
        to_number = _first(record.get("to")) or (participants[0] if not inbound and participants else "")
        try:
            duration = int(record.get("duration") or 0)
        except (TypeError, ValueError):
            duration = 0
        return CallData(
            provider_call_id=str(record.get("id")),
            direction=Direction.INBOUND if inbound else Direction.OUTBOUND,
            from_number=normalize_phone_number(from_number),
            to_number=normalize_phone_number(to_number),
            status=map_call_status(record.get("status"), voicemail_url),
            duration=duration,
            started_at=parse_iso_datetime(record.get("answeredAt")),
            ended_at=parse_iso_datetime(record.get("completedAt")),
            created_at=parse_iso_datetime(record.get("createdAt")),
            recording_url=_recording_url(record),
            voicemail_url=voicemail_url,
            metadata={"phoneNumberId": record.get("phoneNumberId"), "rawStatus": record.get("status")},
        )

    def parse_webhook(
        self,
        payload: dict[str, Any],
        kind: WebhookKind = WebhookKind.AUTO,
    ) -> ProviderWebhookEvent | None:
        """Parse an OpenPhone ``{id, type, data: {object}}`` envelope."""
        event_type = payload.get("type")
        data = payload.get("data")
        obj = data.get("object") if isinstance(data, dict) else None
        if not event_type or not isinstance(obj, dict) or not obj.get("id"):
            raise WebhookParseError("Malformed OpenPhone webhook", error_code="MALFORMED", provider_response=payload)

        # The envelope id is unique per delivery type; the object id is not
        event_id = str(payload.get("id") or f"{obj['id']}:{event_type}")

        if event_type in MESSAGE_EVENT_TYPES:
            return self._parse_message_event(event_id, event_type, payload, obj)
        if event_type in MESSAGE_STATUS_EVENT_TYPES:
            return MessageStatusEvent(
                provider=self.provider,
                event_id=event_id,
                event_type=event_type,
                raw_payload=payload,
                provider_message_id=str(obj["id"]),
                status=map_message_status(obj.get("status") or event_type.split(".", 1)[1]),
                raw_status=str(obj.get("status") or event_type),
            )
        if event_type in CALL_EVENT_TYPES:
            return self._parse_call_event(event_id, event_type, payload, obj)
        if event_type in RECORDING_EVENT_TYPES:
            recording_url = _recording_url(obj)
            if not recording_url:
                return None
            return RecordingEvent(
                provider=self.provider,
                event_id=event_id,
                event_type=event_type,
                raw_payload=payload,
                provider_call_id=str(obj["id"]),
                recording_url=recording_url,
            )

        logger.info("Unhandled OpenPhone webhook type", extra={"event_type": event_type})
        return None

    def _parse_message_event(
        self,
        event_id: str,
        event_type: str,
        payload: dict[str, Any],
        obj: dict[str, Any],
    ) -> InboundMessageEvent:
        message = self._message_from_record(obj)
        if message.direction == Direction.INBOUND:
            participant = message.from_number
        else:
            participant = message.to_number
        if not participant:
            raise WebhookParseError("Missing participant number", error_code="MISSING_ADDRESS", provider_response=payload)

        conversation_id = obj.get("conversationId")
        return InboundMessageEvent(
            provider=self.provider,
            event_id=event_id,
            event_type=event_type,
            raw_payload=payload,
            message=message,
            participant_number=participant,
            our_phone_line_id=obj.get("phoneNumberId"),
            external_conversation_id=conversation_id or f"webhook_{obj['id']}",
        )

    def _parse_call_event(
        self,
        event_id: str,
        event_type: str,
        payload: dict[str, Any],
        obj: dict[str, Any],
    ) -> CallEvent:
        call = self._call_from_record(obj)
        if event_type == "voicemail.received" and call.status != CallStatus.VOICEMAIL:
            call = replace(call, status=CallStatus.VOICEMAIL)
        participant = call.from_number if call.direction == Direction.INBOUND else call.to_number
        ended = event_type != "call.ringing"
        if not ended:
            normalized_type = "call.started"
        elif call.status == CallStatus.MISSED:
            normalized_type = "call.missed"
        else:
            normalized_type = "call.completed"

        conversation_id = obj.get("conversationId")
        return CallEvent(
            provider=self.provider,
            event_id=event_id,
            event_type=normalized_type,
            raw_payload=payload,
            call=call,
            participant_number=participant,
            ended=ended,
            our_phone_line_id=obj.get("phoneNumberId"),
            external_conversation_id=conversation_id or f"call_{obj['id']}",
        )

    def verify_webhook_signature(
        self,
        secret: str,
        raw_body: bytes,
        signature: str | None,
        url: str,
        params: dict[str, Any],
    ) -> bool:
        """Accept a bare hex digest or the ``hmac;1;<timestamp>;<digest>`` form."""
        if not signature:
            return False
        if signature.startswith("hmac;"):
            parts = signature.split(";")
            if len(parts) != 4:
                return False
            _, _, timestamp, digest = parts
            signed = timestamp.encode("utf-8") + b"." + raw_body
            return verify_hmac_sha256_hex(secret, signed, digest)
        return verify_hmac_sha256_hex(secret, raw_body, signature)

