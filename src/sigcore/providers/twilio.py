"""
Twilio provider adapter.

Twilio has no conversation resource: threads are derived from message
history and keyed ``"{our_number}:{participant}"``.
"""

from collections.abc import AsyncIterator
from datetime import datetime
from email.utils import parsedate_to_datetime
from typing import Any

from sigcore.providers.config import ChannelType, ProviderType
from sigcore.providers.interface import (
    CallData,
    CallEvent,
    CallInitiationError,
    CallStatus,
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
from sigcore.shared.phone import normalize_phone_number, strip_channel_prefix
from sigcore.shared.timeutils import parse_iso_datetime, utcnow
from sigcore.webhooks.signatures import verify_twilio_signature

logger = get_logger(__name__)

API_VERSION = "2010-04-01"
PAGE_SIZE = 100
# Upper bound on history pages walked when deriving conversations
MAX_HISTORY_PAGES = 20

TWILIO_MESSAGE_STATUS_MAP: dict[str, MessageStatus] = {
    "accepted": MessageStatus.PENDING,
    "scheduled": MessageStatus.PENDING,
    "queued": MessageStatus.PENDING,
    "sending": MessageStatus.PENDING,
    "sent": MessageStatus.SENT,
    "delivered": MessageStatus.DELIVERED,
    "received": MessageStatus.DELIVERED,
    "read": MessageStatus.DELIVERED,
    "undelivered": MessageStatus.FAILED,
    "failed": MessageStatus.FAILED,
    "canceled": MessageStatus.FAILED,
}

TWILIO_CALL_STATUS_MAP: dict[str, CallStatus] = {
    "busy": CallStatus.MISSED,
    "no-answer": CallStatus.MISSED,
    "failed": CallStatus.MISSED,
    "canceled": CallStatus.CANCELLED,
}

# Call statuses after which Twilio sends no further progress
TWILIO_TERMINAL_CALL_STATUSES = {"completed", "busy", "no-answer", "failed", "canceled"}


def map_message_status(raw: str | None) -> MessageStatus:
    return TWILIO_MESSAGE_STATUS_MAP.get((raw or "").lower(), MessageStatus.PENDING)


def map_call_status(raw: str | None) -> CallStatus:
    return TWILIO_CALL_STATUS_MAP.get((raw or "").lower(), CallStatus.COMPLETED)


def conversation_key(our_number: str, participant: str) -> str:
    return f"{our_number}:{participant}"


def split_conversation_key(external_id: str) -> tuple[str, str]:
    our_number, _, participant = external_id.partition(":")
    return our_number, participant


def _parse_twilio_date(value: Any) -> datetime | None:
    """Twilio REST dates are RFC 2822; webhooks occasionally send ISO."""
    if not value:
        return None
    try:
        return parsedate_to_datetime(str(value))
    except (TypeError, ValueError):
        return parse_iso_datetime(value)


def _channel_of(address: str | None) -> ChannelType:
    if address and address.lower().startswith("whatsapp:"):
        return ChannelType.WHATSAPP
    return ChannelType.SMS


def _address(number: str, channel: ChannelType) -> str:
    if channel == ChannelType.WHATSAPP and not number.startswith("whatsapp:"):
        return f"whatsapp:{number}"
    return number


def _is_inbound(direction: str | None) -> bool:
    return (direction or "").lower() == "inbound"


def _twiml(s: str) -> str:
    return '<?xml version="1.0" encoding="UTF-8"?>\n<Response>\n' + s + "\n</Response>"


def _xml_escape(text: str) -> str:
    return (
        text.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
        .replace("'", "&apos;")
    )


def empty_twiml() -> str:
    return _twiml("")


def voicemail_twiml(
    greeting: str = "Hello, we are unable to take your call right now. Please leave a message after the tone.",
    recording_status_url: str | None = None,
) -> str:
    """TwiML answering an inbound call with a voicemail prompt."""
    callback = ""
    if recording_status_url:
        callback = (
            f' recordingStatusCallback="{_xml_escape(recording_status_url)}"'
            ' recordingStatusCallbackMethod="POST"'
        )
    return _twiml(
        f"  <Say>{_xml_escape(greeting)}</Say>\n"
        f'  <Record maxLength="120" playBeep="true" timeout="10"{callback}/>\n'
        "  <Say>We did not receive a recording. Goodbye.</Say>"
    )


class TwilioAdapter(ProviderAdapter):
    """Twilio REST + webhook adapter.

    Credentials: ``{"accountSid": ..., "authToken": ..., "phoneNumber": ...}``.
    """

    provider = ProviderType.TWILIO
    supported_channels = frozenset({ChannelType.SMS, ChannelType.VOICE, ChannelType.WHATSAPP})

    def _auth(self, credentials: dict[str, Any]) -> tuple[str, str]:
        account_sid = credentials.get("accountSid") or credentials.get("account_sid")
        auth_token = credentials.get("authToken") or credentials.get("auth_token")
        if not account_sid or not auth_token:
            raise ProviderAuthError("Twilio credentials missing accountSid/authToken", error_code="MISSING_CREDENTIALS")
        return str(account_sid), str(auth_token)

    def _account_url(self, account_sid: str, resource: str = "") -> str:
        base = self._settings.twilio_api_base_url.rstrip("/")
        url = f"{base}/{API_VERSION}/Accounts/{account_sid}"
        return f"{url}/{resource}" if resource else f"{url}.json"

    async def _list(
        self,
        credentials: dict[str, Any],
        resource: str,
        key: str,
        params: dict[str, Any],
        max_pages: int = MAX_HISTORY_PAGES,
    ) -> AsyncIterator[dict[str, Any]]:
        """Walk a Twilio list resource page by page via ``next_page_uri``."""
        account_sid, auth_token = self._auth(credentials)
        base = self._settings.twilio_api_base_url.rstrip("/")
        url: str | None = self._account_url(account_sid, resource)
        query: dict[str, Any] | None = {"PageSize": PAGE_SIZE, **params}
        pages = 0

        while url and pages < max_pages:
            data = await self._request("GET", url, params=query, auth=(account_sid, auth_token))
            for item in data.get(key) or []:
                yield item
            pages += 1
            next_uri = data.get("next_page_uri")
            # next_page_uri already carries the query string
            url = f"{base}{next_uri}" if next_uri else None
            query = None

    async def send_message(
        self,
        credentials: dict[str, Any],
        request: SendMessageRequest,
    ) -> SendMessageResult:
        """Send an SMS or WhatsApp message via Twilio.

        Raises:
            MessageSendError: If Twilio rejects the message.
        """
        account_sid, auth_token = self._auth(credentials)
        from_number = request.from_number or str(credentials.get("phoneNumber") or "")
        if not from_number:
            raise MessageSendError("No sender number configured", error_code="MISSING_FROM")

        form_data: dict[str, Any] = {
            "To": _address(request.to_number, request.channel),
            "From": _address(from_number, request.channel),
        }
        if request.template_id:
            form_data["ContentSid"] = request.template_id
        else:
            form_data["Body"] = request.body
        if request.status_callback_url:
            form_data["StatusCallback"] = request.status_callback_url

        logger.info(
            "Sending Twilio message",
            extra={"to": request.to_number, "channel": request.channel.value},
        )

        data = await self._request(
            "POST",
            self._account_url(account_sid, "Messages.json"),
            data=form_data,
            auth=(account_sid, auth_token),
            error_cls=MessageSendError,
        )
        sid = data.get("sid")
        if not sid:
            raise MessageSendError("Twilio response missing sid", provider_response=data)

        return SendMessageResult(
            provider_message_id=str(sid),
            status=map_message_status(data.get("status")),
            sent_at=_parse_twilio_date(data.get("date_created")) or utcnow(),
            raw_response=data,
        )

    def _message_from_record(self, record: dict[str, Any]) -> MessageData:
        direction = Direction.INBOUND if _is_inbound(record.get("direction")) else Direction.OUTBOUND
        error_code = record.get("error_code")
        return MessageData(
            provider_message_id=str(record.get("sid")),
            direction=direction,
            body=record.get("body") or "",
            from_number=normalize_phone_number(strip_channel_prefix(record.get("from"))),
            to_number=normalize_phone_number(strip_channel_prefix(record.get("to"))),
            status=map_message_status(record.get("status")),
            created_at=_parse_twilio_date(record.get("date_sent") or record.get("date_created")),
            channel=_channel_of(record.get("from")),
            error_code=str(error_code) if error_code else None,
            error_message=record.get("error_message"),
            metadata={
                "numSegments": record.get("num_segments"),
                "numMedia": record.get("num_media"),
                "rawStatus": record.get("status"),
            },
        )

    def _call_from_record(self, record: dict[str, Any]) -> CallData:
        direction = Direction.INBOUND if _is_inbound(record.get("direction")) else Direction.OUTBOUND
        try:
            duration = int(record.get("duration") or 0)
        except (TypeError, ValueError):
            duration = 0
        return CallData(
            provider_call_id=str(record.get("sid")),
            direction=direction,
            from_number=normalize_phone_number(strip_channel_prefix(record.get("from"))),
            to_number=normalize_phone_number(strip_channel_prefix(record.get("to"))),
            status=map_call_status(record.get("status")),
            duration=duration,
            started_at=_parse_twilio_date(record.get("start_time")),
            ended_at=_parse_twilio_date(record.get("end_time")),
            created_at=_parse_twilio_date(record.get("date_created")),
            metadata={"rawStatus": record.get("status")},
        )

    async def iter_conversations(
        self,
        credentials: dict[str, Any],
        *,
        phone_line_id: str | None = None,
        since: datetime | None = None,
    ) -> AsyncIterator[ConversationData]:
        """Derive threads from message history, newest activity first."""
        line_number: str | None = None
        if phone_line_id:
            lines = await self.get_phone_numbers(credentials)
            line_number = next((line.number for line in lines if line.id == phone_line_id), None)
            if line_number is None:
                logger.warning(
                    "Twilio phone line not found on account",
                    extra={"phone_line_id": phone_line_id},
                )
                return

        params: dict[str, Any] = {}
        if since is not None:
            params["DateSent>"] = since.date().isoformat()

        seen: set[str] = set()
        async for record in self._list(credentials, "Messages.json", "messages", params):
            message = self._message_from_record(record)
            if message.direction == Direction.INBOUND:
                our_number, participant = message.to_number, message.from_number
            else:
                our_number, participant = message.from_number, message.to_number
            if not our_number or not participant:
                continue
            if line_number and normalize_phone_number(line_number) != our_number:
                continue

            key = conversation_key(our_number, participant)
            if key in seen:
                continue
            seen.add(key)

            yield ConversationData(
                external_id=key,
                phone_number=our_number,
                participant_phone_number=participant,
                participant_phone_numbers=(participant,),
                phone_line_id=phone_line_id,
                created_at=message.created_at,
                last_message_at=message.created_at,
                last_activity_at=message.created_at,
                metadata={"channel": message.channel.value},
            )

    async def get_messages(
        self,
        credentials: dict[str, Any],
        conversation_external_id: str,
        phone_line_id: str | None = None,
        participant: str | None = None,
    ) -> list[MessageData]:
        our_number, key_participant = split_conversation_key(conversation_external_id)
        participant = participant or key_participant
        if not our_number or not participant:
            return []

        messages: dict[str, MessageData] = {}
        for params in ({"From": participant, "To": our_number}, {"From": our_number, "To": participant}):
            async for record in self._list(credentials, "Messages.json", "messages", params):
                message = self._message_from_record(record)
                messages[message.provider_message_id] = message

        return sorted(messages.values(), key=lambda m: m.created_at or utcnow())

    async def get_calls(
        self,
        credentials: dict[str, Any],
        conversation_external_id: str,
        phone_line_id: str | None = None,
        participant: str | None = None,
    ) -> list[CallData]:
        our_number, key_participant = split_conversation_key(conversation_external_id)
        participant = participant or key_participant
        if not our_number or not participant:
            return []

        calls: dict[str, CallData] = {}
        for params in ({"From": participant, "To": our_number}, {"From": our_number, "To": participant}):
            async for record in self._list(credentials, "Calls.json", "calls", params):
                call = self._call_from_record(record)
                calls[call.provider_call_id] = call

        return sorted(calls.values(), key=lambda c: c.created_at or utcnow())

    async def initiate_call(
        self,
        credentials: dict[str, Any],
        request: InitiateCallRequest,
    ) -> InitiateCallResult:
        """Initiate an outbound call via Twilio.

        Raises:
            CallInitiationError: If call initiation fails.
        """
        account_sid, auth_token = self._auth(credentials)
        from_number = request.from_number or str(credentials.get("phoneNumber") or "")
        form_data: dict[str, Any] = {"To": request.to_number, "From": from_number}
        if request.callback_url:
            form_data["Url"] = request.callback_url
        else:
            form_data["Twiml"] = _twiml("  <Pause length=\"1\"/>")
        if request.status_callback_url:
            form_data["StatusCallback"] = request.status_callback_url
            form_data["StatusCallbackMethod"] = "POST"
            form_data["StatusCallbackEvent"] = ["initiated", "ringing", "answered", "completed"]

        logger.info("Initiating Twilio call", extra={"to": request.to_number})

        data = await self._request(
            "POST",
            self._account_url(account_sid, "Calls.json"),
            data=form_data,
            auth=(account_sid, auth_token),
            error_cls=CallInitiationError,
        )
        sid = data.get("sid")
        if not sid:
            raise CallInitiationError("Twilio response missing sid", provider_response=data)

        return InitiateCallResult(
            provider_call_id=str(sid),
            status=str(data.get("status") or "queued"),
            created_at=_parse_twilio_date(data.get("date_created")) or utcnow(),
            raw_response=data,
        )

    async def validate_credentials(self, credentials: dict[str, Any]) -> bool:
        try:
            account_sid, auth_token = self._auth(credentials)
            await self._request("GET", self._account_url(account_sid), auth=(account_sid, auth_token))
        except ProviderAuthError:
            return False
        return True

    async def get_phone_numbers(self, credentials: dict[str, Any]) -> list[PhoneLine]:
        lines: list[PhoneLine] = []
        async for record in self._list(
            credentials,
            "IncomingPhoneNumbers.json",
            "incoming_phone_numbers",
            {},
        ):
            lines.append(
                PhoneLine(
                    id=str(record.get("sid")),
                    number=normalize_phone_number(record.get("phone_number")),
                    name=record.get("friendly_name"),
                )
            )
        return lines

    def parse_webhook(
        self,
        payload: dict[str, Any],
        kind: WebhookKind = WebhookKind.AUTO,
    ) -> ProviderWebhookEvent | None:
        """Parse a Twilio form-encoded callback."""
        if kind == WebhookKind.AUTO:
            kind = self._infer_kind(payload)

        if kind == WebhookKind.MESSAGE:
            return self._parse_inbound_message(payload)
        if kind == WebhookKind.MESSAGE_STATUS:
            return self._parse_message_status(payload)
        if kind in (WebhookKind.CALL, WebhookKind.CALL_STATUS):
            return self._parse_call(payload, kind)
        if kind == WebhookKind.RECORDING:
            return self._parse_recording(payload)
        return None

    @staticmethod
    def _infer_kind(payload: dict[str, Any]) -> WebhookKind:
        if payload.get("RecordingSid") and payload.get("RecordingUrl"):
            return WebhookKind.RECORDING
        if payload.get("CallSid"):
            return WebhookKind.CALL
        if payload.get("MessageStatus") and not payload.get("Body"):
            return WebhookKind.MESSAGE_STATUS
        return WebhookKind.MESSAGE

    def _parse_inbound_message(self, payload: dict[str, Any]) -> InboundMessageEvent:
        sid = payload.get("MessageSid") or payload.get("SmsSid")
        if not sid:
            raise WebhookParseError("Missing MessageSid", error_code="MISSING_SID", provider_response=payload)

        from_number = normalize_phone_number(strip_channel_prefix(payload.get("From")))
        to_number = normalize_phone_number(strip_channel_prefix(payload.get("To")))
        if not from_number or not to_number:
            raise WebhookParseError("Missing From/To", error_code="MISSING_ADDRESS", provider_response=payload)

        message = MessageData(
            provider_message_id=str(sid),
            direction=Direction.INBOUND,
            body=payload.get("Body") or "",
            from_number=from_number,
            to_number=to_number,
            status=MessageStatus.DELIVERED,
            created_at=None,
            channel=_channel_of(payload.get("From")),
            metadata={
                "numMedia": payload.get("NumMedia"),
                "numSegments": payload.get("NumSegments"),
                "fromCity": payload.get("FromCity"),
                "fromState": payload.get("FromState"),
                "fromCountry": payload.get("FromCountry"),
            },
        )
        return InboundMessageEvent(
            provider=self.provider,
            event_id=str(sid),
            event_type="message.received",
            raw_payload=dict(payload),
            message=message,
            participant_number=from_number,
            our_number=to_number,
            external_conversation_id=conversation_key(to_number, from_number),
        )

    def _parse_message_status(self, payload: dict[str, Any]) -> MessageStatusEvent:
        sid = payload.get("MessageSid") or payload.get("SmsSid")
        raw_status = payload.get("MessageStatus") or payload.get("SmsStatus") or ""
        if not sid or not raw_status:
            raise WebhookParseError("Missing MessageSid/MessageStatus", error_code="MISSING_SID", provider_response=payload)

        return MessageStatusEvent(
            provider=self.provider,
            event_id=f"{sid}:{raw_status}",
            event_type="message.status",
            raw_payload=dict(payload),
            provider_message_id=str(sid),
            status=map_message_status(raw_status),
            raw_status=str(raw_status),
            account_id=payload.get("AccountSid"),
            error_code=payload.get("ErrorCode"),
            error_message=payload.get("ErrorMessage"),
        )

    def _parse_call(self, payload: dict[str, Any], kind: WebhookKind) -> CallEvent:
        sid = payload.get("CallSid")
        if not sid:
            raise WebhookParseError("Missing CallSid", error_code="MISSING_SID", provider_response=payload)

        raw_status = str(payload.get("CallStatus") or "").lower()
        inbound = _is_inbound(payload.get("Direction"))
        from_number = normalize_phone_number(strip_channel_prefix(payload.get("From")))
        to_number = normalize_phone_number(strip_channel_prefix(payload.get("To")))
        our_number, participant = (to_number, from_number) if inbound else (from_number, to_number)
        ended = kind == WebhookKind.CALL_STATUS and raw_status in TWILIO_TERMINAL_CALL_STATUSES

        try:
            duration = int(payload.get("CallDuration") or payload.get("Duration") or 0)
        except (TypeError, ValueError):
            duration = 0

        recording_url = payload.get("RecordingUrl")
        call = CallData(
            provider_call_id=str(sid),
            direction=Direction.INBOUND if inbound else Direction.OUTBOUND,
            from_number=from_number,
            to_number=to_number,
            status=map_call_status(raw_status),
            duration=duration,
            started_at=None if ended else utcnow(),
            ended_at=utcnow() if ended else None,
            recording_url=recording_url,
            metadata={
                "rawStatus": raw_status,
                "callerCity": payload.get("CallerCity"),
                "callerCountry": payload.get("CallerCountry"),
                "recordingSid": payload.get("RecordingSid"),
            },
        )
        # Status callbacks repeat per transition; key on the transition
        event_id = f"{sid}:{raw_status}" if kind == WebhookKind.CALL_STATUS else str(sid)
        if ended:
            event_type = "call.missed" if call.status == CallStatus.MISSED else "call.completed"
        else:
            event_type = "call.started"
        return CallEvent(
            provider=self.provider,
            event_id=event_id,
            event_type=event_type,
            raw_payload=dict(payload),
            call=call,
            participant_number=participant,
            ended=ended,
            our_number=our_number,
            external_conversation_id=(
                conversation_key(our_number, participant) if our_number and participant else None
            ),
            account_id=payload.get("AccountSid"),
        )

    def _parse_recording(self, payload: dict[str, Any]) -> RecordingEvent:
        call_sid = payload.get("CallSid")
        recording_sid = payload.get("RecordingSid")
        recording_url = payload.get("RecordingUrl")
        if not call_sid or not recording_sid or not recording_url:
            raise WebhookParseError("Missing recording fields", error_code="MISSING_SID", provider_response=payload)
        try:
            duration = int(payload.get("RecordingDuration") or 0)
        except (TypeError, ValueError):
            duration = None
        return RecordingEvent(
            provider=self.provider,
            event_id=str(recording_sid),
            event_type="call.recording",
            raw_payload=dict(payload),
            provider_call_id=str(call_sid),
            recording_url=str(recording_url),
            duration=duration,
            account_id=payload.get("AccountSid"),
        )

    def verify_webhook_signature(
        self,
        secret: str,
        raw_body: bytes,
        signature: str | None,
        url: str,
        params: dict[str, Any],
    ) -> bool:
        """Validate X-Twilio-Signature; ``secret`` is the account auth token."""
        return verify_twilio_signature(secret, url, params, signature)
