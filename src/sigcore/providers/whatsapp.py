"""
WhatsApp bridge adapter.

Talks to an external whatsapp-web bridge service that owns the browser
sessions. One bridge session per workspace, named by ``sessionId``.
"""

from collections.abc import AsyncIterator
from datetime import datetime, timezone
from typing import Any

from sigcore.providers.config import ChannelType, ProviderType
from sigcore.providers.interface import (
    CallData,
    CallInitiationError,
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
    ProviderError,
    ProviderWebhookEvent,
    SendMessageRequest,
    SendMessageResult,
    WebhookKind,
    WebhookParseError,
)
from sigcore.shared.logging import get_logger
from sigcore.shared.phone import normalize_phone_number
from sigcore.shared.timeutils import utcnow
from sigcore.webhooks.signatures import verify_hmac_sha256_hex

logger = get_logger(__name__)

# whatsapp-web ack levels
ACK_STATUS_MAP: dict[int, MessageStatus] = {
    -1: MessageStatus.FAILED,
    0: MessageStatus.PENDING,
    1: MessageStatus.SENT,
    2: MessageStatus.DELIVERED,
    3: MessageStatus.DELIVERED,
    4: MessageStatus.DELIVERED,
}


def _jid_to_number(jid: str | None) -> str:
    """``15551234567@c.us`` -> ``+15551234567``."""
    if not jid:
        return ""
    return normalize_phone_number(jid.split("@", 1)[0])


def _from_epoch(value: Any) -> datetime | None:
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


class WhatsAppBridgeAdapter(ProviderAdapter):
    """Adapter for the whatsapp-web bridge service.

    The bridge keeps no queryable history, so listing operations return empty
    results and history arrives through webhooks only.
    """

    provider = ProviderType.WHATSAPP
    supported_channels = frozenset({ChannelType.WHATSAPP})

    def _session_id(self, credentials: dict[str, Any]) -> str:
        session_id = credentials.get("sessionId") or credentials.get("session_id")
        if not session_id:
            raise ProviderAuthError("WhatsApp credentials missing sessionId", error_code="MISSING_CREDENTIALS")
        return str(session_id)

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._settings.whatsapp_service_api_key:
            headers["x-api-key"] = self._settings.whatsapp_service_api_key
        return headers

    def _url(self, session_id: str, path: str) -> str:
        return f"{self._settings.whatsapp_service_url.rstrip('/')}/{session_id}/{path}"

    async def send_message(
        self,
        credentials: dict[str, Any],
        request: SendMessageRequest,
    ) -> SendMessageResult:
        session_id = self._session_id(credentials)
        logger.info("Sending WhatsApp bridge message", extra={"to": request.to_number})

        data = await self._request(
            "POST",
            self._url(session_id, "send"),
            json={"to": request.to_number, "message": request.body},
            headers=self._headers(),
            error_cls=MessageSendError,
        )
        if not data.get("success") or not data.get("messageId"):
            raise MessageSendError(
                str(data.get("error") or "WhatsApp bridge refused the message"),
                error_code="BRIDGE_ERROR",
                provider_response=data,
            )
        return SendMessageResult(
            provider_message_id=str(data["messageId"]),
            status=MessageStatus.SENT,
            sent_at=utcnow(),
            raw_response=data,
        )

    async def iter_conversations(
        self,
        credentials: dict[str, Any],
        *,
        phone_line_id: str | None = None,
        since: datetime | None = None,
    ) -> AsyncIterator[ConversationData]:
        return
        yield  # pragma: no cover

    async def get_messages(
        self,
        credentials: dict[str, Any],
        conversation_external_id: str,
        phone_line_id: str | None = None,
        participant: str | None = None,
    ) -> list[MessageData]:
        return []

    async def get_calls(
        self,
        credentials: dict[str, Any],
        conversation_external_id: str,
        phone_line_id: str | None = None,
        participant: str | None = None,
    ) -> list[CallData]:
        return []

    async def initiate_call(
        self,
        credentials: dict[str, Any],
        request: InitiateCallRequest,
    ) -> InitiateCallResult:
        raise CallInitiationError("WhatsApp bridge does not support calls", error_code="UNSUPPORTED")

    async def get_status(self, credentials: dict[str, Any]) -> dict[str, Any]:
        """Bridge session status (``connected``, ``status``, ``phoneNumber``)."""
        session_id = self._session_id(credentials)
        return await self._request("GET", self._url(session_id, "status"), headers=self._headers())

    async def validate_credentials(self, credentials: dict[str, Any]) -> bool:
        try:
            status = await self.get_status(credentials)
        except ProviderError:
            return False
        return bool(status.get("connected")) or status.get("status") == "ready"

    async def get_phone_numbers(self, credentials: dict[str, Any]) -> list[PhoneLine]:
        status = await self.get_status(credentials)
        number = normalize_phone_number(status.get("phoneNumber"))
        if not number:
            return []
        return [PhoneLine(id=self._session_id(credentials), number=number, name="WhatsApp")]

    def parse_webhook(
        self,
        payload: dict[str, Any],
        kind: WebhookKind = WebhookKind.AUTO,
    ) -> ProviderWebhookEvent | None:
        """Parse a bridge ``{event, data}`` callback."""
        event = payload.get("event")
        data = payload.get("data")
        if not event or not isinstance(data, dict) or not data.get("id"):
            raise WebhookParseError("Malformed WhatsApp bridge webhook", error_code="MALFORMED", provider_response=payload)

        message_id = str(data["id"])
        if event == "message":
            from_me = bool(data.get("fromMe"))
            from_number = _jid_to_number(data.get("from"))
            to_number = _jid_to_number(data.get("to"))
            participant = to_number if from_me else from_number
            our_number = from_number if from_me else to_number
            if not participant:
                raise WebhookParseError("Missing participant number", error_code="MISSING_ADDRESS", provider_response=payload)
            message = MessageData(
                provider_message_id=message_id,
                direction=Direction.OUTBOUND if from_me else Direction.INBOUND,
                body=data.get("body") or "",
                from_number=from_number,
                to_number=to_number,
                status=MessageStatus.SENT if from_me else MessageStatus.DELIVERED,
                created_at=_from_epoch(data.get("timestamp")),
                channel=ChannelType.WHATSAPP,
                metadata={"hasMedia": bool(data.get("hasMedia"))},
            )
            return InboundMessageEvent(
                provider=self.provider,
                event_id=message_id,
                event_type="message.sent" if from_me else "message.received",
                raw_payload=payload,
                message=message,
                participant_number=participant,
                our_number=our_number or None,
                external_conversation_id=f"wa:{participant}",
            )

        if event == "message_ack":
            try:
                ack = int(data.get("ack"))
            except (TypeError, ValueError):
                raise WebhookParseError("Invalid ack level", error_code="MALFORMED", provider_response=payload) from None
            return MessageStatusEvent(
                provider=self.provider,
                event_id=f"{message_id}:ack{ack}",
                event_type="message.status",
                raw_payload=payload,
                provider_message_id=message_id,
                status=ACK_STATUS_MAP.get(ack, MessageStatus.PENDING),
                raw_status=str(ack),
            )

        logger.info("Unhandled WhatsApp bridge event", extra={"event": event})
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
