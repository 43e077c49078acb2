"""
Outbound messaging and calling.

Sends through the adapter connected for the requested channel and records
the result through the reconciliation engine, so a later status callback or
sync lands on the same rows.
"""

from typing import Any
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from sigcore.config import Settings, get_settings
from sigcore.conversations.models import Conversation, Message
from sigcore.conversations.phone_lines import PhoneLineResolver
from sigcore.conversations.reconciliation import (
    CallOutcome,
    MessageOutcome,
    ReconciliationEngine,
    call_event_data,
    conversation_event_data,
    converge_message_status,
    message_event_data,
)
from sigcore.conversations.repository import MessageRepository
from sigcore.integrations.credentials import CredentialsVault, PlaintextVault, decode_credentials
from sigcore.integrations.repository import IntegrationRepository
from sigcore.outbound.events import DomainEvent, EventType
from sigcore.providers.config import ChannelType, ProviderType
from sigcore.providers.interface import (
    CallData,
    CallStatus,
    Direction,
    InitiateCallRequest,
    MessageStatus,
    ProviderAdapter,
    ProviderError,
    SendMessageRequest,
)
from sigcore.providers.registry import ProviderRegistry
from sigcore.providers.twilio import conversation_key
from sigcore.shared.context import WorkspaceContext
from sigcore.shared.exceptions import NotFoundError, ValidationError
from sigcore.shared.logging import get_logger
from sigcore.shared.phone import looks_like_phone_line_id, normalize_phone_number

logger = get_logger(__name__)

TWILIO_SMS_STATUS_PATH = "/webhooks/twilio/sms/status"
TWILIO_VOICE_STATUS_PATH = "/webhooks/twilio/voice/status"


class MessagingService:
    """Send messages and start calls on behalf of a workspace.

    Shares the caller's session. ``send_message`` commits the pending
    message before the provider is contacted and commits the provider's
    answer in a second transaction; ``initiate_call`` never commits.
    """

    def __init__(
        self,
        session: AsyncSession,
        registry: ProviderRegistry,
        vault: CredentialsVault | None = None,
        resolver: PhoneLineResolver | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._session = session
        self._registry = registry
        self._vault = vault or PlaintextVault()
        self._settings = settings or get_settings()
        self._integrations = IntegrationRepository(session)
        self._messages = MessageRepository(session)
        self._engine = ReconciliationEngine(session, registry, self._vault, resolver)

    async def _pick(
        self,
        ctx: WorkspaceContext,
        channel: ChannelType,
        provider: ProviderType | None,
    ) -> tuple[ProviderAdapter, dict[str, Any]]:
        integrations = await self._integrations.list_active(ctx.workspace_id)
        if not integrations:
            raise NotFoundError(
                message="No active integration found",
                details={"workspace_id": str(ctx.workspace_id)},
            )
        by_provider = {i.provider: i for i in integrations}
        if provider is not None and provider not in by_provider:
            raise ValidationError(
                message=f"Provider {provider.value} is not connected",
                details={"provider": provider.value},
            )
        adapter = self._registry.for_channel(channel, list(by_provider), preferred=provider)
        return adapter, decode_credentials(by_provider[adapter.provider], self._vault)

    def _callback_url(self, provider: ProviderType, path: str) -> str | None:
        base = self._settings.public_base_url
        if provider != ProviderType.TWILIO or not base:
            return None
        return f"{base}{path}"

    async def _conversation(
        self,
        ctx: WorkspaceContext,
        provider: ProviderType,
        participant: str,
        from_number: str,
        channel: ChannelType,
    ) -> tuple[Conversation, bool]:
        line_id = from_number if looks_like_phone_line_id(from_number) else None
        our_number = None if line_id else normalize_phone_number(from_number)
        external_id = None
        if provider == ProviderType.TWILIO and our_number:
            external_id = conversation_key(our_number, participant)
        return await self._engine.find_or_create_conversation(
            ctx.workspace_id,
            provider,
            participant_number=participant,
            external_id=external_id,
            fallback_external_id=f"outbound_{uuid4().hex}",
            phone_line_id=line_id,
            our_number=our_number,
            channel=channel,
        )

    async def send_message(
        self,
        ctx: WorkspaceContext,
        to: str,
        body: str,
        channel: ChannelType = ChannelType.SMS,
        from_number: str | None = None,
        provider: ProviderType | None = None,
        template_id: str | None = None,
    ) -> MessageOutcome:
        """Send a message and persist it.

        A provider rejection is recorded on the message (status ``failed``)
        rather than raised.
        The pending row is committed before the provider is called, so a fast
        status callback always finds it.

        Args:
            ctx: Workspace context.
            to: Recipient, any phone format.
            body: Message text.
            channel: Channel to send on.
            from_number: Our number or provider line ID; the integration default otherwise.
            provider: Preferred provider.
            template_id: Provider template (WhatsApp via Twilio).

        Returns:
            Outcome carrying ``message.sent`` or ``message.failed``.

        Raises:
            NotFoundError: If the workspace has no active integration.
            ValidationError: If the recipient is invalid or no provider supports the channel.
        """
        participant = normalize_phone_number(to)
        if not participant:
            raise ValidationError(message="Invalid recipient phone number", details={"to": to})

        adapter, credentials = await self._pick(ctx, channel, provider)
        sender = from_number or str(credentials.get("phoneNumber") or credentials.get("phoneNumberId") or "")
        conversation, conversation_created = await self._conversation(
            ctx, adapter.provider, participant, sender, channel
        )

        message = Message(
            conversation_id=conversation.id,
            direction=Direction.OUTBOUND,
            channel=channel,
            status=MessageStatus.PENDING,
            body=body,
            from_number=conversation.phone_number or sender,
            to_number=participant,
            extra_metadata={"templateId": template_id} if template_id else {},
        )
        await self._messages.create(message)
        # No transaction stays open across the provider round trip
        await self._session.commit()

        try:
            result = await adapter.send_message(
                credentials,
                SendMessageRequest(
                    from_number=sender,
                    to_number=participant,
                    body=body,
                    channel=channel,
                    template_id=template_id,
                    status_callback_url=self._callback_url(adapter.provider, TWILIO_SMS_STATUS_PATH),
                ),
            )
        except ProviderError as e:
            message.status = MessageStatus.FAILED
            message.error_code = e.error_code
            message.error_message = str(e)
            event_type = EventType.MESSAGE_FAILED
            logger.warning(
                "Message send failed",
                extra={
                    "workspace_id": str(ctx.workspace_id),
                    "provider": adapter.provider.value,
                    "error_code": e.error_code,
                },
            )
        else:
            message.provider_message_id = result.provider_message_id
            message.status = converge_message_status(message.status, result.status)
            event_type = EventType.MESSAGE_SENT
            logger.info(
                "Message sent",
                extra={
                    "workspace_id": str(ctx.workspace_id),
                    "provider": adapter.provider.value,
                    "provider_message_id": result.provider_message_id,
                },
            )

        self._engine.advance(conversation, message_at=message.created_at)
        await self._session.commit()
        return MessageOutcome(
            conversation=conversation,
            message=message,
            conversation_created=conversation_created,
            message_created=True,
            events=[
                DomainEvent(
                    workspace_id=ctx.workspace_id,
                    event_type=event_type,
                    data=message_event_data(message, conversation),
                    created=True,
                    conversation=conversation_event_data(conversation, message.body),
                    conversation_created=conversation_created,
                )
            ],
        )

    async def initiate_call(
        self,
        ctx: WorkspaceContext,
        to: str,
        from_number: str | None = None,
        provider: ProviderType | None = None,
    ) -> CallOutcome:
        """Start an outbound call and record it as in progress.

        Raises:
            NotFoundError: If the workspace has no active integration.
            ValidationError: If the recipient is invalid or no provider supports voice.
            ProviderError: If the provider refuses the call.
        """
        participant = normalize_phone_number(to)
        if not participant:
            raise ValidationError(message="Invalid recipient phone number", details={"to": to})

        adapter, credentials = await self._pick(ctx, ChannelType.VOICE, provider)
        sender = from_number or str(credentials.get("phoneNumber") or credentials.get("phoneNumberId") or "")
        result = await adapter.initiate_call(
            credentials,
            InitiateCallRequest(
                from_number=sender,
                to_number=participant,
                status_callback_url=self._callback_url(adapter.provider, TWILIO_VOICE_STATUS_PATH),
            ),
        )

        conversation, conversation_created = await self._conversation(
            ctx, adapter.provider, participant, sender, ChannelType.VOICE
        )
        call, created, _ = await self._engine.upsert_call(
            conversation,
            CallData(
                provider_call_id=result.provider_call_id,
                direction=Direction.OUTBOUND,
                from_number=conversation.phone_number or sender,
                to_number=participant,
                status=CallStatus.COMPLETED,
                started_at=result.created_at,
                created_at=result.created_at,
                metadata={"providerStatus": result.status},
            ),
            ended=False,
        )
        logger.info(
            "Call initiated",
            extra={
                "workspace_id": str(ctx.workspace_id),
                "provider": adapter.provider.value,
                "provider_call_id": result.provider_call_id,
            },
        )
        outcome = CallOutcome(
            conversation=conversation,
            call=call,
            conversation_created=conversation_created,
            call_created=created,
        )
        if created:
            outcome.events.append(
                DomainEvent(
                    ctx.workspace_id,
                    EventType.CALL_STARTED,
                    call_event_data(call, conversation),
                    created=True,
                    conversation=conversation_event_data(conversation),
                    conversation_created=conversation_created,
                )
            )
        return outcome
