"""
Conversation reconciliation engine.

Maps normalized provider events and synced records onto local Conversation,
Message and Call rows. All writes are upserts so that a replayed or reordered
event converges to the same final state.

Conversation matching order:
    1. ``(workspace_id, external_id)``
    2. ``(workspace_id, participant_key, phone_line_id)``
    3. participant alone, only when no phone line ID is known
    4. create
"""

from collections.abc import Collection, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from sigcore.conversations.models import Call, Conversation, Message
from sigcore.conversations.phone_lines import (
    UNRESOLVED,
    PhoneLineResolver,
    ResolvedLine,
    get_phone_line_resolver,
)
from sigcore.conversations.repository import (
    CallRepository,
    ConversationRepository,
    MessageRepository,
)
from sigcore.integrations.credentials import CredentialsVault, PlaintextVault, decode_credentials
from sigcore.integrations.repository import IntegrationRepository
from sigcore.outbound.events import DomainEvent, EventType
from sigcore.providers.config import ChannelType, ProviderType
from sigcore.providers.interface import (
    CallData,
    CallEvent,
    CallStatus,
    ConversationData,
    Direction,
    InboundMessageEvent,
    MessageData,
    MessageStatus,
    PhoneLine,
    ProviderError,
)
from sigcore.providers.registry import ProviderRegistry
from sigcore.shared.exceptions import NotFoundError, ValidationError
from sigcore.shared.logging import get_logger
from sigcore.shared.phone import looks_like_phone_line_id, normalize_phone_number, phone_variants
from sigcore.shared.timeutils import ensure_utc, utcnow

logger = get_logger(__name__)

# Delivered and failed are both terminal; between equals the latest report wins
MESSAGE_STATUS_RANK: dict[MessageStatus, int] = {
    MessageStatus.PENDING: 0,
    MessageStatus.SENT: 1,
    MessageStatus.DELIVERED: 2,
    MessageStatus.FAILED: 2,
}

_MISSED_CALL_STATUSES = frozenset({CallStatus.MISSED, CallStatus.VOICEMAIL, CallStatus.CANCELLED})


def converge_message_status(current: MessageStatus, incoming: MessageStatus) -> MessageStatus:
    """Status after applying ``incoming``; never moves backwards."""
    if MESSAGE_STATUS_RANK[incoming] >= MESSAGE_STATUS_RANK[current]:
        return incoming
    return current


def _real_number(value: str | None) -> str:
    if not value or looks_like_phone_line_id(value):
        return ""
    return normalize_phone_number(value)


def _isoformat(value: datetime | None) -> str | None:
    value = ensure_utc(value)
    return value.isoformat() if value else None


def message_event_data(message: Message, conversation: Conversation) -> dict[str, Any]:
    """Outbound webhook ``data`` for a message event."""
    return {
        "messageId": str(message.id),
        "conversationId": str(conversation.id),
        "providerMessageId": message.provider_message_id,
        "provider": conversation.provider.value,
        "channel": message.channel.value,
        "direction": message.direction.value,
        "status": message.status.value,
        "body": message.body,
        "from": message.from_number,
        "to": message.to_number,
        "errorCode": message.error_code,
        "errorMessage": message.error_message,
        "createdAt": _isoformat(message.created_at),
    }


def call_event_data(call: Call, conversation: Conversation) -> dict[str, Any]:
    """Outbound webhook ``data`` for a call event."""
    return {
        "callId": str(call.id),
        "conversationId": str(conversation.id),
        "providerCallId": call.provider_call_id,
        "provider": conversation.provider.value,
        "direction": call.direction.value,
        "status": call.status.value,
        "duration": call.duration,
        "from": call.from_number,
        "to": call.to_number,
        "recordingUrl": call.recording_url,
        "voicemailUrl": call.voicemail_url,
        "startedAt": _isoformat(call.started_at),
        "endedAt": _isoformat(call.ended_at),
    }


def conversation_event_data(conversation: Conversation, last_message: str | None = None) -> dict[str, Any]:
    """Realtime payload describing a conversation."""
    return {
        "id": str(conversation.id),
        "externalId": conversation.external_id,
        "provider": conversation.provider.value,
        "phoneNumber": conversation.phone_number,
        "phoneNumberName": (conversation.extra_metadata or {}).get("phoneNumberName"),
        "participantPhoneNumber": conversation.participant_phone_number,
        "contactId": conversation.contact_id,
        "name": conversation.name,
        "lastMessage": last_message,
        "lastMessageAt": _isoformat(conversation.last_message_at),
        "lastActivityAt": _isoformat(conversation.last_activity_at),
    }


@dataclass
class MessageOutcome:
    """Result of reconciling one message."""

    conversation: Conversation
    message: Message
    conversation_created: bool = False
    message_created: bool = False
    status_changed: bool = False
    events: list[DomainEvent] = field(default_factory=list)


@dataclass
class CallOutcome:
    """Result of reconciling one call."""

    conversation: Conversation
    call: Call
    conversation_created: bool = False
    call_created: bool = False
    events: list[DomainEvent] = field(default_factory=list)


@dataclass
class ParticipantHistory:
    """Everything known about one participant across all phone lines."""

    participant_key: str
    conversations: Sequence[Conversation]
    messages: Sequence[Message]
    calls: Sequence[Call]


class ReconciliationEngine:
    """Find-or-create logic for conversations, messages and calls.

    One engine per unit of work: it shares the caller's session and never
    commits. Credentials loaded for phone line resolution are cached for the
    engine's lifetime.
    """

    def __init__(
        self,
        session: AsyncSession,
        registry: ProviderRegistry,
        vault: CredentialsVault | None = None,
        resolver: PhoneLineResolver | None = None,
    ) -> None:
        """Initialize engine.

        Args:
            session: Async database session (owned by the caller).
            registry: Provider adapters, used for phone line lookups.
            vault: Credential decoder.
            resolver: Phone line cache; the process-wide one by default.
        """
        self._session = session
        self._registry = registry
        self._vault = vault or PlaintextVault()
        self._resolver = resolver or get_phone_line_resolver()
        self._conversations = ConversationRepository(session)
        self._messages = MessageRepository(session)
        self._calls = CallRepository(session)
        self._integrations = IntegrationRepository(session)
        self._credentials: dict[tuple[UUID, ProviderType], dict[str, Any]] = {}

    # ------------------------------------------------------------------
    # Phone lines
    # ------------------------------------------------------------------

    async def _load_credentials(self, workspace_id: UUID, provider: ProviderType) -> dict[str, Any]:
        key = (workspace_id, provider)
        if key not in self._credentials:
            integration = await self._integrations.find_active(workspace_id, provider)
            if integration is None:
                raise ProviderError("No active integration", error_code="NO_INTEGRATION")
            self._credentials[key] = decode_credentials(integration, self._vault)
        return self._credentials[key]

    async def _resolve_line(
        self,
        workspace_id: UUID,
        provider: ProviderType,
        phone_line_id: str,
    ) -> ResolvedLine:
        async def load() -> list[PhoneLine]:
            credentials = await self._load_credentials(workspace_id, provider)
            return await self._registry.get(provider).get_phone_numbers(credentials)

        return await self._resolver.resolve(workspace_id, phone_line_id, load)

    async def _line_info(
        self,
        workspace_id: UUID,
        provider: ProviderType,
        phone_line_id: str | None,
        our_number: str | None,
        known_name: str | None,
    ) -> ResolvedLine:
        """Our side of a thread, resolving the line ID only when something is missing."""
        number = _real_number(our_number)
        if not phone_line_id or (number and known_name):
            return ResolvedLine(number=number, name=known_name)
        resolved = await self._resolve_line(workspace_id, provider, phone_line_id)
        if resolved is UNRESOLVED:
            return ResolvedLine(number=number, name=known_name)
        return ResolvedLine(number=number or resolved.number, name=known_name or resolved.name)

    async def _repair_phone_number(
        self,
        conversation: Conversation,
        provider: ProviderType,
        phone_line_id: str | None,
        our_number: str | None,
    ) -> None:
        """Fix rows stored before their line could be resolved."""
        metadata = dict(conversation.extra_metadata or {})
        current = conversation.phone_number or ""

        if not phone_line_id:
            number = _real_number(our_number)
            if number and (not current or looks_like_phone_line_id(current)):
                conversation.phone_number = number
            return

        if current and not looks_like_phone_line_id(current) and metadata.get("phoneNumberName"):
            return

        line = await self._line_info(
            conversation.workspace_id,
            provider,
            phone_line_id,
            our_number,
            metadata.get("phoneNumberName"),
        )
        if line.number or looks_like_phone_line_id(current):
            conversation.phone_number = line.number
        metadata["phoneNumberId"] = phone_line_id
        metadata["phoneNumberName"] = line.name
        conversation.extra_metadata = metadata
        if not conversation.phone_line_id:
            conversation.phone_line_id = phone_line_id

        if conversation.phone_number != current:
            logger.info(
                "Repaired conversation phone number",
                extra={
                    "conversation_id": str(conversation.id),
                    "phone_line_id": phone_line_id,
                    "resolved": bool(conversation.phone_number),
                },
            )

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def find_or_create_conversation(
        self,
        workspace_id: UUID,
        provider: ProviderType,
        *,
        participant_number: str,
        external_id: str | None,
        fallback_external_id: str | None = None,
        phone_line_id: str | None = None,
        our_number: str | None = None,
        channel: ChannelType = ChannelType.SMS,
        name: str | None = None,
        participant_numbers: Sequence[str] = (),
        metadata: dict[str, Any] | None = None,
    ) -> tuple[Conversation, bool]:
        """Find the conversation an event belongs to, creating it if needed.

        Args:
            workspace_id: Owning workspace.
            provider: Provider the event came from.
            participant_number: Remote party, any format.
            external_id: Provider thread key, if known.
            fallback_external_id: Key used on creation when ``external_id`` is missing.
            phone_line_id: Provider line ID of our side.
            our_number: Our side as a phone number.
            channel: Channel of the triggering event.
            name: Display name from the provider.
            participant_numbers: All remote parties for group threads.
            metadata: Extra provider metadata stored on creation.

        Returns:
            Tuple of (conversation, created).

        Raises:
            ValidationError: If the participant number is empty.
        """
        participant_key = normalize_phone_number(participant_number)
        if not participant_key:
            raise ValidationError(
                message="Missing participant number",
                details={"external_id": external_id},
            )

        conversation: Conversation | None = None
        if external_id:
            conversation = await self._conversations.get_by_external_id(workspace_id, external_id)
        if conversation is None and phone_line_id:
            conversation = await self._conversations.find_by_participant_and_line(
                workspace_id, participant_key, phone_line_id, provider
            )
        if conversation is None and not phone_line_id:
            conversation = await self._conversations.find_by_participant(
                workspace_id, participant_key, provider, our_number=_real_number(our_number)
            )

        if conversation is not None:
            await self._repair_phone_number(conversation, provider, phone_line_id, our_number)
            return conversation, False

        new_key = external_id or fallback_external_id
        if not new_key:
            raise ValidationError(
                message="Cannot key new conversation",
                details={"participant": participant_key},
            )

        stored_metadata = dict(metadata or {})
        line = await self._line_info(
            workspace_id,
            provider,
            phone_line_id,
            our_number,
            stored_metadata.get("phoneNumberName"),
        )
        if phone_line_id:
            stored_metadata["phoneNumberId"] = phone_line_id
            stored_metadata["phoneNumberName"] = line.name

        participants = [normalize_phone_number(p) for p in participant_numbers if p]
        conversation = Conversation(
            workspace_id=workspace_id,
            external_id=new_key,
            provider=provider,
            channel=channel,
            phone_number=line.number,
            phone_line_id=phone_line_id,
            participant_phone_number=participant_key,
            participant_phone_numbers=[p for p in participants if p] or [participant_key],
            participant_key=participant_key,
            name=name,
            extra_metadata=stored_metadata,
        )
        try:
            async with self._session.begin_nested():
                await self._conversations.create(conversation)
        except IntegrityError:
            # Lost the race against a concurrent delivery for the same thread
            existing = await self._conversations.get_by_external_id(workspace_id, new_key)
            if existing is None:
                raise
            logger.info(
                "Conversation created concurrently, reusing",
                extra={"workspace_id": str(workspace_id), "conversation_id": str(existing.id), "external_id": new_key},
            )
            await self._repair_phone_number(existing, provider, phone_line_id, our_number)
            return existing, False
        logger.info(
            "Conversation created",
            extra={
                "workspace_id": str(workspace_id),
                "conversation_id": str(conversation.id),
                "provider": provider.value,
                "external_id": new_key,
                "has_phone_number": bool(line.number),
            },
        )
        return conversation, True

    async def upsert_conversation(
        self,
        workspace_id: UUID,
        provider: ProviderType,
        data: ConversationData,
        channel: ChannelType = ChannelType.SMS,
    ) -> tuple[Conversation, bool]:
        """Create or refresh a conversation from a provider listing (sync)."""
        conversation, created = await self.find_or_create_conversation(
            workspace_id,
            provider,
            participant_number=data.participant_phone_number,
            external_id=data.external_id,
            phone_line_id=data.phone_line_id,
            our_number=data.phone_number,
            channel=channel,
            name=data.name,
            participant_numbers=data.participant_phone_numbers,
            metadata=data.metadata,
        )

        if not created:
            if data.name:
                conversation.name = data.name
            if data.participant_phone_numbers:
                conversation.participant_phone_numbers = [
                    normalize_phone_number(p) for p in data.participant_phone_numbers if p
                ]
            metadata = dict(conversation.extra_metadata or {})
            for key, value in data.metadata.items():
                if value is not None:
                    metadata[key] = value
            conversation.extra_metadata = metadata

        self.advance(conversation, message_at=data.last_message_at, activity_at=data.last_activity_at)
        if data.created_at is not None and created:
            conversation.created_at = data.created_at
        await self._session.flush()
        return conversation, created

    @staticmethod
    def advance(
        conversation: Conversation,
        *,
        message_at: datetime | None = None,
        activity_at: datetime | None = None,
    ) -> None:
        """Move activity timestamps forward, never backwards."""
        message_at = ensure_utc(message_at)
        activity_at = ensure_utc(activity_at) or message_at
        current_message = ensure_utc(conversation.last_message_at)
        current_activity = ensure_utc(conversation.last_activity_at)
        if message_at and (current_message is None or message_at > current_message):
            conversation.last_message_at = message_at
        if activity_at and (current_activity is None or activity_at > current_activity):
            conversation.last_activity_at = activity_at

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def upsert_message(
        self,
        conversation: Conversation,
        data: MessageData,
    ) -> tuple[Message, bool, bool]:
        """Insert a message or refresh the existing row.

        Returns:
            Tuple of (message, created, status_changed).
        """
        existing = await self._messages.get_by_provider_id(
            [conversation.workspace_id], data.provider_message_id
        )
        if existing is not None:
            previous = existing.status
            existing.status = converge_message_status(previous, data.status)
            if data.error_code:
                existing.error_code = data.error_code
            if data.error_message:
                existing.error_message = data.error_message
            if data.body and not existing.body:
                existing.body = data.body
            # Provider-supplied timestamps are authoritative
            if data.created_at is not None:
                existing.created_at = data.created_at
            self.advance(conversation, message_at=data.created_at)
            await self._session.flush()
            return existing, False, existing.status != previous

        message = Message(
            conversation_id=conversation.id,
            provider_message_id=data.provider_message_id,
            direction=data.direction,
            channel=data.channel,
            status=data.status,
            body=data.body,
            from_number=data.from_number,
            to_number=data.to_number,
            error_code=data.error_code,
            error_message=data.error_message,
            extra_metadata=dict(data.metadata),
            created_at=data.created_at or utcnow(),
        )
        await self._messages.create(message)
        self.advance(conversation, message_at=message.created_at)
        await self._session.flush()
        return message, True, False

    async def reconcile_message(
        self,
        workspace_id: UUID,
        event: InboundMessageEvent,
    ) -> MessageOutcome:
        """Apply a message webhook event.

        Args:
            workspace_id: Workspace resolved from the webhook token.
            event: Normalized message event.

        Returns:
            The outcome, including domain events to publish.
        """
        data = event.message
        conversation, conversation_created = await self.find_or_create_conversation(
            workspace_id,
            event.provider,
            participant_number=event.participant_number,
            external_id=event.external_conversation_id,
            fallback_external_id=f"webhook_{data.provider_message_id}",
            phone_line_id=event.our_phone_line_id,
            our_number=event.our_number,
            channel=data.channel,
        )
        message, created, status_changed = await self.upsert_message(conversation, data)

        outcome = MessageOutcome(
            conversation=conversation,
            message=message,
            conversation_created=conversation_created,
            message_created=created,
            status_changed=status_changed,
        )
        if created:
            event_type = (
                EventType.MESSAGE_INBOUND if message.direction == Direction.INBOUND else EventType.MESSAGE_SENT
            )
            outcome.events.append(
                self._message_event(
                    event_type, message, conversation, created=True, conversation_created=conversation_created
                )
            )
        elif status_changed:
            outcome.events.extend(self._status_events(message, conversation))

        logger.info(
            "Message reconciled",
            extra={
                "workspace_id": str(workspace_id),
                "conversation_id": str(conversation.id),
                "provider_message_id": data.provider_message_id,
                "message_created": created,
                "conversation_created": conversation_created,
            },
        )
        return outcome

    async def apply_message_status(
        self,
        workspace_ids: Collection[UUID],
        provider_message_id: str,
        status: MessageStatus,
        error_code: str | None = None,
        error_message: str | None = None,
        raw_status: str | None = None,
    ) -> MessageOutcome | None:
        """Apply a delivery status to a known message.

        Args:
            workspace_ids: Workspaces the callback may belong to.
            provider_message_id: Provider message identifier.
            status: Normalized status.
            error_code: Provider error code, if any.
            error_message: Provider error text, if any.
            raw_status: Provider status string, kept in metadata.

        Returns:
            The outcome, or None if no message matched within those workspaces.
        """
        found = await self._messages.get_with_conversation(workspace_ids, provider_message_id)
        if found is None:
            logger.warning(
                "Status update for unknown message",
                extra={"provider_message_id": provider_message_id, "status": status.value},
            )
            return None

        message, conversation = found
        previous = message.status
        message.status = converge_message_status(previous, status)
        if error_code:
            message.error_code = str(error_code)
        if error_message:
            message.error_message = error_message
        if raw_status:
            message.extra_metadata = {**(message.extra_metadata or {}), "providerStatus": raw_status}
        await self._session.flush()

        outcome = MessageOutcome(
            conversation=conversation,
            message=message,
            status_changed=message.status != previous,
        )
        if outcome.status_changed:
            outcome.events.extend(self._status_events(message, conversation))
        return outcome

    def _message_event(
        self,
        event_type: EventType,
        message: Message,
        conversation: Conversation,
        *,
        created: bool = False,
        conversation_created: bool = False,
    ) -> DomainEvent:
        return DomainEvent(
            workspace_id=conversation.workspace_id,
            event_type=event_type,
            data=message_event_data(message, conversation),
            created=created,
            conversation=conversation_event_data(conversation, message.body) if created else None,
            conversation_created=conversation_created,
        )

    def _status_events(self, message: Message, conversation: Conversation) -> list[DomainEvent]:
        match message.status:
            case MessageStatus.DELIVERED:
                return [self._message_event(EventType.MESSAGE_DELIVERED, message, conversation)]
            case MessageStatus.FAILED:
                return [self._message_event(EventType.MESSAGE_FAILED, message, conversation)]
            case _:
                return []

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    @staticmethod
    def _refresh_call(call: Call, data: CallData, ended: bool) -> bool:
        """Apply new call data; returns True when the call transitions to ended."""
        if data.duration:
            call.duration = data.duration
        if data.recording_url:
            call.recording_url = data.recording_url
        if data.voicemail_url:
            call.voicemail_url = data.voicemail_url
        if data.started_at is not None and call.started_at is None:
            call.started_at = data.started_at
        if data.created_at is not None:
            call.created_at = data.created_at
        if data.metadata:
            call.extra_metadata = {**(call.extra_metadata or {}), **data.metadata}

        if not ended:
            return False
        call.status = data.status
        if call.ended_at is None:
            call.ended_at = data.ended_at or utcnow()
            return True
        if data.ended_at is not None:
            call.ended_at = data.ended_at
        return False

    async def upsert_call(
        self,
        conversation: Conversation,
        data: CallData,
        ended: bool = True,
    ) -> tuple[Call, bool, bool]:
        """Insert a call or refresh the existing row.

        Returns:
            Tuple of (call, created, ended_now).
        """
        existing = await self._calls.get_by_provider_id([conversation.workspace_id], data.provider_call_id)
        if existing is not None:
            ended_now = self._refresh_call(existing, data, ended)
            self.advance(conversation, activity_at=data.ended_at or data.started_at or data.created_at)
            await self._session.flush()
            return existing, False, ended_now

        created_at = data.created_at or data.started_at or utcnow()
        call = Call(
            conversation_id=conversation.id,
            provider_call_id=data.provider_call_id,
            direction=data.direction,
            status=data.status,
            duration=data.duration,
            from_number=data.from_number,
            to_number=data.to_number,
            recording_url=data.recording_url,
            voicemail_url=data.voicemail_url,
            started_at=data.started_at,
            ended_at=(data.ended_at or utcnow()) if ended else None,
            extra_metadata=dict(data.metadata),
            created_at=created_at,
        )
        await self._calls.create(call)
        self.advance(conversation, activity_at=call.ended_at or created_at)
        await self._session.flush()
        return call, True, ended

    async def reconcile_call(self, workspace_id: UUID, event: CallEvent) -> CallOutcome:
        """Apply a call webhook event."""
        data = event.call
        conversation, conversation_created = await self.find_or_create_conversation(
            workspace_id,
            event.provider,
            participant_number=event.participant_number,
            external_id=event.external_conversation_id,
            fallback_external_id=f"call_{data.provider_call_id}",
            phone_line_id=event.our_phone_line_id,
            our_number=event.our_number,
            channel=ChannelType.VOICE,
        )
        call, created, ended_now = await self.upsert_call(conversation, data, ended=event.ended)

        outcome = CallOutcome(
            conversation=conversation,
            call=call,
            conversation_created=conversation_created,
            call_created=created,
        )
        outcome.events.extend(self._call_events(call, conversation, created, ended_now, conversation_created))
        logger.info(
            "Call reconciled",
            extra={
                "workspace_id": str(workspace_id),
                "conversation_id": str(conversation.id),
                "provider_call_id": data.provider_call_id,
                "call_created": created,
                "ended": event.ended,
            },
        )
        return outcome

    async def apply_call_status(
        self,
        workspace_ids: Collection[UUID],
        event: CallEvent,
    ) -> CallOutcome | None:
        """Apply a call status callback to a known call; None when no call matched."""
        found = await self._calls.get_with_conversation(workspace_ids, event.call.provider_call_id)
        if found is None:
            return None
        call, conversation = found
        ended_now = self._refresh_call(call, event.call, event.ended)
        self.advance(conversation, activity_at=call.ended_at)
        await self._session.flush()
        outcome = CallOutcome(conversation=conversation, call=call)
        outcome.events.extend(self._call_events(call, conversation, False, ended_now))
        return outcome

    async def attach_recording(
        self,
        workspace_ids: Collection[UUID],
        provider_call_id: str,
        recording_url: str,
        duration: int | None = None,
    ) -> Call | None:
        found = await self._calls.get_with_conversation(workspace_ids, provider_call_id)
        if found is None:
            logger.warning("Recording for unknown call", extra={"provider_call_id": provider_call_id})
            return None
        call, _ = found
        call.recording_url = recording_url
        if duration and not call.duration:
            call.duration = duration
        await self._session.flush()
        return call

    @staticmethod
    def _call_events(
        call: Call,
        conversation: Conversation,
        created: bool,
        ended_now: bool,
        conversation_created: bool = False,
    ) -> list[DomainEvent]:
        if created and not ended_now:
            event_type = EventType.CALL_STARTED
        elif ended_now:
            event_type = EventType.CALL_MISSED if call.status in _MISSED_CALL_STATUSES else EventType.CALL_COMPLETED
        else:
            return []
        return [
            DomainEvent(
                conversation.workspace_id,
                event_type,
                call_event_data(call, conversation),
                created=created,
                conversation=conversation_event_data(conversation) if created else None,
                conversation_created=conversation_created,
            )
        ]

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    async def _get_conversation(self, workspace_id: UUID, conversation_id: UUID) -> Conversation:
        conversation = await self._conversations.get_by_id(workspace_id, conversation_id)
        if conversation is None:
            raise NotFoundError(
                message="Conversation not found",
                details={"conversation_id": str(conversation_id)},
            )
        return conversation

    async def _sibling_ids(self, conversation: Conversation) -> list[UUID]:
        siblings = await self._conversations.list_by_participant_keys(
            conversation.workspace_id, phone_variants(conversation.participant_key)
        )
        ids = [c.id for c in siblings]
        if conversation.id not in ids:
            ids.append(conversation.id)
        return ids

    async def get_conversation_messages(self, workspace_id: UUID, conversation_id: UUID) -> Sequence[Message]:
        """Messages of a conversation merged with every other thread of the same participant.

        Raises:
            NotFoundError: If the conversation does not belong to the workspace.
        """
        conversation = await self._get_conversation(workspace_id, conversation_id)
        return await self._messages.list_for_conversations(await self._sibling_ids(conversation))

    async def get_conversation_calls(self, workspace_id: UUID, conversation_id: UUID) -> Sequence[Call]:
        conversation = await self._get_conversation(workspace_id, conversation_id)
        return await self._calls.list_for_conversations(await self._sibling_ids(conversation))

    async def get_participant_history(self, workspace_id: UUID, phone: str) -> ParticipantHistory:
        """Union of all conversations, messages and calls for one participant.

        Raises:
            ValidationError: If ``phone`` normalizes to nothing.
        """
        participant_key = normalize_phone_number(phone)
        if not participant_key:
            raise ValidationError(message="Invalid phone number", details={"phone": phone})

        conversations = await self._conversations.list_by_participant_keys(workspace_id, phone_variants(phone))
        ids = [c.id for c in conversations]
        return ParticipantHistory(
            participant_key=participant_key,
            conversations=conversations,
            messages=await self._messages.list_for_conversations(ids),
            calls=await self._calls.list_for_conversations(ids),
        )
