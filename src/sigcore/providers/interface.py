"""
Provider adapter interface definition.

Providers disagree on identifiers (phone number vs. phone-number ID),
pagination and webhook shapes. Adapters absorb that variance and hand the
rest of the system one normalized vocabulary.
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

import httpx

from sigcore.providers.config import ChannelType, ProviderSettings, ProviderType
from sigcore.shared.logging import get_logger

logger = get_logger(__name__)


class Direction(str, Enum):
    """Message/call direction relative to the workspace."""

    INBOUND = "in"
    OUTBOUND = "out"


class MessageStatus(str, Enum):
    """Normalized message delivery status."""

    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"


class CallStatus(str, Enum):
    """Normalized call outcome."""

    COMPLETED = "completed"
    MISSED = "missed"
    VOICEMAIL = "voicemail"
    CANCELLED = "cancelled"


class WebhookKind(str, Enum):
    """Which provider callback a payload arrived on."""

    MESSAGE = "message"
    MESSAGE_STATUS = "message_status"
    CALL = "call"
    CALL_STATUS = "call_status"
    RECORDING = "recording"
    AUTO = "auto"


@dataclass(frozen=True)
class SendMessageRequest:
    """Request to send an outbound message."""

    from_number: str
    to_number: str
    body: str
    channel: ChannelType = ChannelType.SMS
    template_id: str | None = None
    status_callback_url: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SendMessageResult:
    """Provider acknowledgement of a sent message."""

    provider_message_id: str
    status: MessageStatus
    sent_at: datetime
    raw_response: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class InitiateCallRequest:
    """Request to start an outbound call."""

    from_number: str
    to_number: str
    callback_url: str | None = None
    status_callback_url: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class InitiateCallResult:
    """Provider acknowledgement of a started call."""

    provider_call_id: str
    status: str
    created_at: datetime
    raw_response: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PhoneLine:
    """A phone number owned by the provider account."""

    id: str
    number: str
    name: str | None = None


@dataclass(frozen=True)
class ContactData:
    """A provider-side address book entry."""

    id: str
    name: str | None
    phone_numbers: tuple[str, ...] = ()


@dataclass(frozen=True)
class ConversationData:
    """A provider conversation thread."""

    external_id: str
    phone_number: str
    participant_phone_number: str
    participant_phone_numbers: tuple[str, ...] = ()
    phone_line_id: str | None = None
    name: str | None = None
    created_at: datetime | None = None
    last_message_at: datetime | None = None
    last_activity_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class MessageData:
    """A provider message record."""

    provider_message_id: str
    direction: Direction
    body: str
    from_number: str
    to_number: str
    status: MessageStatus
    created_at: datetime | None = None
    channel: ChannelType = ChannelType.SMS
    error_code: str | None = None
    error_message: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CallData:
    """A provider call record."""

    provider_call_id: str
    direction: Direction
    from_number: str
    to_number: str
    status: CallStatus
    duration: int = 0
    started_at: datetime | None = None
    ended_at: datetime | None = None
    created_at: datetime | None = None
    recording_url: str | None = None
    voicemail_url: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, kw_only=True)
class ProviderWebhookEvent:
    """Base for normalized webhook events.

    ``event_id`` is the provider-assigned identifier used as the idempotency key.
    """

    provider: ProviderType
    event_id: str
    event_type: str
    raw_payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, kw_only=True)
class InboundMessageEvent(ProviderWebhookEvent):
    """A message observed by the provider (inbound, or outbound sent elsewhere)."""

    message: MessageData
    participant_number: str
    our_number: str | None = None
    our_phone_line_id: str | None = None
    external_conversation_id: str | None = None


@dataclass(frozen=True, kw_only=True)
class MessageStatusEvent(ProviderWebhookEvent):
    """Delivery status update for a known message."""

    provider_message_id: str
    status: MessageStatus
    raw_status: str
    account_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None


@dataclass(frozen=True, kw_only=True)
class CallEvent(ProviderWebhookEvent):
    """A call started, changed state or ended."""

    call: CallData
    participant_number: str
    ended: bool = True
    our_number: str | None = None
    our_phone_line_id: str | None = None
    external_conversation_id: str | None = None
    account_id: str | None = None


@dataclass(frozen=True, kw_only=True)
class RecordingEvent(ProviderWebhookEvent):
    """A recording became available for a call."""

    provider_call_id: str
    recording_url: str
    duration: int | None = None
    account_id: str | None = None


class ProviderError(Exception):
    """Base exception for provider errors."""

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        provider_response: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.provider_response = provider_response or {}


class ProviderAuthError(ProviderError):
    """Provider rejected the credentials."""


class ProviderRateLimitError(ProviderError):
    """Provider throttled the request."""


class MessageSendError(ProviderError):
    """Error while sending a message."""


class CallInitiationError(ProviderError):
    """Error during call initiation."""


class WebhookParseError(ProviderError):
    """Error parsing webhook event."""


class ProviderAdapter(ABC):
    """Abstract interface for communication providers.

    Adapters are shared across workspaces: credentials are passed per call and
    the underlying ``httpx.AsyncClient`` carries no tenant state.
    """

    provider: ProviderType
    supported_channels: frozenset[ChannelType] = frozenset()

    def __init__(
        self,
        settings: ProviderSettings,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize adapter.

        Args:
            settings: Provider endpoints and timeouts.
            http_client: Optional injected HTTP client (tests).
        """
        self._settings = settings
        self._client = http_client

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self._settings.http_timeout_seconds)
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    def supports_channel(self, channel: ChannelType) -> bool:
        return channel in self.supported_channels

    async def _request(
        self,
        method: str,
        url: str,
        *,
        error_cls: type[ProviderError] = ProviderError,
        **kwargs: Any,
    ) -> dict[str, Any]:
        """Perform a provider API call and decode its JSON body.

        Raises:
            ProviderAuthError: On 401/403.
            ProviderRateLimitError: On 429.
            ProviderError: (or ``error_cls``) on any other failure.
        """
        client = self._get_client()
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.error(
                "Provider request failed",
                extra={"provider": self.provider.value, "url": url, "error": str(e)},
            )
            raise error_cls(
                f"{self.provider.value} request failed: {e}",
                error_code="HTTP_ERROR",
            ) from e

        if response.status_code >= 400:
            error_data: dict[str, Any] = {}
            try:
                body = response.json()
                if isinstance(body, dict):
                    error_data = body
            except ValueError:
                error_data = {"text": response.text[:500]}

            message = str(error_data.get("message") or f"HTTP {response.status_code}")
            code = str(error_data.get("code") or response.status_code)
            logger.warning(
                "Provider returned error status",
                extra={
                    "provider": self.provider.value,
                    "url": url,
                    "status_code": response.status_code,
                    "error_code": code,
                },
            )
            if response.status_code in (401, 403):
                raise ProviderAuthError(message, error_code=code, provider_response=error_data)
            if response.status_code == 429:
                raise ProviderRateLimitError(message, error_code=code, provider_response=error_data)
            raise error_cls(message, error_code=code, provider_response=error_data)

        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError as e:
            raise error_cls(
                f"{self.provider.value} returned a non-JSON body",
                error_code="INVALID_RESPONSE",
            ) from e
        return data if isinstance(data, dict) else {"data": data}

    @abstractmethod
    async def send_message(
        self,
        credentials: dict[str, Any],
        request: SendMessageRequest,
    ) -> SendMessageResult:
        """Send a message through the provider."""
        ...

    @abstractmethod
    def iter_conversations(
        self,
        credentials: dict[str, Any],
        *,
        phone_line_id: str | None = None,
        since: datetime | None = None,
    ) -> AsyncIterator[ConversationData]:
        """Lazily walk provider conversation pages.

        Ordering is provider-defined and not guaranteed to be monotonic.
        """
        ...

    async def get_conversations(
        self,
        credentials: dict[str, Any],
        limit: int | None = None,
        phone_line_id: str | None = None,
        since: datetime | None = None,
    ) -> list[ConversationData]:
        """Collect conversations, stopping after ``limit`` items."""
        conversations: list[ConversationData] = []
        async for conversation in self.iter_conversations(
            credentials,
            phone_line_id=phone_line_id,
            since=since,
        ):
            conversations.append(conversation)
            if limit is not None and len(conversations) >= limit:
                break
        return conversations

    @abstractmethod
    async def get_messages(
        self,
        credentials: dict[str, Any],
        conversation_external_id: str,
        phone_line_id: str | None = None,
        participant: str | None = None,
    ) -> list[MessageData]:
        """List the messages of one conversation."""
        ...

    @abstractmethod
    async def get_calls(
        self,
        credentials: dict[str, Any],
        conversation_external_id: str,
        phone_line_id: str | None = None,
        participant: str | None = None,
    ) -> list[CallData]:
        """List the calls of one conversation."""
        ...

    async def get_contacts(self, credentials: dict[str, Any]) -> list[ContactData] | None:
        """Provider address book, or None when the provider has none."""
        return None

    @abstractmethod
    async def initiate_call(
        self,
        credentials: dict[str, Any],
        request: InitiateCallRequest,
    ) -> InitiateCallResult:
        """Start an outbound call."""
        ...

    @abstractmethod
    async def validate_credentials(self, credentials: dict[str, Any]) -> bool:
        """Check credentials against the provider without side effects."""
        ...

    @abstractmethod
    async def get_phone_numbers(self, credentials: dict[str, Any]) -> list[PhoneLine]:
        """List the phone lines owned by the account."""
        ...

    @abstractmethod
    def parse_webhook(
        self,
        payload: dict[str, Any],
        kind: WebhookKind = WebhookKind.AUTO,
    ) -> ProviderWebhookEvent | None:
        """Parse a webhook payload; None for event types we ignore.

        Raises:
            WebhookParseError: If the payload is malformed.
        """
        ...

    @abstractmethod
    def verify_webhook_signature(
        self,
        secret: str,
        raw_body: bytes,
        signature: str | None,
        url: str,
        params: dict[str, Any],
    ) -> bool:
        """Validate webhook signature for authenticity."""
        ...
