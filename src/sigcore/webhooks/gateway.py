"""
Webhook ingestion gateway.

Per request: received -> signature-checked -> idempotency-checked -> dispatched.

Once an event is recorded in the idempotency ledger it counts as consumed.
A processing failure after that point is logged and the sender still gets a
2xx; the event is not retried.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from sigcore.conversations.phone_lines import PhoneLineResolver
from sigcore.conversations.reconciliation import ReconciliationEngine
from sigcore.integrations.credentials import CredentialsVault, PlaintextVault, decode_credentials
from sigcore.integrations.models import Integration
from sigcore.integrations.repository import IntegrationRepository, WorkspaceRepository
from sigcore.outbound.events import DomainEvent
from sigcore.providers.config import ProviderType
from sigcore.providers.interface import (
    CallEvent,
    InboundMessageEvent,
    MessageStatusEvent,
    ProviderAdapter,
    ProviderWebhookEvent,
    RecordingEvent,
    WebhookKind,
    WebhookParseError,
)
from sigcore.providers.registry import ProviderRegistry
from sigcore.shared.exceptions import (
    InvalidSignatureError,
    UnknownWebhookTokenError,
    ValidationError,
)
from sigcore.shared.logging import get_logger
from sigcore.webhooks.idempotency import IdempotencyStore

logger = get_logger(__name__)

# Header carrying each provider's signature (lower-case, as Starlette exposes them)
SIGNATURE_HEADERS: dict[ProviderType, tuple[str, ...]] = {
    ProviderType.TWILIO: ("x-twilio-signature",),
    ProviderType.OPENPHONE: ("openphone-signature", "x-openphone-signature"),
    ProviderType.WHATSAPP: ("x-bridge-signature",),
    ProviderType.MOCK: ("x-mock-signature",),
}


class IngestStatus(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    FAILED = "failed"


@dataclass(frozen=True)
class WebhookRequest:
    """Transport-level view of a provider callback."""

    raw_body: bytes
    payload: dict[str, Any]
    url: str
    signature: str | None = None
    # Form parameters covered by the signature (Twilio only)
    params: dict[str, Any] = field(default_factory=dict)


@dataclass
class IngestResult:
    """Outcome of one webhook delivery."""

    status: IngestStatus
    event: ProviderWebhookEvent | None = None
    workspace_ids: list[UUID] = field(default_factory=list)
    events: list[DomainEvent] = field(default_factory=list)

    def body(self) -> dict[str, Any]:
        """Response body for the provider; never carries internal detail."""
        return {"received": True, "status": self.status.value}


class WebhookGateway:
    """Verifies, deduplicates and dispatches provider webhooks.

    The gateway owns the session's transaction: the ledger entry is committed
    first, processing is committed (or rolled back) separately.
    """

    def __init__(
        self,
        session: AsyncSession,
        registry: ProviderRegistry,
        vault: CredentialsVault | None = None,
        resolver: PhoneLineResolver | None = None,
    ) -> None:
        """Initialize gateway.

        Args:
            session: Async database session for this request.
            registry: Provider adapters.
            vault: Credential decoder.
            resolver: Phone line cache shared across requests.
        """
        self._session = session
        self._registry = registry
        self._vault = vault or PlaintextVault()
        self._workspaces = WorkspaceRepository(session)
        self._integrations = IntegrationRepository(session)
        self._idempotency = IdempotencyStore(session)
        self._engine = ReconciliationEngine(session, registry, self._vault, resolver)

    def _signing_secret(self, provider: ProviderType, integration: Integration | None) -> str | None:
        """Secret the provider signs with; None means verification is skipped."""
        if integration is None:
            return None
        if provider == ProviderType.TWILIO:
            credentials = decode_credentials(integration, self._vault)
            token = credentials.get("authToken") or credentials.get("auth_token")
            return str(token) if token else None
        return integration.webhook_secret or None

    def _verify(
        self,
        adapter: ProviderAdapter,
        secret: str,
        request: WebhookRequest,
    ) -> bool:
        return adapter.verify_webhook_signature(
            secret,
            request.raw_body,
            request.signature,
            request.url,
            request.params,
        )

    def _parse(
        self,
        adapter: ProviderAdapter,
        request: WebhookRequest,
        kind: WebhookKind,
    ) -> ProviderWebhookEvent | None:
        try:
            return adapter.parse_webhook(request.payload, kind)
        except WebhookParseError as e:
            logger.warning(
                "Rejected malformed webhook",
                extra={"provider": adapter.provider.value, "error": str(e), "error_code": e.error_code},
            )
            raise ValidationError(message="Malformed webhook payload") from e

    async def handle(
        self,
        provider: ProviderType | str,
        token: str,
        request: WebhookRequest,
        kind: WebhookKind = WebhookKind.AUTO,
    ) -> IngestResult:
        """Process a callback addressed to a workspace webhook token.

        Raises:
            UnknownWebhookTokenError: If the token matches no workspace.
            ValidationError: If the provider is unknown or the payload malformed.
            InvalidSignatureError: If a secret is known and the signature does not match.
        """
        adapter = self._registry.get(provider)
        provider_type = adapter.provider

        workspace = await self._workspaces.get_by_webhook_token(token)
        if workspace is None:
            logger.warning("Unknown webhook token", extra={"provider": provider_type.value})
            raise UnknownWebhookTokenError()
        workspace_id = workspace.id

        integration = await self._integrations.find_active(workspace_id, provider_type)
        secret = self._signing_secret(provider_type, integration)
        if secret is not None and not self._verify(adapter, secret, request):
            logger.warning(
                "Invalid webhook signature",
                extra={"provider": provider_type.value, "workspace_id": str(workspace_id)},
            )
            raise InvalidSignatureError()

        event = self._parse(adapter, request, kind)
        if event is None:
            return IngestResult(status=IngestStatus.IGNORED, workspace_ids=[workspace_id])

        return await self._record_and_dispatch(event, [workspace_id], request.payload)

    async def handle_account_callback(
        self,
        provider: ProviderType | str,
        request: WebhookRequest,
        kind: WebhookKind,
    ) -> IngestResult:
        """Process a token-less callback (Twilio status and recording callbacks).

        The owning workspaces are those whose integration is bound to the
        account ID in the payload; lookups are restricted to them.

        Raises:
            InvalidSignatureError: If every candidate secret rejects the signature.
            ValidationError: If the payload is malformed.
        """
        adapter = self._registry.get(provider)
        provider_type = adapter.provider

        event = self._parse(adapter, request, kind)
        if event is None:
            return IngestResult(status=IngestStatus.IGNORED)

        account_id = getattr(event, "account_id", None) or ""
        integrations = await self._integrations.find_by_external_account(provider_type, account_id)
        if not integrations:
            logger.warning(
                "Callback for unknown provider account",
                extra={"provider": provider_type.value, "event_id": event.event_id},
            )
            return IngestResult(status=IngestStatus.IGNORED, event=event)

        workspace_ids: list[UUID] = []
        rejected = 0
        for integration in integrations:
            secret = self._signing_secret(provider_type, integration)
            if secret is not None and not self._verify(adapter, secret, request):
                rejected += 1
                continue
            workspace_ids.append(integration.workspace_id)
        if not workspace_ids:
            logger.warning(
                "Invalid webhook signature",
                extra={"provider": provider_type.value, "candidates": rejected},
            )
            raise InvalidSignatureError()

        return await self._record_and_dispatch(event, workspace_ids, request.payload)

    async def _record_and_dispatch(
        self,
        event: ProviderWebhookEvent,
        workspace_ids: list[UUID],
        payload: dict[str, Any],
    ) -> IngestResult:
        provider = event.provider.value
        recorded = await self._idempotency.record(
            provider,
            event.event_id,
            event_type=event.event_type,
            workspace_id=workspace_ids[0] if len(workspace_ids) == 1 else None,
            payload=payload,
        )
        if not recorded:
            logger.debug(
                "Skipping duplicate webhook",
                extra={"provider": provider, "event_id": event.event_id},
            )
            return IngestResult(status=IngestStatus.DUPLICATE, event=event, workspace_ids=workspace_ids)

        try:
            events = await self._dispatch(event, workspace_ids)
            await self._session.commit()
        except Exception:
            await self._session.rollback()
            logger.exception(
                "Webhook processing failed; event stays consumed",
                extra={"provider": provider, "event_id": event.event_id, "event_type": event.event_type},
            )
            return IngestResult(status=IngestStatus.FAILED, event=event, workspace_ids=workspace_ids)

        logger.info(
            "Webhook processed",
            extra={
                "provider": provider,
                "event_id": event.event_id,
                "event_type": event.event_type,
                "domain_events": [e.event_type.value for e in events],
            },
        )
        return IngestResult(
            status=IngestStatus.PROCESSED,
            event=event,
            workspace_ids=workspace_ids,
            events=events,
        )

    async def _dispatch(
        self,
        event: ProviderWebhookEvent,
        workspace_ids: list[UUID],
    ) -> list[DomainEvent]:
        match event:
            case InboundMessageEvent():
                outcome = await self._engine.reconcile_message(workspace_ids[0], event)
                return outcome.events
            case MessageStatusEvent():
                status_outcome = await self._engine.apply_message_status(
                    workspace_ids,
                    event.provider_message_id,
                    event.status,
                    error_code=event.error_code,
                    error_message=event.error_message,
                    raw_status=event.raw_status,
                )
                return status_outcome.events if status_outcome else []
            case CallEvent():
                if len(workspace_ids) == 1:
                    call_outcome = await self._engine.reconcile_call(workspace_ids[0], event)
                else:
                    call_outcome = await self._engine.apply_call_status(workspace_ids, event)
                return call_outcome.events if call_outcome else []
            case RecordingEvent():
                await self._engine.attach_recording(
                    workspace_ids,
                    event.provider_call_id,
                    event.recording_url,
                    event.duration,
                )
                return []
            case _:
                logger.info("No handler for webhook event", extra={"event_type": event.event_type})
                return []
