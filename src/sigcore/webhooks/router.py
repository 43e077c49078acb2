"""
FastAPI router for inbound provider webhooks.

Literal status-callback routes are registered before the parameterized
``{token}`` routes so ``/webhooks/twilio/sms/status`` is never captured as a
token.
"""

import json
from typing import Annotated, Any

from fastapi import APIRouter, BackgroundTasks, Depends, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from sigcore.config import get_settings
from sigcore.conversations.phone_lines import PhoneLineResolver
from sigcore.dependencies import get_notifier, get_registry, get_resolver, get_vault
from sigcore.integrations.credentials import CredentialsVault
from sigcore.outbound.events import EventNotifier, publish_all
from sigcore.providers.config import ProviderType
from sigcore.providers.interface import CallEvent, Direction, WebhookKind
from sigcore.providers.registry import ProviderRegistry
from sigcore.providers.twilio import empty_twiml, voicemail_twiml
from sigcore.shared.database import get_db_session
from sigcore.shared.exceptions import ValidationError
from sigcore.shared.logging import get_logger
from sigcore.webhooks.gateway import (
    SIGNATURE_HEADERS,
    IngestResult,
    WebhookGateway,
    WebhookRequest,
)
from sigcore.webhooks.rate_limit import enforce_webhook_rate_limit

logger = get_logger(__name__)

router = APIRouter(
    prefix="/webhooks",
    tags=["webhooks"],
    dependencies=[Depends(enforce_webhook_rate_limit)],
)

RECORDING_STATUS_PATH = "/webhooks/twilio/recording-status"


def get_webhook_gateway(
    session: Annotated[AsyncSession, Depends(get_db_session)],
    registry: Annotated[ProviderRegistry, Depends(get_registry)],
    vault: Annotated[CredentialsVault, Depends(get_vault)],
    resolver: Annotated[PhoneLineResolver, Depends(get_resolver)],
) -> WebhookGateway:
    """Dependency for the ingestion gateway."""
    return WebhookGateway(session=session, registry=registry, vault=vault, resolver=resolver)


def _signed_url(request: Request) -> str:
    """URL the provider signed; rebuilt from the public base URL behind proxies."""
    base = get_settings().public_base_url
    if not base:
        return str(request.url)
    url = f"{base}{request.url.path}"
    if request.url.query:
        url = f"{url}?{request.url.query}"
    return url


def _signature(request: Request, provider: ProviderType) -> str | None:
    for header in SIGNATURE_HEADERS.get(provider, ()):
        value = request.headers.get(header)
        if value:
            return value
    return None


async def _read_request(request: Request, provider: ProviderType) -> WebhookRequest:
    """Read the raw body once and decode it as form or JSON."""
    raw_body = await request.body()
    content_type = request.headers.get("content-type", "")

    params: dict[str, Any] = {}
    if "application/x-www-form-urlencoded" in content_type or "multipart/form-data" in content_type:
        form = await request.form()
        params = {k: v for k, v in form.items() if isinstance(v, str)}
        payload: dict[str, Any] = dict(params)
    elif raw_body:
        try:
            decoded = json.loads(raw_body)
        except ValueError as e:
            raise ValidationError(message="Malformed webhook payload") from e
        if not isinstance(decoded, dict):
            raise ValidationError(message="Malformed webhook payload")
        payload = decoded
    else:
        payload = {}

    return WebhookRequest(
        raw_body=raw_body,
        payload=payload,
        url=_signed_url(request),
        signature=_signature(request, provider),
        params=params,
    )


def _schedule(background_tasks: BackgroundTasks, notifier: EventNotifier, result: IngestResult) -> None:
    if result.events:
        background_tasks.add_task(publish_all, notifier, list(result.events))


def _twiml_response(content: str) -> Response:
    return Response(content=content, media_type="application/xml")


# ----------------------------
# Token-less Twilio callbacks
# ----------------------------


@router.post("/twilio/sms/status")
async def twilio_sms_status(
    request: Request,
    background_tasks: BackgroundTasks,
    gateway: Annotated[WebhookGateway, Depends(get_webhook_gateway)],
    notifier: Annotated[EventNotifier, Depends(get_notifier)],
) -> dict[str, Any]:
    """Twilio message status callback (``{sid}:{status}`` deduplicated)."""
    webhook = await _read_request(request, ProviderType.TWILIO)
    result = await gateway.handle_account_callback(ProviderType.TWILIO, webhook, WebhookKind.MESSAGE_STATUS)
    _schedule(background_tasks, notifier, result)
    return result.body()


@router.post("/twilio/voice/status")
async def twilio_voice_status(
    request: Request,
    background_tasks: BackgroundTasks,
    gateway: Annotated[WebhookGateway, Depends(get_webhook_gateway)],
    notifier: Annotated[EventNotifier, Depends(get_notifier)],
) -> dict[str, Any]:
    """Twilio call status callback."""
    webhook = await _read_request(request, ProviderType.TWILIO)
    result = await gateway.handle_account_callback(ProviderType.TWILIO, webhook, WebhookKind.CALL_STATUS)
    _schedule(background_tasks, notifier, result)
    return result.body()


@router.post("/twilio/recording-status")
async def twilio_recording_status(
    request: Request,
    gateway: Annotated[WebhookGateway, Depends(get_webhook_gateway)],
) -> dict[str, Any]:
    """Twilio recording completion callback."""
    webhook = await _read_request(request, ProviderType.TWILIO)
    result = await gateway.handle_account_callback(ProviderType.TWILIO, webhook, WebhookKind.RECORDING)
    return result.body()


# ----------------------------
# Workspace token routes
# ----------------------------


@router.post("/twilio/sms/{token}")
async def twilio_sms(
    token: str,
    request: Request,
    background_tasks: BackgroundTasks,
    gateway: Annotated[WebhookGateway, Depends(get_webhook_gateway)],
    notifier: Annotated[EventNotifier, Depends(get_notifier)],
) -> Response:
    """Inbound Twilio SMS / WhatsApp message. Answers with empty TwiML."""
    webhook = await _read_request(request, ProviderType.TWILIO)
    result = await gateway.handle(ProviderType.TWILIO, token, webhook, WebhookKind.MESSAGE)
    _schedule(background_tasks, notifier, result)
    return _twiml_response(empty_twiml())


@router.post("/twilio/voice/{token}")
async def twilio_voice(
    token: str,
    request: Request,
    background_tasks: BackgroundTasks,
    gateway: Annotated[WebhookGateway, Depends(get_webhook_gateway)],
    notifier: Annotated[EventNotifier, Depends(get_notifier)],
) -> Response:
    """Inbound Twilio call. Answers with TwiML: voicemail for ringing inbound calls."""
    webhook = await _read_request(request, ProviderType.TWILIO)
    result = await gateway.handle(ProviderType.TWILIO, token, webhook, WebhookKind.CALL)
    _schedule(background_tasks, notifier, result)

    event = result.event
    if isinstance(event, CallEvent) and not event.ended and event.call.direction == Direction.INBOUND:
        base = get_settings().public_base_url
        callback = f"{base}{RECORDING_STATUS_PATH}" if base else None
        return _twiml_response(voicemail_twiml(recording_status_url=callback))
    return _twiml_response(empty_twiml())


@router.post("/openphone/{token}")
async def openphone_webhook(
    token: str,
    request: Request,
    background_tasks: BackgroundTasks,
    gateway: Annotated[WebhookGateway, Depends(get_webhook_gateway)],
    notifier: Annotated[EventNotifier, Depends(get_notifier)],
) -> dict[str, Any]:
    """OpenPhone ``{id, type, data: {object}}`` webhook."""
    webhook = await _read_request(request, ProviderType.OPENPHONE)
    result = await gateway.handle(ProviderType.OPENPHONE, token, webhook)
    _schedule(background_tasks, notifier, result)
    return result.body()


@router.post("/{provider}/{token}")
async def generic_webhook(
    provider: str,
    token: str,
    request: Request,
    background_tasks: BackgroundTasks,
    gateway: Annotated[WebhookGateway, Depends(get_webhook_gateway)],
    registry: Annotated[ProviderRegistry, Depends(get_registry)],
    notifier: Annotated[EventNotifier, Depends(get_notifier)],
) -> dict[str, Any]:
    """Any registered provider; JSON or form bodies."""
    adapter = registry.get(provider)
    webhook = await _read_request(request, adapter.provider)
    result = await gateway.handle(adapter.provider, token, webhook)
    _schedule(background_tasks, notifier, result)
    return result.body()
