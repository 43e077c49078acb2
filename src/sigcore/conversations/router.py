"""
API router for conversation history and outbound messaging.
"""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from sigcore.conversations.messaging import MessagingService
from sigcore.conversations.phone_lines import PhoneLineResolver
from sigcore.conversations.reconciliation import ReconciliationEngine
from sigcore.conversations.schemas import (
    CallResponse,
    ConversationResponse,
    InitiateCallRequest,
    MessageResponse,
    ParticipantHistoryResponse,
    SendMessageRequest,
)
from sigcore.dependencies import get_notifier, get_registry, get_resolver, get_vault
from sigcore.integrations.credentials import CredentialsVault
from sigcore.outbound.events import EventNotifier, publish_all
from sigcore.providers.registry import ProviderRegistry
from sigcore.shared.context import WorkspaceContext, get_workspace_context
from sigcore.shared.database import get_db_session

router = APIRouter(prefix="/api", tags=["conversations"])


def get_reconciliation_engine(
    session: Annotated[AsyncSession, Depends(get_db_session)],
    registry: Annotated[ProviderRegistry, Depends(get_registry)],
    vault: Annotated[CredentialsVault, Depends(get_vault)],
    resolver: Annotated[PhoneLineResolver, Depends(get_resolver)],
) -> ReconciliationEngine:
    """Dependency for read access through the reconciliation engine."""
    return ReconciliationEngine(session, registry, vault, resolver)


def get_messaging_service(
    session: Annotated[AsyncSession, Depends(get_db_session)],
    registry: Annotated[ProviderRegistry, Depends(get_registry)],
    vault: Annotated[CredentialsVault, Depends(get_vault)],
    resolver: Annotated[PhoneLineResolver, Depends(get_resolver)],
) -> MessagingService:
    """Dependency for messaging service."""
    return MessagingService(session, registry, vault, resolver)


@router.get("/conversations/{conversation_id}/messages", response_model=list[MessageResponse])
async def list_conversation_messages(
    conversation_id: UUID,
    ctx: Annotated[WorkspaceContext, Depends(get_workspace_context)],
    engine: Annotated[ReconciliationEngine, Depends(get_reconciliation_engine)],
) -> list[MessageResponse]:
    """Messages of the conversation and of every other line the participant used."""
    messages = await engine.get_conversation_messages(ctx.workspace_id, conversation_id)
    return [MessageResponse.model_validate(m) for m in messages]


@router.get("/conversations/{conversation_id}/calls", response_model=list[CallResponse])
async def list_conversation_calls(
    conversation_id: UUID,
    ctx: Annotated[WorkspaceContext, Depends(get_workspace_context)],
    engine: Annotated[ReconciliationEngine, Depends(get_reconciliation_engine)],
) -> list[CallResponse]:
    calls = await engine.get_conversation_calls(ctx.workspace_id, conversation_id)
    return [CallResponse.model_validate(c) for c in calls]


@router.get("/contacts/history", response_model=ParticipantHistoryResponse)
async def get_contact_history(
    ctx: Annotated[WorkspaceContext, Depends(get_workspace_context)],
    engine: Annotated[ReconciliationEngine, Depends(get_reconciliation_engine)],
    phone: Annotated[str, Query(min_length=1, description="Participant phone number, any format")],
) -> ParticipantHistoryResponse:
    history = await engine.get_participant_history(ctx.workspace_id, phone)
    return ParticipantHistoryResponse(
        participant=history.participant_key,
        conversations=[ConversationResponse.model_validate(c) for c in history.conversations],
        messages=[MessageResponse.model_validate(m) for m in history.messages],
        calls=[CallResponse.model_validate(c) for c in history.calls],
    )


@router.post("/messages", response_model=MessageResponse, status_code=status.HTTP_201_CREATED)
async def send_message(
    request: SendMessageRequest,
    background_tasks: BackgroundTasks,
    ctx: Annotated[WorkspaceContext, Depends(get_workspace_context)],
    service: Annotated[MessagingService, Depends(get_messaging_service)],
    session: Annotated[AsyncSession, Depends(get_db_session)],
    notifier: Annotated[EventNotifier, Depends(get_notifier)],
) -> MessageResponse:
    """Send a message. Provider rejections come back as a ``failed`` message."""
    outcome = await service.send_message(
        ctx,
        to=request.to,
        body=request.body,
        channel=request.channel,
        from_number=request.from_number,
        provider=request.provider,
        template_id=request.template_id,
    )
    await session.commit()
    background_tasks.add_task(publish_all, notifier, outcome.events)
    return MessageResponse.model_validate(outcome.message)


@router.post("/calls", response_model=CallResponse, status_code=status.HTTP_201_CREATED)
async def initiate_call(
    request: InitiateCallRequest,
    background_tasks: BackgroundTasks,
    ctx: Annotated[WorkspaceContext, Depends(get_workspace_context)],
    service: Annotated[MessagingService, Depends(get_messaging_service)],
    session: Annotated[AsyncSession, Depends(get_db_session)],
    notifier: Annotated[EventNotifier, Depends(get_notifier)],
) -> CallResponse:
    outcome = await service.initiate_call(
        ctx,
        to=request.to,
        from_number=request.from_number,
        provider=request.provider,
    )
    await session.commit()
    background_tasks.add_task(publish_all, notifier, outcome.events)
    return CallResponse.model_validate(outcome.call)
