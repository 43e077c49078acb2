"""
API router for outbound webhook subscriptions.
"""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from sigcore.dependencies import get_dispatcher
from sigcore.outbound.dispatcher import OutboundWebhookDispatcher
from sigcore.outbound.models import WebhookSubscription
from sigcore.outbound.repository import SubscriptionRepository
from sigcore.outbound.schemas import (
    SubscriptionCreateRequest,
    SubscriptionResponse,
    SubscriptionTestResponse,
    SubscriptionUpdateRequest,
)
from sigcore.shared.context import WorkspaceContext, get_workspace_context
from sigcore.shared.database import get_db_session
from sigcore.shared.exceptions import NotFoundError
from sigcore.shared.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/api/webhook-subscriptions", tags=["webhook-subscriptions"])


def get_subscription_repository(
    session: Annotated[AsyncSession, Depends(get_db_session)],
) -> SubscriptionRepository:
    """Dependency for the subscription repository."""
    return SubscriptionRepository(session)


def _to_response(subscription: WebhookSubscription) -> SubscriptionResponse:
    response = SubscriptionResponse.model_validate(subscription)
    response.has_secret = bool(subscription.secret)
    return response


async def _get_or_404(
    repo: SubscriptionRepository,
    ctx: WorkspaceContext,
    subscription_id: UUID,
) -> WebhookSubscription:
    subscription = await repo.get(ctx.workspace_id, subscription_id)
    if subscription is None:
        raise NotFoundError(message=f"Webhook subscription {subscription_id} not found")
    return subscription


@router.get("", response_model=list[SubscriptionResponse])
async def list_subscriptions(
    ctx: Annotated[WorkspaceContext, Depends(get_workspace_context)],
    repo: Annotated[SubscriptionRepository, Depends(get_subscription_repository)],
) -> list[SubscriptionResponse]:
    subscriptions = await repo.list_for_workspace(ctx.workspace_id)
    return [_to_response(s) for s in subscriptions]


@router.post("", response_model=SubscriptionResponse, status_code=status.HTTP_201_CREATED)
async def create_subscription(
    request: SubscriptionCreateRequest,
    ctx: Annotated[WorkspaceContext, Depends(get_workspace_context)],
    repo: Annotated[SubscriptionRepository, Depends(get_subscription_repository)],
    session: Annotated[AsyncSession, Depends(get_db_session)],
) -> SubscriptionResponse:
    """Register an endpoint for a set of event types."""
    subscription = await repo.create(
        WebhookSubscription(
            workspace_id=ctx.workspace_id,
            name=request.name,
            webhook_url=str(request.webhook_url),
            events=request.events,
            secret=request.secret,
            extra_metadata=request.metadata,
        )
    )
    await session.commit()

    logger.info(
        "Webhook subscription created",
        extra={
            "workspace_id": str(ctx.workspace_id),
            "subscription_id": str(subscription.id),
            "events": subscription.events,
        },
    )
    return _to_response(subscription)


@router.get("/{subscription_id}", response_model=SubscriptionResponse)
async def get_subscription(
    subscription_id: UUID,
    ctx: Annotated[WorkspaceContext, Depends(get_workspace_context)],
    repo: Annotated[SubscriptionRepository, Depends(get_subscription_repository)],
) -> SubscriptionResponse:
    return _to_response(await _get_or_404(repo, ctx, subscription_id))


@router.patch("/{subscription_id}", response_model=SubscriptionResponse)
async def update_subscription(
    subscription_id: UUID,
    request: SubscriptionUpdateRequest,
    ctx: Annotated[WorkspaceContext, Depends(get_workspace_context)],
    repo: Annotated[SubscriptionRepository, Depends(get_subscription_repository)],
    session: Annotated[AsyncSession, Depends(get_db_session)],
) -> SubscriptionResponse:
    """Partially update a subscription. Reactivating resets its failure count."""
    subscription = await _get_or_404(repo, ctx, subscription_id)

    fields = request.model_dump(exclude_unset=True)
    if "webhook_url" in fields and fields["webhook_url"] is not None:
        fields["webhook_url"] = str(fields["webhook_url"])
    if "metadata" in fields:
        fields["extra_metadata"] = fields.pop("metadata")

    subscription = await repo.update(subscription, **fields)
    await session.commit()

    logger.info(
        "Webhook subscription updated",
        extra={"subscription_id": str(subscription_id), "fields": sorted(fields)},
    )
    return _to_response(subscription)


@router.delete("/{subscription_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_subscription(
    subscription_id: UUID,
    ctx: Annotated[WorkspaceContext, Depends(get_workspace_context)],
    repo: Annotated[SubscriptionRepository, Depends(get_subscription_repository)],
    session: Annotated[AsyncSession, Depends(get_db_session)],
) -> Response:
    subscription = await _get_or_404(repo, ctx, subscription_id)
    await repo.delete(subscription)
    await session.commit()
    logger.info("Webhook subscription deleted", extra={"subscription_id": str(subscription_id)})
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{subscription_id}/test", response_model=SubscriptionTestResponse)
async def test_subscription(
    subscription_id: UUID,
    ctx: Annotated[WorkspaceContext, Depends(get_workspace_context)],
    repo: Annotated[SubscriptionRepository, Depends(get_subscription_repository)],
    dispatcher: Annotated[OutboundWebhookDispatcher, Depends(get_dispatcher)],
) -> SubscriptionTestResponse:
    """Send a synthetic ``test`` event and report the endpoint's answer."""
    subscription = await _get_or_404(repo, ctx, subscription_id)
    result = await dispatcher.send_test(subscription)
    return SubscriptionTestResponse(**result.to_dict())
