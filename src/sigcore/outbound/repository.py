"""
Repository for outbound webhook subscriptions.
"""

from collections.abc import Sequence
from typing import Any
from uuid import UUID

from sqlalchemy import case, delete, literal, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from sigcore.outbound.models import SubscriptionStatus, WebhookSubscription
from sigcore.shared.timeutils import utcnow

_MAX_ERROR_LENGTH = 1000


class SubscriptionRepository:
    """Repository for webhook subscription operations."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with database session.

        Args:
            session: Async database session.
        """
        self._session = session

    async def list_for_workspace(self, workspace_id: UUID) -> Sequence[WebhookSubscription]:
        stmt = (
            select(WebhookSubscription)
            .where(WebhookSubscription.workspace_id == workspace_id)
            .order_by(WebhookSubscription.created_at.desc())
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def list_active_for_event(self, workspace_id: UUID, event_type: str) -> list[WebhookSubscription]:
        """Active subscriptions of a workspace that listen to ``event_type``.

        Args:
            workspace_id: Owning workspace.
            event_type: Event name, e.g. ``message.inbound``.

        Returns:
            Matching subscriptions.
        """
        stmt = select(WebhookSubscription).where(
            WebhookSubscription.workspace_id == workspace_id,
            WebhookSubscription.status == SubscriptionStatus.ACTIVE,
        )
        result = await self._session.execute(stmt)
        # Event lists are JSON; filter here to stay portable across dialects
        return [s for s in result.scalars().all() if s.listens_to(event_type)]

    async def get(self, workspace_id: UUID, subscription_id: UUID) -> WebhookSubscription | None:
        stmt = select(WebhookSubscription).where(
            WebhookSubscription.id == subscription_id,
            WebhookSubscription.workspace_id == workspace_id,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def create(self, subscription: WebhookSubscription) -> WebhookSubscription:
        self._session.add(subscription)
        await self._session.flush()
        return subscription

    async def update(self, subscription: WebhookSubscription, **fields: Any) -> WebhookSubscription:
        """Apply field changes. Reactivation also clears the failure streak."""
        for name, value in fields.items():
            setattr(subscription, name, value)
        if fields.get("status") == SubscriptionStatus.ACTIVE:
            subscription.failure_count = 0
            subscription.last_error = None
        await self._session.flush()
        return subscription

    async def delete(self, subscription: WebhookSubscription) -> None:
        await self._session.execute(
            delete(WebhookSubscription).where(WebhookSubscription.id == subscription.id)
        )
        await self._session.flush()

    async def record_success(self, subscription_id: UUID) -> None:
        """Reset the failure streak after a delivered webhook."""
        now = utcnow()
        await self._session.execute(
            update(WebhookSubscription)
            .where(WebhookSubscription.id == subscription_id)
            .values(failure_count=0, last_success_at=now, last_error=None, updated_at=now)
        )

    async def record_failure(
        self,
        subscription_id: UUID,
        error: str,
        threshold: int,
    ) -> tuple[int, SubscriptionStatus] | None:
        """Atomically count a failed delivery, pausing at ``threshold``.

        The increment happens in SQL so concurrent failures are never lost.

        Returns:
            Tuple of (failure_count, status) after the update, or None if the
            subscription no longer exists.
        """
        now = utcnow()
        next_count = WebhookSubscription.failure_count + 1
        stmt = (
            update(WebhookSubscription)
            .where(WebhookSubscription.id == subscription_id)
            .values(
                failure_count=next_count,
                last_failure_at=now,
                last_error=error[:_MAX_ERROR_LENGTH],
                status=case(
                    (next_count >= threshold, literal(SubscriptionStatus.PAUSED.value)),
                    else_=WebhookSubscription.status,
                ),
                updated_at=now,
            )
            .returning(WebhookSubscription.failure_count, WebhookSubscription.status)
        )
        result = await self._session.execute(stmt)
        row = result.one_or_none()
        if row is None:
            return None
        return int(row[0]), SubscriptionStatus(row[1])
