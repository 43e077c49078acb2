"""
Idempotency store for inbound provider webhooks.

The ledger is check-and-record in one step: the insert either succeeds (first
delivery) or hits the unique constraint (duplicate, including the concurrent
race), never both.
"""

from datetime import timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from sigcore.shared.logging import get_logger
from sigcore.shared.timeutils import utcnow
from sigcore.webhooks.models import WebhookEvent

logger = get_logger(__name__)


class IdempotencyStore:
    """Ledger of accepted ``(provider, external_id)`` pairs.

    ``record`` commits on its own so the entry is durable before any
    processing starts; use it before other writes in the same session.
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize store with database session.

        Args:
            session: Async database session.
        """
        self._session = session

    async def record(
        self,
        provider: str,
        external_id: str,
        event_type: str | None = None,
        workspace_id: UUID | None = None,
        payload: dict[str, Any] | None = None,
    ) -> bool:
        """Record an event if it has not been seen.

        Args:
            provider: Provider name.
            external_id: Provider-assigned event identifier.
            event_type: Provider event type, informational.
            workspace_id: Owning workspace, informational.
            payload: Raw payload, kept for diagnostics until cleanup.

        Returns:
            True if newly recorded, False if it was already present.
        """
        self._session.add(
            WebhookEvent(
                provider=provider,
                external_id=external_id,
                event_type=event_type,
                workspace_id=workspace_id,
                payload=payload,
                processed_at=utcnow(),
            )
        )
        try:
            await self._session.commit()
        except IntegrityError:
            await self._session.rollback()
            logger.debug(
                "Duplicate webhook event",
                extra={"provider": provider, "external_id": external_id},
            )
            return False

        logger.debug(
            "Webhook event recorded",
            extra={"provider": provider, "external_id": external_id, "event_type": event_type},
        )
        return True

    async def is_duplicate(
        self,
        provider: str,
        external_id: str,
        event_type: str | None = None,
        workspace_id: UUID | None = None,
        payload: dict[str, Any] | None = None,
    ) -> bool:
        """Inverse of ``record``: True when the event was already processed."""
        return not await self.record(provider, external_id, event_type, workspace_id, payload)

    async def exists(self, provider: str, external_id: str) -> bool:
        stmt = select(func.count(WebhookEvent.id)).where(
            WebhookEvent.provider == provider,
            WebhookEvent.external_id == external_id,
        )
        result = await self._session.execute(stmt)
        return (result.scalar() or 0) > 0

    async def cleanup(self, older_than_days: int = 7) -> int:
        """Delete ledger rows older than the retention window.

        Returns:
            Number of rows deleted.
        """
        cutoff = utcnow() - timedelta(days=older_than_days)
        result = await self._session.execute(
            delete(WebhookEvent).where(WebhookEvent.processed_at < cutoff)
        )
        await self._session.commit()
        deleted = result.rowcount or 0
        if deleted:
            logger.info(
                "Cleaned up webhook events",
                extra={"deleted": deleted, "older_than_days": older_than_days},
            )
        return deleted
