"""
Repository for workspace and integration lookups.
"""

from collections.abc import Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from sigcore.integrations.models import Integration, IntegrationStatus, Workspace
from sigcore.providers.config import ProviderType
from sigcore.shared.exceptions import NotFoundError


class WorkspaceRepository:
    """Read-only access to workspaces owned by the external workspace service."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_id(self, workspace_id: UUID) -> Workspace | None:
        stmt = select(Workspace).where(Workspace.id == workspace_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_webhook_token(self, token: str) -> Workspace | None:
        """Resolve the owning workspace from a webhook path token."""
        if not token:
            return None
        stmt = select(Workspace).where(Workspace.webhook_token == token)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()


class IntegrationRepository:
    """Repository for provider integrations."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with database session.

        Args:
            session: Async database session.
        """
        self._session = session

    async def get_active(
        self,
        workspace_id: UUID,
        provider: ProviderType | None = None,
    ) -> Integration:
        """Get the active integration for a workspace.

        Args:
            workspace_id: Owning workspace.
            provider: Restrict to one provider; otherwise the oldest active one.

        Returns:
            The active integration.

        Raises:
            NotFoundError: If the workspace has no matching active integration.
        """
        integration = await self.find_active(workspace_id, provider)
        if integration is None:
            raise NotFoundError(
                message="No active integration found",
                details={
                    "workspace_id": str(workspace_id),
                    "provider": provider.value if provider else None,
                },
            )
        return integration

    async def find_active(
        self,
        workspace_id: UUID,
        provider: ProviderType | None = None,
    ) -> Integration | None:
        stmt = select(Integration).where(
            Integration.workspace_id == workspace_id,
            Integration.status == IntegrationStatus.ACTIVE,
        )
        if provider is not None:
            stmt = stmt.where(Integration.provider == provider)
        stmt = stmt.order_by(Integration.created_at.asc()).limit(1)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_active(self, workspace_id: UUID) -> Sequence[Integration]:
        stmt = (
            select(Integration)
            .where(
                Integration.workspace_id == workspace_id,
                Integration.status == IntegrationStatus.ACTIVE,
            )
            .order_by(Integration.created_at.asc())
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def find_by_external_account(
        self,
        provider: ProviderType,
        external_account_id: str,
    ) -> Sequence[Integration]:
        """Active integrations bound to a provider-side account (e.g. Twilio AccountSid)."""
        if not external_account_id:
            return []
        stmt = select(Integration).where(
            Integration.provider == provider,
            Integration.external_account_id == external_account_id,
            Integration.status == IntegrationStatus.ACTIVE,
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()
