"""
SQLAlchemy models for workspaces and provider integrations.
"""

from datetime import datetime
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import (
    DateTime,
    ForeignKey,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from sigcore.providers.config import ProviderType
from sigcore.shared.database import Base, enum_type
from sigcore.shared.timeutils import utcnow


class IntegrationStatus(str, Enum):
    """Integration lifecycle status."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    ERROR = "error"


class Workspace(Base):
    """Tenant boundary. Managed by an external workspace service."""

    __tablename__ = "workspaces"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    webhook_token: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
        unique=True,
        index=True,
    )
    status_webhook_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )


class Integration(Base):
    """Provider connection for a workspace. One per (workspace, provider)."""

    __tablename__ = "integrations"
    __table_args__ = (
        UniqueConstraint("workspace_id", "provider", name="uq_integrations_workspace_provider"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    workspace_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("workspaces.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    provider: Mapped[ProviderType] = mapped_column(
        enum_type(ProviderType),
        nullable=False,
    )
    credentials_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    webhook_secret: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # Provider-side account id (Twilio AccountSid) used to route token-less callbacks
    external_account_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        index=True,
    )
    status: Mapped[IntegrationStatus] = mapped_column(
        enum_type(IntegrationStatus),
        nullable=False,
        default=IntegrationStatus.ACTIVE,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
    )
