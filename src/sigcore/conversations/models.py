"""
SQLAlchemy models for conversations, messages and calls.
"""

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from sigcore.providers.config import ChannelType, ProviderType
from sigcore.providers.interface import CallStatus, Direction, MessageStatus
from sigcore.shared.database import Base, JSONType, enum_type
from sigcore.shared.timeutils import utcnow


class Conversation(Base):
    """One logical thread between our number and a participant within a provider.

    A participant may own several rows (one per phone line); history queries
    merge them through ``participant_key``.
    """

    __tablename__ = "conversations"
    __table_args__ = (
        UniqueConstraint("workspace_id", "external_id", name="uq_conversations_workspace_external"),
        Index("ix_conversations_workspace_participant", "workspace_id", "participant_key"),
        Index("ix_conversations_workspace_line", "workspace_id", "participant_key", "phone_line_id"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    workspace_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("workspaces.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    external_id: Mapped[str] = mapped_column(String(255), nullable=False)
    provider: Mapped[ProviderType] = mapped_column(enum_type(ProviderType), nullable=False)
    channel: Mapped[ChannelType] = mapped_column(
        enum_type(ChannelType),
        nullable=False,
        default=ChannelType.SMS,
    )
    # Our side. Empty when the line could not be resolved; never a line ID.
    phone_number: Mapped[str] = mapped_column(String(50), nullable=False, default="")
    phone_line_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    participant_phone_number: Mapped[str] = mapped_column(String(50), nullable=False)
    participant_phone_numbers: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    participant_key: Mapped[str] = mapped_column(String(50), nullable=False)
    # Owned by an external contacts service
    contact_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_message_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_activity_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    extra_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSONType,
        nullable=False,
        default=dict,
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

    messages: Mapped[list["Message"]] = relationship(back_populates="conversation", lazy="raise")
    calls: Mapped[list["Call"]] = relationship(back_populates="conversation", lazy="raise")


class Message(Base):
    """A message within a conversation."""

    __tablename__ = "messages"
    __table_args__ = (
        Index("ix_messages_conversation_created", "conversation_id", "created_at"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    conversation_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    # Unique per workspace, enforced through the conversation join
    provider_message_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    direction: Mapped[Direction] = mapped_column(enum_type(Direction, length=8), nullable=False)
    channel: Mapped[ChannelType] = mapped_column(
        enum_type(ChannelType),
        nullable=False,
        default=ChannelType.SMS,
    )
    status: Mapped[MessageStatus] = mapped_column(
        enum_type(MessageStatus),
        nullable=False,
        default=MessageStatus.PENDING,
    )
    body: Mapped[str] = mapped_column(Text, nullable=False, default="")
    from_number: Mapped[str] = mapped_column(String(50), nullable=False, default="")
    to_number: Mapped[str] = mapped_column(String(50), nullable=False, default="")
    error_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    extra_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSONType,
        nullable=False,
        default=dict,
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

    conversation: Mapped[Conversation] = relationship(back_populates="messages", lazy="raise")


class Call(Base):
    """A call within a conversation."""

    __tablename__ = "calls"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    conversation_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    provider_call_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    direction: Mapped[Direction] = mapped_column(enum_type(Direction, length=8), nullable=False)
    status: Mapped[CallStatus] = mapped_column(
        enum_type(CallStatus),
        nullable=False,
        default=CallStatus.COMPLETED,
    )
    duration: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    from_number: Mapped[str] = mapped_column(String(50), nullable=False, default="")
    to_number: Mapped[str] = mapped_column(String(50), nullable=False, default="")
    recording_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    voicemail_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    extra_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSONType,
        nullable=False,
        default=dict,
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

    conversation: Mapped[Conversation] = relationship(back_populates="calls", lazy="raise")
