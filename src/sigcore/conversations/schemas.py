"""
Pydantic schemas for conversation history and outbound messaging.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from sigcore.providers.config import ChannelType, ProviderType
from sigcore.providers.interface import CallStatus, Direction, MessageStatus


class ConversationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    external_id: str
    provider: ProviderType
    channel: ChannelType
    phone_number: str
    phone_line_id: str | None
    participant_phone_number: str
    participant_phone_numbers: list[str]
    name: str | None
    contact_id: str | None
    last_message_at: datetime | None
    last_activity_at: datetime | None
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("extra_metadata", "metadata"),
    )
    created_at: datetime
    updated_at: datetime


class MessageResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    conversation_id: UUID
    provider_message_id: str | None
    direction: Direction
    channel: ChannelType
    status: MessageStatus
    body: str
    from_number: str
    to_number: str
    error_code: str | None
    error_message: str | None
    created_at: datetime


class CallResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    conversation_id: UUID
    provider_call_id: str | None
    direction: Direction
    status: CallStatus
    duration: int
    from_number: str
    to_number: str
    recording_url: str | None
    voicemail_url: str | None
    started_at: datetime | None
    ended_at: datetime | None
    created_at: datetime


class ParticipantHistoryResponse(BaseModel):
    participant: str
    conversations: list[ConversationResponse]
    messages: list[MessageResponse]
    calls: list[CallResponse]


class SendMessageRequest(BaseModel):
    """Schema for sending an outbound message."""

    to: str = Field(..., min_length=1, max_length=50, description="Recipient phone number")
    body: str = Field(..., min_length=1, max_length=1600)
    channel: ChannelType = Field(default=ChannelType.SMS)
    from_number: str | None = Field(
        default=None,
        max_length=64,
        description="Our number or provider phone line ID",
    )
    provider: ProviderType | None = None
    template_id: str | None = Field(default=None, max_length=255)


class InitiateCallRequest(BaseModel):
    """Schema for starting an outbound call."""

    to: str = Field(..., min_length=1, max_length=50)
    from_number: str | None = Field(default=None, max_length=64)
    provider: ProviderType | None = None
