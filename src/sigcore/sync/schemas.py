"""
Pydantic schemas for the sync API.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field, field_validator, model_validator

from sigcore.providers.config import ProviderType
from sigcore.shared.timeutils import ensure_utc


class SyncOptions(BaseModel):
    """Options for a full sync."""

    limit: int | None = Field(default=None, ge=1, description="Maximum conversations to sync")
    since: datetime | None = Field(default=None, description="Only conversations active at or after")
    until: datetime | None = Field(default=None, description="Only conversations active at or before")
    sync_messages: bool = Field(default=True, description="Also fetch messages and calls")
    force_refresh: bool = Field(default=False, description="Count refreshed existing records as synced")
    phone_line_id: str | None = Field(default=None, description="Only this provider phone line")
    only_saved_contacts: bool = Field(
        default=True,
        description="Only participants saved as named contacts at the provider",
    )
    provider: ProviderType | None = Field(default=None, description="Defaults to the first active integration")
    conversation_ids: list[str] | None = Field(
        default=None,
        description="Only these provider conversation IDs",
    )

    @field_validator("since", "until")
    @classmethod
    def as_utc(cls, v: datetime | None) -> datetime | None:
        return ensure_utc(v)

    @model_validator(mode="after")
    def validate_range(self) -> "SyncOptions":
        if self.since and self.until and self.since > self.until:
            raise ValueError("since must not be after until")
        return self


class QuickSyncRequest(BaseModel):
    conversation_ids: list[UUID] | None = Field(
        default=None,
        description="Local conversation IDs to re-check; the most recent ones when omitted",
    )


class SyncProgressResponse(BaseModel):
    status: str
    phase: str
    current: int
    total: int
    message: str
    started_at: str | None = None
    completed_at: str | None = None
    error: str | None = None
    result: dict[str, Any] | None = None


class CancelSyncResponse(BaseModel):
    cancelled: bool


class QuickSyncResponse(BaseModel):
    updated: int
    unchanged: int
    messages_updated: int
    calls_synced: int
    errors: int


class SingleSyncResponse(BaseModel):
    messages_synced: int
    calls_synced: int
    errors: int
