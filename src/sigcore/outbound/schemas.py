"""
Pydantic schemas for webhook subscription management.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, HttpUrl, field_validator

from sigcore.outbound.events import ALL_EVENT_TYPES
from sigcore.outbound.models import SubscriptionStatus


def _check_events(events: list[str]) -> list[str]:
    unknown = sorted(set(events) - set(ALL_EVENT_TYPES))
    if unknown:
        raise ValueError(f"Unknown event types: {', '.join(unknown)}")
    # Keep order, drop repeats
    return list(dict.fromkeys(events))


class SubscriptionCreateRequest(BaseModel):
    """Schema for creating a webhook subscription."""

    name: str = Field(..., min_length=1, max_length=255)
    webhook_url: HttpUrl = Field(..., description="Endpoint receiving POSTed events")
    events: list[str] = Field(..., min_length=1, description="Event types to deliver")
    secret: str | None = Field(
        default=None,
        max_length=255,
        description="Shared secret for the HMAC-SHA256 signature header",
    )
    metadata: dict[str, Any] | None = None

    @field_validator("events")
    @classmethod
    def validate_events(cls, v: list[str]) -> list[str]:
        return _check_events(v)


class SubscriptionUpdateRequest(BaseModel):
    """Partial update. Setting ``status`` to ``active`` clears the failure streak."""

    name: str | None = Field(default=None, min_length=1, max_length=255)
    webhook_url: HttpUrl | None = None
    events: list[str] | None = Field(default=None, min_length=1)
    secret: str | None = Field(default=None, max_length=255)
    status: SubscriptionStatus | None = None
    metadata: dict[str, Any] | None = None

    @field_validator("events")
    @classmethod
    def validate_events(cls, v: list[str] | None) -> list[str] | None:
        return _check_events(v) if v is not None else None


class SubscriptionResponse(BaseModel):
    """Subscription as returned by the API; the secret is never echoed."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    workspace_id: UUID
    name: str
    webhook_url: str
    events: list[str]
    status: SubscriptionStatus
    has_secret: bool = False
    failure_count: int
    last_success_at: datetime | None
    last_failure_at: datetime | None
    last_error: str | None
    created_at: datetime
    updated_at: datetime


class SubscriptionTestResponse(BaseModel):
    success: bool
    status_code: int | None = None
    error: str | None = None
