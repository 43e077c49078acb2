"""
Domain events and the notifier capability.

Producers (webhook gateway, messaging, sync) publish through an injected
``EventNotifier``. The outbound dispatcher, the tenant forwarder and the
realtime hub implement it; ``NullNotifier`` is used where fan-out is
disabled, so call sites never check for ``None``.
"""

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Protocol
from uuid import UUID

from sigcore.shared.logging import get_logger
from sigcore.shared.timeutils import utcnow

logger = get_logger(__name__)


class EventType(str, Enum):
    """Outbound webhook event types."""

    MESSAGE_SENT = "message.sent"
    MESSAGE_DELIVERED = "message.delivered"
    MESSAGE_FAILED = "message.failed"
    MESSAGE_INBOUND = "message.inbound"
    CALL_STARTED = "call.started"
    CALL_COMPLETED = "call.completed"
    CALL_MISSED = "call.missed"


ALL_EVENT_TYPES: frozenset[str] = frozenset(e.value for e in EventType)
TEST_EVENT = "test"


@dataclass(frozen=True)
class DomainEvent:
    """Something that happened inside one workspace."""

    workspace_id: UUID
    event_type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utcnow)
    # Realtime context: ``created`` marks the row behind ``data`` as new in
    # this unit of work; ``conversation`` is its thread, set on creation only
    created: bool = False
    conversation: dict[str, Any] | None = None
    conversation_created: bool = False


class EventNotifier(Protocol):
    """Capability for publishing domain events. Must never raise."""

    async def publish(self, event: DomainEvent) -> None:
        ...


class NullNotifier:
    """Discards every event."""

    async def publish(self, event: DomainEvent) -> None:
        logger.debug(
            "Event discarded (no notifier)",
            extra={"event_type": event.event_type.value, "workspace_id": str(event.workspace_id)},
        )


class CompositeNotifier:
    """Publishes each event to several notifiers in order."""

    def __init__(self, notifiers: Sequence[EventNotifier]) -> None:
        self._notifiers = list(notifiers)

    async def publish(self, event: DomainEvent) -> None:
        for notifier in self._notifiers:
            await notifier.publish(event)


async def publish_all(notifier: EventNotifier, events: Sequence[DomainEvent]) -> None:
    """Publish events one by one; used as a FastAPI background task."""
    for event in events:
        await notifier.publish(event)
