"""
Outbound webhook dispatcher.

Fans domain events out to every active subscription of the workspace that
listens to the event type. Deliveries run concurrently; one subscriber's
failure never blocks another. Failure streaks are counted in SQL and a
subscription is paused once the streak reaches the configured threshold.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any
from uuid import UUID

import anyio
import httpx
from sqlalchemy.exc import SQLAlchemyError

from sigcore.config import Settings, get_settings
from sigcore.outbound.events import TEST_EVENT, DomainEvent
from sigcore.outbound.models import SubscriptionStatus, WebhookSubscription
from sigcore.outbound.repository import SubscriptionRepository
from sigcore.shared.database import SessionFactory
from sigcore.shared.logging import get_logger, log_with_context
from sigcore.shared.timeutils import utcnow
from sigcore.webhooks.signatures import compute_hmac_sha256_hex

logger = get_logger(__name__)


@dataclass(frozen=True)
class DeliveryTarget:
    """Detached copy of the subscription fields a delivery needs."""

    subscription_id: UUID
    name: str
    url: str
    secret: str | None = None

    @classmethod
    def from_subscription(cls, subscription: WebhookSubscription) -> "DeliveryTarget":
        return cls(
            subscription_id=subscription.id,
            name=subscription.name,
            url=subscription.webhook_url,
            secret=subscription.secret or None,
        )


@dataclass
class DeliveryResult:
    success: bool
    status_code: int | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"success": self.success, "status_code": self.status_code, "error": self.error}


@dataclass
class DispatchSummary:
    attempted: int = 0
    delivered: int = 0
    failed: int = 0
    paused: int = 0


def encode_payload(event_name: str, timestamp: str, data: dict[str, Any]) -> bytes:
    """Serialize the envelope once; the signature covers exactly these bytes."""
    envelope = {"event": event_name, "timestamp": timestamp, "data": data}
    return json.dumps(envelope, separators=(",", ":"), default=str).encode("utf-8")


class OutboundWebhookDispatcher:
    """Delivers domain events to subscribed external endpoints.

    Implements the ``EventNotifier`` protocol: ``publish`` never raises.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        http_client: httpx.AsyncClient | None = None,
        settings: Settings | None = None,
    ) -> None:
        """Initialize dispatcher.

        Args:
            session_factory: Opens a database session context per dispatch.
            http_client: Shared HTTP client; one is created when omitted.
            settings: Application settings.
        """
        self._session_factory = session_factory
        self._settings = settings or get_settings()
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(self._settings.outbound_timeout_seconds),
        )

    def _header(self, name: str) -> str:
        return f"X-{self._settings.outbound_header_prefix}-{name}"

    def _headers(self, target: DeliveryTarget, event_name: str, timestamp: str, body: bytes) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            self._header("Event"): event_name,
            self._header("Timestamp"): timestamp,
        }
        if target.secret:
            headers[self._header("Signature")] = compute_hmac_sha256_hex(target.secret, body)
        return headers

    async def publish(self, event: DomainEvent) -> None:
        try:
            await self.dispatch(event)
        except Exception:
            logger.exception(
                "Outbound webhook dispatch failed",
                extra={"workspace_id": str(event.workspace_id), "event_type": event.event_type.value},
            )

    async def dispatch(self, event: DomainEvent) -> DispatchSummary:
        """Deliver ``event`` to every matching subscription.

        Args:
            event: Domain event to fan out.

        Returns:
            Per-dispatch counters.
        """
        summary = DispatchSummary()
        event_name = event.event_type.value

        try:
            async with self._session_factory() as session:
                subscriptions = await SubscriptionRepository(session).list_active_for_event(
                    event.workspace_id, event_name
                )
                targets = [DeliveryTarget.from_subscription(s) for s in subscriptions]
        except SQLAlchemyError:
            logger.exception(
                "Failed to load webhook subscriptions",
                extra={"workspace_id": str(event.workspace_id), "event_type": event_name},
            )
            return summary

        if not targets:
            logger.debug(
                "No subscriptions for event",
                extra={"workspace_id": str(event.workspace_id), "event_type": event_name},
            )
            return summary

        timestamp = event.occurred_at.isoformat()
        body = encode_payload(event_name, timestamp, event.data)
        results: dict[UUID, DeliveryResult] = {}

        async def deliver(target: DeliveryTarget) -> None:
            results[target.subscription_id] = await self._post(
                target, body, self._headers(target, event_name, timestamp, body)
            )

        async with anyio.create_task_group() as tg:
            for target in targets:
                tg.start_soon(deliver, target)

        summary.attempted = len(targets)
        await self._track(targets, results, event_name, summary)
        return summary

    async def _post(self, target: DeliveryTarget, body: bytes, headers: dict[str, str]) -> DeliveryResult:
        try:
            response = await self._client.post(target.url, content=body, headers=headers)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            return DeliveryResult(success=False, error=str(e) or e.__class__.__name__)
        if response.is_success:
            return DeliveryResult(success=True, status_code=response.status_code)
        return DeliveryResult(
            success=False,
            status_code=response.status_code,
            error=f"HTTP {response.status_code}",
        )

    async def _track(
        self,
        targets: list[DeliveryTarget],
        results: dict[UUID, DeliveryResult],
        event_name: str,
        summary: DispatchSummary,
    ) -> None:
        threshold = self._settings.outbound_failure_threshold
        try:
            async with self._session_factory() as session:
                repo = SubscriptionRepository(session)
                for target in targets:
                    result = results[target.subscription_id]
                    if result.success:
                        summary.delivered += 1
                        await repo.record_success(target.subscription_id)
                        continue

                    summary.failed += 1
                    log_with_context(
                        logger,
                        logging.WARNING,
                        "Webhook delivery failed",
                        subscription_id=str(target.subscription_id),
                        event_type=event_name,
                        status_code=result.status_code,
                        error=result.error,
                    )
                    updated = await repo.record_failure(target.subscription_id, result.error or "", threshold)
                    if updated is not None and updated[1] == SubscriptionStatus.PAUSED and updated[0] == threshold:
                        summary.paused += 1
                        logger.warning(
                            "Webhook subscription paused after repeated failures",
                            extra={
                                "subscription_id": str(target.subscription_id),
                                "subscription_name": target.name,
                                "failure_count": updated[0],
                            },
                        )
                await session.commit()
        except SQLAlchemyError:
            logger.exception("Failed to record webhook delivery outcome", extra={"event_type": event_name})

    async def send_test(self, subscription: WebhookSubscription) -> DeliveryResult:
        """Send a synthetic ``test`` event to one subscription.

        Counters are left untouched; the result is returned to the caller.
        """
        target = DeliveryTarget.from_subscription(subscription)
        timestamp = utcnow().isoformat()
        body = encode_payload(
            TEST_EVENT,
            timestamp,
            {"message": "Test webhook delivery", "subscriptionId": str(target.subscription_id)},
        )
        headers = self._headers(target, TEST_EVENT, timestamp, body)
        headers[self._header("Test")] = "true"
        result = await self._post(target, body, headers)
        logger.info(
            "Test webhook sent",
            extra={"subscription_id": str(target.subscription_id), "success": result.success},
        )
        return result

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
