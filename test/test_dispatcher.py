"""
Tests for outbound webhook fan-out and failure tracking.
"""

import hashlib
import hmac
import json
from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager
from uuid import UUID

import httpx
import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from sigcore.config import Settings
from sigcore.integrations.models import Workspace
from sigcore.outbound.dispatcher import OutboundWebhookDispatcher
from sigcore.outbound.events import DomainEvent, EventType
from sigcore.outbound.models import SubscriptionStatus, WebhookSubscription
from sigcore.shared.database import DatabaseManager

Handler = Callable[[httpx.Request], httpx.Response]


def make_dispatcher(db_manager: DatabaseManager, handler: Handler, threshold: int = 10) -> OutboundWebhookDispatcher:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OutboundWebhookDispatcher(
        db_manager.session,
        client,
        Settings(outbound_failure_threshold=threshold),
    )


async def add_subscription(
    session: AsyncSession,
    workspace_id: UUID,
    url: str,
    events: list[str],
    secret: str | None = None,
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
) -> WebhookSubscription:
    subscription = WebhookSubscription(
        workspace_id=workspace_id,
        name=url,
        webhook_url=url,
        events=events,
        secret=secret,
        status=status,
    )
    session.add(subscription)
    await session.commit()
    return subscription


async def reload(db_manager: DatabaseManager, subscription_id: UUID) -> WebhookSubscription:
    async with db_manager.session_factory() as session:
        subscription = await session.get(WebhookSubscription, subscription_id)
        assert subscription is not None
        return subscription


def inbound_event(workspace_id: UUID) -> DomainEvent:
    return DomainEvent(
        workspace_id=workspace_id,
        event_type=EventType.MESSAGE_INBOUND,
        data={"messageId": "m1", "body": "Hi"},
    )


class TestDispatchFanOut:
    @pytest.mark.asyncio
    async def test_only_active_matching_subscriptions(
        self, db_manager: DatabaseManager, db_session: AsyncSession, workspace: Workspace
    ) -> None:
        seen: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.url.host)
            return httpx.Response(200)

        await add_subscription(db_session, workspace.id, "https://a.example.com/hook", ["message.inbound"])
        await add_subscription(db_session, workspace.id, "https://b.example.com/hook", ["call.missed"])
        await add_subscription(
            db_session,
            workspace.id,
            "https://c.example.com/hook",
            ["message.inbound"],
            status=SubscriptionStatus.INACTIVE,
        )
        other = Workspace(name="Other", webhook_token="tok_other")
        db_session.add(other)
        await db_session.commit()
        await add_subscription(db_session, other.id, "https://d.example.com/hook", ["message.inbound"])

        summary = await make_dispatcher(db_manager, handler).dispatch(inbound_event(workspace.id))

        assert seen == ["a.example.com"]
        assert (summary.attempted, summary.delivered, summary.failed) == (1, 1, 0)

    @pytest.mark.asyncio
    async def test_no_subscriptions(self, db_manager: DatabaseManager, workspace: Workspace) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("nothing should be sent")

        summary = await make_dispatcher(db_manager, handler).dispatch(inbound_event(workspace.id))

        assert summary.attempted == 0

    @pytest.mark.asyncio
    async def test_envelope_headers_and_signature(
        self, db_manager: DatabaseManager, db_session: AsyncSession, workspace: Workspace
    ) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(204)

        await add_subscription(
            db_session, workspace.id, "https://a.example.com/hook", ["message.inbound"], secret="whsec"
        )
        event = inbound_event(workspace.id)

        await make_dispatcher(db_manager, handler).dispatch(event)

        request = seen[0]
        assert json.loads(request.content) == {
            "event": "message.inbound",
            "timestamp": event.occurred_at.isoformat(),
            "data": {"messageId": "m1", "body": "Hi"},
        }
        assert request.headers["X-Sigcore-Event"] == "message.inbound"
        assert request.headers["X-Sigcore-Timestamp"] == event.occurred_at.isoformat()
        expected = hmac.new(b"whsec", request.content, hashlib.sha256).hexdigest()
        assert request.headers["X-Sigcore-Signature"] == expected

    @pytest.mark.asyncio
    async def test_unsigned_without_secret(
        self, db_manager: DatabaseManager, db_session: AsyncSession, workspace: Workspace
    ) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200)

        await add_subscription(db_session, workspace.id, "https://a.example.com/hook", ["message.inbound"])

        await make_dispatcher(db_manager, handler).dispatch(inbound_event(workspace.id))

        assert "X-Sigcore-Signature" not in seen[0].headers

    @pytest.mark.asyncio
    async def test_one_failure_does_not_block_others(
        self, db_manager: DatabaseManager, db_session: AsyncSession, workspace: Workspace
    ) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "down.example.com":
                raise httpx.ConnectError("connection refused")
            return httpx.Response(200)

        down = await add_subscription(db_session, workspace.id, "https://down.example.com/hook", ["message.inbound"])
        up = await add_subscription(db_session, workspace.id, "https://up.example.com/hook", ["message.inbound"])

        summary = await make_dispatcher(db_manager, handler).dispatch(inbound_event(workspace.id))

        assert (summary.attempted, summary.delivered, summary.failed) == (2, 1, 1)
        failed = await reload(db_manager, down.id)
        assert failed.failure_count == 1
        assert "connection refused" in (failed.last_error or "")
        delivered = await reload(db_manager, up.id)
        assert delivered.failure_count == 0
        assert delivered.last_success_at is not None

    @pytest.mark.asyncio
    async def test_publish_never_raises(self, workspace: Workspace) -> None:
        @asynccontextmanager
        async def broken_session() -> AsyncGenerator[AsyncSession, None]:
            raise OperationalError("SELECT 1", {}, Exception("database is locked"))
            yield  # pragma: no cover

        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200)))
        dispatcher = OutboundWebhookDispatcher(broken_session, client, Settings())

        await dispatcher.publish(inbound_event(workspace.id))

    @pytest.mark.asyncio
    async def test_publish_swallows_unexpected_errors(
        self, db_manager: DatabaseManager, db_session: AsyncSession, workspace: Workspace
    ) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise RuntimeError("transport exploded")

        await add_subscription(db_session, workspace.id, "https://a.example.com/hook", ["message.inbound"])

        await make_dispatcher(db_manager, handler).publish(inbound_event(workspace.id))


class TestFailureTracking:
    @pytest.mark.asyncio
    async def test_pauses_at_threshold(
        self, db_manager: DatabaseManager, db_session: AsyncSession, workspace: Workspace
    ) -> None:
        calls: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(500)

        subscription = await add_subscription(
            db_session, workspace.id, "https://a.example.com/hook", ["message.inbound"]
        )
        dispatcher = make_dispatcher(db_manager, handler, threshold=3)

        summaries = [await dispatcher.dispatch(inbound_event(workspace.id)) for _ in range(4)]

        assert [s.paused for s in summaries] == [0, 0, 1, 0]
        # Paused subscriptions receive nothing further
        assert len(calls) == 3
        assert summaries[3].attempted == 0
        paused = await reload(db_manager, subscription.id)
        assert paused.status == SubscriptionStatus.PAUSED
        assert paused.failure_count == 3
        assert paused.last_error == "HTTP 500"
        assert paused.last_failure_at is not None

    @pytest.mark.asyncio
    async def test_publish_pauses_at_default_threshold(
        self, db_manager: DatabaseManager, db_session: AsyncSession, workspace: Workspace
    ) -> None:
        subscription = await add_subscription(
            db_session, workspace.id, "https://a.example.com/hook", ["message.inbound"]
        )
        dispatcher = make_dispatcher(db_manager, lambda request: httpx.Response(500))

        for _ in range(10):
            await dispatcher.publish(inbound_event(workspace.id))

        paused = await reload(db_manager, subscription.id)
        assert paused.status == SubscriptionStatus.PAUSED
        assert paused.failure_count == 10

    @pytest.mark.asyncio
    async def test_success_resets_streak(
        self, db_manager: DatabaseManager, db_session: AsyncSession, workspace: Workspace
    ) -> None:
        responses = iter([500, 500, 200])

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(next(responses))

        subscription = await add_subscription(
            db_session, workspace.id, "https://a.example.com/hook", ["message.inbound"]
        )
        dispatcher = make_dispatcher(db_manager, handler, threshold=3)

        for _ in range(3):
            await dispatcher.dispatch(inbound_event(workspace.id))

        current = await reload(db_manager, subscription.id)
        assert current.status == SubscriptionStatus.ACTIVE
        assert current.failure_count == 0
        assert current.last_error is None
        assert current.last_success_at is not None


class TestSendTest:
    @pytest.mark.asyncio
    async def test_marks_request_and_leaves_counters(
        self, db_manager: DatabaseManager, db_session: AsyncSession, workspace: Workspace
    ) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(503)

        subscription = await add_subscription(
            db_session, workspace.id, "https://a.example.com/hook", ["message.inbound"], secret="whsec"
        )

        result = await make_dispatcher(db_manager, handler).send_test(subscription)

        assert result.success is False
        assert result.status_code == 503
        assert result.error == "HTTP 503"
        request = seen[0]
        assert request.headers["X-Sigcore-Test"] == "true"
        assert request.headers["X-Sigcore-Event"] == "test"
        assert json.loads(request.content)["data"]["subscriptionId"] == str(subscription.id)
        assert "X-Sigcore-Signature" in request.headers
        untouched = await reload(db_manager, subscription.id)
        assert untouched.failure_count == 0
        assert untouched.last_failure_at is None

    @pytest.mark.asyncio
    async def test_unreachable_endpoint(
        self, db_manager: DatabaseManager, db_session: AsyncSession, workspace: Workspace
    ) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectTimeout("timed out")

        subscription = await add_subscription(
            db_session, workspace.id, "https://a.example.com/hook", ["message.inbound"]
        )

        result = await make_dispatcher(db_manager, handler).send_test(subscription)

        assert result.to_dict() == {"success": False, "status_code": None, "error": "timed out"}
