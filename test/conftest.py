"""
Pytest configuration and shared fixtures.

Every test gets its own SQLite file database (aiosqlite) with the full schema,
a provider registry holding the in-memory mock adapter, and, for API tests,
an ``httpx.AsyncClient`` bound to a fresh application instance.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Awaitable, Callable
from pathlib import Path
from typing import Any
from uuid import UUID

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from sigcore.config import Settings
from sigcore.conversations.phone_lines import PhoneLineResolver
from sigcore.dependencies import get_registry, get_resolver
from sigcore.integrations.credentials import PlaintextVault, encode_credentials
from sigcore.integrations.models import Integration, Workspace
from sigcore.main import create_app
from sigcore.outbound.events import DomainEvent
from sigcore.providers.config import ProviderType
from sigcore.providers.mock import MockProviderAdapter
from sigcore.providers.registry import ProviderRegistry
from sigcore.shared.database import DatabaseManager, get_db_session
from sigcore.sync.orchestrator import SyncOrchestrator

IntegrationFactory = Callable[..., Awaitable[Integration]]


class RecordingNotifier:
    """EventNotifier test double keeping every published event."""

    def __init__(self) -> None:
        self.events: list[DomainEvent] = []

    async def publish(self, event: DomainEvent) -> None:
        self.events.append(event)

    def types(self) -> list[str]:
        return [e.event_type.value for e in self.events]


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        app_env="dev",
        debug=False,
        database_url="sqlite+aiosqlite:///:memory:",
        outbound_failure_threshold=10,
    )


@pytest_asyncio.fixture
async def db_manager(tmp_path: Path) -> AsyncGenerator[DatabaseManager, None]:
    """Database manager over a per-test SQLite file with all tables created."""
    manager = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'sigcore.db'}")
    await manager.create_all()
    yield manager
    await manager.close()


@pytest_asyncio.fixture
async def db_session(db_manager: DatabaseManager) -> AsyncGenerator[AsyncSession, None]:
    """Create test database session."""
    async with db_manager.session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def workspace(db_session: AsyncSession) -> Workspace:
    """Create test workspace."""
    ws = Workspace(name="Acme", webhook_token="tok_acme")
    db_session.add(ws)
    await db_session.commit()
    return ws


@pytest.fixture
def make_integration(db_session: AsyncSession) -> IntegrationFactory:
    """Factory storing a provider integration with plaintext JSON credentials."""

    async def _make(
        workspace_id: UUID,
        provider: ProviderType = ProviderType.MOCK,
        credentials: dict[str, Any] | None = None,
        webhook_secret: str | None = None,
        external_account_id: str | None = None,
    ) -> Integration:
        integration = Integration(
            workspace_id=workspace_id,
            provider=provider,
            credentials_encrypted=encode_credentials(credentials or {"phoneNumber": "+15550001111"}, PlaintextVault()),
            webhook_secret=webhook_secret,
            external_account_id=external_account_id,
        )
        db_session.add(integration)
        await db_session.commit()
        return integration

    return _make


@pytest.fixture
def mock_adapter() -> MockProviderAdapter:
    return MockProviderAdapter()


@pytest.fixture
def registry(mock_adapter: MockProviderAdapter) -> ProviderRegistry:
    return ProviderRegistry({ProviderType.MOCK: mock_adapter})


@pytest.fixture
def resolver() -> PhoneLineResolver:
    return PhoneLineResolver()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def orchestrator(
    db_manager: DatabaseManager,
    registry: ProviderRegistry,
    resolver: PhoneLineResolver,
    test_settings: Settings,
) -> SyncOrchestrator:
    return SyncOrchestrator(db_manager.session, registry, resolver=resolver, settings=test_settings)


@pytest.fixture
def app(
    db_manager: DatabaseManager,
    registry: ProviderRegistry,
    resolver: PhoneLineResolver,
    notifier: RecordingNotifier,
    orchestrator: SyncOrchestrator,
) -> FastAPI:
    """Fresh application with test collaborators.

    The lifespan does not run under ``ASGITransport``; collaborators normally
    wired there are placed on ``app.state`` directly.
    """
    application = create_app()

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with db_manager.session() as session:
            yield session

    application.dependency_overrides[get_db_session] = override_get_db
    application.dependency_overrides[get_registry] = lambda: registry
    application.dependency_overrides[get_resolver] = lambda: resolver
    application.state.notifier = notifier
    application.state.sync_orchestrator = orchestrator
    return application


@pytest_asyncio.fixture
async def async_client(app: FastAPI, orchestrator: SyncOrchestrator) -> AsyncGenerator[AsyncClient, None]:
    """Create async HTTP client for API tests."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    await orchestrator.shutdown()
    app.dependency_overrides.clear()


async def count_rows(session: AsyncSession, model: type) -> int:
    """Row count helper shared by persistence assertions."""
    result = await session.execute(select(func.count()).select_from(model))
    return int(result.scalar() or 0)


@pytest.fixture
def row_count() -> Callable[[AsyncSession, type], Awaitable[int]]:
    return count_rows
