"""
FastAPI dependencies for process-wide collaborators.

Wired once in the app lifespan (``app.state``) or through cached factories;
tests replace them with ``app.dependency_overrides``.
"""

from fastapi import HTTPException, Request, status

from sigcore.conversations.phone_lines import PhoneLineResolver, get_phone_line_resolver
from sigcore.integrations.credentials import CredentialsVault, PlaintextVault
from sigcore.outbound.dispatcher import OutboundWebhookDispatcher
from sigcore.outbound.events import EventNotifier, NullNotifier
from sigcore.providers.registry import ProviderRegistry, get_provider_registry
from sigcore.sync.orchestrator import SyncOrchestrator


def get_registry() -> ProviderRegistry:
    return get_provider_registry()


def get_vault() -> CredentialsVault:
    return PlaintextVault()


def get_resolver() -> PhoneLineResolver:
    return get_phone_line_resolver()


def get_notifier(request: Request) -> EventNotifier:
    """Notifier chosen at startup; a no-op when outbound fan-out is not wired."""
    notifier: EventNotifier | None = getattr(request.app.state, "notifier", None)
    return notifier if notifier is not None else NullNotifier()


def _from_state(request: Request, name: str):  # type: ignore[no-untyped-def]
    value = getattr(request.app.state, name, None)
    if value is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "NOT_READY", "message": "Service is starting up"},
        )
    return value


def get_dispatcher(request: Request) -> OutboundWebhookDispatcher:
    return _from_state(request, "dispatcher")


def get_sync_orchestrator(request: Request) -> SyncOrchestrator:
    return _from_state(request, "sync_orchestrator")
