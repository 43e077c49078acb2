"""
Sync orchestrator.

Pulls provider history through an adapter and feeds it to the
reconciliation engine. One job per workspace at a time; jobs run as
background tasks and report progress through the ``SyncJobRegistry``.

Each conversation is committed on its own, so a cancelled or failed job
keeps everything it already synced. Sync writes history and does not publish
outbound events.
"""

import asyncio
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError

from sigcore.config import Settings, get_settings
from sigcore.conversations.models import Conversation
from sigcore.conversations.phone_lines import PhoneLineResolver, get_phone_line_resolver
from sigcore.conversations.reconciliation import ReconciliationEngine
from sigcore.conversations.repository import ConversationRepository
from sigcore.integrations.credentials import CredentialsVault, PlaintextVault, decode_credentials
from sigcore.integrations.repository import IntegrationRepository
from sigcore.providers.config import ProviderType
from sigcore.providers.interface import ContactData, ConversationData, ProviderAdapter, ProviderError
from sigcore.providers.registry import ProviderRegistry
from sigcore.shared.context import WorkspaceContext
from sigcore.shared.database import SessionFactory
from sigcore.shared.exceptions import AppError, NotFoundError, ValidationError
from sigcore.shared.logging import get_logger
from sigcore.shared.phone import normalize_phone_number, phone_variants
from sigcore.shared.timeutils import ensure_utc
from sigcore.sync.progress import SyncJobRegistry, SyncProgress, SyncResult, SyncStatus
from sigcore.sync.schemas import SyncOptions

logger = get_logger(__name__)

# A "name" with this many digits is a phone number the provider echoed back
_PHONE_LIKE_DIGITS = 7


def _is_mostly_digits(name: str) -> bool:
    return sum(ch.isdigit() for ch in name) >= _PHONE_LIKE_DIGITS


def has_real_name(contact: ContactData | None) -> bool:
    """True when a contact was saved with a human name, not just a number."""
    if contact is None:
        return False
    name = (contact.name or "").strip()
    return bool(name) and not _is_mostly_digits(name)


def filter_by_activity(
    conversations: list[ConversationData],
    since: datetime | None,
    until: datetime | None,
) -> list[ConversationData]:
    """Keep conversations whose last activity falls in ``[since, until]``.

    Without a timestamp a conversation cannot be placed in a range and is
    dropped whenever either bound is set.
    """
    if since is None and until is None:
        return list(conversations)
    kept = []
    for conversation in conversations:
        activity = ensure_utc(conversation.last_activity_at or conversation.last_message_at)
        if activity is None:
            continue
        if since is not None and activity < since:
            continue
        if until is not None and activity > until:
            continue
        kept.append(conversation)
    return kept


def filter_by_phone_line(conversations: list[ConversationData], phone_line_id: str) -> list[ConversationData]:
    return [
        c
        for c in conversations
        if (c.phone_line_id or c.metadata.get("phoneNumberId")) == phone_line_id
    ]


def filter_saved_contacts(
    conversations: list[ConversationData],
    contacts: list[ContactData],
) -> list[ConversationData]:
    by_number: dict[str, ContactData] = {}
    for contact in contacts:
        for number in contact.phone_numbers:
            key = normalize_phone_number(number)
            if key:
                by_number[key] = contact

    kept = []
    for conversation in conversations:
        contact = next(
            (by_number[v] for v in phone_variants(conversation.participant_phone_number) if v in by_number),
            None,
        )
        if has_real_name(contact):
            kept.append(conversation)
    return kept


@dataclass
class ItemCounts:
    messages: int = 0
    calls: int = 0
    errors: int = 0


@dataclass
class QuickSyncResult:
    updated: int = 0
    unchanged: int = 0
    messages_updated: int = 0
    calls_synced: int = 0
    errors: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class SingleSyncResult:
    messages_synced: int = 0
    calls_synced: int = 0
    errors: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass(frozen=True)
class _Connection:
    provider: ProviderType
    adapter: ProviderAdapter
    credentials: dict[str, Any]


class SyncOrchestrator:
    """Runs full, quick and single-conversation syncs."""

    def __init__(
        self,
        session_factory: SessionFactory,
        registry: ProviderRegistry,
        vault: CredentialsVault | None = None,
        resolver: PhoneLineResolver | None = None,
        settings: Settings | None = None,
        jobs: SyncJobRegistry | None = None,
    ) -> None:
        """Initialize orchestrator.

        Args:
            session_factory: Opens a database session context per unit of work.
            registry: Provider adapters.
            vault: Credential decoder.
            resolver: Phone line cache.
            settings: Application settings.
            jobs: Job registry; a fresh one sized from settings by default.
        """
        self._session_factory = session_factory
        self._registry = registry
        self._vault = vault or PlaintextVault()
        self._resolver = resolver or get_phone_line_resolver()
        self._settings = settings or get_settings()
        self._jobs = jobs or SyncJobRegistry(self._settings.sync_registry_max_entries)

    @property
    def jobs(self) -> SyncJobRegistry:
        return self._jobs

    # ------------------------------------------------------------------
    # Job control
    # ------------------------------------------------------------------

    async def start_sync(self, ctx: WorkspaceContext, options: SyncOptions | None = None) -> SyncProgress:
        """Start a background sync and return immediately.

        Raises:
            SyncConflictError: If a sync is already running for the workspace.
        """
        options = options or SyncOptions()
        workspace_id = ctx.workspace_id
        self._jobs.begin(workspace_id)
        task = asyncio.create_task(self._run_job(workspace_id, options), name=f"sync:{workspace_id}")
        self._jobs.attach_task(workspace_id, task)
        logger.info(
            "Sync started",
            extra={"workspace_id": str(workspace_id), "options": options.model_dump(mode="json")},
        )
        return self._jobs.status(workspace_id)

    async def _run_job(self, workspace_id: UUID, options: SyncOptions) -> None:
        try:
            await self.run_sync(workspace_id, options, begun=True)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Sync job crashed", extra={"workspace_id": str(workspace_id)})

    def get_status(self, ctx: WorkspaceContext) -> SyncProgress:
        return self._jobs.status(ctx.workspace_id)

    def cancel(self, ctx: WorkspaceContext) -> dict[str, bool]:
        return {"cancelled": self._jobs.request_cancel(ctx.workspace_id)}

    async def shutdown(self) -> None:
        """Cancel running job tasks (application shutdown)."""
        tasks = self._jobs.running_tasks()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _connect(self, workspace_id: UUID, provider: ProviderType | None = None) -> _Connection:
        """Resolve the integration to sync from.

        Raises:
            NotFoundError: If the workspace has no matching active integration.
            ValidationError: If the provider has no registered adapter.
        """
        async with self._session_factory() as session:
            integration = await IntegrationRepository(session).get_active(workspace_id, provider)
            credentials = decode_credentials(integration, self._vault)
            provider_type = integration.provider
        return _Connection(
            provider=provider_type,
            adapter=self._registry.get(provider_type),
            credentials=credentials,
        )

    async def _sync_history(
        self,
        engine: ReconciliationEngine,
        connection: _Connection,
        conversation: Conversation,
        external_id: str,
        phone_line_id: str | None,
        participant: str,
        force_refresh: bool = False,
    ) -> ItemCounts:
        """Fetch and upsert one conversation's messages and calls.

        New records always count; existing ones count when ``force_refresh``
        is set or when their stored state changed.
        """
        counts = ItemCounts()
        adapter, credentials = connection.adapter, connection.credentials

        try:
            messages = await adapter.get_messages(credentials, external_id, phone_line_id, participant)
        except ProviderError as e:
            logger.warning(
                "Failed to fetch messages",
                extra={"external_id": external_id, "error": str(e), "error_code": e.error_code},
            )
            counts.errors += 1
        else:
            for data in messages:
                _, created, changed = await engine.upsert_message(conversation, data)
                if created or changed or force_refresh:
                    counts.messages += 1

        try:
            calls = await adapter.get_calls(credentials, external_id, phone_line_id, participant)
        except ProviderError as e:
            logger.warning(
                "Failed to fetch calls",
                extra={"external_id": external_id, "error": str(e), "error_code": e.error_code},
            )
            counts.errors += 1
        else:
            for data in calls:
                _, created, _ = await engine.upsert_call(conversation, data, ended=True)
                if created or force_refresh:
                    counts.calls += 1

        return counts

    async def _sync_conversation(
        self,
        workspace_id: UUID,
        connection: _Connection,
        data: ConversationData,
        sync_messages: bool = True,
        force_refresh: bool = False,
    ) -> ItemCounts:
        async with self._session_factory() as session:
            engine = ReconciliationEngine(session, self._registry, self._vault, self._resolver)
            conversation, _ = await engine.upsert_conversation(workspace_id, connection.provider, data)
            counts = ItemCounts()
            if sync_messages:
                counts = await self._sync_history(
                    engine,
                    connection,
                    conversation,
                    data.external_id,
                    data.phone_line_id or data.metadata.get("phoneNumberId"),
                    data.participant_phone_number,
                    force_refresh=force_refresh,
                )
            await session.commit()
        return counts

    async def _load_contacts(self, connection: _Connection) -> list[ContactData] | None:
        try:
            return await connection.adapter.get_contacts(connection.credentials)
        except ProviderError as e:
            logger.warning(
                "Contacts unavailable; saved-contact filter disabled",
                extra={"provider": connection.provider.value, "error": str(e)},
            )
            return None

    # ------------------------------------------------------------------
    # Full sync
    # ------------------------------------------------------------------

    async def run_sync(
        self,
        workspace_id: UUID,
        options: SyncOptions,
        *,
        begun: bool = False,
    ) -> SyncResult:
        """Run a full sync to completion.

        Args:
            workspace_id: Workspace to sync.
            options: Filters and switches.
            begun: True when the caller already registered the job.

        Returns:
            Counters; also stored on the job's progress.

        Raises:
            SyncConflictError: If not ``begun`` and a sync is already running.
        """
        if not begun:
            self._jobs.begin(workspace_id)
        result = SyncResult()
        log_extra: dict[str, Any] = {"workspace_id": str(workspace_id)}

        try:
            connection = await self._connect(workspace_id, options.provider)
            self._jobs.update(
                workspace_id,
                phase="Fetching conversations",
                message=f"Fetching conversations from {connection.provider.value}...",
            )
            conversations = await connection.adapter.get_conversations(
                connection.credentials,
                limit=options.limit,
                phone_line_id=options.phone_line_id,
                since=options.since,
            )
        except asyncio.CancelledError:
            self._jobs.finish(workspace_id, SyncStatus.CANCELLED, "Sync interrupted", result=result)
            raise
        except (AppError, ProviderError) as e:
            logger.error("Sync failed during provider fetch", extra={**log_extra, "error": str(e)})
            self._jobs.finish(workspace_id, SyncStatus.ERROR, "Sync failed", result=result, error=str(e))
            return result

        result.conversations_from_provider = len(conversations)
        try:
            selected = await self._select(connection, conversations, options)
            result.conversations_skipped = len(conversations) - len(selected)
            await self._sync_all(workspace_id, connection, selected, options, result)
        except asyncio.CancelledError:
            self._jobs.finish(workspace_id, SyncStatus.CANCELLED, "Sync interrupted", result=result)
            raise
        except Exception as e:
            logger.exception("Sync failed", extra=log_extra)
            self._jobs.finish(workspace_id, SyncStatus.ERROR, "Sync failed", result=result, error=str(e))
            return result

        logger.info("Sync finished", extra={**log_extra, **result.to_dict()})
        return result

    async def _select(
        self,
        connection: _Connection,
        conversations: list[ConversationData],
        options: SyncOptions,
    ) -> list[ConversationData]:
        selected = filter_by_activity(conversations, options.since, options.until)

        if options.phone_line_id:
            selected = filter_by_phone_line(selected, options.phone_line_id)

        if options.conversation_ids:
            wanted = set(options.conversation_ids)
            selected = [c for c in selected if c.external_id in wanted]

        if options.only_saved_contacts:
            contacts = await self._load_contacts(connection)
            if contacts:
                selected = filter_saved_contacts(selected, contacts)
            else:
                logger.warning(
                    "Saved-contact filter requested but no contacts available; syncing all",
                    extra={"provider": connection.provider.value},
                )

        if options.limit and len(selected) > options.limit:
            selected = selected[: options.limit]
        return selected

    async def _sync_all(
        self,
        workspace_id: UUID,
        connection: _Connection,
        conversations: list[ConversationData],
        options: SyncOptions,
        result: SyncResult,
    ) -> None:
        total = len(conversations)
        self._jobs.update(
            workspace_id,
            phase="Syncing conversations",
            total=total,
            message=f"Found {total} conversations to sync",
        )

        for index, data in enumerate(conversations, start=1):
            if self._jobs.is_cancelled(workspace_id):
                logger.info(
                    "Sync cancelled",
                    extra={"workspace_id": str(workspace_id), "at": index, "total": total},
                )
                self._jobs.finish(
                    workspace_id,
                    SyncStatus.CANCELLED,
                    f"Sync cancelled. Synced {result.conversations_synced} conversations, "
                    f"{result.messages_synced} messages before cancellation.",
                    result=result,
                )
                return

            self._jobs.update(workspace_id, current=index, message=f"Syncing conversation {index} of {total}")
            try:
                counts = await self._sync_conversation(
                    workspace_id,
                    connection,
                    data,
                    sync_messages=options.sync_messages,
                    force_refresh=options.force_refresh,
                )
            except (AppError, ProviderError, SQLAlchemyError) as e:
                logger.error(
                    "Failed to sync conversation",
                    extra={"workspace_id": str(workspace_id), "external_id": data.external_id, "error": str(e)},
                )
                result.errors += 1
                continue

            result.conversations_synced += 1
            result.messages_synced += counts.messages
            result.calls_synced += counts.calls
            result.errors += counts.errors

        self._jobs.update(workspace_id, current=total)
        self._jobs.finish(
            workspace_id,
            SyncStatus.COMPLETED,
            f"Synced {result.conversations_synced} conversations, "
            f"{result.messages_synced} messages, {result.calls_synced} calls",
            result=result,
        )

    # ------------------------------------------------------------------
    # Quick sync
    # ------------------------------------------------------------------

    async def quick_sync(
        self,
        ctx: WorkspaceContext,
        conversation_ids: list[UUID] | None = None,
    ) -> QuickSyncResult:
        """Re-check recently seen conversations and refresh those that moved.

        Only conversations whose provider-side last activity is newer than
        the stored one are re-fetched.

        Raises:
            SyncConflictError: If a sync is already running for the workspace.
            NotFoundError: If a known conversation's provider is no longer connected.
            ProviderError: If a provider listing fails.
        """
        workspace_id = ctx.workspace_id
        self._jobs.begin(workspace_id, phase="Quick sync", message="Checking for updates...")
        result = QuickSyncResult()

        try:
            async with self._session_factory() as session:
                known = await ConversationRepository(session).list_recent(
                    workspace_id,
                    self._settings.quick_sync_window,
                    conversation_ids,
                )
                stored: dict[ProviderType, dict[str, datetime | None]] = {}
                for conversation in known:
                    stored.setdefault(conversation.provider, {})[conversation.external_id] = ensure_utc(
                        conversation.last_activity_at
                    )

            for provider, activity_by_id in stored.items():
                connection = await self._connect(workspace_id, provider)
                remote = await connection.adapter.get_conversations(
                    connection.credentials,
                    limit=self._settings.quick_sync_provider_limit,
                )
                relevant = [c for c in remote if c.external_id in activity_by_id]
                self._jobs.update(workspace_id, total=len(relevant), current=0)
                await self._quick_sync_provider(workspace_id, connection, relevant, activity_by_id, result)
        except asyncio.CancelledError:
            self._jobs.finish(workspace_id, SyncStatus.CANCELLED, "Quick sync interrupted")
            raise
        except (AppError, ProviderError) as e:
            self._jobs.finish(workspace_id, SyncStatus.ERROR, "Quick sync failed", error=str(e))
            raise

        self._jobs.finish(
            workspace_id,
            SyncStatus.COMPLETED,
            f"Updated {result.updated} conversations, {result.unchanged} unchanged, "
            f"{result.messages_updated} new messages, {result.calls_synced} new calls",
        )
        logger.info("Quick sync finished", extra={"workspace_id": str(workspace_id), **result.to_dict()})
        return result

    async def _quick_sync_provider(
        self,
        workspace_id: UUID,
        connection: _Connection,
        relevant: list[ConversationData],
        activity_by_id: dict[str, datetime | None],
        result: QuickSyncResult,
    ) -> None:
        for index, data in enumerate(relevant, start=1):
            self._jobs.update(workspace_id, current=index, message=f"Checking conversation {index} of {len(relevant)}...")
            local = activity_by_id.get(data.external_id)
            remote = ensure_utc(data.last_activity_at or data.last_message_at)
            if remote is None or (local is not None and remote <= local):
                result.unchanged += 1
                continue
            try:
                counts = await self._sync_conversation(workspace_id, connection, data)
            except (AppError, ProviderError, SQLAlchemyError) as e:
                logger.error(
                    "Quick sync failed for conversation",
                    extra={"workspace_id": str(workspace_id), "external_id": data.external_id, "error": str(e)},
                )
                result.errors += 1
                continue
            result.updated += 1
            result.messages_updated += counts.messages
            result.calls_synced += counts.calls
            result.errors += counts.errors

    # ------------------------------------------------------------------
    # Single conversation
    # ------------------------------------------------------------------

    async def sync_single_conversation(self, ctx: WorkspaceContext, conversation_id: UUID) -> SingleSyncResult:
        """Fetch the latest messages and calls of one local conversation.

        Raises:
            NotFoundError: If the conversation is not in the workspace.
            ValidationError: If the conversation has no participant number.
        """
        workspace_id = ctx.workspace_id
        async with self._session_factory() as session:
            conversation = await ConversationRepository(session).get_by_id(workspace_id, conversation_id)
            if conversation is None:
                raise NotFoundError(
                    message="Conversation not found",
                    details={"conversation_id": str(conversation_id)},
                )
            if not conversation.participant_phone_number:
                raise ValidationError(message="Conversation has no participant phone number")

            connection = await self._connect(workspace_id, conversation.provider)
            engine = ReconciliationEngine(session, self._registry, self._vault, self._resolver)
            counts = await self._sync_history(
                engine,
                connection,
                conversation,
                conversation.external_id,
                conversation.phone_line_id or (conversation.extra_metadata or {}).get("phoneNumberId"),
                conversation.participant_phone_number,
            )
            await session.commit()

        logger.info(
            "Conversation synced",
            extra={
                "workspace_id": str(workspace_id),
                "conversation_id": str(conversation_id),
                "messages": counts.messages,
                "calls": counts.calls,
                "errors": counts.errors,
            },
        )
        return SingleSyncResult(messages_synced=counts.messages, calls_synced=counts.calls, errors=counts.errors)
