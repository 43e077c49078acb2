"""
Repositories for conversations, messages and calls.

Every lookup by a provider-assigned identifier joins through
``Conversation.workspace_id``; provider IDs are never trusted on their own.
"""

from collections.abc import Collection, Sequence
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from sigcore.conversations.models import Call, Conversation, Message
from sigcore.providers.config import ProviderType


class ConversationRepository:
    """Repository for conversation rows."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with database session.

        Args:
            session: Async database session.
        """
        self._session = session

    async def get_by_id(self, workspace_id: UUID, conversation_id: UUID) -> Conversation | None:
        stmt = select(Conversation).where(
            Conversation.id == conversation_id,
            Conversation.workspace_id == workspace_id,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_external_id(self, workspace_id: UUID, external_id: str) -> Conversation | None:
        """Get a conversation by its provider thread key.

        Args:
            workspace_id: Owning workspace.
            external_id: Provider conversation identifier.

        Returns:
            Conversation if found, None otherwise.
        """
        if not external_id:
            return None
        stmt = select(Conversation).where(
            Conversation.workspace_id == workspace_id,
            Conversation.external_id == external_id,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_by_participant_and_line(
        self,
        workspace_id: UUID,
        participant_key: str,
        phone_line_id: str,
        provider: ProviderType | None = None,
    ) -> Conversation | None:
        """Conversation with a participant on one specific phone line."""
        stmt = select(Conversation).where(
            Conversation.workspace_id == workspace_id,
            Conversation.participant_key == participant_key,
            Conversation.phone_line_id == phone_line_id,
        )
        if provider is not None:
            stmt = stmt.where(Conversation.provider == provider)
        stmt = stmt.order_by(Conversation.created_at.asc()).limit(1)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_by_participant(
        self,
        workspace_id: UUID,
        participant_key: str,
        provider: ProviderType | None = None,
        our_number: str | None = None,
    ) -> Conversation | None:
        """Oldest conversation with a participant regardless of phone line.

        When ``our_number`` is given, threads already bound to a different
        number of ours are not considered.
        """
        stmt = select(Conversation).where(
            Conversation.workspace_id == workspace_id,
            Conversation.participant_key == participant_key,
        )
        if provider is not None:
            stmt = stmt.where(Conversation.provider == provider)
        if our_number:
            stmt = stmt.where(or_(Conversation.phone_number == our_number, Conversation.phone_number == ""))
        stmt = stmt.order_by(Conversation.created_at.asc()).limit(1)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_by_participant_keys(
        self,
        workspace_id: UUID,
        participant_keys: Collection[str],
    ) -> Sequence[Conversation]:
        """Every conversation row belonging to any of the given participant keys."""
        if not participant_keys:
            return []
        stmt = (
            select(Conversation)
            .where(
                Conversation.workspace_id == workspace_id,
                Conversation.participant_key.in_(list(participant_keys)),
            )
            .order_by(Conversation.created_at.asc())
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def list_recent(
        self,
        workspace_id: UUID,
        limit: int,
        conversation_ids: Collection[UUID] | None = None,
    ) -> Sequence[Conversation]:
        """Most recently updated conversations, optionally restricted to given IDs."""
        stmt = select(Conversation).where(Conversation.workspace_id == workspace_id)
        if conversation_ids:
            stmt = stmt.where(Conversation.id.in_(list(conversation_ids)))
        stmt = stmt.order_by(Conversation.updated_at.desc()).limit(limit)
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def create(self, conversation: Conversation) -> Conversation:
        """Create a conversation.

        Raises:
            sqlalchemy.exc.IntegrityError: If ``(workspace_id, external_id)`` already exists.
        """
        self._session.add(conversation)
        await self._session.flush()
        return conversation


class MessageRepository:
    """Repository for message rows."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_provider_id(
        self,
        workspace_ids: Collection[UUID],
        provider_message_id: str,
    ) -> Message | None:
        """Find a message by provider ID within the given workspaces.

        Args:
            workspace_ids: Workspaces the caller is allowed to see.
            provider_message_id: Provider-assigned message identifier.

        Returns:
            Message if found, None otherwise.
        """
        if not workspace_ids or not provider_message_id:
            return None
        stmt = (
            select(Message)
            .join(Conversation, Message.conversation_id == Conversation.id)
            .where(
                Message.provider_message_id == provider_message_id,
                Conversation.workspace_id.in_(list(workspace_ids)),
            )
            .order_by(Message.created_at.asc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_with_conversation(
        self,
        workspace_ids: Collection[UUID],
        provider_message_id: str,
    ) -> tuple[Message, Conversation] | None:
        if not workspace_ids or not provider_message_id:
            return None
        stmt = (
            select(Message, Conversation)
            .join(Conversation, Message.conversation_id == Conversation.id)
            .where(
                Message.provider_message_id == provider_message_id,
                Conversation.workspace_id.in_(list(workspace_ids)),
            )
            .order_by(Message.created_at.asc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        row = result.first()
        if row is None:
            return None
        return row[0], row[1]

    async def list_for_conversations(self, conversation_ids: Collection[UUID]) -> Sequence[Message]:
        """Messages of several conversations merged in chronological order."""
        if not conversation_ids:
            return []
        stmt = (
            select(Message)
            .where(Message.conversation_id.in_(list(conversation_ids)))
            .order_by(Message.created_at.asc(), Message.id.asc())
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def create(self, message: Message) -> Message:
        self._session.add(message)
        await self._session.flush()
        return message


class CallRepository:
    """Repository for call rows."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_with_conversation(
        self,
        workspace_ids: Collection[UUID],
        provider_call_id: str,
    ) -> tuple[Call, Conversation] | None:
        """Find a call and its conversation by provider ID within the given workspaces."""
        if not workspace_ids or not provider_call_id:
            return None
        stmt = (
            select(Call, Conversation)
            .join(Conversation, Call.conversation_id == Conversation.id)
            .where(
                Call.provider_call_id == provider_call_id,
                Conversation.workspace_id.in_(list(workspace_ids)),
            )
            .order_by(Call.created_at.asc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        row = result.first()
        if row is None:
            return None
        return row[0], row[1]

    async def get_by_provider_id(
        self,
        workspace_ids: Collection[UUID],
        provider_call_id: str,
    ) -> Call | None:
        found = await self.get_with_conversation(workspace_ids, provider_call_id)
        return found[0] if found else None

    async def list_for_conversations(self, conversation_ids: Collection[UUID]) -> Sequence[Call]:
        if not conversation_ids:
            return []
        stmt = (
            select(Call)
            .where(Call.conversation_id.in_(list(conversation_ids)))
            .order_by(Call.created_at.asc(), Call.id.asc())
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def create(self, call: Call) -> Call:
        self._session.add(call)
        await self._session.flush()
        return call
