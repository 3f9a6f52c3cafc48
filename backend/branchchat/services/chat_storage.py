"""
Local Store - durable CRUD for conversations, messages and provider settings.

Backed by SQLite through SQLAlchemy async. Every public method opens its own
session, so concurrent streams never share ORM state; the database is the
single source of truth. Results are returned as pydantic read schemas.
"""
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

from sqlalchemy import delete, func, insert, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from branchchat.core.exceptions import DecryptionError, NotFoundError
from branchchat.core.security import CryptoVault, get_vault
from branchchat.db.database import create_session_factory, init_db
from branchchat.models.conversation import Conversation
from branchchat.models.message import Message, MessageRole
from branchchat.models.settings import ChatSettings
from branchchat.schemas.chat import (
    BranchCreated,
    ConversationRead,
    ConversationUpdate,
    MessageCreate,
    MessageRead,
    MessageUpdate,
)
from branchchat.schemas.export import EXPORT_VERSION, ExportBundle
from branchchat.schemas.settings import ChatSettingsCreate, ChatSettingsRead
from branchchat.services.threads import thread_context


logger = logging.getLogger(__name__)

DEFAULT_TITLE = "New Chat"


def utcnow() -> datetime:
    """Naive UTC now; SQLite stores datetimes without a zone."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ChatStorage:
    """
    Local store for the chat engine.

    Timestamps are assigned here, never by callers, and strictly increase
    for the lifetime of the store so per-thread order is stable even if the
    wall clock stalls or steps back.
    """

    def __init__(self, engine: AsyncEngine, vault: Optional[CryptoVault] = None):
        self.engine = engine
        self.vault = vault or get_vault()
        self._session_factory = create_session_factory(engine)
        self._last_timestamp: Optional[datetime] = None

    async def initialize(self) -> None:
        """Create tables and seed the monotonic clock from stored data."""
        await init_db(self.engine)
        async with self._session_factory() as session:
            await self._seed_clock(session)

    async def close(self) -> None:
        await self.engine.dispose()

    # --- clock ---

    async def _seed_clock(self, session: AsyncSession) -> None:
        latest = [
            await session.scalar(select(func.max(Message.timestamp))),
            await session.scalar(select(func.max(Conversation.updated_at))),
        ]
        latest = [ts for ts in latest if ts is not None]
        if self._last_timestamp is not None:
            latest.append(self._last_timestamp)
        self._last_timestamp = max(latest) if latest else None

    def _tick(self) -> datetime:
        now = utcnow()
        if self._last_timestamp is not None and now <= self._last_timestamp:
            now = self._last_timestamp + timedelta(microseconds=1)
        self._last_timestamp = now
        return now

    # --- lookups ---

    async def _get_conversation_row(self, session: AsyncSession, conversation_id: int) -> Conversation:
        conversation = await session.get(Conversation, conversation_id)
        if conversation is None:
            raise NotFoundError("Conversation", conversation_id)
        return conversation

    async def _get_message_row(self, session: AsyncSession, message_id: int) -> Message:
        message = await session.get(Message, message_id)
        if message is None:
            raise NotFoundError("Message", message_id)
        return message

    # --- conversations ---

    async def create_conversation(
        self,
        provider: str,
        model: str,
        title: str = DEFAULT_TITLE,
        is_dual_mode: bool = False,
        second_provider: Optional[str] = None,
        second_model: Optional[str] = None,
    ) -> int:
        """
        Create an empty conversation.

        Returns:
            The new conversation id
        """
        now = self._tick()
        async with self._session_factory() as session:
            async with session.begin():
                conversation = Conversation(
                    title=title,
                    provider=provider,
                    model=model,
                    is_dual_mode=is_dual_mode,
                    second_provider=second_provider,
                    second_model=second_model,
                    is_archived=False,
                    created_at=now,
                    updated_at=now,
                )
                session.add(conversation)
                await session.flush()
                conversation_id = conversation.id

        logger.info("Created conversation %s (%s/%s)", conversation_id, provider, model)
        return conversation_id

    async def get_conversation(self, conversation_id: int) -> ConversationRead:
        async with self._session_factory() as session:
            conversation = await self._get_conversation_row(session, conversation_id)
            return ConversationRead.model_validate(conversation)

    async def get_conversations(self, include_archived: bool = False) -> List[ConversationRead]:
        """All conversations, most recently updated first."""
        stmt = select(Conversation).order_by(Conversation.updated_at.desc(), Conversation.id.desc())
        if not include_archived:
            stmt = stmt.where(Conversation.is_archived.is_(False))

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [ConversationRead.model_validate(c) for c in result.scalars().all()]

    async def update_conversation(
        self,
        conversation_id: int,
        updates: Union[ConversationUpdate, Dict[str, Any]],
    ) -> ConversationRead:
        """
        Merge fields into a conversation and bump ``updated_at``.

        Raises:
            NotFoundError: If the conversation does not exist
        """
        if not isinstance(updates, ConversationUpdate):
            updates = ConversationUpdate(**updates)
        values = updates.model_dump(exclude_unset=True)

        async with self._session_factory() as session:
            async with session.begin():
                conversation = await self._get_conversation_row(session, conversation_id)
                for field, value in values.items():
                    setattr(conversation, field, value)
                conversation.updated_at = self._tick()
            return ConversationRead.model_validate(conversation)

    async def archive_conversation(self, conversation_id: int) -> ConversationRead:
        return await self.update_conversation(conversation_id, ConversationUpdate(is_archived=True))

    async def delete_conversation(self, conversation_id: int) -> None:
        """Delete a conversation together with all of its messages."""
        async with self._session_factory() as session:
            async with session.begin():
                await self._get_conversation_row(session, conversation_id)
                await session.execute(delete(Message).where(Message.conversation_id == conversation_id))
                await session.execute(delete(Conversation).where(Conversation.id == conversation_id))

        logger.info("Deleted conversation %s", conversation_id)

    # --- messages ---

    async def add_message(self, message: MessageCreate) -> int:
        """
        Append a message; id and timestamp are assigned here.

        Raises:
            NotFoundError: If the owning conversation does not exist
        """
        async with self._session_factory() as session:
            async with session.begin():
                conversation = await self._get_conversation_row(session, message.conversation_id)
                now = self._tick()
                row = Message(**message.model_dump(), timestamp=now)
                session.add(row)
                conversation.updated_at = now
                await session.flush()
                message_id = row.id

        logger.debug(
            "Added %s message %s to conversation %s (thread=%s)",
            message.role.value, message_id, message.conversation_id, message.thread_id,
        )
        return message_id

    async def get_message(self, message_id: int) -> MessageRead:
        async with self._session_factory() as session:
            message = await self._get_message_row(session, message_id)
            return MessageRead.model_validate(message)

    async def update_message(
        self,
        message_id: int,
        updates: Union[MessageUpdate, Dict[str, Any]],
    ) -> MessageRead:
        """Replace message fields in place and bump the conversation's ``updated_at``."""
        if not isinstance(updates, MessageUpdate):
            updates = MessageUpdate(**updates)
        values = updates.model_dump(exclude_unset=True)

        async with self._session_factory() as session:
            async with session.begin():
                message = await self._get_message_row(session, message_id)
                for field, value in values.items():
                    setattr(message, field, value)
                conversation = await self._get_conversation_row(session, message.conversation_id)
                conversation.updated_at = self._tick()
            return MessageRead.model_validate(message)

    async def delete_message(self, message_id: int) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                message = await self._get_message_row(session, message_id)
                conversation = await self._get_conversation_row(session, message.conversation_id)
                await session.execute(delete(Message).where(Message.id == message_id))
                conversation.updated_at = self._tick()

    async def get_messages(self, conversation_id: int) -> List[MessageRead]:
        """Every message of a conversation, main thread and branches, by timestamp."""
        async with self._session_factory() as session:
            await self._get_conversation_row(session, conversation_id)
            result = await session.execute(
                select(Message)
                .where(Message.conversation_id == conversation_id)
                .order_by(Message.timestamp, Message.id)
            )
            return [MessageRead.model_validate(m) for m in result.scalars().all()]

    async def get_thread_messages(
        self,
        conversation_id: int,
        thread_id: Optional[str] = None,
    ) -> List[MessageRead]:
        """
        Linear context for one thread.

        The main thread when ``thread_id`` is None; otherwise the branch's
        messages prepended with their ancestor chain back into the main thread.
        """
        messages = await self.get_messages(conversation_id)
        return thread_context(messages, thread_id)

    async def create_branch_from_message(
        self,
        conversation_id: int,
        parent_message_id: int,
        user_content: str,
        provider: str,
        model: str,
    ) -> BranchCreated:
        """
        Fork a new branch off ``parent_message_id`` with a first user message.

        Raises:
            NotFoundError: If the conversation or parent message does not
                exist, or the parent belongs to another conversation
        """
        thread_id = uuid.uuid4().hex

        async with self._session_factory() as session:
            async with session.begin():
                conversation = await self._get_conversation_row(session, conversation_id)
                parent = await self._get_message_row(session, parent_message_id)
                if parent.conversation_id != conversation_id:
                    raise NotFoundError("Message", parent_message_id)

                now = self._tick()
                row = Message(
                    conversation_id=conversation_id,
                    role=MessageRole.USER,
                    content=user_content,
                    timestamp=now,
                    thread_id=thread_id,
                    parent_message_id=parent_message_id,
                    provider=provider,
                    model=model,
                )
                session.add(row)
                conversation.updated_at = now
                await session.flush()
                user_message_id = row.id

        logger.info(
            "Created branch %s off message %s in conversation %s (%s/%s)",
            thread_id, parent_message_id, conversation_id, provider, model,
        )
        return BranchCreated(user_message_id=user_message_id, thread_id=thread_id)

    # --- settings ---

    async def get_settings(self, provider: Optional[str] = None) -> List[ChatSettingsRead]:
        """Settings rows, optionally for one provider. API keys stay encrypted."""
        stmt = select(ChatSettings).order_by(ChatSettings.provider)
        if provider:
            stmt = stmt.where(ChatSettings.provider == provider)

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [ChatSettingsRead.model_validate(s) for s in result.scalars().all()]

    async def save_settings(self, settings_in: ChatSettingsCreate) -> ChatSettingsRead:
        """
        Create or overwrite the settings row of a provider.

        The API key is encrypted before it reaches the database.
        """
        values = settings_in.model_dump(exclude={"api_key"})

        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    select(ChatSettings).where(ChatSettings.provider == settings_in.provider)
                )
                row = result.scalar_one_or_none()
                if row is None:
                    row = ChatSettings(api_key="")
                    session.add(row)
                for field, value in values.items():
                    setattr(row, field, value)
                if settings_in.api_key is not None:
                    row.api_key = self.vault.encrypt(settings_in.api_key)
                await session.flush()
            return ChatSettingsRead.model_validate(row)

    async def delete_settings(self, provider: str) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    delete(ChatSettings).where(ChatSettings.provider == provider)
                )
                if result.rowcount == 0:
                    raise NotFoundError("Settings", provider)

    async def get_api_key(self, provider: str) -> Optional[str]:
        """
        Decrypt the stored key for a provider.

        Returns None when no key is stored or it cannot be decrypted; both
        mean "no credential" to callers.
        """
        rows = await self.get_settings(provider)
        if not rows or not rows[0].api_key:
            return None
        try:
            return self.vault.decrypt(rows[0].api_key) or None
        except DecryptionError as e:
            logger.warning("Stored API key for %s is unusable: %s", provider, e)
            return None

    # --- search ---

    async def search_conversations(self, query: str) -> List[ConversationRead]:
        """Non-archived conversations whose title contains ``query`` (case-insensitive)."""
        stmt = (
            select(Conversation)
            .where(Conversation.is_archived.is_(False))
            .where(func.lower(Conversation.title).contains(query.lower(), autoescape=True))
            .order_by(Conversation.updated_at.desc())
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [ConversationRead.model_validate(c) for c in result.scalars().all()]

    async def search_messages(self, query: str) -> List[Tuple[MessageRead, ConversationRead]]:
        """Messages containing ``query`` paired with their non-archived conversation."""
        stmt = (
            select(Message, Conversation)
            .join(Conversation, Message.conversation_id == Conversation.id)
            .where(Conversation.is_archived.is_(False))
            .where(func.lower(Message.content).contains(query.lower(), autoescape=True))
            .order_by(Message.timestamp)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [
                (MessageRead.model_validate(m), ConversationRead.model_validate(c))
                for m, c in result.all()
            ]

    # --- export / import ---

    async def export_all_data(self) -> Dict[str, Any]:
        """
        Snapshot of every table as a JSON-serializable document.
        API keys are exported as ciphertext.
        """
        async with self._session_factory() as session:
            conversations = (await session.execute(select(Conversation).order_by(Conversation.id))).scalars().all()
            messages = (await session.execute(select(Message).order_by(Message.id))).scalars().all()
            settings_rows = (await session.execute(select(ChatSettings).order_by(ChatSettings.id))).scalars().all()

            bundle = ExportBundle(
                conversations=[ConversationRead.model_validate(c) for c in conversations],
                messages=[MessageRead.model_validate(m) for m in messages],
                settings=[ChatSettingsRead.model_validate(s) for s in settings_rows],
                exported_at=utcnow(),
                version=EXPORT_VERSION,
            )
        return bundle.model_dump(mode="json")

    async def import_data(self, data: Union[ExportBundle, Dict[str, Any]]) -> None:
        """
        Replace all tables with the contents of an export document.

        Runs in a single transaction: on any error nothing changes.
        """
        bundle = data if isinstance(data, ExportBundle) else ExportBundle.model_validate(data)

        async with self._session_factory() as session:
            async with session.begin():
                await self._clear(session)
                if bundle.conversations:
                    await session.execute(
                        insert(Conversation), [c.model_dump() for c in bundle.conversations]
                    )
                if bundle.messages:
                    await session.execute(
                        insert(Message), [m.model_dump() for m in bundle.messages]
                    )
                if bundle.settings:
                    await session.execute(
                        insert(ChatSettings), [s.model_dump() for s in bundle.settings]
                    )
            await self._seed_clock(session)

        logger.info(
            "Imported %d conversations, %d messages, %d settings",
            len(bundle.conversations), len(bundle.messages), len(bundle.settings),
        )

    async def clear_all_data(self) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                await self._clear(session)
        logger.info("Cleared all chat data")

    async def _clear(self, session: AsyncSession) -> None:
        await session.execute(delete(Message))
        await session.execute(delete(Conversation))
        await session.execute(delete(ChatSettings))
