"""
Stream Orchestrator - turns send actions into provider streams and persisted replies.

Each conversation thread being replied to owns one ``StreamSlot`` moving
through ``idle -> streaming -> committed | cancelled | failed``. Slots run as
independent asyncio tasks: dual-mode sends fan out into two slots that share
nothing but the store, so one failing or being cancelled never touches the
other.
"""
import asyncio
import enum
import logging
from collections import OrderedDict
from contextlib import aclosing
from typing import Callable, Dict, List, Optional, Tuple

from branchchat.core.config import settings as app_settings
from branchchat.core.exceptions import (
    DualModeNotConfiguredError,
    NotFoundError,
    ProviderRequestError,
    RegenerateNotSupportedError,
    StreamBusyError,
    StreamCancelledError,
    UnknownProviderError,
)
from branchchat.models.message import MessageRole
from branchchat.schemas.chat import (
    ChatParams,
    ConversationRead,
    ConversationUpdate,
    MessageCreate,
    MessageRead,
    MessageUpdate,
    StreamStatus,
)
from branchchat.services.chat_storage import ChatStorage
from branchchat.services.llm_models import get_provider
from branchchat.services.provider_client import CancellationToken, ProviderClient
from branchchat.services.threads import group_messages


logger = logging.getLogger(__name__)

TITLE_MAX_LENGTH = 50
# Finished slots kept around so late listeners can still replay them
FINISHED_SLOT_LIMIT = 32

ClientFactory = Callable[[str, Optional[str]], ProviderClient]
SlotKey = Tuple[int, Optional[str]]


def derive_title(content: str) -> str:
    """First 50 characters of a message, with an ellipsis when truncated."""
    if len(content) > TITLE_MAX_LENGTH:
        return content[:TITLE_MAX_LENGTH] + "..."
    return content


class SlotState(str, enum.Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    COMMITTED = "committed"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_STATES = {SlotState.COMMITTED, SlotState.CANCELLED, SlotState.FAILED}


class StreamSlot:
    """
    One reply being streamed into a conversation thread.

    ``text`` is the live accumulator; it is only persisted when the stream
    ends naturally.
    """

    def __init__(
        self,
        conversation_id: int,
        thread_id: Optional[str],
        provider: str,
        model: str,
    ):
        self.conversation_id = conversation_id
        self.thread_id = thread_id
        self.provider = provider
        self.model = model
        self.state = SlotState.IDLE
        self.text = ""
        self.user_message_id: Optional[int] = None
        self.message_id: Optional[int] = None
        self.error: Optional[BaseException] = None
        self.token = CancellationToken()
        self.task: Optional[asyncio.Task] = None
        self._fragments: List[str] = []
        self._changed = asyncio.Condition()
        self._committing = False

    @property
    def key(self) -> SlotKey:
        return (self.conversation_id, self.thread_id)

    @property
    def done(self) -> bool:
        return self.state in TERMINAL_STATES

    def cancel(self) -> None:
        """Stop the stream and drop its text. A no-op once the reply is final."""
        if self.done or self._committing:
            return
        self.token.cancel()

    async def wait(self) -> "StreamSlot":
        """Wait for the slot to reach a final state."""
        if self.task is not None:
            await asyncio.shield(self.task)
        return self

    def result(self) -> int:
        """
        Id of the committed assistant message.

        Raises:
            StreamCancelledError: If the stream was cancelled
            ChatError: The failure that stopped the stream
        """
        if self.state == SlotState.COMMITTED:
            return self.message_id
        if self.state == SlotState.CANCELLED:
            raise StreamCancelledError(f"Stream for {self.key} was cancelled")
        if self.state == SlotState.FAILED:
            raise self.error
        raise RuntimeError(f"Stream for {self.key} has not finished")

    async def fragments(self):
        """Live fragments from the start of the stream until it ends."""
        index = 0
        while True:
            async with self._changed:
                await self._changed.wait_for(lambda: index < len(self._fragments) or self.done)
                pending = self._fragments[index:]
                finished = self.done
            for fragment in pending:
                yield fragment
            index += len(pending)
            if finished:
                return

    def to_status(self) -> StreamStatus:
        return StreamStatus(
            conversation_id=self.conversation_id,
            thread_id=self.thread_id,
            state=self.state.value,
            text=self.text,
            message_id=self.message_id,
            error=str(self.error) if self.error else None,
        )

    async def _append(self, fragment: str) -> None:
        self.text += fragment
        self._fragments.append(fragment)
        async with self._changed:
            self._changed.notify_all()

    async def _finish(self, state: SlotState, error: Optional[BaseException] = None) -> None:
        self.state = state
        self.error = error
        if state != SlotState.COMMITTED:
            self.text = ""
        async with self._changed:
            self._changed.notify_all()

    def __repr__(self):
        return f"<StreamSlot(conversation={self.conversation_id}, thread={self.thread_id}, state={self.state.value})>"


class StreamOrchestrator:
    """
    Starts and tracks provider streams for conversations.

    All persistent state lives in the ``ChatStorage``; the orchestrator only
    keeps the slots of the streams it started.
    """

    def __init__(self, storage: ChatStorage, client_factory: Optional[ClientFactory] = None):
        self.storage = storage
        self.client_factory: ClientFactory = client_factory or ProviderClient
        self._slots: Dict[SlotKey, StreamSlot] = {}
        self._finished: "OrderedDict[SlotKey, StreamSlot]" = OrderedDict()

    # --- slot registry ---

    def get_slot(self, conversation_id: int, thread_id: Optional[str] = None) -> Optional[StreamSlot]:
        """The running slot of a thread, else its most recent finished one."""
        key = (conversation_id, thread_id)
        return self._slots.get(key) or self._finished.get(key)

    def retained_slots(self) -> int:
        return len(self._slots) + len(self._finished)

    def _retire(self, slot: StreamSlot) -> None:
        if self._slots.get(slot.key) is slot:
            del self._slots[slot.key]
        self._finished.pop(slot.key, None)
        self._finished[slot.key] = slot
        while len(self._finished) > FINISHED_SLOT_LIMIT:
            self._finished.popitem(last=False)

    async def discard_conversation(self, conversation_id: int) -> None:
        """Cancel every stream of a conversation and forget all of its slots."""
        slots = self.active_slots(conversation_id)
        for slot in slots:
            slot.cancel()
        tasks = [slot.task for slot in slots if slot.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for key in [k for k in self._finished if k[0] == conversation_id]:
            del self._finished[key]

    def active_slots(self, conversation_id: Optional[int] = None) -> List[StreamSlot]:
        return [
            slot for slot in self._slots.values()
            if not slot.done and (conversation_id is None or slot.conversation_id == conversation_id)
        ]

    def _claim(self, conversation_id: int, thread_id: Optional[str], provider: str, model: str) -> StreamSlot:
        existing = self._slots.get((conversation_id, thread_id))
        if existing is not None and not existing.done:
            raise StreamBusyError(conversation_id, thread_id)
        slot = StreamSlot(conversation_id, thread_id, provider, model)
        self._slots[slot.key] = slot
        return slot

    def _start(self, slot: StreamSlot) -> None:
        slot.state = SlotState.STREAMING
        slot.task = asyncio.create_task(
            self._run(slot),
            name=f"stream-{slot.conversation_id}-{slot.thread_id or 'main'}",
        )

    @staticmethod
    def _check_provider(provider: Optional[str]) -> str:
        if not provider or get_provider(provider) is None:
            raise UnknownProviderError(provider or "")
        return provider

    # --- operations ---

    async def send_message(self, conversation_id: int, content: str) -> StreamSlot:
        """
        Append a user message to the main thread and stream the reply.

        Returns:
            The running slot; await ``slot.wait()`` for the outcome
        """
        conversation = await self.storage.get_conversation(conversation_id)
        self._check_provider(conversation.provider)
        slot = self._claim(conversation_id, None, conversation.provider, conversation.model)

        slot.user_message_id = await self._add_user_message(slot, MessageCreate(
            conversation_id=conversation_id,
            role=MessageRole.USER,
            content=content,
            provider=conversation.provider,
            model=conversation.model,
        ))
        self._start(slot)
        return slot

    async def reply_to_thread(
        self,
        conversation_id: int,
        parent_message_id: int,
        content: str,
        thread_id: Optional[str] = None,
        provider: Optional[str] = None,
        model: Optional[str] = None,
    ) -> StreamSlot:
        """
        Continue an existing thread with a user message and stream the reply.

        The new user message carries ``thread_id`` and replies to
        ``parent_message_id``. The provider/model default to the branch's
        own (main thread: the conversation's).
        """
        conversation = await self.storage.get_conversation(conversation_id)
        parent = await self.storage.get_message(parent_message_id)
        if parent.conversation_id != conversation_id:
            raise NotFoundError("Message", parent_message_id)

        default_provider, default_model = await self._thread_model(conversation, thread_id)
        provider = self._check_provider(provider or default_provider)
        model = model or default_model
        slot = self._claim(conversation_id, thread_id, provider, model)

        slot.user_message_id = await self._add_user_message(slot, MessageCreate(
            conversation_id=conversation_id,
            role=MessageRole.USER,
            content=content,
            thread_id=thread_id,
            parent_message_id=parent_message_id,
            provider=provider,
            model=model,
        ))
        self._start(slot)
        return slot

    async def branch_from_message(
        self,
        conversation_id: int,
        parent_message_id: int,
        content: str,
        provider: Optional[str] = None,
        model: Optional[str] = None,
    ) -> StreamSlot:
        """Fork a new branch off a message and stream its first reply."""
        conversation = await self.storage.get_conversation(conversation_id)
        provider = self._check_provider(provider or conversation.provider)
        model = model or conversation.model
        return await self._open_branch(conversation_id, parent_message_id, content, provider, model)

    async def dual_send(
        self,
        conversation_id: int,
        content: str,
        second_provider: Optional[str] = None,
        second_model: Optional[str] = None,
    ) -> Tuple[StreamSlot, StreamSlot]:
        """
        Send one user message to two providers at once.

        The message goes to the main thread, then one branch per provider
        forks off it and both replies stream concurrently. Each branch
        commits, fails or is cancelled on its own.

        Returns:
            (primary slot, secondary slot)
        """
        conversation = await self.storage.get_conversation(conversation_id)
        second_provider = second_provider or conversation.second_provider
        second_model = second_model or conversation.second_model
        if not second_provider or not second_model:
            raise DualModeNotConfiguredError(conversation_id)
        self._check_provider(conversation.provider)
        self._check_provider(second_provider)

        user_message_id = await self.storage.add_message(MessageCreate(
            conversation_id=conversation_id,
            role=MessageRole.USER,
            content=content,
            provider=conversation.provider,
            model=conversation.model,
        ))

        primary = await self._open_branch(
            conversation_id, user_message_id, content, conversation.provider, conversation.model
        )
        secondary = await self._open_branch(
            conversation_id, user_message_id, content, second_provider, second_model
        )
        return primary, secondary

    async def edit_message(self, message_id: int, content: str) -> MessageRead:
        """Replace a message's content. Never restarts a stream."""
        return await self.storage.update_message(message_id, MessageUpdate(content=content))

    async def regenerate(self, conversation_id: int, message_id: int) -> StreamSlot:
        """
        Re-run a reply with the context cut before ``message_id``.

        Raises:
            RegenerateNotSupportedError: Always
        """
        raise RegenerateNotSupportedError()

    # --- cancellation ---

    def cancel(self, conversation_id: int, thread_id: Optional[str] = None) -> bool:
        """
        Cancel the stream of one thread.

        Returns:
            True if a running stream was signalled
        """
        slot = self.get_slot(conversation_id, thread_id)
        if slot is None or slot.done:
            return False
        slot.cancel()
        return True

    def cancel_conversation(self, conversation_id: int, include_branches: bool = False) -> int:
        """
        Cancel streams bound to a conversation's view.

        Only the main-thread stream is cancelled unless ``include_branches``;
        branches keep streaming while the user looks elsewhere.
        """
        count = 0
        for slot in self.active_slots(conversation_id):
            if slot.thread_id is None or include_branches:
                slot.cancel()
                count += 1
        return count

    async def shutdown(self) -> None:
        """Cancel every running stream, wait for the tasks and forget all slots."""
        slots = self.active_slots()
        for slot in slots:
            slot.cancel()
        tasks = [slot.task for slot in slots if slot.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._finished.clear()

    # --- internals ---

    async def _add_user_message(self, slot: StreamSlot, message: MessageCreate) -> int:
        try:
            return await self.storage.add_message(message)
        except BaseException as e:
            await slot._finish(SlotState.FAILED, e)
            self._retire(slot)
            raise

    async def _open_branch(
        self,
        conversation_id: int,
        parent_message_id: int,
        content: str,
        provider: str,
        model: str,
    ) -> StreamSlot:
        branch = await self.storage.create_branch_from_message(
            conversation_id, parent_message_id, content, provider, model
        )
        slot = self._claim(conversation_id, branch.thread_id, provider, model)
        slot.user_message_id = branch.user_message_id
        self._start(slot)
        return slot

    async def _thread_model(self, conversation: ConversationRead, thread_id: Optional[str]) -> Tuple[str, str]:
        if thread_id is None:
            return conversation.provider, conversation.model
        view = group_messages(await self.storage.get_messages(conversation.id))
        for branch in view.branches:
            if branch.id == thread_id:
                first = branch.messages[0]
                return first.provider or conversation.provider, first.model or conversation.model
        raise NotFoundError("Thread", thread_id)

    async def _chat_params(self, provider: str) -> ChatParams:
        rows = await self.storage.get_settings(provider)
        if not rows:
            return ChatParams(
                temperature=app_settings.DEFAULT_TEMPERATURE,
                max_tokens=app_settings.DEFAULT_MAX_TOKENS,
            )
        row = rows[0]
        return ChatParams(
            temperature=row.temperature,
            max_tokens=row.max_tokens,
            system_prompt=row.system_prompt,
        )

    async def _run(self, slot: StreamSlot) -> None:
        try:
            # Decrypted fresh for every send and dropped with the client
            client = self.client_factory(slot.provider, await self.storage.get_api_key(slot.provider))
            params = await self._chat_params(slot.provider)
            context = await self.storage.get_thread_messages(slot.conversation_id, slot.thread_id)

            if not slot.token.cancelled:
                async with aclosing(client.stream_chat(context, slot.model, params, slot.token)) as stream:
                    async for fragment in stream:
                        if slot.token.cancelled:
                            break
                        await slot._append(fragment)

            if slot.token.cancelled:
                logger.info("Stream cancelled for %s, discarding %d chars", slot.key, len(slot.text))
                await slot._finish(SlotState.CANCELLED)
                return

            if not slot.text:
                raise ProviderRequestError(slot.provider, "Provider returned an empty response")

            slot._committing = True
            slot.message_id = await self.storage.add_message(MessageCreate(
                conversation_id=slot.conversation_id,
                role=MessageRole.ASSISTANT,
                content=slot.text,
                thread_id=slot.thread_id,
                parent_message_id=slot.user_message_id,
                provider=slot.provider,
                model=slot.model,
                tokens=getattr(client, "usage_tokens", None),
            ))
            await self._update_title(slot)
            await slot._finish(SlotState.COMMITTED)
            logger.info("Committed reply %s for %s", slot.message_id, slot.key)

        except asyncio.CancelledError:
            await slot._finish(SlotState.CANCELLED)
            raise
        except Exception as e:
            logger.warning("Stream failed for %s: %s", slot.key, e)
            await slot._finish(SlotState.FAILED, e)
        finally:
            self._retire(slot)

    async def _update_title(self, slot: StreamSlot) -> None:
        """
        Title the conversation after its first user message.

        Only the conversation's first assistant reply does this, and only
        while the main thread holds no more than the first exchange. Ids are
        assigned in commit order, so of two concurrent first replies exactly
        one qualifies.
        """
        conversation_id = slot.conversation_id
        messages = await self.storage.get_messages(conversation_id)
        if any(m.role == MessageRole.ASSISTANT and m.id < slot.message_id for m in messages):
            return
        main_thread = [m for m in messages if m.thread_id is None]
        if len(main_thread) > 2:
            return
        first_user = next((m for m in main_thread if m.role == MessageRole.USER), None)
        if first_user is None:
            return
        await self.storage.update_conversation(
            conversation_id, ConversationUpdate(title=derive_title(first_user.content))
        )
