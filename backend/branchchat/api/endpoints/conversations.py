"""
Conversation and message endpoints.
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, status

from branchchat.api.deps import get_orchestrator, get_storage
from branchchat.schemas.chat import (
    ConversationCreate,
    ConversationRead,
    ConversationUpdate,
    EditMessageRequest,
    MessageRead,
)
from branchchat.services.chat_storage import ChatStorage
from branchchat.services.stream_orchestrator import StreamOrchestrator
from branchchat.services.threads import BranchIndex, group_messages


router = APIRouter(prefix="/api", tags=["Conversations"])


@router.get("/conversations", response_model=List[ConversationRead])
async def list_conversations(
    q: Optional[str] = None,
    include_archived: bool = False,
    storage: ChatStorage = Depends(get_storage),
):
    """
    List conversations, most recently updated first.

    Args:
        q: Optional case-insensitive title filter
        include_archived: Also return archived conversations
    """
    if q:
        return await storage.search_conversations(q)
    return await storage.get_conversations(include_archived=include_archived)


@router.post("/conversations", response_model=ConversationRead, status_code=status.HTTP_201_CREATED)
async def create_conversation(
    data: ConversationCreate,
    storage: ChatStorage = Depends(get_storage),
):
    conversation_id = await storage.create_conversation(**data.model_dump())
    return await storage.get_conversation(conversation_id)


@router.get("/conversations/{conversation_id}", response_model=ConversationRead)
async def get_conversation(conversation_id: int, storage: ChatStorage = Depends(get_storage)):
    return await storage.get_conversation(conversation_id)


@router.patch("/conversations/{conversation_id}", response_model=ConversationRead)
async def update_conversation(
    conversation_id: int,
    updates: ConversationUpdate,
    storage: ChatStorage = Depends(get_storage),
):
    """Rename, switch models, toggle dual mode or archive a conversation."""
    return await storage.update_conversation(conversation_id, updates)


@router.post("/conversations/{conversation_id}/archive", response_model=ConversationRead)
async def archive_conversation(conversation_id: int, storage: ChatStorage = Depends(get_storage)):
    return await storage.archive_conversation(conversation_id)


@router.delete("/conversations/{conversation_id}")
async def delete_conversation(
    conversation_id: int,
    storage: ChatStorage = Depends(get_storage),
    orchestrator: StreamOrchestrator = Depends(get_orchestrator),
):
    """
    Delete a conversation and its messages.
    Any stream still running for it is cancelled first.
    """
    await orchestrator.discard_conversation(conversation_id)
    await storage.delete_conversation(conversation_id)
    return {"message": "Conversation deleted successfully"}


@router.get("/conversations/{conversation_id}/messages", response_model=List[MessageRead])
async def get_messages(conversation_id: int, storage: ChatStorage = Depends(get_storage)):
    """Every message of the conversation, main thread and branches, by timestamp."""
    return await storage.get_messages(conversation_id)


@router.get("/conversations/{conversation_id}/threads")
async def get_threads(conversation_id: int, storage: ChatStorage = Depends(get_storage)):
    """
    The conversation regrouped into its main thread and branches.

    Returns:
        main_thread, branches, reply counts per main-thread message and the
        ids of orphaned branches
    """
    view = group_messages(await storage.get_messages(conversation_id))
    index = BranchIndex(view)
    return {
        **view.model_dump(mode="json"),
        "reply_counts": {str(k): v for k, v in index.reply_counts().items()},
        "orphaned_branches": [b.id for b in index.orphans()],
    }


@router.get("/conversations/{conversation_id}/threads/{thread_id}", response_model=List[MessageRead])
async def get_thread_messages(
    conversation_id: int,
    thread_id: str,
    storage: ChatStorage = Depends(get_storage),
):
    """Linear context of one branch, including its ancestors in the main thread."""
    return await storage.get_thread_messages(conversation_id, thread_id)


@router.get("/messages/search")
async def search_messages(q: str, storage: ChatStorage = Depends(get_storage)):
    results = await storage.search_messages(q)
    return [
        {
            "message": message.model_dump(mode="json"),
            "conversation": conversation.model_dump(mode="json"),
        }
        for message, conversation in results
    ]


@router.patch("/messages/{message_id}", response_model=MessageRead)
async def edit_message(
    message_id: int,
    request: EditMessageRequest,
    orchestrator: StreamOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.edit_message(message_id, request.content)


@router.delete("/messages/{message_id}")
async def delete_message(message_id: int, storage: ChatStorage = Depends(get_storage)):
    await storage.delete_message(message_id)
    return {"message": "Message deleted"}
