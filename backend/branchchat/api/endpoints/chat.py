"""
Chat endpoints for starting, following and cancelling response streams.
"""
import json
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import StreamingResponse

from branchchat.api.deps import get_orchestrator
from branchchat.schemas.chat import CancelRequest, ReplyRequest, SendRequest, StreamStatus
from branchchat.services.stream_orchestrator import StreamOrchestrator, StreamSlot


router = APIRouter(prefix="/api/chat", tags=["Chat"])


async def _status(slot: StreamSlot, wait: bool) -> StreamStatus:
    if wait:
        await slot.wait()
    return slot.to_status()


@router.post("/send", response_model=StreamStatus, status_code=status.HTTP_202_ACCEPTED)
async def send_message(
    request: SendRequest,
    wait: bool = False,
    orchestrator: StreamOrchestrator = Depends(get_orchestrator),
):
    """
    Send a main-thread message and start streaming the reply.

    Args:
        request: Conversation id and message content
        wait: Block until the stream reaches a final state

    Returns:
        Stream status; follow it via /api/chat/stream/{conversation_id}
    """
    slot = await orchestrator.send_message(request.conversation_id, request.content)
    return await _status(slot, wait)


@router.post("/reply", response_model=StreamStatus, status_code=status.HTTP_202_ACCEPTED)
async def reply(
    request: ReplyRequest,
    wait: bool = False,
    orchestrator: StreamOrchestrator = Depends(get_orchestrator),
):
    """
    Reply to a message.

    With ``thread_id`` the reply continues that branch; without it a new
    branch is forked off ``parent_message_id``.
    """
    if request.thread_id:
        slot = await orchestrator.reply_to_thread(
            request.conversation_id,
            request.parent_message_id,
            request.content,
            thread_id=request.thread_id,
            provider=request.provider,
            model=request.model,
        )
    else:
        slot = await orchestrator.branch_from_message(
            request.conversation_id,
            request.parent_message_id,
            request.content,
            provider=request.provider,
            model=request.model,
        )
    return await _status(slot, wait)


@router.post("/dual", response_model=List[StreamStatus], status_code=status.HTTP_202_ACCEPTED)
async def dual_send(
    request: SendRequest,
    wait: bool = False,
    orchestrator: StreamOrchestrator = Depends(get_orchestrator),
):
    """Send one message to the conversation's two providers concurrently."""
    primary, secondary = await orchestrator.dual_send(request.conversation_id, request.content)
    return [await _status(primary, wait), await _status(secondary, wait)]


@router.get("/stream/{conversation_id}")
async def follow_stream(
    conversation_id: int,
    thread_id: Optional[str] = None,
    orchestrator: StreamOrchestrator = Depends(get_orchestrator),
):
    """
    Server-sent events for a running stream.

    Emits one ``fragment`` event per text chunk and a final ``done`` event
    carrying the stream status. A client disconnecting does not cancel the
    stream.
    """
    slot = orchestrator.get_slot(conversation_id, thread_id)
    if slot is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No stream for this conversation thread"
        )

    async def events():
        async for fragment in slot.fragments():
            yield f"data: {json.dumps({'type': 'fragment', 'text': fragment})}\n\n"
        yield f"data: {json.dumps({'type': 'done', **slot.to_status().model_dump()})}\n\n"

    return StreamingResponse(events(), media_type="text/event-stream")


@router.get("/status/{conversation_id}", response_model=List[StreamStatus])
async def stream_status(
    conversation_id: int,
    orchestrator: StreamOrchestrator = Depends(get_orchestrator),
):
    """Streams currently running for a conversation."""
    return [slot.to_status() for slot in orchestrator.active_slots(conversation_id)]


@router.post("/cancel")
async def cancel(
    request: CancelRequest,
    orchestrator: StreamOrchestrator = Depends(get_orchestrator),
):
    """Cancel one thread's stream. Cancelling twice or after completion is harmless."""
    cancelled = orchestrator.cancel(request.conversation_id, request.thread_id)
    return {"cancelled": cancelled}


@router.post("/regenerate/{conversation_id}/{message_id}", response_model=StreamStatus)
async def regenerate(
    conversation_id: int,
    message_id: int,
    orchestrator: StreamOrchestrator = Depends(get_orchestrator),
):
    slot = await orchestrator.regenerate(conversation_id, message_id)
    return slot.to_status()
