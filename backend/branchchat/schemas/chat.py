"""
Pydantic schemas for conversations, messages and thread views.
"""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from branchchat.models.message import MessageRole


class ConversationCreate(BaseModel):
    """Schema for creating a conversation"""
    provider: str = Field(..., min_length=1)
    model: str = Field(..., min_length=1)
    title: str = "New Chat"
    is_dual_mode: bool = False
    second_provider: Optional[str] = None
    second_model: Optional[str] = None


class ConversationUpdate(BaseModel):
    """Partial update for a conversation; unset fields are left alone"""
    title: Optional[str] = None
    provider: Optional[str] = None
    model: Optional[str] = None
    is_dual_mode: Optional[bool] = None
    second_provider: Optional[str] = None
    second_model: Optional[str] = None
    is_archived: Optional[bool] = None

    @field_validator("title", "provider", "model", "is_dual_mode", "is_archived")
    @classmethod
    def _not_null(cls, value):
        # Omit a field to leave it alone; these columns cannot be cleared
        if value is None:
            raise ValueError("may be omitted but not null")
        return value


class ConversationRead(BaseModel):
    """Response schema for a conversation"""
    id: int
    title: str
    provider: str
    model: str
    is_dual_mode: bool = False
    second_provider: Optional[str] = None
    second_model: Optional[str] = None
    is_archived: bool = False
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class MessageCreate(BaseModel):
    """Schema for adding a message; id and timestamp are assigned by the store"""
    conversation_id: int
    role: MessageRole
    content: str
    thread_id: Optional[str] = None
    parent_message_id: Optional[int] = None
    provider: Optional[str] = None
    model: Optional[str] = None
    tokens: Optional[int] = None


class MessageUpdate(BaseModel):
    """Partial update for a message"""
    content: Optional[str] = None
    tokens: Optional[int] = None

    @field_validator("content")
    @classmethod
    def _content_not_null(cls, value):
        if value is None:
            raise ValueError("may be omitted but not null")
        return value


class MessageRead(BaseModel):
    """Response schema for a message"""
    id: int
    conversation_id: int
    role: MessageRole
    content: str
    timestamp: datetime
    thread_id: Optional[str] = None
    parent_message_id: Optional[int] = None
    provider: Optional[str] = None
    model: Optional[str] = None
    tokens: Optional[int] = None

    model_config = {"from_attributes": True}


class BranchCreated(BaseModel):
    """Result of forking a new branch off a message"""
    user_message_id: int
    thread_id: str


class Branch(BaseModel):
    """One named alternate continuation"""
    id: str
    messages: List[MessageRead]
    provider: str
    model: str

    @property
    def parent_message_id(self) -> Optional[int]:
        return self.messages[0].parent_message_id if self.messages else None


class ThreadView(BaseModel):
    """A conversation regrouped into its main thread and branches"""
    main_thread: List[MessageRead]
    branches: List[Branch]


class ChatParams(BaseModel):
    """Generation parameters handed to a provider"""
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    system_prompt: Optional[str] = None


class ChatTurn(BaseModel):
    """Provider-facing message: role and content only"""
    role: MessageRole
    content: str


# --- Request / response schemas for the chat endpoints ---

class SendRequest(BaseModel):
    """Request schema for sending a main-thread message"""
    conversation_id: int
    content: str = Field(..., min_length=1)


class ReplyRequest(BaseModel):
    """Request schema for replying inside a branch"""
    conversation_id: int
    parent_message_id: int
    content: str = Field(..., min_length=1)
    thread_id: Optional[str] = None
    provider: Optional[str] = None
    model: Optional[str] = None


class CancelRequest(BaseModel):
    """Request schema for cancelling a stream"""
    conversation_id: int
    thread_id: Optional[str] = None


class EditMessageRequest(BaseModel):
    """Request schema for editing a message"""
    content: str = Field(..., min_length=1)


class StreamStatus(BaseModel):
    """Snapshot of a stream slot"""
    conversation_id: int
    thread_id: Optional[str] = None
    state: str
    text: str = ""
    message_id: Optional[int] = None
    error: Optional[str] = None
