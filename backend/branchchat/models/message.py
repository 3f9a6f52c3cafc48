"""
Message model for storing individual chat messages.
"""
import enum

from sqlalchemy import Column, DateTime, Enum, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import relationship

from branchchat.db.database import Base


class MessageRole(str, enum.Enum):
    """Enum for message roles"""
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class Message(Base):
    """
    Message table to store messages of every thread of a conversation.

    Branches are stored flat: ``thread_id`` names the branch (NULL for the
    main thread) and ``parent_message_id`` points at the message replied to.

    Fields:
        id: Primary key
        conversation_id: Foreign key to owning conversation
        role: user, assistant or system
        content: The actual message content
        timestamp: Creation time assigned by the store, used for ordering
        thread_id: Branch name, NULL for the main thread
        parent_message_id: Message this one replies to
        provider: Provider that produced (or will answer) this message
        model: Model that produced (or will answer) this message
        tokens: Usage count reported by the provider
    """
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, index=True)
    conversation_id = Column(
        Integer, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )
    role = Column(Enum(MessageRole, values_callable=lambda e: [m.value for m in e]), nullable=False)
    content = Column(Text, nullable=False)
    timestamp = Column(DateTime, nullable=False)
    thread_id = Column(String, nullable=True, index=True)
    parent_message_id = Column(Integer, nullable=True, index=True)
    provider = Column(String, nullable=True)
    model = Column(String, nullable=True)
    tokens = Column(Integer, nullable=True)

    # Relationships
    conversation = relationship("Conversation", back_populates="messages")

    __table_args__ = (
        Index("ix_messages_conversation_timestamp", "conversation_id", "timestamp"),
    )

    def __repr__(self):
        content_preview = self.content[:50] + "..." if len(self.content) > 50 else self.content
        return f"<Message(id={self.id}, role={self.role}, thread={self.thread_id}, content='{content_preview}')>"
