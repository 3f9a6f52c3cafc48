"""
Conversation model for storing chat sessions.
"""
from sqlalchemy import Boolean, Column, DateTime, Integer, String
from sqlalchemy.orm import relationship

from branchchat.db.database import Base


class Conversation(Base):
    """
    Conversation table to store individual chat sessions.

    Fields:
        id: Primary key, assigned by the store
        title: Conversation title (first user message excerpt)
        provider: Primary provider id (openai, anthropic, google)
        model: Primary model id
        is_dual_mode: Whether sends fan out to a second provider
        second_provider: Secondary provider id for dual mode
        second_model: Secondary model id for dual mode
        is_archived: Hidden from the conversation list
        created_at: When conversation was created
        updated_at: Bumped on every message add/edit/delete
    """
    __tablename__ = "conversations"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String, nullable=False, default="New Chat")
    provider = Column(String, nullable=False)
    model = Column(String, nullable=False)
    is_dual_mode = Column(Boolean, nullable=False, default=False)
    second_provider = Column(String, nullable=True)
    second_model = Column(String, nullable=True)
    is_archived = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False, index=True)

    # Relationships
    messages = relationship(
        "Message",
        back_populates="conversation",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Message.timestamp",
    )

    def __repr__(self):
        return f"<Conversation(id={self.id}, title='{self.title}', provider='{self.provider}')>"
