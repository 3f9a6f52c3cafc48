"""
Models package - exports all database models.
"""
from branchchat.models.conversation import Conversation
from branchchat.models.message import Message, MessageRole
from branchchat.models.settings import ChatSettings

__all__ = [
    "Conversation",
    "Message",
    "MessageRole",
    "ChatSettings",
]
