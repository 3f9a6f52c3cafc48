"""
Per-provider chat settings.
"""
from sqlalchemy import Column, Float, Integer, String, Text

from branchchat.db.database import Base


class ChatSettings(Base):
    """
    Provider-scoped defaults, one row per provider.

    Fields:
        id: Primary key
        provider: Provider id (openai, anthropic, google), unique
        api_key: Fernet ciphertext of the API key, empty when unset
        model: Default model id for the provider
        temperature: Model temperature setting
        max_tokens: Maximum tokens for generation
        system_prompt: Optional system prompt prepended to every request
    """
    __tablename__ = "chat_settings"

    id = Column(Integer, primary_key=True, index=True)
    provider = Column(String, nullable=False, unique=True, index=True)
    api_key = Column(String, nullable=False, default="")
    model = Column(String, nullable=False)
    temperature = Column(Float, nullable=True, default=0.7)
    max_tokens = Column(Integer, nullable=True, default=2000)
    system_prompt = Column(Text, nullable=True)

    def __repr__(self):
        return f"<ChatSettings(id={self.id}, provider='{self.provider}', model='{self.model}')>"
