"""
Pydantic schemas for the export/import document.
"""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, field_validator

from branchchat.schemas.chat import ConversationRead, MessageRead
from branchchat.schemas.settings import ChatSettingsRead


EXPORT_VERSION = 1


class ExportBundle(BaseModel):
    """
    Full snapshot of the local store.

    API keys stay encrypted: settings rows are exported as stored.
    """
    conversations: List[ConversationRead] = []
    messages: List[MessageRead] = []
    settings: List[ChatSettingsRead] = []
    exported_at: Optional[datetime] = None
    version: int = EXPORT_VERSION

    @field_validator("version")
    @classmethod
    def _known_version(cls, value: int) -> int:
        if value != EXPORT_VERSION:
            raise ValueError(f"unsupported export version {value}, expected {EXPORT_VERSION}")
        return value
