"""
Pydantic schemas for per-provider chat settings.
"""
from typing import List, Optional

from pydantic import BaseModel, Field


class ChatSettingsBase(BaseModel):
    """Base schema for chat settings"""
    provider: str = Field(..., min_length=1)
    model: str = Field(..., min_length=1)
    temperature: Optional[float] = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: Optional[int] = Field(default=2000, gt=0)
    system_prompt: Optional[str] = None


class ChatSettingsCreate(ChatSettingsBase):
    """
    Schema for saving settings.

    api_key is plaintext and encrypted by the store. None keeps the stored
    key, an empty string clears it.
    """
    api_key: Optional[str] = None


class ChatSettingsRead(ChatSettingsBase):
    """Stored settings; api_key is ciphertext"""
    id: int
    api_key: str = ""

    model_config = {"from_attributes": True}


class ChatSettingsResponse(ChatSettingsBase):
    """Settings as returned over HTTP: the key itself is never sent back"""
    id: int
    has_api_key: bool = False


class CredentialTestRequest(BaseModel):
    """Request schema for testing an API key"""
    provider: str
    api_key: Optional[str] = None
    model: Optional[str] = None


class CredentialTestResponse(BaseModel):
    """Response schema for a credential test"""
    provider: str
    valid: bool


class ModelInfo(BaseModel):
    """A model advertised by a provider"""
    id: str
    name: str
    max_tokens: int
    cost_per_1k_input: Optional[float] = None
    cost_per_1k_output: Optional[float] = None


class ProviderInfo(BaseModel):
    """A provider in the catalogue"""
    id: str
    name: str
    api_key_placeholder: str
    supports_system_messages: bool = True
    models: List[ModelInfo]
