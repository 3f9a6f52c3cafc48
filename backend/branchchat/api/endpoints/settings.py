"""
Settings endpoints for per-provider API keys and generation defaults.
"""
from typing import List

from fastapi import APIRouter, Depends

from branchchat.api.deps import get_storage
from branchchat.core.exceptions import NotFoundError, UnknownProviderError
from branchchat.schemas.settings import (
    ChatSettingsCreate,
    ChatSettingsRead,
    ChatSettingsResponse,
    CredentialTestRequest,
    CredentialTestResponse,
    ProviderInfo,
)
from branchchat.services.chat_storage import ChatStorage
from branchchat.services.llm_models import PROVIDERS, get_provider
from branchchat.services.provider_client import verify_credential


router = APIRouter(prefix="/api", tags=["Settings"])


def _to_response(row: ChatSettingsRead) -> ChatSettingsResponse:
    # Never send the key back, not even encrypted
    return ChatSettingsResponse(
        **row.model_dump(exclude={"api_key"}),
        has_api_key=bool(row.api_key),
    )


@router.get("/providers", response_model=List[ProviderInfo])
async def list_providers():
    """Catalogue of supported providers and their models."""
    return PROVIDERS


@router.get("/settings", response_model=List[ChatSettingsResponse])
async def get_settings(storage: ChatStorage = Depends(get_storage)):
    """
    Get the settings of every configured provider.

    Returns:
        List of settings without API keys
    """
    return [_to_response(row) for row in await storage.get_settings()]


@router.get("/settings/{provider}", response_model=ChatSettingsResponse)
async def get_provider_settings(provider: str, storage: ChatStorage = Depends(get_storage)):
    rows = await storage.get_settings(provider)
    if not rows:
        raise NotFoundError("Settings", provider)
    return _to_response(rows[0])


@router.put("/settings", response_model=ChatSettingsResponse)
async def save_settings(
    settings_in: ChatSettingsCreate,
    storage: ChatStorage = Depends(get_storage),
):
    """
    Create or overwrite a provider's settings.
    The API key is encrypted before it is stored.
    """
    if get_provider(settings_in.provider) is None:
        raise UnknownProviderError(settings_in.provider)
    return _to_response(await storage.save_settings(settings_in))


@router.delete("/settings/{provider}")
async def delete_settings(provider: str, storage: ChatStorage = Depends(get_storage)):
    await storage.delete_settings(provider)
    return {"message": "Settings deleted successfully"}


@router.post("/settings/test", response_model=CredentialTestResponse)
async def check_credential(
    request: CredentialTestRequest,
    storage: ChatStorage = Depends(get_storage),
):
    """
    Validate an API key with a minimal request.

    Tests the supplied key, or the stored one when none is given.
    """
    if get_provider(request.provider) is None:
        raise UnknownProviderError(request.provider)

    api_key = request.api_key or await storage.get_api_key(request.provider)
    model = request.model
    if model is None:
        rows = await storage.get_settings(request.provider)
        model = rows[0].model if rows else None

    valid = await verify_credential(request.provider, api_key, model)
    return CredentialTestResponse(provider=request.provider, valid=valid)
