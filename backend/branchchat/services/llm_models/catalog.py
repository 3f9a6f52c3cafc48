"""
Catalogue of supported providers and the models they advertise.
"""
from typing import List, Optional

from branchchat.schemas.settings import ModelInfo, ProviderInfo


PROVIDERS: List[ProviderInfo] = [
    ProviderInfo(
        id="openai",
        name="OpenAI",
        api_key_placeholder="sk-...",
        models=[
            ModelInfo(id="gpt-4o", name="GPT-4o", max_tokens=128000,
                      cost_per_1k_input=0.005, cost_per_1k_output=0.015),
            ModelInfo(id="gpt-4o-mini", name="GPT-4o Mini", max_tokens=128000,
                      cost_per_1k_input=0.00015, cost_per_1k_output=0.0006),
            ModelInfo(id="gpt-4-turbo", name="GPT-4 Turbo", max_tokens=128000,
                      cost_per_1k_input=0.01, cost_per_1k_output=0.03),
            ModelInfo(id="gpt-3.5-turbo", name="GPT-3.5 Turbo", max_tokens=16385,
                      cost_per_1k_input=0.0005, cost_per_1k_output=0.0015),
        ],
    ),
    ProviderInfo(
        id="anthropic",
        name="Anthropic Claude",
        api_key_placeholder="sk-ant-...",
        models=[
            ModelInfo(id="claude-3-5-sonnet-20241022", name="Claude 3.5 Sonnet", max_tokens=200000,
                      cost_per_1k_input=0.003, cost_per_1k_output=0.015),
            ModelInfo(id="claude-3-haiku-20240307", name="Claude 3 Haiku", max_tokens=200000,
                      cost_per_1k_input=0.00025, cost_per_1k_output=0.00125),
            ModelInfo(id="claude-3-opus-20240229", name="Claude 3 Opus", max_tokens=200000,
                      cost_per_1k_input=0.015, cost_per_1k_output=0.075),
        ],
    ),
    ProviderInfo(
        id="google",
        name="Google Gemini",
        api_key_placeholder="AIza...",
        supports_system_messages=False,
        models=[
            ModelInfo(id="gemini-1.5-pro", name="Gemini 1.5 Pro", max_tokens=2000000,
                      cost_per_1k_input=0.0035, cost_per_1k_output=0.0105),
            ModelInfo(id="gemini-1.5-flash", name="Gemini 1.5 Flash", max_tokens=1000000,
                      cost_per_1k_input=0.000075, cost_per_1k_output=0.0003),
            ModelInfo(id="gemini-pro", name="Gemini Pro", max_tokens=30720,
                      cost_per_1k_input=0.0005, cost_per_1k_output=0.0015),
        ],
    ),
]


def get_provider(provider_id: str) -> Optional[ProviderInfo]:
    for provider in PROVIDERS:
        if provider.id == provider_id:
            return provider
    return None


def get_model(provider_id: str, model_id: str) -> Optional[ModelInfo]:
    provider = get_provider(provider_id)
    if provider is None:
        return None
    for model in provider.models:
        if model.id == model_id:
            return model
    return None
