from typing import List, Optional

from langchain_core.language_models.chat_models import BaseChatModel

from branchchat.core.exceptions import UnknownProviderError
from .anthropic import AnthropicModel
from .base import LLMBaseModel
from .google import GoogleModel
from .openai import OpenAIModel


class LLMModelFactory:
    """
    Factory class to create LLM models using registered strategies.
    Implements the Strategy Pattern context.
    """

    def __init__(self, strategies: Optional[List[LLMBaseModel]] = None):
        # Register available strategies
        self.strategies: List[LLMBaseModel] = strategies if strategies is not None else [
            OpenAIModel(),
            AnthropicModel(),
            GoogleModel(),
        ]

    def get_strategy(self, provider_id: str) -> LLMBaseModel:
        """
        Find the strategy registered for a provider id.

        Raises:
            UnknownProviderError: If no strategy handles the provider
        """
        for strategy in self.strategies:
            if strategy.is_provider_for(provider_id):
                return strategy
        raise UnknownProviderError(provider_id)

    def create_llm(
        self,
        provider_id: str,
        model_name: str,
        api_key: str,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> BaseChatModel:
        """
        Build a chat model with the strategy registered for ``provider_id``.
        """
        return self.get_strategy(provider_id).create_model(
            model_name=model_name,
            api_key=api_key,
            temperature=temperature,
            max_tokens=max_tokens,
        )
