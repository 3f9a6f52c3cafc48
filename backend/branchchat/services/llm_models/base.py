from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from langchain_core.language_models.chat_models import BaseChatModel


class LLMBaseModel(ABC):
    """
    Abstract base class for LLM provider strategies.
    Different providers (OpenAI, Anthropic, etc.) should implement this interface.
    """

    provider_id: str = ""
    default_max_tokens: Optional[int] = None
    supports_system_messages: bool = True

    def is_provider_for(self, provider_id: str) -> bool:
        """
        Determines if this strategy handles the given provider id.
        """
        return provider_id == self.provider_id

    def generation_kwargs(self, temperature: Optional[float], max_tokens: Optional[int]) -> Dict[str, Any]:
        """
        Keyword arguments shared by every provider, leaving unset values to
        the provider's own defaults.
        """
        kwargs: Dict[str, Any] = {}
        if temperature is not None:
            kwargs["temperature"] = temperature
        max_tokens = max_tokens or self.default_max_tokens
        if max_tokens is not None:
            kwargs["max_tokens"] = max_tokens
        return kwargs

    @abstractmethod
    def create_model(
        self,
        model_name: str,
        api_key: str,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        **kwargs
    ) -> BaseChatModel:
        """
        Creates and returns a streaming LangChain chat model instance.
        """
        pass
