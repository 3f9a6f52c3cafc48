from typing import Optional

from langchain_anthropic import ChatAnthropic
from langchain_core.language_models.chat_models import BaseChatModel

from .base import LLMBaseModel


class AnthropicModel(LLMBaseModel):
    """
    Strategy for creating Anthropic Claude Models.
    """

    provider_id = "anthropic"
    # The Messages API requires max_tokens on every request
    default_max_tokens = 4096

    def create_model(
        self,
        model_name: str,
        api_key: str,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        **kwargs
    ) -> BaseChatModel:
        return ChatAnthropic(
            model=model_name,
            api_key=api_key,
            streaming=True,
            **self.generation_kwargs(temperature, max_tokens),
            **kwargs
        )
