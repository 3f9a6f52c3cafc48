from typing import Optional

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_openai import ChatOpenAI

from .base import LLMBaseModel


class OpenAIModel(LLMBaseModel):
    """
    Strategy for creating OpenAI Chat Models.
    """

    provider_id = "openai"

    def create_model(
        self,
        model_name: str,
        api_key: str,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        **kwargs
    ) -> BaseChatModel:
        return ChatOpenAI(
            model=model_name,
            api_key=api_key,
            streaming=True,
            stream_usage=True,
            **self.generation_kwargs(temperature, max_tokens),
            **kwargs
        )
