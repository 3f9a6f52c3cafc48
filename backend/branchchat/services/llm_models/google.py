from typing import Optional

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_google_genai import ChatGoogleGenerativeAI

from .base import LLMBaseModel


class GoogleModel(LLMBaseModel):
    """
    Strategy for creating Google Gemini Models.
    """

    provider_id = "google"
    supports_system_messages = False

    def create_model(
        self,
        model_name: str,
        api_key: str,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        **kwargs
    ) -> BaseChatModel:
        generation = self.generation_kwargs(temperature, max_tokens)
        if "max_tokens" in generation:
            generation["max_output_tokens"] = generation.pop("max_tokens")
        return ChatGoogleGenerativeAI(
            model=model_name,
            google_api_key=api_key,
            **generation,
            **kwargs
        )
