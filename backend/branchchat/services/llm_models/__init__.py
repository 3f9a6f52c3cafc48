from .base import LLMBaseModel
from .catalog import PROVIDERS, get_model, get_provider
from .factory import LLMModelFactory

__all__ = [
    "LLMBaseModel",
    "LLMModelFactory",
    "PROVIDERS",
    "get_model",
    "get_provider",
]
