"""
Error taxonomy for the chat engine.
"""
from typing import Any, Optional


class ChatError(Exception):
    """Base class for all chat engine errors."""


class NotFoundError(ChatError):
    """Reference to a conversation, message or settings row that does not exist."""

    def __init__(self, entity: str, identifier: Any):
        self.entity = entity
        self.identifier = identifier
        super().__init__(f"{entity} {identifier!r} not found")


class UnknownProviderError(NotFoundError):
    """Provider id is not in the provider catalogue."""

    def __init__(self, provider: str):
        super().__init__("Provider", provider)
        self.provider = provider


class MissingCredentialError(ChatError):
    """No usable API key is configured for a provider."""

    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(
            f"No API key found for {provider}. Please configure it in settings."
        )


class DecryptionError(ChatError):
    """Stored ciphertext is malformed or was encrypted with another key."""


class ProviderRequestError(ChatError):
    """Network or HTTP failure surfaced by a provider client."""

    def __init__(self, provider: str, message: str, status_code: Optional[int] = None):
        self.provider = provider
        self.status_code = status_code
        super().__init__(f"{provider}: {message}")


class DualModeNotConfiguredError(ChatError):
    """A dual send was requested for a conversation without a second provider."""

    def __init__(self, conversation_id: int):
        self.conversation_id = conversation_id
        super().__init__(f"Conversation {conversation_id} has no second provider configured")


class StreamCancelledError(ChatError):
    """A stream was stopped by user action."""


class StreamBusyError(ChatError):
    """A stream is already running for the same conversation thread."""

    def __init__(self, conversation_id: int, thread_id: Optional[str]):
        self.conversation_id = conversation_id
        self.thread_id = thread_id
        where = f"thread {thread_id}" if thread_id else "main thread"
        super().__init__(
            f"A response is already streaming for conversation {conversation_id} ({where})"
        )


class RegenerateNotSupportedError(ChatError, NotImplementedError):
    """Regenerating a response is an interface point without an implementation."""

    def __init__(self):
        super().__init__("Regenerating a response is not yet supported")
