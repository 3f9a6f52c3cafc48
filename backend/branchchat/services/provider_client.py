"""
Provider Client - streams chat completions from a remote provider.

Wire formats are left to the LangChain chat model of each provider; this
module only fixes the consumption contract: ordered messages in, a lazy,
cancelable sequence of text fragments out.
"""
import asyncio
import logging
from typing import Any, AsyncIterator, List, Optional, Sequence

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from branchchat.core.exceptions import MissingCredentialError, ProviderRequestError
from branchchat.models.message import MessageRole
from branchchat.schemas.chat import ChatParams
from branchchat.services.llm_models import LLMModelFactory, get_provider


logger = logging.getLogger(__name__)


class CancellationToken:
    """
    Cancellation handle for one stream.

    ``cancel()`` is idempotent and safe to call after the stream finished.
    """

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


def extract_text_content(content: Any) -> str:
    """
    Extract text content from a chunk's content which might be a string or list.

    Args:
        content: Response content (str or list of content blocks)

    Returns:
        Extracted text as string
    """
    if isinstance(content, str):
        return content
    elif isinstance(content, list):
        # Extract text from content blocks
        text_parts = []
        for block in content:
            if isinstance(block, dict) and block.get('type') == 'text':
                text_parts.append(block.get('text', ''))
            elif isinstance(block, str):
                text_parts.append(block)
        return ''.join(text_parts)
    else:
        return str(content)


def _role_of(message: Any) -> MessageRole:
    role = message["role"] if isinstance(message, dict) else message.role
    return MessageRole(role)


def _content_of(message: Any) -> str:
    return message["content"] if isinstance(message, dict) else message.content


class ProviderClient:
    """
    Client for one provider, bound to a decrypted API key.

    The key is held only for the lifetime of the client; callers create a
    client per send and drop it afterwards.
    """

    def __init__(self, provider_id: str, api_key: Optional[str], factory: Optional[LLMModelFactory] = None):
        """
        Raises:
            UnknownProviderError: If no strategy handles ``provider_id``
            MissingCredentialError: If ``api_key`` is empty
        """
        self.factory = factory or LLMModelFactory()
        self.strategy = self.factory.get_strategy(provider_id)
        if not api_key:
            raise MissingCredentialError(provider_id)
        self.provider_id = provider_id
        self._api_key = api_key
        self.usage_tokens: Optional[int] = None

    def _build_llm(self, model: str, params: ChatParams) -> BaseChatModel:
        return self.factory.create_llm(
            provider_id=self.provider_id,
            model_name=model,
            api_key=self._api_key,
            temperature=params.temperature,
            max_tokens=params.max_tokens,
        )

    def _convert_messages(self, messages: Sequence[Any], params: ChatParams) -> List[BaseMessage]:
        """
        Convert stored messages to LangChain message format.

        Adjacent user messages with identical content are collapsed, which
        happens when a branch opens by mirroring the main-thread message it
        forks from. System text goes first, or is folded into the first user
        turn for providers without system message support.
        """
        system_parts = [params.system_prompt] if params.system_prompt else []
        turns: List[tuple] = []
        for message in messages:
            role = _role_of(message)
            content = _content_of(message)
            if role == MessageRole.SYSTEM:
                system_parts.append(content)
                continue
            if turns and role == MessageRole.USER and turns[-1] == (role, content):
                continue
            turns.append((role, content))

        system_text = "\n\n".join(system_parts)
        langchain_messages: List[BaseMessage] = []

        if system_text and self.strategy.supports_system_messages:
            langchain_messages.append(SystemMessage(content=system_text))
        elif system_text:
            for index, (role, content) in enumerate(turns):
                if role == MessageRole.USER:
                    turns[index] = (role, f"{system_text}\n\n{content}")
                    break

        for role, content in turns:
            if role == MessageRole.USER:
                langchain_messages.append(HumanMessage(content=content))
            else:
                langchain_messages.append(AIMessage(content=content))

        return langchain_messages

    async def stream_chat(
        self,
        messages: Sequence[Any],
        model: str,
        params: Optional[ChatParams] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[str]:
        """
        Stream a reply as text fragments.

        Consumption stops at the first chunk received after ``cancel_token``
        is cancelled; cancellation never raises.

        Raises:
            ProviderRequestError: On network or HTTP failure
        """
        params = params or ChatParams()
        llm = self._build_llm(model, params)
        langchain_messages = self._convert_messages(messages, params)
        self.usage_tokens = None

        logger.debug("Streaming %d messages to %s/%s", len(langchain_messages), self.provider_id, model)
        stream = llm.astream(langchain_messages)
        try:
            async for chunk in stream:
                if cancel_token is not None and cancel_token.cancelled:
                    logger.debug("Stream from %s/%s cancelled", self.provider_id, model)
                    break
                usage = getattr(chunk, "usage_metadata", None)
                if usage and usage.get("total_tokens"):
                    self.usage_tokens = usage["total_tokens"]
                text = extract_text_content(chunk.content)
                if text:
                    yield text
        except Exception as e:
            if cancel_token is not None and cancel_token.cancelled:
                return
            raise ProviderRequestError(
                self.provider_id, f"API Error: {e}", status_code=getattr(e, "status_code", None)
            ) from e
        finally:
            await stream.aclose()

    async def send(
        self,
        messages: Sequence[Any],
        model: str,
        params: Optional[ChatParams] = None,
    ) -> str:
        """Collect a complete reply without streaming it to the caller."""
        parts = []
        async for fragment in self.stream_chat(messages, model, params):
            parts.append(fragment)
        return "".join(parts)

    async def test_credential(self, model: Optional[str] = None) -> bool:
        """
        Minimal request to validate the key.

        Returns False on any provider failure instead of raising.
        """
        if model is None:
            info = get_provider(self.provider_id)
            model = info.models[0].id if info and info.models else ""
        try:
            llm = self._build_llm(model, ChatParams(max_tokens=10))
            await llm.ainvoke([HumanMessage(content="Hello")])
        except Exception as e:
            logger.info("API key test failed for %s: %s", self.provider_id, e)
            return False
        return True


async def verify_credential(
    provider_id: str,
    api_key: Optional[str],
    model: Optional[str] = None,
    factory: Optional[LLMModelFactory] = None,
) -> bool:
    """Check a key for a provider; a missing key simply fails the check."""
    try:
        client = ProviderClient(provider_id, api_key, factory)
    except MissingCredentialError:
        return False
    return await client.test_credential(model)
