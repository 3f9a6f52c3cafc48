import asyncio
from typing import List, Optional

import pytest
import pytest_asyncio
from cryptography.fernet import Fernet

from branchchat.core.exceptions import MissingCredentialError
from branchchat.core.security import CryptoVault
from branchchat.db.database import create_engine
from branchchat.services.chat_storage import ChatStorage


class ScriptedClient:
    """
    Stand-in for ProviderClient that yields a fixed list of fragments.

    With ``hold_after`` set, the stream pauses after that many fragments
    until ``release`` is set, so tests can act mid-stream.
    """

    def __init__(
        self,
        fragments: List[str],
        error: Optional[Exception] = None,
        hold_after: Optional[int] = None,
        usage_tokens: Optional[int] = None,
        ignore_cancel: bool = False,
    ):
        self.fragments = fragments
        self.error = error
        self.hold_after = hold_after
        self.release = asyncio.Event()
        self.started = asyncio.Event()
        self.usage_tokens = usage_tokens
        self.ignore_cancel = ignore_cancel
        self.closed = False
        self.seen_messages = []
        self.seen_model = None
        self.seen_params = None

    async def stream_chat(self, messages, model, params=None, cancel_token=None):
        self.seen_messages = list(messages)
        self.seen_model = model
        self.seen_params = params
        self.started.set()
        self.closed = False
        try:
            for index, fragment in enumerate(self.fragments):
                if self.hold_after is not None and index == self.hold_after:
                    await self.release.wait()
                if cancel_token is not None and cancel_token.cancelled and not self.ignore_cancel:
                    return
                yield fragment
            if self.error is not None:
                raise self.error
        finally:
            self.closed = True


class ClientRegistry:
    """
    Client factory handing out scripted clients per provider.

    Providers without a script behave like a provider with no API key.
    """

    def __init__(self):
        self.scripts = {}
        self.created = []

    def add(self, provider: str, client: ScriptedClient) -> ScriptedClient:
        self.scripts[provider] = client
        return client

    def __call__(self, provider: str, api_key: Optional[str]):
        if provider not in self.scripts:
            raise MissingCredentialError(provider)
        self.created.append((provider, api_key))
        return self.scripts[provider]


@pytest.fixture
def vault():
    return CryptoVault(Fernet.generate_key())


@pytest_asyncio.fixture
async def storage(tmp_path, vault):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'chat.db'}", echo=False)
    store = ChatStorage(engine, vault=vault)
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture
def clients():
    return ClientRegistry()
