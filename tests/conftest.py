"""
Core pytest configuration and fixtures for Polychat testing.

This module provides shared test fixtures, scripted provider adapters and
configuration that support the pillar-based testing architecture.
"""

import asyncio
from typing import List, Optional

import pytest
from polychat import auth, store, titles
from polychat.llm import LLM
from polychat.models import (
    AI,
    USER,
    Message,
    ModelRef,
    ProviderType,
    TurnDelta,
    TurnResult,
)

# ===== SCRIPTED ADAPTERS =====


class ScriptedLLM(LLM):
    """Streams a fixed list of fragments, optionally failing or waiting.

    ``gate`` is an ``asyncio.Event`` created inside the running loop; the
    stream blocks on it before yielding anything.
    """

    def __init__(
        self,
        fragments: Optional[List[str]] = None,
        *,
        error: Optional[Exception] = None,
        result: Optional[TurnResult] = None,
        provider_type: ProviderType = ProviderType.DIRECT,
    ):
        self.fragments = fragments or []
        self.error = error
        self.result = result
        self.provider_type = provider_type
        self.gate: Optional[asyncio.Event] = None
        self.calls = []

    async def send_turn(self, history, text, model, session_handle=None, chat_id=None):
        self.calls.append(
            {
                "history": list(history),
                "text": text,
                "model": model,
                "session_handle": session_handle,
                "chat_id": chat_id,
            }
        )
        if self.error is not None and not self.fragments:
            raise self.error
        if self.result is not None:
            return self.result
        return self._stream()

    async def _stream(self):
        if self.gate is not None:
            await self.gate.wait()
        for fragment in self.fragments:
            yield TurnDelta(text=fragment)
        if self.error is not None:
            raise self.error
        yield TurnResult(text="".join(self.fragments))


class RecordingStore(store.InMemory):
    """InMemory store that records calls and can be told to fail."""

    def __init__(self):
        super().__init__()
        self.created = []
        self.appended = []
        self.fail_create: Optional[Exception] = None
        self.fail_append: Optional[Exception] = None

    async def create_chat(self, title, messages, model, session_handle=None):
        self.created.append(
            {
                "title": title,
                "messages": list(messages),
                "model": model,
                "session_handle": session_handle,
            }
        )
        if self.fail_create is not None:
            raise self.fail_create
        return await super().create_chat(title, messages, model, session_handle)

    async def append_messages(self, chat_id, messages):
        self.appended.append({"chat_id": chat_id, "messages": list(messages)})
        if self.fail_append is not None:
            raise self.fail_append
        await super().append_messages(chat_id, messages)


# ===== TEST DATA FIXTURES =====


@pytest.fixture
def direct_model() -> ModelRef:
    return ModelRef(id="gpt-4o", name="GPT-4o", type=ProviderType.DIRECT)


@pytest.fixture
def assistant_model() -> ModelRef:
    return ModelRef(
        id="asst_test", name="Test Assistant", type=ProviderType.STATEFUL_ASSISTANT
    )


@pytest.fixture
def agent_model() -> ModelRef:
    return ModelRef(id="test-agent", name="Test Agent", type=ProviderType.CUSTOM_AGENT)


@pytest.fixture
def sample_messages() -> List[Message]:
    """A greeting followed by one complete exchange."""
    return [
        Message(text="Hi! I'm using GPT-4o. What can I do for you?", sender=AI),
        Message(text="Can I deduct my home office?", sender=USER),
        Message(text="Usually yes, if it is used exclusively for work.", sender=AI),
    ]


# ===== PILLAR FIXTURES =====


@pytest.fixture
def memory_store() -> RecordingStore:
    return RecordingStore()


@pytest.fixture
def static_auth() -> auth.Static:
    return auth.Static()


@pytest.fixture
def title_maker() -> titles.FirstMessage:
    return titles.FirstMessage(default_title="Untitled chat")


@pytest.fixture
def scripted_llm():
    """Factory for scripted adapters."""
    return ScriptedLLM


# ===== APP FIXTURES =====


@pytest.fixture
def test_app():
    """
    Provides a Polychat app instance with simple, predictable pillars.

    No network access: the session is static, chats live in memory and the
    direct-completion model echoes its input.
    """
    from polychat import Polychat
    from polychat.llm import Echo

    app = Polychat(
        auth=auth.Static(),
        store=store.InMemory(),
        llms={ProviderType.DIRECT: Echo(delay=0)},
        titles=titles.FirstMessage(),
    )
    yield app
    app.loop.stop()


# ===== CONFIGURATION =====


def pytest_configure(config):
    """Pytest configuration."""
    config.addinivalue_line("markers", "integration: marks tests as integration tests")
    config.addinivalue_line("markers", "slow: marks tests as slow-running")


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on location."""
    for item in items:
        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
