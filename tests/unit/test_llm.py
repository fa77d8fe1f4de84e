"""
Tests for the LLM pillar adapters.

Vendor clients are replaced by mocks shaped like the OpenAI SDK objects the
adapters read, so no network access or API key is needed.
"""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import openai
import pytest
from polychat.errors import ProviderError, ProviderTimeoutError
from polychat.llm import LLM, Backend, Echo, OpenAI, OpenAIAssistant, build_payload
from polychat.models import (
    AI,
    USER,
    AgentReply,
    Message,
    ProviderType,
    TurnDelta,
    TurnResult,
)


def collect(output):
    """Drains a turn's output into a list of events."""

    async def drain():
        if isinstance(output, TurnResult):
            return [output]
        return [event async for event in output]

    return asyncio.run(drain())


def send(adapter, *args, **kwargs):
    return asyncio.run(adapter.send_turn(*args, **kwargs))


# ===== FAKE OPENAI OBJECTS =====


def chunk(content):
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=content))])


async def chunk_stream(contents):
    for content in contents:
        if content is None:
            yield SimpleNamespace(choices=[])
        else:
            yield chunk(content)


def run(status, run_id="run_1", error=None):
    last_error = SimpleNamespace(message=error) if error else None
    return SimpleNamespace(id=run_id, status=status, last_error=last_error)


def thread_message(role, *texts):
    blocks = [SimpleNamespace(type="text", text=SimpleNamespace(value=t)) for t in texts]
    return SimpleNamespace(role=role, content=blocks)


@pytest.fixture
def assistant_client():
    client = MagicMock()
    threads = client.beta.threads
    threads.create = AsyncMock(return_value=SimpleNamespace(id="thread_1"))
    threads.messages.create = AsyncMock()
    threads.runs.create = AsyncMock(return_value=run("queued"))
    threads.runs.retrieve = AsyncMock(
        side_effect=[run("in_progress"), run("completed")]
    )
    threads.messages.list = AsyncMock(
        return_value=SimpleNamespace(
            data=[
                thread_message("assistant", "You can ", "deduct it."),
                thread_message("user", "Can I deduct it?"),
            ]
        )
    )
    return client


class TestLLMInterface:
    def test_llm_is_abstract(self):
        with pytest.raises(TypeError):
            LLM()


class TestBuildPayload:
    def test_maps_senders_and_appends_new_text(self, sample_messages):
        payload = build_payload(sample_messages, "And my car?")
        assert [p["role"] for p in payload] == ["assistant", "user", "assistant", "user"]
        assert payload[-1] == {"role": "user", "content": "And my car?"}

    def test_skips_errors_and_empty_messages(self):
        history = [
            Message(text="Hi", sender=USER),
            Message(text="Sorry", sender=AI, is_error=True),
            Message(text="", sender=AI),
        ]
        payload = build_payload(history, "Again")
        assert payload == [
            {"role": "user", "content": "Hi"},
            {"role": "user", "content": "Again"},
        ]


class TestOpenAI:
    def test_streams_fragments_in_order(self, direct_model, sample_messages):
        client = MagicMock()
        client.chat.completions.create = AsyncMock(
            return_value=chunk_stream(["¡Hola", None, "! ¿Cómo", "", " puedo ayudar?"])
        )
        adapter = OpenAI(client=client)

        events = collect(send(adapter, sample_messages, "Hola", direct_model))

        deltas = [e.text for e in events if isinstance(e, TurnDelta)]
        assert deltas == ["¡Hola", "! ¿Cómo", " puedo ayudar?"]
        assert events[-1] == TurnResult(text="¡Hola! ¿Cómo puedo ayudar?")

        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-4o"
        assert kwargs["stream"] is True
        assert kwargs["messages"][-1] == {"role": "user", "content": "Hola"}

    def test_vendor_error_becomes_provider_error(self, direct_model):
        client = MagicMock()
        client.chat.completions.create = AsyncMock(
            side_effect=openai.OpenAIError("rate limited")
        )
        adapter = OpenAI(client=client)

        with pytest.raises(ProviderError, match="rate limited"):
            collect(send(adapter, [], "Hi", direct_model))

    def test_provider_type(self):
        assert OpenAI(client=MagicMock()).provider_type is ProviderType.DIRECT


class TestOpenAIAssistant:
    def make(self, client, **kwargs):
        kwargs.setdefault("poll_interval", 0)
        kwargs.setdefault("poll_timeout", 5)
        return OpenAIAssistant(client=client, **kwargs)

    def test_first_turn_creates_thread(self, assistant_client, assistant_model):
        adapter = self.make(assistant_client)

        result = send(adapter, [], "Can I deduct it?", assistant_model)

        assert result == TurnResult(text="You can deduct it.", session_handle="thread_1")
        threads = assistant_client.beta.threads
        threads.create.assert_awaited_once()
        threads.messages.create.assert_awaited_once_with(
            "thread_1", role="user", content="Can I deduct it?"
        )
        threads.runs.create.assert_awaited_once_with(
            "thread_1", assistant_id="asst_test"
        )
        assert threads.runs.retrieve.await_count == 2

    def test_existing_thread_is_reused(self, assistant_client, assistant_model):
        adapter = self.make(assistant_client)

        result = send(adapter, [], "Next", assistant_model, session_handle="thread_9")

        assert result.session_handle == "thread_9"
        assistant_client.beta.threads.create.assert_not_awaited()
        assistant_client.beta.threads.messages.create.assert_awaited_once_with(
            "thread_9", role="user", content="Next"
        )

    def test_failed_run(self, assistant_client, assistant_model):
        assistant_client.beta.threads.runs.retrieve = AsyncMock(
            return_value=run("failed", error="Rate limit exceeded")
        )
        adapter = self.make(assistant_client)

        with pytest.raises(ProviderError, match="Rate limit exceeded"):
            send(adapter, [], "Hi", assistant_model)

    def test_timeout(self, assistant_client, assistant_model):
        assistant_client.beta.threads.runs.retrieve = AsyncMock(
            return_value=run("in_progress")
        )
        adapter = self.make(assistant_client, poll_timeout=0)

        with pytest.raises(ProviderTimeoutError):
            send(adapter, [], "Hi", assistant_model)
        assistant_client.beta.threads.messages.list.assert_not_awaited()

    def test_no_assistant_message(self, assistant_client, assistant_model):
        assistant_client.beta.threads.messages.list = AsyncMock(
            return_value=SimpleNamespace(data=[thread_message("user", "Hi")])
        )
        adapter = self.make(assistant_client)

        with pytest.raises(ProviderError, match="no reply"):
            send(adapter, [], "Hi", assistant_model)

    def test_vendor_error_becomes_provider_error(self, assistant_client, assistant_model):
        assistant_client.beta.threads.create = AsyncMock(
            side_effect=openai.OpenAIError("bad key")
        )
        adapter = self.make(assistant_client)

        with pytest.raises(ProviderError, match="bad key"):
            send(adapter, [], "Hi", assistant_model)


class TestBackend:
    def test_returns_backend_reply(self, agent_model):
        store = MagicMock()
        store.get_response = AsyncMock(
            return_value=AgentReply(
                new_chat_id="c1",
                new_chat_title="Deductions",
                response=Message(text="Here you go.", sender=AI),
            )
        )
        adapter = Backend(store)

        result = send(adapter, [], "Help", agent_model)

        assert result == TurnResult(
            text="Here you go.", chat_id="c1", chat_title="Deductions"
        )
        chat_id, provider_type, message, model_id = store.get_response.call_args.args
        assert chat_id is None
        assert provider_type is ProviderType.CUSTOM_AGENT
        assert message.text == "Help"
        assert message.sender == USER
        assert model_id == "test-agent"

    def test_keeps_existing_chat_id(self, agent_model):
        store = MagicMock()
        store.get_response = AsyncMock(
            return_value=AgentReply(response=Message(text="Ok", sender=AI))
        )

        result = send(Backend(store), [], "More", agent_model, chat_id="c1")

        assert result.chat_id == "c1"
        assert result.chat_title is None


class TestEcho:
    def test_streams_words(self, direct_model):
        events = collect(send(Echo(delay=0), [], "hello there", direct_model))

        text = "".join(e.text for e in events if isinstance(e, TurnDelta))
        assert text == "**Echo (GPT-4o)**\n\nhello there"
        assert events[-1] == TurnResult(text=text)
        assert len(events) > 2
