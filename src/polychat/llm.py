"""Concrete implementations for LLM provider adapters.

Each adapter normalizes one provider protocol into ``send_turn``, which
returns either a single ``TurnResult`` or an async iterator of ``TurnDelta``
fragments terminated by a ``TurnResult``.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List, Optional, Union

from .config import get_settings
from .errors import ProviderError, ProviderTimeoutError
from .models import (
    USER,
    Message,
    ModelRef,
    ProviderType,
    TurnDelta,
    TurnResult,
)

logger = logging.getLogger(__name__)

TurnEvents = AsyncIterator[Union[TurnDelta, TurnResult]]
TurnOutput = Union[TurnResult, TurnEvents]


class LLM(ABC):
    """Abstract Base Class for all provider adapters."""

    provider_type: ProviderType

    @abstractmethod
    async def send_turn(
        self,
        history: List[Message],
        text: str,
        model: ModelRef,
        session_handle: Optional[str] = None,
        chat_id: Optional[str] = None,
    ) -> TurnOutput:
        """Sends one user turn to the provider.

        Parameters
        ----------
        history : List[Message]
            Messages of the conversation before this turn, oldest first.
        text : str
            The new user message.
        model : ModelRef
            The model serving the conversation.
        session_handle : str, optional
            Provider continuation state returned by a previous turn.
        chat_id : str, optional
            Id of the persisted chat, if any.

        Returns
        -------
        TurnResult or AsyncIterator
            A single final event, or an async iterator yielding ``TurnDelta``
            fragments in arrival order followed by one ``TurnResult``.

        Raises
        ------
        ProviderError
            When the provider call fails.
        """
        pass


def build_payload(history: List[Message], text: str) -> List[Dict[str, str]]:
    """Maps the conversation into an OpenAI-style message list, oldest first.

    Error-flagged and empty messages are display artefacts and are left out.
    """
    payload = [
        {"role": "user" if msg.sender == USER else "assistant", "content": msg.text}
        for msg in history
        if msg.text and not msg.is_error
    ]
    payload.append({"role": "user", "content": text})
    return payload


class OpenAI(LLM):
    """Direct-completion adapter: one streamed chat completion per turn."""

    provider_type = ProviderType.DIRECT

    def __init__(self, client: Any = None, api_key: Optional[str] = None):
        import openai

        self._errors = openai.OpenAIError
        self.client = client or openai.AsyncOpenAI(
            api_key=api_key or get_settings().openai_api_key
        )

    async def send_turn(
        self, history, text, model, session_handle=None, chat_id=None
    ) -> TurnEvents:
        return self._stream(build_payload(history, text), model.id)

    async def _stream(self, messages: List[Dict[str, str]], model: str) -> TurnEvents:
        full_text = ""
        try:
            stream = await self.client.chat.completions.create(
                model=model, messages=messages, stream=True
            )
            async for chunk in stream:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta.content
                if delta:
                    full_text += delta
                    yield TurnDelta(text=delta)
        except self._errors as e:
            raise ProviderError(f"OpenAI request failed: {e}") from e
        yield TurnResult(text=full_text)


class OpenAIAssistant(LLM):
    """Stateful adapter for the OpenAI Assistants thread API.

    The thread id is the session handle. A run is polled at a fixed interval
    until it reaches a terminal status or the poll timeout elapses.
    """

    provider_type = ProviderType.STATEFUL_ASSISTANT

    TERMINAL_STATUSES = {"completed", "failed", "cancelled", "expired", "incomplete"}

    def __init__(
        self,
        client: Any = None,
        api_key: Optional[str] = None,
        poll_interval: Optional[float] = None,
        poll_timeout: Optional[float] = None,
    ):
        import openai

        settings = get_settings()
        self._errors = openai.OpenAIError
        self.client = client or openai.AsyncOpenAI(
            api_key=api_key or settings.openai_api_key
        )
        self.poll_interval = (
            poll_interval if poll_interval is not None else settings.poll_interval
        )
        self.poll_timeout = (
            poll_timeout if poll_timeout is not None else settings.poll_timeout
        )

    async def send_turn(
        self, history, text, model, session_handle=None, chat_id=None
    ) -> TurnResult:
        try:
            return await self._run_turn(text, model.id, session_handle)
        except self._errors as e:
            raise ProviderError(f"OpenAI assistant request failed: {e}") from e

    async def _run_turn(
        self, text: str, assistant_id: str, thread_id: Optional[str]
    ) -> TurnResult:
        threads = self.client.beta.threads
        if thread_id is None:
            thread = await threads.create()
            thread_id = thread.id
            logger.debug("Created assistant thread %s", thread_id)

        await threads.messages.create(thread_id, role="user", content=text)
        run = await threads.runs.create(thread_id, assistant_id=assistant_id)
        run = await self._wait_for_run(thread_id, run)

        if run.status != "completed":
            last_error = getattr(run, "last_error", None)
            detail = getattr(last_error, "message", None) or run.status
            raise ProviderError(f"Assistant run {run.id} ended as {run.status}: {detail}")

        messages = await threads.messages.list(thread_id, order="desc", limit=10)
        for message in messages.data:
            if message.role == "assistant":
                return TurnResult(
                    text=_message_text(message), session_handle=thread_id
                )
        raise ProviderError(f"Assistant run {run.id} produced no reply")

    async def _wait_for_run(self, thread_id: str, run: Any) -> Any:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.poll_timeout
        while run.status not in self.TERMINAL_STATUSES:
            if loop.time() >= deadline:
                raise ProviderTimeoutError(
                    f"Assistant run {run.id} did not finish within {self.poll_timeout:g}s"
                )
            await asyncio.sleep(self.poll_interval)
            run = await self.client.beta.threads.runs.retrieve(run.id, thread_id=thread_id)
        return run


def _message_text(message: Any) -> str:
    parts = []
    for block in message.content:
        if getattr(block, "type", None) == "text":
            parts.append(block.text.value)
    return "".join(parts)


class Backend(LLM):
    """Custom-agent adapter: the chat backend runs the agent.

    The backend also persists the exchange and may create the chat, so the
    result carries the chat id and title it reports.
    """

    provider_type = ProviderType.CUSTOM_AGENT

    def __init__(self, store):
        self.store = store

    async def send_turn(
        self, history, text, model, session_handle=None, chat_id=None
    ) -> TurnResult:
        message = Message(text=text, sender=USER)
        reply = await self.store.get_response(
            chat_id, model.provider_type, message, model.id
        )
        return TurnResult(
            text=reply.response.text,
            chat_id=reply.new_chat_id or chat_id,
            chat_title=reply.new_chat_title,
        )


class Echo(LLM):
    """Streams the user's text back word by word. Needs no API key."""

    provider_type = ProviderType.DIRECT

    def __init__(self, delay: float = 0.05):
        self.delay = delay

    async def send_turn(
        self, history, text, model, session_handle=None, chat_id=None
    ) -> TurnEvents:
        return self._stream(text, model)

    async def _stream(self, text: str, model: ModelRef) -> TurnEvents:
        content = f"**Echo ({model.display_name})**\n\n{text}"
        words = content.split(" ")
        for i, word in enumerate(words):
            await asyncio.sleep(self.delay)
            yield TurnDelta(text=word if i == 0 else " " + word)
        yield TurnResult(text=content)
