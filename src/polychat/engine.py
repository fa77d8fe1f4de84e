"""The conversation engine: turn lifecycle and save-policy.

One ``Engine`` owns the state of the conversation shown in the view. It sends
each user turn to the adapter matching the selected model's provider type,
applies streamed or polled output to the AI placeholder message, and persists
the conversation once the turn has settled:

* the first exchange (greeting, user message, AI reply) creates the chat;
* every later exchange appends only its (user, AI) pair.

At most one turn is in flight per engine. Sends made while a turn is in
flight are rejected, not queued.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, List, Mapping, Optional, Union

from .config import get_settings
from .errors import AuthExpiredError, ChatError, ModelLockedError, ProviderError
from .llm import LLM
from .models import (
    AI,
    USER,
    ChatRecord,
    ConversationState,
    Message,
    ModelRef,
    ProviderType,
    TurnResult,
    find_model,
)
from .store import Store
from .titles import Titles

logger = logging.getLogger(__name__)

ChatCreatedListener = Callable[[ChatRecord], Union[None, Awaitable[None]]]

# greeting + first user message + first AI reply
FIRST_EXCHANGE_LENGTH = 3


class TurnStatus(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    SETTLED = "settled"


@dataclass
class _Turn:
    id: int
    text: str
    history: List[Message]
    reply_id: str
    saved: bool = False
    created: Optional[ChatRecord] = None
    # conversation as it stood when the turn settled
    snapshot: Optional[List[Message]] = None
    model_id: Optional[str] = None
    session_handle: Optional[str] = None


def greeting(model: ModelRef, template: Optional[str] = None) -> Message:
    template = template or get_settings().greeting_template
    return Message(text=template.format(model=model.display_name), sender=AI)


class Engine:
    """Drives the turns of a single conversation.

    Parameters
    ----------
    state : ConversationState
        The conversation to drive. The engine mutates it in place.
    llms : Mapping[ProviderType, LLM]
        One adapter per provider type.
    store : Store
        Persistence gateway used by the save-policy.
    titles : Titles
        Names the chat when it is first persisted.
    on_chat_created : callable, optional
        Called with the new ``ChatRecord`` once the chat has been persisted.
        May be a coroutine function.
    error_text : str, optional
        Text shown in the AI message when a turn fails.
    """

    def __init__(
        self,
        state: ConversationState,
        *,
        llms: Mapping[ProviderType, LLM],
        store: Store,
        titles: Titles,
        on_chat_created: Optional[ChatCreatedListener] = None,
        error_text: Optional[str] = None,
    ):
        settings = get_settings()
        self.state = state
        self.llms = dict(llms)
        self.store = store
        self.titles = titles
        self.error_text = error_text or settings.error_text
        self.default_title = settings.default_title
        self.status = TurnStatus.IDLE
        self.closed = False
        self._listeners: List[ChatCreatedListener] = []
        if on_chat_created is not None:
            self._listeners.append(on_chat_created)
        self._turn_count = 0
        self._last_turn: Optional[_Turn] = None
        self._save_lock = asyncio.Lock()

    @classmethod
    def new(
        cls, model: ModelRef, *, greeting_template: Optional[str] = None, **kwargs
    ) -> "Engine":
        """Starts an unsaved conversation holding only the greeting."""
        state = ConversationState(
            selected_model=model, messages=[greeting(model, greeting_template)]
        )
        return cls(state, **kwargs)

    @classmethod
    def from_record(
        cls, record: ChatRecord, models: Optional[List[ModelRef]] = None, **kwargs
    ) -> "Engine":
        """Resumes a persisted conversation."""
        state = ConversationState(
            chat_id=record.id,
            messages=list(record.messages),
            selected_model=find_model(record.model, models),
            session_handle=record.session_handle,
        )
        return cls(state, **kwargs)

    @property
    def messages(self) -> List[Message]:
        return self.state.messages

    @property
    def chat_id(self) -> Optional[str]:
        return self.state.chat_id

    @property
    def busy(self) -> bool:
        return self.status in (TurnStatus.SENDING, TurnStatus.STREAMING)

    def on_chat_created(self, listener: ChatCreatedListener) -> None:
        self._listeners.append(listener)

    def close(self) -> None:
        """Detaches the engine from the view.

        Provider output that arrives afterwards is dropped, and turns settling
        afterwards are not persisted. Saves of turns that settled earlier
        still complete.
        """
        self.closed = True

    def select_model(self, model: ModelRef) -> None:
        if self.state.chat_id is not None:
            raise ModelLockedError("The model cannot change once the chat is saved")
        if self.busy:
            raise ModelLockedError("The model cannot change while a reply is pending")
        if self._save_lock.locked():
            raise ModelLockedError("The model cannot change while the chat is being saved")
        previous = self.state.selected_model
        self.state.selected_model = model
        messages = self.state.messages
        if len(messages) <= 1 and all(msg.sender == AI for msg in messages):
            self.state.messages = [greeting(model)]
        logger.debug("Model changed from %s to %s", previous.id, model.id)

    async def send(self, text: str) -> bool:
        """Runs one turn.

        Returns ``False`` when the input is rejected (empty, turn already in
        flight, engine closed). Otherwise returns ``True`` once the turn has
        settled and the save-policy has run. Provider failures end up in the
        AI message, never raised; only ``AuthExpiredError`` propagates.
        """
        turn = self._begin_turn(text)
        if turn is None:
            return False
        await self._run_turn(turn)
        self._settle(turn)
        if turn.created is not None and not self.closed:
            await self._notify(turn.created)
        await self._save(turn)
        return True

    def _begin_turn(self, text: Optional[str]) -> Optional[_Turn]:
        if self.closed:
            logger.debug("Rejected input: conversation closed")
            return None
        text = (text or "").strip()
        if not text:
            logger.debug("Rejected input: empty message")
            return None
        if self.busy:
            logger.debug("Rejected input: turn in progress")
            return None

        history = list(self.state.messages)
        placeholder = Message(text="", sender=AI)
        self.state.messages.extend([Message(text=text, sender=USER), placeholder])
        self._turn_count += 1
        turn = _Turn(
            id=self._turn_count, text=text, history=history, reply_id=placeholder.id
        )
        self._last_turn = turn
        self.status = TurnStatus.SENDING
        return turn

    async def _run_turn(self, turn: _Turn) -> None:
        model = self.state.selected_model
        try:
            llm = self.llms.get(model.provider_type)
            if llm is None:
                raise ProviderError(f"No adapter for {model.provider_type.value} models")
            output = await llm.send_turn(
                turn.history,
                turn.text,
                model,
                self.state.session_handle,
                self.state.chat_id,
            )
            if isinstance(output, TurnResult):
                result = output
            else:
                result = await self._consume(turn, output)
            self._finish(turn, result, model)
        except AuthExpiredError:
            self._fail(turn)
            raise
        except ChatError as e:
            logger.warning("Turn %d failed (%s): %s", turn.id, e.kind.value, e)
            self._fail(turn)
        except Exception:
            logger.exception("Turn %d failed with an unexpected error", turn.id)
            self._fail(turn)
        finally:
            self.status = TurnStatus.SETTLED

    async def _consume(self, turn: _Turn, events) -> TurnResult:
        if self._is_current(turn):
            self.status = TurnStatus.STREAMING
        text = ""
        try:
            async for event in events:
                if not self._is_current(turn):
                    break
                if isinstance(event, TurnResult):
                    return event
                text += event.text
                self._set_reply(turn, text)
        finally:
            aclose = getattr(events, "aclose", None)
            if aclose is not None:
                await aclose()
        return TurnResult(text=text)

    def _finish(self, turn: _Turn, result: TurnResult, model: ModelRef) -> None:
        if not self._is_current(turn):
            logger.debug("Dropped result of turn %d: conversation closed", turn.id)
            return
        self._set_reply(turn, result.text)
        if result.session_handle is not None:
            self.state.session_handle = result.session_handle
        if result.chat_id is not None:
            # The provider persisted this exchange itself.
            turn.saved = True
            if self.state.chat_id is None:
                self.state.chat_id = result.chat_id
                turn.created = ChatRecord(
                    id=result.chat_id,
                    title=result.chat_title or self.default_title,
                    messages=list(self.state.messages),
                    model=model.id,
                    session_handle=self.state.session_handle,
                )

    def _fail(self, turn: _Turn) -> None:
        if not self._is_current(turn):
            return
        reply = self._find(turn.reply_id)
        if reply is not None:
            reply.text = self.error_text
            reply.is_error = True

    def _set_reply(self, turn: _Turn, text: str) -> None:
        reply = self._find(turn.reply_id)
        if reply is not None:
            reply.text = text

    def _find(self, message_id: str) -> Optional[Message]:
        for message in reversed(self.state.messages):
            if message.id == message_id:
                return message
        return None

    def _is_current(self, turn: _Turn) -> bool:
        return not self.closed and self._last_turn is turn

    def _settle(self, turn: _Turn) -> None:
        if not self._is_current(turn):
            return
        turn.snapshot = [msg.model_copy() for msg in self.state.messages]
        turn.model_id = self.state.selected_model.id
        turn.session_handle = self.state.session_handle

    async def persist(self) -> None:
        """Applies the save-policy to the latest settled turn.

        Runs at most once per turn; calling it again is a no-op. Backend
        failures are logged and swallowed, except ``AuthExpiredError``.
        """
        if self._last_turn is not None:
            await self._save(self._last_turn)

    async def _save(self, turn: _Turn) -> None:
        if turn.saved or turn.snapshot is None:
            return
        # Saves run one at a time, in settle order. A turn that settles while
        # an earlier save is running waits for it, so it sees the chat id.
        async with self._save_lock:
            if turn.saved:
                return
            turn.saved = True
            messages = turn.snapshot
            try:
                count = len(messages)
                if count == FIRST_EXCHANGE_LENGTH and self.state.chat_id is None:
                    await self._create_chat(turn)
                elif count > FIRST_EXCHANGE_LENGTH and self.state.chat_id is not None:
                    await self.store.append_messages(self.state.chat_id, messages[-2:])
            except AuthExpiredError:
                raise
            except ChatError as e:
                logger.error("Saving turn %d failed: %s", turn.id, e)

    async def _create_chat(self, turn: _Turn) -> None:
        title = await self.titles.generate_title(turn.snapshot)
        record = await self.store.create_chat(
            title, turn.snapshot, turn.model_id, turn.session_handle
        )
        self.state.chat_id = record.id
        logger.info("Created chat %s (%s)", record.id, record.title)
        if not self.closed:
            await self._notify(record)

    async def _notify(self, record: ChatRecord) -> None:
        for listener in self._listeners:
            result = listener(record)
            if inspect.isawaitable(result):
                await result
