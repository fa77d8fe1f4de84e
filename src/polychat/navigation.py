"""Navigation controller: the chat list and the active route."""

import logging
from typing import List, Mapping, Optional

from .auth import Auth
from .engine import Engine
from .errors import AuthExpiredError, ModelLockedError, PersistenceError
from .llm import LLM
from .models import AVAILABLE_MODELS, ChatRecord, ModelRef, ProviderType, find_model
from .store import Store
from .titles import Titles
from .url import URL, PathBased

logger = logging.getLogger(__name__)


class Navigator:
    """Owns the known chats and routes the view between conversations.

    Opening a route closes the previous conversation's engine, so output of a
    turn still in flight there no longer touches the view. When the session
    expires, the navigator drops the conversation and routes to the login
    page.
    """

    def __init__(
        self,
        *,
        auth: Auth,
        store: Store,
        llms: Mapping[ProviderType, LLM],
        titles: Titles,
        url: Optional[URL] = None,
        models: Optional[List[ModelRef]] = None,
    ):
        self.auth = auth
        self.store = store
        self.llms = dict(llms)
        self.titles = titles
        self.url = url if url is not None else PathBased()
        self.models = list(models) if models is not None else list(AVAILABLE_MODELS)
        self.chats: List[ChatRecord] = []
        self.engine: Optional[Engine] = None
        self.route = self.url.build_new_chat_path()
        self.last_error: Optional[str] = None

    @property
    def default_model(self) -> ModelRef:
        return self.models[0]

    def _engine_kwargs(self) -> dict:
        return {
            "llms": self.llms,
            "store": self.store,
            "titles": self.titles,
            "on_chat_created": self.handle_chat_created,
        }

    def _replace_engine(self, engine: Optional[Engine]) -> None:
        if self.engine is not None:
            self.engine.close()
        self.engine = engine

    async def navigate(self, pathname: Optional[str]) -> str:
        """Opens the view for ``pathname`` and returns the resolved route."""
        parts = self.url.parse(pathname)
        self.last_error = None

        if parts.view in ("login", "register"):
            self._replace_engine(None)
            self.route = pathname
            return self.route

        if await self.auth.get_valid_token() is None:
            return self.require_login()

        if parts.view == "chat":
            await self.open_chat(parts.chat_id)
        else:
            self.open_new_chat()
        return self.route

    def open_new_chat(self, model: Optional[ModelRef] = None) -> Engine:
        engine = Engine.new(model or self.default_model, **self._engine_kwargs())
        self._replace_engine(engine)
        self.route = self.url.build_new_chat_path()
        return engine

    async def open_chat(self, chat_id: str) -> Optional[Engine]:
        if self.engine is not None and self.engine.chat_id == chat_id:
            # Already showing it, e.g. right after the chat was created.
            self.route = self.url.build_conversation_path(chat_id)
            return self.engine
        try:
            record = await self.store.load_chat(chat_id)
        except AuthExpiredError:
            self.require_login()
            return None
        except PersistenceError as e:
            logger.error("Could not open chat %s: %s", chat_id, e)
            self.last_error = f"Could not open chat: {e.message}"
            return self.open_new_chat()

        engine = Engine.from_record(record, self.models, **self._engine_kwargs())
        self._replace_engine(engine)
        self.route = self.url.build_conversation_path(chat_id)
        return engine

    async def refresh_chats(self) -> List[ChatRecord]:
        try:
            self.chats = await self.store.list_chats()
        except AuthExpiredError:
            self.require_login()
        except PersistenceError as e:
            logger.error("Could not list chats: %s", e)
        return self.chats

    def handle_chat_created(self, record: ChatRecord) -> None:
        """Lists the new chat first and points the route at it.

        The engine that created the chat keeps running; nothing is reloaded.
        """
        self.chats = [record] + [chat for chat in self.chats if chat.id != record.id]
        self.route = self.url.build_conversation_path(record.id)

    async def send(self, text: str) -> bool:
        if self.engine is None:
            return False
        engine = self.engine
        try:
            return await engine.send(text)
        except AuthExpiredError:
            if self.engine is engine:
                self.require_login()
            return False

    def select_model(self, model_id: str) -> ModelRef:
        if self.engine is None:
            raise ModelLockedError("No conversation is open")
        model = find_model(model_id, self.models)
        self.engine.select_model(model)
        return model

    async def login(self, email: str, password: str) -> str:
        await self.auth.login(email, password)
        await self.refresh_chats()
        self.open_new_chat()
        return self.route

    def logout(self) -> str:
        self.auth.logout()
        return self.require_login()

    def require_login(self) -> str:
        self._replace_engine(None)
        self.chats = []
        self.route = self.url.build_login_path()
        return self.route

