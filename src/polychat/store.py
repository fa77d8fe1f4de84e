"""Concrete implementations for the persistence gateway."""

import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, TypeVar

import httpx
from pydantic import ValidationError

from .auth import Auth
from .config import get_settings
from .errors import AuthExpiredError, PersistenceError, ProviderError
from .models import AgentReply, ChatRecord, Message, ProviderType

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Store(ABC):
    """Interface for creating, loading and appending to chats."""

    @abstractmethod
    async def load_chat(self, chat_id: str) -> ChatRecord:
        """Loads a single chat, including its messages."""
        pass

    @abstractmethod
    async def list_chats(self) -> List[ChatRecord]:
        """Lists the current user's chats, most recent first."""
        pass

    @abstractmethod
    async def create_chat(
        self,
        title: str,
        messages: List[Message],
        model: str,
        session_handle: Optional[str] = None,
    ) -> ChatRecord:
        """Creates a chat with its full message history."""
        pass

    @abstractmethod
    async def append_messages(self, chat_id: str, messages: List[Message]) -> None:
        """Appends messages to an existing chat."""
        pass

    async def get_response(
        self,
        chat_id: Optional[str],
        provider_type: ProviderType,
        message: Message,
        model: str,
    ) -> AgentReply:
        """Asks the backend's own agent for a reply.

        Only stores backed by a server with an agent implement this.
        """
        raise ProviderError(f"{type(self).__name__} store has no agent endpoint")


class InMemory(Store):
    """Keeps chats in a dictionary. For development and tests."""

    def __init__(self):
        self._chats: Dict[str, ChatRecord] = {}

    async def load_chat(self, chat_id: str) -> ChatRecord:
        try:
            return self._chats[chat_id].model_copy(deep=True)
        except KeyError:
            raise PersistenceError(f"Chat {chat_id} not found", status=404) from None

    async def list_chats(self) -> List[ChatRecord]:
        chats = [chat.model_copy(deep=True) for chat in self._chats.values()]
        return list(reversed(chats))

    async def create_chat(self, title, messages, model, session_handle=None):
        record = ChatRecord(
            id=uuid.uuid4().hex,
            title=title,
            messages=[m.model_copy() for m in messages],
            model=model,
            session_handle=session_handle,
            created_at=datetime.now(timezone.utc),
        )
        self._chats[record.id] = record
        return record.model_copy(deep=True)

    async def append_messages(self, chat_id, messages):
        if chat_id not in self._chats:
            raise PersistenceError(f"Chat {chat_id} not found", status=404)
        self._chats[chat_id].messages.extend(m.model_copy() for m in messages)


class Http(Store):
    """REST client for the chat backend.

    Every request carries ``Authorization: Bearer <token>`` obtained from the
    injected ``Auth``. A 401 response tears the session down and raises
    ``AuthExpiredError``; any other non-2xx raises ``PersistenceError``.
    """

    def __init__(
        self,
        auth: Auth,
        base_url: Optional[str] = None,
        *,
        client: Optional[httpx.AsyncClient] = None,
    ):
        settings = get_settings()
        self.auth = auth
        self.base_url = (base_url or settings.backend_url).rstrip("/")
        self._client = client
        self._timeout = settings.http_timeout

    async def load_chat(self, chat_id: str) -> ChatRecord:
        path = f"/chats/{chat_id}"
        data = await self._request("GET", path)
        return _parse(path, lambda: ChatRecord.model_validate(data["chat"]))

    async def list_chats(self) -> List[ChatRecord]:
        data = await self._request("GET", "/chats/user-chats")
        return _parse(
            "/chats/user-chats",
            lambda: [ChatRecord.model_validate(chat) for chat in data.get("chats", [])],
        )

    async def create_chat(self, title, messages, model, session_handle=None):
        body: Dict[str, Any] = {
            "title": title,
            "messages": [m.to_wire() for m in messages],
            "model": model,
        }
        if session_handle is not None:
            body["sessionHandle"] = session_handle
        data = await self._request("POST", "/chats/new-chat", json=body)
        return _parse("/chats/new-chat", lambda: ChatRecord.model_validate(data["chat"]))

    async def append_messages(self, chat_id, messages):
        await self._request(
            "PUT",
            "/chats/update-chat-messages",
            json={"chatId": chat_id, "messages": [m.to_wire() for m in messages]},
        )

    async def get_response(self, chat_id, provider_type, message, model):
        data = await self._request(
            "POST",
            "/chats/get-response",
            json={
                "chatId": chat_id,
                "providerType": ProviderType(provider_type).value,
                "message": message.to_wire(),
                "model": model,
            },
        )
        return _parse("/chats/get-response", lambda: AgentReply.model_validate(data))

    async def _request(
        self, method: str, path: str, json: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        token = await self.auth.require_token()
        url = f"{self.base_url}{path}"
        headers = {"Authorization": f"Bearer {token}"}
        try:
            if self._client is not None:
                response = await self._client.request(
                    method, url, json=json, headers=headers
                )
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.request(
                        method, url, json=json, headers=headers
                    )
        except httpx.HTTPError as e:
            raise PersistenceError(f"{method} {path} failed: {e}") from e

        if response.status_code == 401:
            self.auth.logout()
            raise AuthExpiredError("Session expired, please log in again", status=401)
        if response.is_error:
            raise PersistenceError(
                f"{method} {path} failed: {response.status_code} {response.reason_phrase}",
                status=response.status_code,
            )
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise PersistenceError(f"{method} {path} returned invalid JSON") from e


def _parse(path: str, build: Callable[[], T]) -> T:
    """Runs ``build`` on a decoded response body, turning a body of the wrong
    shape into ``PersistenceError``."""
    try:
        return build()
    except (KeyError, TypeError, AttributeError, ValidationError) as e:
        raise PersistenceError(f"{path} returned an unexpected body: {e}") from e
