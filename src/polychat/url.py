"""Concrete implementations for URL routing."""

from abc import ABC, abstractmethod
from typing import Literal, Optional

from pydantic import BaseModel

View = Literal["new", "chat", "login", "register"]


class URLParts(BaseModel):
    """Application state encoded in a route."""

    view: View = "new"
    chat_id: Optional[str] = None


class URL(ABC):
    """Interface for parsing and building application routes."""

    @abstractmethod
    def parse(self, pathname: Optional[str]) -> URLParts:
        """Parses a pathname. Unknown routes resolve to a new chat."""
        pass

    @abstractmethod
    def build_conversation_path(self, chat_id: str) -> str:
        pass

    @abstractmethod
    def build_new_chat_path(self) -> str:
        pass

    @abstractmethod
    def build_login_path(self) -> str:
        pass


class PathBased(URL):
    """Routes of the form ``/chat/{id}``, ``/new-chat``, ``/login``."""

    def __init__(self, prefix: str = ""):
        self.prefix = prefix.rstrip("/")

    def parse(self, pathname: Optional[str]) -> URLParts:
        path = pathname or "/"
        if self.prefix and path.startswith(self.prefix):
            path = path[len(self.prefix) :]
        segments = [s for s in path.split("/") if s]

        if segments == ["login"]:
            return URLParts(view="login")
        if segments == ["register"]:
            return URLParts(view="register")
        if len(segments) == 2 and segments[0] == "chat":
            return URLParts(view="chat", chat_id=segments[1])
        return URLParts(view="new")

    def build_conversation_path(self, chat_id: str) -> str:
        return f"{self.prefix}/chat/{chat_id}"

    def build_new_chat_path(self) -> str:
        return f"{self.prefix}/new-chat"

    def build_login_path(self) -> str:
        return f"{self.prefix}/login"

    def build_register_path(self) -> str:
        return f"{self.prefix}/register"
