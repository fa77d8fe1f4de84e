"""Concrete implementations for session/token providers."""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional

import httpx
from jose import JWTError, jwt
from pydantic import BaseModel

from .config import get_settings
from .errors import AuthExpiredError, PersistenceError

logger = logging.getLogger(__name__)


class Tokens(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None


class Auth(ABC):
    """Interface for producing a bearer token for backend calls."""

    @abstractmethod
    async def get_valid_token(self) -> Optional[str]:
        """Returns a currently valid access token, or ``None`` when the user
        must authenticate again."""
        pass

    async def require_token(self) -> str:
        """Like ``get_valid_token`` but raises ``AuthExpiredError`` instead of
        returning ``None``."""
        token = await self.get_valid_token()
        if token is None:
            raise AuthExpiredError("Session expired, please log in again")
        return token

    async def login(self, email: str, password: str) -> Any:
        """Starts a session from credentials."""
        raise AuthExpiredError(f"{type(self).__name__} does not support logging in")

    async def register(self, email: str, password: str, name: str) -> Dict[str, Any]:
        """Creates a user account."""
        raise PersistenceError(f"{type(self).__name__} does not support registration")

    def logout(self) -> None:
        """Tears down the session. Stateless implementations do nothing."""
        pass


class Static(Auth):
    """Always returns the same token. For development and tests.

    ``logout`` drops the token and any ``login`` restores it.
    """

    def __init__(self, token: str = "static-token"):
        self._initial = token
        self._token: Optional[str] = token

    async def get_valid_token(self) -> Optional[str]:
        return self._token

    async def login(self, email: str, password: str) -> str:
        self._token = self._initial
        return self._token

    def logout(self) -> None:
        self._token = None


class Session(Auth):
    """Holds the user's access and refresh tokens and keeps them fresh.

    Parameters
    ----------
    base_url : str, optional
        Backend base URL. Defaults to ``Settings.backend_url``.
    tokens : Tokens, optional
        Tokens of an already authenticated session.
    refresh_margin : float, optional
        Refresh the access token when it expires within this many seconds.
    client : httpx.AsyncClient, optional
        Client used for auth requests. A short-lived client is created per
        request when omitted.
    clock : callable, optional
        Returns the current UNIX time; injectable for tests.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        tokens: Optional[Tokens] = None,
        refresh_margin: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.time,
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.backend_url).rstrip("/")
        self.refresh_margin = (
            refresh_margin
            if refresh_margin is not None
            else settings.token_refresh_margin
        )
        self.tokens = tokens
        self._client = client
        self._timeout = settings.http_timeout
        self._clock = clock
        self._refresh_lock = asyncio.Lock()

    @property
    def is_authenticated(self) -> bool:
        return self.tokens is not None

    async def login(self, email: str, password: str) -> Tokens:
        response = await self._post("/auth/login", {"email": email, "password": password})
        if response.is_error:
            raise AuthExpiredError(
                _server_message(response, "Login failed, please try again"),
                status=response.status_code,
            )
        self.tokens = Tokens.model_validate(response.json())
        logger.info("Logged in as %s", email)
        return self.tokens

    async def register(self, email: str, password: str, name: str) -> Dict[str, Any]:
        response = await self._post(
            "/auth/register", {"email": email, "password": password, "name": name}
        )
        if response.is_error:
            raise PersistenceError(
                _server_message(response, "Registration failed, please try again"),
                status=response.status_code,
            )
        return response.json()

    def logout(self) -> None:
        if self.tokens is not None:
            logger.info("Session cleared")
        self.tokens = None

    def is_expiring(self, token: str) -> bool:
        """True when ``token`` expires within the refresh margin or has no
        readable ``exp`` claim."""
        try:
            exp = float(jwt.get_unverified_claims(token)["exp"])
        except (JWTError, KeyError, TypeError, ValueError):
            return True
        return self._clock() >= exp - self.refresh_margin

    async def get_valid_token(self) -> Optional[str]:
        if self.tokens is None:
            return None
        if not self.is_expiring(self.tokens.access_token):
            return self.tokens.access_token

        async with self._refresh_lock:
            # Another caller may have refreshed (or dropped) the session while
            # we were waiting for the lock.
            if self.tokens is None:
                return None
            if not self.is_expiring(self.tokens.access_token):
                return self.tokens.access_token

            new_token = await self._refresh(self.tokens.refresh_token)
            if new_token is None:
                logger.warning("Token refresh failed, session cleared")
                self.tokens = None
                return None
            self.tokens = self.tokens.model_copy(update={"access_token": new_token})
            return new_token

    async def _refresh(self, refresh_token: Optional[str]) -> Optional[str]:
        if not refresh_token:
            return None
        try:
            response = await self._post("/auth/refresh", {"refreshToken": refresh_token})
        except PersistenceError as e:
            logger.warning("Token refresh request failed: %s", e)
            return None
        if response.is_error:
            return None
        try:
            return response.json().get("access_token") or None
        except ValueError:
            return None

    async def _post(self, path: str, body: Dict[str, Any]) -> httpx.Response:
        url = f"{self.base_url}{path}"
        try:
            if self._client is not None:
                return await self._client.post(url, json=body)
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                return await client.post(url, json=body)
        except httpx.HTTPError as e:
            raise PersistenceError(f"Could not reach {url}: {e}") from e


def _server_message(response: httpx.Response, default: str) -> str:
    try:
        return response.json().get("message") or default
    except ValueError:
        return default
