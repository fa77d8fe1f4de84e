"""Error taxonomy shared by all pillars.

Every error raised across pillar boundaries derives from ``ChatError`` so the
engine and the view can tell recoverable failures from fatal ones by ``kind``.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    AUTH_EXPIRED = "AUTH_EXPIRED"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    PROVIDER_TIMEOUT = "PROVIDER_TIMEOUT"
    PERSISTENCE_ERROR = "PERSISTENCE_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"


class ChatError(Exception):
    """Base class for application errors.

    Attributes
    ----------
    kind : ErrorKind
        Machine-readable category.
    message : str
        Human-readable description.
    status : int, optional
        HTTP status code when the error came from an HTTP response.
    """

    kind = ErrorKind.PROVIDER_ERROR

    def __init__(self, message: str, *, status: Optional[int] = None):
        self.message = message
        self.status = status
        super().__init__(message)


class AuthExpiredError(ChatError):
    """The session is gone; the user must log in again. Fatal to the view."""

    kind = ErrorKind.AUTH_EXPIRED


class ProviderError(ChatError):
    """An LLM provider call failed."""

    kind = ErrorKind.PROVIDER_ERROR


class ProviderTimeoutError(ProviderError):
    """A polled provider run did not finish in time."""

    kind = ErrorKind.PROVIDER_TIMEOUT


class PersistenceError(ChatError):
    """The persistence backend rejected a request or could not be reached."""

    kind = ErrorKind.PERSISTENCE_ERROR


class ModelLockedError(ChatError):
    """The model cannot be changed for this conversation anymore."""

    kind = ErrorKind.VALIDATION_ERROR
