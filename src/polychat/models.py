"""
Defines the core Pydantic data models for the application.

These models are the formal, validated data contract between the pillars and
the persistence backend. Field aliases follow the backend's wire format
(``_id``, ``isError``, ``sessionHandle``...), while Python code uses the
snake_case field names.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

# --- Constants ---
USER = "user"
AI = "ai"
Sender = Literal[USER, AI]


class ProviderType(str, Enum):
    """The closed set of provider families a model can belong to."""

    DIRECT = "model"
    STATEFUL_ASSISTANT = "assistant"
    CUSTOM_AGENT = "agent"


# --- Models ---
class Message(BaseModel):
    """A single chat message.

    Finalized messages are never edited. The AI placeholder of the turn in
    flight is the only message the engine mutates, and only until the turn
    settles.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), alias="_id")
    text: str = ""
    sender: Sender
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    is_error: bool = Field(default=False, alias="isError")

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class ModelRef(BaseModel):
    """A selectable model and the provider family that serves it."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str
    display_name: str = Field(alias="name")
    provider_type: ProviderType = Field(default=ProviderType.DIRECT, alias="type")


class ConversationState(BaseModel):
    """In-memory state of the conversation shown in the view.

    ``chat_id`` is ``None`` until the conversation has been persisted.
    ``session_handle`` holds provider continuation state, e.g. a thread id.
    """

    chat_id: Optional[str] = None
    messages: List[Message] = Field(default_factory=list)
    selected_model: ModelRef
    session_handle: Optional[str] = None


class ChatRecord(BaseModel):
    """A chat as stored by the persistence backend."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(alias="_id")
    title: str = ""
    messages: List[Message] = Field(default_factory=list)
    model: str = ""
    session_handle: Optional[str] = Field(default=None, alias="sessionHandle")
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")


class AgentReply(BaseModel):
    """Response of the backend's agent endpoint."""

    model_config = ConfigDict(populate_by_name=True)

    new_chat_id: Optional[str] = Field(default=None, alias="newChatId")
    new_chat_title: Optional[str] = Field(default=None, alias="newChatTitle")
    response: Message


# --- Provider events ---
class TurnDelta(BaseModel):
    """An incremental text fragment of a streamed reply."""

    text: str


class TurnResult(BaseModel):
    """The final event of a turn.

    ``chat_id`` and ``chat_title`` are only set when the provider persisted
    the exchange itself.
    """

    text: str
    session_handle: Optional[str] = None
    chat_id: Optional[str] = None
    chat_title: Optional[str] = None


# --- Catalogue ---
AVAILABLE_MODELS: List[ModelRef] = [
    ModelRef(id="gpt-4o", name="GPT-4o", type=ProviderType.DIRECT),
    ModelRef(
        id="asst_Ly6BU0FC3XtxPizI9zy6rhLs",
        name="Tax Advisor Assistant",
        type=ProviderType.STATEFUL_ASSISTANT,
    ),
    ModelRef(
        id="tax-advisor-agent",
        name="Tax Advisor Agent",
        type=ProviderType.CUSTOM_AGENT,
    ),
]

DEFAULT_MODEL_ID = AVAILABLE_MODELS[0].id


def find_model(model_id: str, models: Optional[List[ModelRef]] = None) -> ModelRef:
    """Resolves a model id against the catalogue.

    Unknown ids are treated as direct-completion models so that chats stored
    with a retired model can still be opened.
    """
    for model in models if models is not None else AVAILABLE_MODELS:
        if model.id == model_id:
            return model
    return ModelRef(id=model_id, name=model_id, type=ProviderType.DIRECT)
