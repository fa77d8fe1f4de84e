"""Concrete implementations for chat title generators."""

import logging
from abc import ABC, abstractmethod
from typing import Any, List, Optional

from .config import get_settings
from .models import USER, Message

logger = logging.getLogger(__name__)

TITLE_PROMPT = (
    "Write a short title (at most six words) for the following conversation. "
    "Answer with the title only, without quotes or trailing punctuation."
)


class Titles(ABC):
    """Interface for naming a chat from its first exchange."""

    @abstractmethod
    async def generate_title(self, messages: List[Message]) -> str:
        """Returns a title for the conversation. Never raises."""
        pass


class FirstMessage(Titles):
    """Uses the beginning of the first user message as the title."""

    def __init__(self, max_length: int = 40, default_title: Optional[str] = None):
        self.max_length = max_length
        self.default_title = default_title or get_settings().default_title

    async def generate_title(self, messages: List[Message]) -> str:
        first_user_msg = next((msg for msg in messages if msg.sender == USER), None)
        if first_user_msg is None or not first_user_msg.text.strip():
            return self.default_title
        text = first_user_msg.text.strip()
        return text[: self.max_length] + ("..." if len(text) > self.max_length else "")


class OpenAI(Titles):
    """Asks a lightweight model for a title, falling back to a default."""

    def __init__(
        self,
        client: Any = None,
        model: Optional[str] = None,
        default_title: Optional[str] = None,
    ):
        settings = get_settings()
        if client is None:
            from openai import AsyncOpenAI

            client = AsyncOpenAI(api_key=settings.openai_api_key)
        self.client = client
        self.model = model or settings.title_model
        self.default_title = default_title or settings.default_title

    async def generate_title(self, messages: List[Message]) -> str:
        transcript = "\n".join(
            f"{'User' if msg.sender == USER else 'Assistant'}: {msg.text}"
            for msg in messages
            if msg.text and not msg.is_error
        )
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": TITLE_PROMPT},
                    {"role": "user", "content": transcript},
                ],
                max_tokens=20,
            )
            title = (response.choices[0].message.content or "").strip().strip("\"'")
        except Exception as e:
            logger.warning("Title generation failed, using default: %s", e)
            return self.default_title
        return title or self.default_title
