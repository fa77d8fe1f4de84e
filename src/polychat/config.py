"""Configuration management, read from the environment and ``.env``."""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Server
    host: str = Field(default="127.0.0.1", description="Bind host")
    port: int = Field(default=8050, description="Bind port")
    debug: bool = Field(default=False, description="Run Dash in debug mode")
    log_level: str = Field(default="INFO", description="Root log level")

    # Persistence backend
    backend_url: str = Field(
        default="http://localhost:3000", description="Base URL of the chat backend"
    )
    http_timeout: float = Field(default=30.0, ge=1.0, description="HTTP timeout (s)")
    token_refresh_margin: float = Field(
        default=300.0,
        ge=0.0,
        description="Refresh the access token when it expires within this many seconds",
    )

    # LLM providers
    openai_api_key: Optional[str] = Field(default=None, description="OpenAI API key")
    title_model: str = Field(
        default="gpt-4o-mini", description="Lightweight model used for chat titles"
    )
    poll_interval: float = Field(
        default=1.0, gt=0.0, description="Assistant run poll interval (s)"
    )
    poll_timeout: float = Field(
        default=120.0, gt=0.0, description="Give up on an assistant run after (s)"
    )

    # User-facing text
    default_title: str = Field(default="Untitled chat")
    greeting_template: str = Field(
        default="Hi! I'm using {model}. What can I do for you?"
    )
    error_text: str = Field(default="Sorry, I couldn't generate a response.")


@lru_cache
def get_settings() -> Settings:
    """Cached settings instance."""
    return Settings()
