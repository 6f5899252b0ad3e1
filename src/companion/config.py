"""Central configuration loaded from environment / .env file."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings

_PROJECT_ROOT = Path(__file__).resolve().parents[2]

DEFAULT_SYSTEM_PROMPT = (
    "You are {name}, a gentle and understanding virtual companion. "
    "You speak warmly and naturally, and you always make the user feel "
    "heard and cared for.\n"
    "Current time: unknown\n"
    "You can sense the current time and may greet or comment on it "
    "naturally (good morning, time for lunch, staying up late, ...)."
)


class Settings(BaseSettings):
    """Application-wide settings, populated from env vars or .env file."""

    # Custom OpenAI-compatible endpoint (used when enabled and fully set)
    use_custom_api: bool = Field(default=False, alias="COMPANION_USE_CUSTOM_API")
    api_endpoint: str = Field(default="", alias="COMPANION_API_ENDPOINT")
    api_key: str = Field(default="", alias="COMPANION_API_KEY")
    model: str = Field(default="", alias="COMPANION_MODEL")

    # Managed gateway
    gateway_url: str = Field(default="http://127.0.0.1:54321", alias="COMPANION_GATEWAY_URL")
    gateway_key: str = Field(default="", alias="COMPANION_GATEWAY_KEY")

    # Character / prompt
    character_name: str = Field(default="Xiao Ai", alias="COMPANION_CHARACTER_NAME")
    system_prompt: str = Field(default="", alias="COMPANION_SYSTEM_PROMPT")
    timezone: str = Field(default="Asia/Shanghai", alias="COMPANION_TIMEZONE")

    # Conversation log
    storage_path: Path = Field(
        default=_PROJECT_ROOT / "data" / "companion_storage.json",
        alias="COMPANION_STORAGE_PATH",
    )
    max_stored_messages: int = Field(
        default=100, alias="COMPANION_MAX_STORED_MESSAGES",
        description="Only the most recent N messages are persisted",
    )
    undo_window_seconds: float = Field(
        default=5.0, alias="COMPANION_UNDO_WINDOW",
        description="How long a delete/clear can be undone",
    )
    overlap_policy: Literal["concurrent", "queue", "cancel"] = Field(
        default="concurrent", alias="COMPANION_OVERLAP_POLICY",
        description="What a send does while another reply is still streaming",
    )
    connect_timeout: float = Field(default=30.0, alias="COMPANION_CONNECT_TIMEOUT")

    # Realtime voice relay
    realtime_url: str = Field(
        default="wss://api.openai.com/v1/realtime?model=gpt-4o-realtime-preview",
        alias="COMPANION_REALTIME_URL",
    )
    realtime_key: str = Field(default="", alias="COMPANION_REALTIME_KEY")
    realtime_capability_token: str = Field(
        default="realtime", alias="COMPANION_REALTIME_CAPABILITY_TOKEN"
    )
    realtime_credential_prefix: str = Field(
        default="openai-insecure-api-key.", alias="COMPANION_REALTIME_CREDENTIAL_PREFIX"
    )
    realtime_credential_param: str = Field(
        default="api_key", alias="COMPANION_REALTIME_CREDENTIAL_PARAM"
    )

    # Server
    host: str = Field(default="127.0.0.1", alias="COMPANION_HOST")
    port: int = Field(default=8100, alias="COMPANION_PORT")

    # Logging
    log_level: str = Field(default="INFO", alias="COMPANION_LOG_LEVEL")

    model_config = {
        "env_file": str(_PROJECT_ROOT / ".env"),
        "env_file_encoding": "utf-8",
        "extra": "ignore",
        "populate_by_name": True,
    }

    @property
    def custom_api_active(self) -> bool:
        """True when the custom endpoint is enabled and fully configured."""
        return bool(self.use_custom_api and self.api_endpoint and self.api_key)

    @property
    def resolved_model(self) -> str:
        return self.model or "gpt-4o"

    @property
    def gateway_chat_url(self) -> str:
        return self.gateway_url.rstrip("/") + "/functions/v1/chat"

    @property
    def resolved_system_prompt(self) -> str:
        """Return the configured prompt, or the default filled with the character name."""
        if self.system_prompt:
            return self.system_prompt
        return DEFAULT_SYSTEM_PROMPT.format(name=self.character_name)

    @property
    def realtime_configured(self) -> bool:
        return bool(self.realtime_url and self.realtime_key)


def get_settings() -> Settings:
    """Return a cached Settings instance."""
    if not hasattr(get_settings, "_instance"):
        get_settings._instance = Settings()  # type: ignore[attr-defined]
    return get_settings._instance  # type: ignore[attr-defined]
