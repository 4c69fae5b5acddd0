"""Runtime settings for the conversation core."""

import os
from functools import lru_cache

from pydantic import BaseModel, Field

ENV_PREFIX = "MARKETPLACE_CHAT_"


class ChatSettings(BaseModel):
    """Tunable knobs, all with defaults matching the web client."""

    base_url: str = "http://localhost:5000/api/chat"
    request_timeout: float = Field(default=10.0, gt=0)
    message_poll_interval: float = Field(default=5.0, gt=0)
    conversation_poll_interval: float = Field(default=30.0, gt=0)
    sync_failure_threshold: int = Field(default=3, ge=1)
    sync_failure_window: float = Field(default=60.0, gt=0)
    reconcile_window: float = Field(default=30.0, ge=0)
    send_timeout: float = Field(default=30.0, gt=0)
    max_attachment_bytes: int = Field(default=25 * 1024 * 1024, gt=0)

    @classmethod
    def from_env(cls) -> "ChatSettings":
        """Build settings, overriding defaults from MARKETPLACE_CHAT_* variables."""
        overrides = {}
        for name in cls.model_fields:
            value = os.getenv(f"{ENV_PREFIX}{name.upper()}")
            if value is not None:
                overrides[name] = value
        return cls(**overrides)


@lru_cache(maxsize=1)
def get_settings() -> ChatSettings:
    """Get the process-wide settings instance."""
    return ChatSettings.from_env()
