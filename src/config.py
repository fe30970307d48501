"""Configuration for the issue notification service."""

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite+aiosqlite:///./notification.db"
    api_prefix: str = "/api/v1"
    debug: bool = False
    # Concurrent enqueue writers wait this long on a locked SQLite file
    db_busy_timeout_seconds: float = 30.0

    # Discord: an empty webhook URL disables delivery without raising
    discord_webhook_url: str = ""
    webhook_timeout_seconds: float = 10.0
    send_max_attempts: int = 3
    max_embeds: int = 10

    # Board frontend, used for embed links
    app_url: str = "http://localhost:5173"

    # Debounce queue
    debounce_window_seconds: int = 60
    max_wait_seconds: int = 180

    # Queue processor
    processor_enabled: bool = True
    poll_interval_seconds: float = 30.0
    batch_size: int = 10
    shutdown_drain_seconds: float = 30.0

    model_config = {"env_prefix": "NOTIF_"}

    @field_validator("app_url", mode="before")
    @classmethod
    def _strip_trailing_slash(cls, value: object) -> object:
        if isinstance(value, str):
            return value.rstrip("/")
        return value


settings = Settings()
