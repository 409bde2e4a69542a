# questbot/config.py
from functools import lru_cache
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field

class Settings(BaseSettings):
    # ── Database
    DATABASE_URL: str = "sqlite:///./questbot.db"  # production points this at Postgres via .env

    # Telegram
    TELEGRAM_BOT_TOKEN: Optional[str] = None
    WEBHOOK_SECRET: Optional[str] = None
    TELEGRAM_API_BASE: str = "https://api.telegram.org"
    TELEGRAM_TIMEOUT_SEC: float = Field(10.0, env="TELEGRAM_TIMEOUT_SEC")

    # Mini App (web view that consumes /api/*)
    MINI_APP_URL: Optional[str] = None

    # Reminder sweep cadence
    REMINDER_SWEEP_MINUTES: int = Field(15, env="REMINDER_SWEEP_MINUTES")
    SCHEDULER_ENABLED: bool = Field(True, env="SCHEDULER_ENABLED")

    # Dev reset
    RESET_DB_ON_STARTUP: bool = Field(False, env="RESET_DB_ON_STARTUP")

    # Debug logging
    QUESTBOT_DEBUG: bool = Field(False, env="QUESTBOT_DEBUG")


    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",  # ignore unexpected keys instead of erroring
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Build settings once at process start; everything else receives this object."""
    return Settings()
