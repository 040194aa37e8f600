"""
config.py
─────────
Runtime settings, read from ``DAILYREMIND_*`` environment variables or a
``.env`` file in the working directory.
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Data directory lives next to this file unless overridden
_BASE_DIR = Path(__file__).resolve().parent


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="DAILYREMIND_",
        env_file=".env",
        env_ignore_empty=True,
        extra="ignore",
    )

    data_dir: Path = _BASE_DIR / "data"
    log_level: str = "INFO"
    log_file: Optional[Path] = None

    # Platform ceiling on outstanding notification requests (iOS/Android limit)
    max_pending_notifications: int = Field(default=64, gt=0)
    default_snooze_minutes: int = Field(default=10, gt=0)
    max_snooze_count: int = Field(default=3, ge=0)
    # Pending executions older than this, with no live request, become "missed"
    missed_grace_minutes: int = Field(default=15, ge=0)
    dispatcher_tick_seconds: float = Field(default=1.0, gt=0)
    desktop_notifications: bool = True

    host: str = "127.0.0.1"
    port: int = 8000


@lru_cache
def get_settings() -> Settings:
    return Settings()
