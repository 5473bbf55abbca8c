"""
napsense Configuration
======================
Runtime settings for the CLI and the detection engine. Pydantic Settings
validates types at startup so a bad environment value fails before a
monitoring session starts, not halfway through a nap.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Loaded from ``NAPSENSE_*`` environment variables or a .env file."""

    # --- Persistence ---
    store_path: Path = Path.home() / ".napsense" / "model.json"

    # --- Logging ---
    log_level: str = "INFO"

    # --- Detection engine ---
    evaluation_interval_sec: float = 15.0
    motion_threshold: float = 0.1  # magnitude at or above this counts as motion
    motion_still_threshold_sec: int = 120
    max_disturbance_sec: float = 60.0

    # --- Wearer ---
    # Stated age; when unset the persisted bracket (default adult) is used.
    age: int | None = None

    model_config = SettingsConfigDict(
        env_prefix="NAPSENSE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
