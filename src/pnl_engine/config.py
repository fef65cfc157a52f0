"""Configuration system using pydantic-settings with environment variable loading."""

from decimal import Decimal
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseSettings):
    """Knobs of the reconstruction fold.

    All fields configurable via ENGINE_ environment variable prefix.
    """

    model_config = SettingsConfigDict(env_prefix="ENGINE_")

    default_leverage: Decimal = Decimal("5")  # used when no margin snapshot applies
    merge_same_exit: bool = True  # merge closes sharing instrument + exit timestamp
    funding_policy: Literal["daily_window"] = "daily_window"


class StoreSettings(BaseSettings):
    """Reference SQLite store location."""

    model_config = SettingsConfigDict(env_prefix="STORE_")

    db_path: str = "data/analytics.db"


class AppSettings(BaseSettings):
    """Root application settings, composing all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )

    log_level: str = "INFO"
    log_format: Literal["console", "json"] = "console"
    engine: EngineSettings = EngineSettings()
    store: StoreSettings = StoreSettings()
