"""Shared test fixtures for the P&L reconstruction engine."""

from decimal import Decimal

import pytest

from pnl_engine.config import AppSettings, EngineSettings, StoreSettings


@pytest.fixture
def engine_settings() -> EngineSettings:
    """Engine defaults: 5x fallback leverage, same-exit merge on, daily-window funding."""
    return EngineSettings(
        default_leverage=Decimal("5"),
        merge_same_exit=True,
        funding_policy="daily_window",
    )


@pytest.fixture
def mock_settings(engine_settings: EngineSettings, tmp_path) -> AppSettings:  # type: ignore[no-untyped-def]
    """Return AppSettings pointing the store at a throwaway SQLite file."""
    return AppSettings(
        log_level="DEBUG",
        engine=engine_settings,
        store=StoreSettings(db_path=str(tmp_path / "analytics.db")),
    )
