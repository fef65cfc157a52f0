"""Async SQLite database manager for the account event log and derived analytics.

Uses aiosqlite for non-blocking database operations with WAL mode
so readers are not blocked while a recompute replaces results.
"""

import os
from typing import Self

import aiosqlite

from pnl_engine.logging import get_logger

logger = get_logger(__name__)

SCHEMA_VERSION = 1

_CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS events (
    account TEXT NOT NULL,
    dedupe_key TEXT NOT NULL,
    event_type TEXT NOT NULL,
    ts_ms INTEGER NOT NULL,
    instrument TEXT NOT NULL,
    payload TEXT NOT NULL,
    PRIMARY KEY (account, dedupe_key)
);

CREATE TABLE IF NOT EXISTS margin_snapshots (
    account TEXT NOT NULL,
    day TEXT NOT NULL,
    account_value TEXT NOT NULL,
    total_margin_used TEXT NOT NULL,
    PRIMARY KEY (account, day)
);

CREATE TABLE IF NOT EXISTS mark_snapshots (
    day TEXT NOT NULL,
    instrument TEXT NOT NULL,
    mark_price TEXT NOT NULL,
    PRIMARY KEY (day, instrument)
);

CREATE TABLE IF NOT EXISTS closed_trades (
    account TEXT NOT NULL,
    seq INTEGER NOT NULL,
    instrument TEXT NOT NULL,
    side TEXT NOT NULL,
    entry_time_ms INTEGER NOT NULL,
    exit_time_ms INTEGER NOT NULL,
    entry_price TEXT NOT NULL,
    exit_price TEXT NOT NULL,
    size TEXT NOT NULL,
    notional TEXT NOT NULL,
    margin_used TEXT NOT NULL,
    leverage TEXT NOT NULL,
    leverage_source TEXT NOT NULL,
    realized_pnl TEXT NOT NULL,
    fees TEXT NOT NULL,
    funding TEXT NOT NULL,
    net_pnl TEXT NOT NULL,
    is_win INTEGER NOT NULL,
    PRIMARY KEY (account, seq)
);

CREATE TABLE IF NOT EXISTS equity_curve (
    account TEXT NOT NULL,
    day TEXT NOT NULL,
    trading_pnl TEXT NOT NULL,
    funding_pnl TEXT NOT NULL,
    fees TEXT NOT NULL,
    net_change TEXT NOT NULL,
    starting_equity TEXT NOT NULL,
    cumulative_trading_pnl TEXT NOT NULL,
    cumulative_funding_pnl TEXT NOT NULL,
    cumulative_fees TEXT NOT NULL,
    cumulative_equity TEXT NOT NULL,
    peak_equity TEXT NOT NULL,
    drawdown TEXT NOT NULL,
    drawdown_pct TEXT NOT NULL,
    trades_count INTEGER NOT NULL,
    volume TEXT NOT NULL,
    unrealized_pnl TEXT NOT NULL,
    unrealized_change TEXT NOT NULL,
    total_pnl TEXT NOT NULL,
    PRIMARY KEY (account, day)
);

CREATE TABLE IF NOT EXISTS monthly_pnl (
    account TEXT NOT NULL,
    month TEXT NOT NULL,
    closed_pnl TEXT NOT NULL,
    total_pnl TEXT NOT NULL,
    funding TEXT NOT NULL,
    fees TEXT NOT NULL,
    volume TEXT NOT NULL,
    profitable_days INTEGER NOT NULL,
    trading_days INTEGER NOT NULL,
    PRIMARY KEY (account, month)
);

CREATE TABLE IF NOT EXISTS drawdowns (
    account TEXT NOT NULL,
    seq INTEGER NOT NULL,
    peak_date TEXT NOT NULL,
    trough_date TEXT NOT NULL,
    recovery_date TEXT,
    peak_equity TEXT NOT NULL,
    trough_equity TEXT NOT NULL,
    depth TEXT NOT NULL,
    depth_pct TEXT NOT NULL,
    recovery_days INTEGER,
    is_recovered INTEGER NOT NULL,
    PRIMARY KEY (account, seq)
);

CREATE TABLE IF NOT EXISTS market_stats (
    account TEXT NOT NULL,
    instrument TEXT NOT NULL,
    total_trades INTEGER NOT NULL,
    wins INTEGER NOT NULL,
    losses INTEGER NOT NULL,
    win_rate TEXT NOT NULL,
    total_pnl TEXT NOT NULL,
    total_volume TEXT NOT NULL,
    total_fees TEXT NOT NULL,
    total_funding TEXT NOT NULL,
    avg_trade_size TEXT NOT NULL,
    avg_leverage TEXT NOT NULL,
    avg_win TEXT NOT NULL,
    avg_loss TEXT NOT NULL,
    profit_factor TEXT,
    PRIMARY KEY (account, instrument)
);

CREATE TABLE IF NOT EXISTS spot_positions (
    account TEXT NOT NULL,
    instrument TEXT NOT NULL,
    balance TEXT NOT NULL,
    average_cost TEXT NOT NULL,
    PRIMARY KEY (account, instrument)
);

CREATE TABLE IF NOT EXISTS perp_positions (
    account TEXT NOT NULL,
    instrument TEXT NOT NULL,
    signed_size TEXT NOT NULL,
    cost_basis TEXT NOT NULL,
    PRIMARY KEY (account, instrument)
);
"""

_CREATE_INDEXES_SQL = """
CREATE INDEX IF NOT EXISTS idx_events_account_ts
    ON events(account, ts_ms);

CREATE INDEX IF NOT EXISTS idx_closed_trades_account_exit
    ON closed_trades(account, exit_time_ms);
"""

# Derived tables a recompute replaces wholesale.
RESULT_TABLES = (
    "closed_trades",
    "equity_curve",
    "monthly_pnl",
    "drawdowns",
    "market_stats",
    "spot_positions",
    "perp_positions",
)


class AnalyticsDatabase:
    """Async SQLite connection manager for events and analytics.

    Manages database lifecycle including schema creation, WAL mode
    configuration, and clean resource cleanup.

    Usage:
        async with AnalyticsDatabase("data/analytics.db") as db:
            await db.db.execute("SELECT ...")
    """

    def __init__(self, db_path: str = "data/analytics.db") -> None:
        self._db_path = db_path
        self._connection: aiosqlite.Connection | None = None

    @property
    def db(self) -> aiosqlite.Connection:
        """Access the raw aiosqlite connection.

        Raises RuntimeError if not connected.
        """
        if self._connection is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._connection

    async def connect(self) -> None:
        """Open database connection, configure pragmas, and create schema.

        Creates the parent directory if it does not exist.
        """
        db_dir = os.path.dirname(self._db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

        self._connection = await aiosqlite.connect(self._db_path)

        await self._connection.execute("PRAGMA journal_mode=WAL")
        await self._connection.execute("PRAGMA synchronous=NORMAL")

        await self._create_tables()
        await self._ensure_schema_version()

        logger.info("analytics_db_connected", db_path=self._db_path)

    async def close(self) -> None:
        """Close the database connection if open."""
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            logger.info("analytics_db_closed", db_path=self._db_path)

    async def _create_tables(self) -> None:
        assert self._connection is not None
        await self._connection.executescript(_CREATE_TABLES_SQL)
        await self._connection.executescript(_CREATE_INDEXES_SQL)
        await self._connection.commit()

    async def _ensure_schema_version(self) -> None:
        assert self._connection is not None
        cursor = await self._connection.execute("SELECT version FROM schema_version LIMIT 1")
        row = await cursor.fetchone()
        if row is None:
            await self._connection.execute(
                "INSERT INTO schema_version (version) VALUES (?)",
                (SCHEMA_VERSION,),
            )
            await self._connection.commit()
            logger.info("schema_version_set", version=SCHEMA_VERSION)

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        await self.close()
