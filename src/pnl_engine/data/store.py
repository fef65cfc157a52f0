"""Typed SQLite read/write abstraction for account events and derived analytics.

Provides AnalyticsStore with typed methods for the event log, margin and
mark snapshots, and every table a recompute produces. All SQL is isolated
behind this interface.

CRITICAL: All monetary values stored as TEXT in SQLite, restored as Decimal on read.
"""

import json
from datetime import date
from decimal import Decimal
from typing import Iterable

from pnl_engine.analytics.drawdown import DrawdownEvent
from pnl_engine.analytics.equity import EquityPoint, MonthlyPnL
from pnl_engine.analytics.market_stats import PROFIT_FACTOR_UNBOUNDED, MarketStats
from pnl_engine.analytics.trades import ClosedTrade
from pnl_engine.data.database import RESULT_TABLES, AnalyticsDatabase
from pnl_engine.engine import AnalyticsResult
from pnl_engine.ingest.normalize import event_from_record, event_to_record
from pnl_engine.ledger.perp import Long, PerpPosition, Short
from pnl_engine.ledger.spot import SpotPosition
from pnl_engine.logging import get_logger
from pnl_engine.models import (
    ZERO,
    Event,
    MarginSnapshot,
    MarkSnapshot,
    PositionSide,
    from_ms,
    to_ms,
)

logger = get_logger(__name__)


def _opt_date(value: str | None) -> date | None:
    return date.fromisoformat(value) if value else None


class AnalyticsStore:
    """Async SQLite store for the event log and recompute results.

    Wraps AnalyticsDatabase with typed read/write methods. All SQL access
    goes through self._database.db (the aiosqlite Connection).

    Usage:
        async with AnalyticsDatabase("data/analytics.db") as database:
            store = AnalyticsStore(database)
            added = await store.insert_events(events)
    """

    def __init__(self, database: AnalyticsDatabase) -> None:
        self._database = database

    # ──────────────────────────────────────────────
    # Event log
    # ──────────────────────────────────────────────

    async def insert_events(self, events: Iterable[Event]) -> int:
        """Append events, ignoring any whose (account, dedupe_key) is already stored.

        Returns the number of actually inserted rows.
        """
        data = [
            (
                e.account,
                e.dedupe_key,
                e.kind.value,
                to_ms(e.ts),
                e.instrument,
                json.dumps(event_to_record(e), sort_keys=True),
            )
            for e in events
        ]
        if not data:
            return 0

        cursor = await self._database.db.executemany(
            "INSERT OR IGNORE INTO events "
            "(account, dedupe_key, event_type, ts_ms, instrument, payload) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            data,
        )
        await self._database.db.commit()

        inserted = cursor.rowcount
        logger.debug("inserted_events", total=len(data), inserted=inserted)
        return inserted

    async def get_events(
        self,
        account: str,
        since_ms: int | None = None,
        until_ms: int | None = None,
    ) -> list[Event]:
        """Events for an account within an optional time range, in timestamp then arrival order."""
        conditions = ["account = ?"]
        params: list = [account]

        if since_ms is not None:
            conditions.append("ts_ms >= ?")
            params.append(since_ms)
        if until_ms is not None:
            conditions.append("ts_ms <= ?")
            params.append(until_ms)

        where = " AND ".join(conditions)
        cursor = await self._database.db.execute(
            f"SELECT payload FROM events WHERE {where} ORDER BY ts_ms ASC, rowid ASC",
            params,
        )
        rows = await cursor.fetchall()
        return [event_from_record(json.loads(row[0])) for row in rows]

    async def account_exists(self, account: str) -> bool:
        """True if at least one event is stored for the account."""
        cursor = await self._database.db.execute(
            "SELECT 1 FROM events WHERE account = ? LIMIT 1", (account,)
        )
        return await cursor.fetchone() is not None

    async def list_accounts(self) -> list[str]:
        cursor = await self._database.db.execute(
            "SELECT DISTINCT account FROM events ORDER BY account"
        )
        return [row[0] for row in await cursor.fetchall()]

    # ──────────────────────────────────────────────
    # Snapshots
    # ──────────────────────────────────────────────

    async def insert_margin_snapshots(
        self, account: str, snapshots: Iterable[MarginSnapshot]
    ) -> int:
        """Upsert daily margin snapshots; a later snapshot for the same day replaces the earlier."""
        data = [
            (account, s.day.isoformat(), str(s.account_value), str(s.total_margin_used))
            for s in snapshots
        ]
        if not data:
            return 0
        await self._database.db.executemany(
            "INSERT OR REPLACE INTO margin_snapshots "
            "(account, day, account_value, total_margin_used) VALUES (?, ?, ?, ?)",
            data,
        )
        await self._database.db.commit()
        return len(data)

    async def get_margin_snapshots(self, account: str) -> list[MarginSnapshot]:
        cursor = await self._database.db.execute(
            "SELECT day, account_value, total_margin_used FROM margin_snapshots "
            "WHERE account = ? ORDER BY day ASC",
            (account,),
        )
        rows = await cursor.fetchall()
        return [
            MarginSnapshot(
                day=date.fromisoformat(row[0]),
                account_value=Decimal(row[1]),
                total_margin_used=Decimal(row[2]),
            )
            for row in rows
        ]

    async def insert_mark_snapshots(self, snapshots: Iterable[MarkSnapshot]) -> int:
        """Upsert end-of-day marks keyed by (day, instrument)."""
        data = [(s.day.isoformat(), s.instrument, str(s.mark_price)) for s in snapshots]
        if not data:
            return 0
        await self._database.db.executemany(
            "INSERT OR REPLACE INTO mark_snapshots (day, instrument, mark_price) VALUES (?, ?, ?)",
            data,
        )
        await self._database.db.commit()
        return len(data)

    async def get_mark_snapshots(self) -> list[MarkSnapshot]:
        cursor = await self._database.db.execute(
            "SELECT day, instrument, mark_price FROM mark_snapshots ORDER BY day, instrument"
        )
        rows = await cursor.fetchall()
        return [
            MarkSnapshot(day=date.fromisoformat(row[0]), instrument=row[1], mark_price=Decimal(row[2]))
            for row in rows
        ]

    # ──────────────────────────────────────────────
    # Recompute results
    # ──────────────────────────────────────────────

    async def replace_results(self, account: str, result: AnalyticsResult) -> None:
        """Delete every derived row for the account and insert the new result.

        Runs as one transaction: readers see either the old result or the
        new one, never a mix.
        """
        db = self._database.db
        try:
            for table in RESULT_TABLES:
                await db.execute(f"DELETE FROM {table} WHERE account = ?", (account,))

            await db.executemany(
                "INSERT INTO closed_trades (account, seq, instrument, side, entry_time_ms, "
                "exit_time_ms, entry_price, exit_price, size, notional, margin_used, leverage, "
                "leverage_source, realized_pnl, fees, funding, net_pnl, is_win) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                [
                    (
                        account,
                        seq,
                        t.instrument,
                        t.side.value,
                        to_ms(t.entry_time),
                        to_ms(t.exit_time),
                        str(t.entry_price),
                        str(t.exit_price),
                        str(t.size),
                        str(t.notional),
                        str(t.margin_used),
                        str(t.leverage),
                        t.leverage_source,
                        str(t.realized_pnl),
                        str(t.fees),
                        str(t.funding),
                        str(t.net_pnl),
                        1 if t.is_win else 0,
                    )
                    for seq, t in enumerate(result.closed_trades)
                ],
            )

            await db.executemany(
                "INSERT INTO equity_curve (account, day, trading_pnl, funding_pnl, fees, "
                "net_change, starting_equity, cumulative_trading_pnl, cumulative_funding_pnl, "
                "cumulative_fees, cumulative_equity, peak_equity, drawdown, drawdown_pct, "
                "trades_count, volume, unrealized_pnl, unrealized_change, total_pnl) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                [
                    (
                        account,
                        p.day.isoformat(),
                        str(p.trading_pnl),
                        str(p.funding_pnl),
                        str(p.fees),
                        str(p.net_change),
                        str(p.starting_equity),
                        str(p.cumulative_trading_pnl),
                        str(p.cumulative_funding_pnl),
                        str(p.cumulative_fees),
                        str(p.cumulative_equity),
                        str(p.peak_equity),
                        str(p.drawdown),
                        str(p.drawdown_pct),
                        p.trades_count,
                        str(p.volume),
                        str(p.unrealized_pnl),
                        str(p.unrealized_change),
                        str(p.total_pnl),
                    )
                    for p in result.equity_curve
                ],
            )

            await db.executemany(
                "INSERT INTO monthly_pnl (account, month, closed_pnl, total_pnl, funding, fees, "
                "volume, profitable_days, trading_days) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                [
                    (
                        account,
                        m.month.isoformat(),
                        str(m.closed_pnl),
                        str(m.total_pnl),
                        str(m.funding),
                        str(m.fees),
                        str(m.volume),
                        m.profitable_days,
                        m.trading_days,
                    )
                    for m in result.monthly_pnl
                ],
            )

            await db.executemany(
                "INSERT INTO drawdowns (account, seq, peak_date, trough_date, recovery_date, "
                "peak_equity, trough_equity, depth, depth_pct, recovery_days, is_recovered) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                [
                    (
                        account,
                        seq,
                        d.peak_date.isoformat(),
                        d.trough_date.isoformat(),
                        d.recovery_date.isoformat() if d.recovery_date else None,
                        str(d.peak_equity),
                        str(d.trough_equity),
                        str(d.depth),
                        str(d.depth_pct),
                        d.recovery_days,
                        1 if d.is_recovered else 0,
                    )
                    for seq, d in enumerate(result.drawdowns)
                ],
            )

            await db.executemany(
                "INSERT INTO market_stats (account, instrument, total_trades, wins, losses, "
                "win_rate, total_pnl, total_volume, total_fees, total_funding, avg_trade_size, "
                "avg_leverage, avg_win, avg_loss, profit_factor) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                [
                    (
                        account,
                        s.instrument,
                        s.total_trades,
                        s.wins,
                        s.losses,
                        str(s.win_rate),
                        str(s.total_pnl),
                        str(s.total_volume),
                        str(s.total_fees),
                        str(s.total_funding),
                        str(s.avg_trade_size),
                        str(s.avg_leverage),
                        str(s.avg_win),
                        str(s.avg_loss),
                        # unbounded profit factor is stored as NULL
                        None if s.profit_factor_unbounded else str(s.profit_factor),
                    )
                    for s in result.market_stats
                ],
            )

            await db.executemany(
                "INSERT INTO spot_positions (account, instrument, balance, average_cost) "
                "VALUES (?, ?, ?, ?)",
                [
                    (account, instrument, str(p.balance), str(p.average_cost))
                    for instrument, p in result.spot_positions.items()
                ],
            )

            await db.executemany(
                "INSERT INTO perp_positions (account, instrument, signed_size, cost_basis) "
                "VALUES (?, ?, ?, ?)",
                [
                    (account, instrument, str(p.signed_size), str(p.cost_basis))
                    for instrument, p in result.perp_positions.items()
                    if isinstance(p, (Long, Short))
                ],
            )

            await db.commit()
        except Exception:
            await db.rollback()
            logger.error("replace_results_failed", account=account, exc_info=True)
            raise

        logger.info(
            "results_replaced",
            account=account,
            closed_trades=len(result.closed_trades),
            equity_points=len(result.equity_curve),
            drawdowns=len(result.drawdowns),
            markets=len(result.market_stats),
        )

    async def get_closed_trades(self, account: str) -> list[ClosedTrade]:
        """Closed trades in exit order."""
        cursor = await self._database.db.execute(
            "SELECT instrument, side, entry_time_ms, exit_time_ms, entry_price, exit_price, "
            "size, notional, margin_used, leverage, leverage_source, realized_pnl, fees, "
            "funding, net_pnl, is_win FROM closed_trades WHERE account = ? ORDER BY seq",
            (account,),
        )
        rows = await cursor.fetchall()
        return [
            ClosedTrade(
                instrument=row[0],
                side=PositionSide(row[1]),
                entry_time=from_ms(row[2]),
                exit_time=from_ms(row[3]),
                entry_price=Decimal(row[4]),
                exit_price=Decimal(row[5]),
                size=Decimal(row[6]),
                notional=Decimal(row[7]),
                margin_used=Decimal(row[8]),
                leverage=Decimal(row[9]),
                leverage_source=row[10],
                realized_pnl=Decimal(row[11]),
                fees=Decimal(row[12]),
                funding=Decimal(row[13]),
                net_pnl=Decimal(row[14]),
                is_win=bool(row[15]),
            )
            for row in rows
        ]

    async def get_equity_curve(self, account: str) -> list[EquityPoint]:
        """Equity points ordered by day ASC."""
        cursor = await self._database.db.execute(
            "SELECT day, trading_pnl, funding_pnl, fees, net_change, starting_equity, "
            "cumulative_trading_pnl, cumulative_funding_pnl, cumulative_fees, "
            "cumulative_equity, peak_equity, drawdown, drawdown_pct, trades_count, volume, "
            "unrealized_pnl, unrealized_change, total_pnl "
            "FROM equity_curve WHERE account = ? ORDER BY day ASC",
            (account,),
        )
        rows = await cursor.fetchall()
        return [
            EquityPoint(
                day=date.fromisoformat(row[0]),
                trading_pnl=Decimal(row[1]),
                funding_pnl=Decimal(row[2]),
                fees=Decimal(row[3]),
                net_change=Decimal(row[4]),
                starting_equity=Decimal(row[5]),
                cumulative_trading_pnl=Decimal(row[6]),
                cumulative_funding_pnl=Decimal(row[7]),
                cumulative_fees=Decimal(row[8]),
                cumulative_equity=Decimal(row[9]),
                peak_equity=Decimal(row[10]),
                drawdown=Decimal(row[11]),
                drawdown_pct=Decimal(row[12]),
                trades_count=row[13],
                volume=Decimal(row[14]),
                unrealized_pnl=Decimal(row[15]),
                unrealized_change=Decimal(row[16]),
                total_pnl=Decimal(row[17]),
            )
            for row in rows
        ]

    async def get_monthly_pnl(self, account: str) -> list[MonthlyPnL]:
        cursor = await self._database.db.execute(
            "SELECT month, closed_pnl, total_pnl, funding, fees, volume, profitable_days, "
            "trading_days FROM monthly_pnl WHERE account = ? ORDER BY month ASC",
            (account,),
        )
        rows = await cursor.fetchall()
        return [
            MonthlyPnL(
                month=date.fromisoformat(row[0]),
                closed_pnl=Decimal(row[1]),
                total_pnl=Decimal(row[2]),
                funding=Decimal(row[3]),
                fees=Decimal(row[4]),
                volume=Decimal(row[5]),
                profitable_days=row[6],
                trading_days=row[7],
            )
            for row in rows
        ]

    async def get_drawdowns(self, account: str) -> list[DrawdownEvent]:
        cursor = await self._database.db.execute(
            "SELECT peak_date, trough_date, recovery_date, peak_equity, trough_equity, depth, "
            "depth_pct, recovery_days, is_recovered FROM drawdowns "
            "WHERE account = ? ORDER BY seq",
            (account,),
        )
        rows = await cursor.fetchall()
        return [
            DrawdownEvent(
                peak_date=date.fromisoformat(row[0]),
                trough_date=date.fromisoformat(row[1]),
                recovery_date=_opt_date(row[2]),
                peak_equity=Decimal(row[3]),
                trough_equity=Decimal(row[4]),
                depth=Decimal(row[5]),
                depth_pct=Decimal(row[6]),
                recovery_days=row[7],
                is_recovered=bool(row[8]),
            )
            for row in rows
        ]

    async def get_market_stats(self, account: str) -> list[MarketStats]:
        """Per-instrument stats sorted by instrument; NULL profit factor reads back as unbounded."""
        cursor = await self._database.db.execute(
            "SELECT instrument, total_trades, wins, losses, win_rate, total_pnl, total_volume, "
            "total_fees, total_funding, avg_trade_size, avg_leverage, avg_win, avg_loss, "
            "profit_factor FROM market_stats WHERE account = ? ORDER BY instrument",
            (account,),
        )
        rows = await cursor.fetchall()
        return [
            MarketStats(
                instrument=row[0],
                total_trades=row[1],
                wins=row[2],
                losses=row[3],
                win_rate=Decimal(row[4]),
                total_pnl=Decimal(row[5]),
                total_volume=Decimal(row[6]),
                total_fees=Decimal(row[7]),
                total_funding=Decimal(row[8]),
                avg_trade_size=Decimal(row[9]),
                avg_leverage=Decimal(row[10]),
                avg_win=Decimal(row[11]),
                avg_loss=Decimal(row[12]),
                profit_factor=Decimal(row[13]) if row[13] is not None else PROFIT_FACTOR_UNBOUNDED,
            )
            for row in rows
        ]

    async def get_spot_positions(self, account: str) -> dict[str, SpotPosition]:
        cursor = await self._database.db.execute(
            "SELECT instrument, balance, average_cost FROM spot_positions "
            "WHERE account = ? ORDER BY instrument",
            (account,),
        )
        rows = await cursor.fetchall()
        return {
            row[0]: SpotPosition(balance=Decimal(row[1]), average_cost=Decimal(row[2]))
            for row in rows
        }

    async def get_perp_positions(self, account: str) -> dict[str, PerpPosition]:
        cursor = await self._database.db.execute(
            "SELECT instrument, signed_size, cost_basis FROM perp_positions "
            "WHERE account = ? ORDER BY instrument",
            (account,),
        )
        rows = await cursor.fetchall()
        positions: dict[str, PerpPosition] = {}
        for instrument, signed, cost in rows:
            size = Decimal(signed)
            if size > ZERO:
                positions[instrument] = Long(size=size, cost_basis=Decimal(cost))
            elif size < ZERO:
                positions[instrument] = Short(size=-size, cost_basis=Decimal(cost))
        return positions
