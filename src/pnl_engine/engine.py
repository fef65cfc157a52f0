"""Account analytics engine: the full reconstruction fold and its recompute service.

compute_account_analytics() is pure and synchronous. Every ledger and
builder it touches is created inside the call and discarded with it, so
any number of accounts can be folded concurrently.

RecomputeService is the async edge: it reads an account's full history
from a store, folds it, and replaces the account's derived rows. Recomputes
of one account are serialized with a per-account asyncio.Lock; different
accounts proceed independently.

CRITICAL: All monetary values use Decimal. Never use float for prices, quantities, or fees.
"""

import asyncio
import time
from dataclasses import dataclass, field
from itertools import groupby
from typing import Iterable, Literal, Protocol

from pnl_engine.analytics.drawdown import DrawdownEvent, detect_drawdowns
from pnl_engine.analytics.equity import (
    EquityCurveBuilder,
    EquityPoint,
    MarkBook,
    MonthlyPnL,
    mark_to_market,
    monthly_rollup,
)
from pnl_engine.analytics.funding import make_funding_allocator
from pnl_engine.analytics.margin import MarginLookup
from pnl_engine.analytics.market_stats import MarketStats, aggregate_market_stats
from pnl_engine.analytics.trades import ClosedTrade, TradeReconstructor
from pnl_engine.config import EngineSettings
from pnl_engine.ingest.event_log import EventLog
from pnl_engine.ingest.normalize import normalize_account
from pnl_engine.ledger.perp import PerpLedger, PerpPosition
from pnl_engine.ledger.spot import SpotLedger, SpotPosition
from pnl_engine.logging import account_context, get_logger
from pnl_engine.models import (
    Event,
    MarginSnapshot,
    MarkSnapshot,
    PerpFee,
    PerpFill,
    PerpFunding,
    SpotBuy,
    SpotSell,
    SpotTransferIn,
    SpotTransferOut,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class AnalyticsResult:
    """Everything one recompute derives for an account."""

    account: str
    closed_trades: list[ClosedTrade] = field(default_factory=list)
    equity_curve: list[EquityPoint] = field(default_factory=list)
    monthly_pnl: list[MonthlyPnL] = field(default_factory=list)
    drawdowns: list[DrawdownEvent] = field(default_factory=list)
    market_stats: list[MarketStats] = field(default_factory=list)
    spot_positions: dict[str, SpotPosition] = field(default_factory=dict)
    perp_positions: dict[str, PerpPosition] = field(default_factory=dict)
    events_processed: int = 0
    skipped_closes: int = 0

    @property
    def is_empty(self) -> bool:
        """True when there was nothing to compute."""
        return self.events_processed == 0

    def summary(self) -> dict:
        """Headline figures for logging and the CLI."""
        last = self.equity_curve[-1] if self.equity_curve else None
        return {
            "account": self.account,
            "events": self.events_processed,
            "closed_trades": len(self.closed_trades),
            "wins": sum(1 for t in self.closed_trades if t.is_win),
            "days": len(self.equity_curve),
            "equity": str(last.cumulative_equity) if last else "0",
            "peak_equity": str(last.peak_equity) if last else "0",
            "unrealized_pnl": str(last.unrealized_pnl) if last else "0",
            "drawdowns": len(self.drawdowns),
            "open_perp_positions": len(self.perp_positions),
            "open_spot_positions": len(self.spot_positions),
        }


def compute_account_analytics(
    events: Iterable[Event],
    margin_snapshots: Iterable[MarginSnapshot] = (),
    mark_snapshots: Iterable[MarkSnapshot] = (),
    settings: EngineSettings | None = None,
    account: str = "",
) -> AnalyticsResult:
    """Fold an account's event log into closed trades, equity and statistics.

    Duplicate events (same dedupe key) are dropped, then events are folded
    in timestamp order, one UTC day at a time. At the end of each day the
    open positions are marked against that day's MarkSnapshots.

    Args:
        events: The account's events, any order, duplicates allowed.
        margin_snapshots: Daily margin state for leverage estimation.
        mark_snapshots: End-of-day marks for unrealized P&L.
        settings: Engine knobs; defaults to EngineSettings().
        account: Account id stamped on the result.

    Returns:
        AnalyticsResult; is_empty when there were no events.
    """
    settings = settings or EngineSettings()
    ordered = EventLog(events).ordered()
    if not ordered:
        return AnalyticsResult(account=account)

    funding = [e for e in ordered if isinstance(e, PerpFunding)]
    spot = SpotLedger()
    perp = PerpLedger()
    reconstructor = TradeReconstructor(
        ledger=perp,
        margin_lookup=MarginLookup(margin_snapshots, settings.default_leverage),
        funding_allocator=make_funding_allocator(settings.funding_policy, funding),
        merge_same_exit=settings.merge_same_exit,
    )
    marks = MarkBook(mark_snapshots)
    curve = EquityCurveBuilder()

    for day, day_events in groupby(ordered, key=lambda e: e.day):
        for event in day_events:
            curve.touch(day)
            match event:
                case PerpFill():
                    outcome = reconstructor.on_fill(event)
                    curve.record_realized(day, outcome.gross_pnl)
                    curve.record_trade(day, event.volume)
                case SpotSell():
                    outcome = spot.apply(event)
                    curve.record_realized(day, outcome.gross_pnl)
                    curve.record_trade(day, event.qty * event.price)
                case SpotBuy():
                    spot.apply(event)
                    curve.record_trade(day, event.qty * event.price)
                case SpotTransferIn() | SpotTransferOut():
                    spot.apply(event)
                case PerpFunding():
                    curve.record_funding(day, event.amount)
                case PerpFee():
                    pass
            curve.record_fee(day, event.fee)

        curve.set_unrealized(
            day, mark_to_market(marks.marks_for(day), spot.positions(), perp.positions())
        )

    trades = reconstructor.closed_trades()
    equity_curve = curve.build()
    result = AnalyticsResult(
        account=account,
        closed_trades=trades,
        equity_curve=equity_curve,
        monthly_pnl=monthly_rollup(equity_curve),
        drawdowns=detect_drawdowns(equity_curve),
        market_stats=aggregate_market_stats(trades),
        spot_positions=spot.positions(),
        perp_positions=perp.positions(),
        events_processed=len(ordered),
        skipped_closes=reconstructor.skipped_closes,
    )

    logger.info(
        "account_analytics_computed",
        events=result.events_processed,
        closed_trades=len(trades),
        days=len(equity_curve),
        drawdowns=len(result.drawdowns),
        skipped_closes=result.skipped_closes,
    )
    return result


class AnalyticsRepository(Protocol):
    """Storage the recompute service reads history from and writes results to."""

    async def account_exists(self, account: str) -> bool: ...

    async def get_events(self, account: str) -> list[Event]: ...

    async def get_margin_snapshots(self, account: str) -> list[MarginSnapshot]: ...

    async def get_mark_snapshots(self) -> list[MarkSnapshot]: ...

    async def replace_results(self, account: str, result: AnalyticsResult) -> None: ...


@dataclass(frozen=True)
class RecomputeOutcome:
    """What a recompute did.

    Attributes:
        status: "ok" when results were replaced, "empty" when the account
            is unknown or has no events (nothing was written).
        result: The computed analytics when status is "ok".
    """

    account: str
    status: Literal["ok", "empty"]
    result: AnalyticsResult | None = None
    duration_ms: int = 0


class RecomputeService:
    """Full-history recompute with at most one in-flight fold per account.

    Args:
        store: Where events come from and results go.
        settings: Engine knobs shared by every recompute.
    """

    def __init__(
        self,
        store: AnalyticsRepository,
        settings: EngineSettings | None = None,
    ) -> None:
        self._store = store
        self._settings = settings or EngineSettings()
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    def lock_for(self, account: str) -> asyncio.Lock:
        """The lock serializing recomputes of `account`.

        Locks are dropped once no recompute holds or awaits them.
        """
        lock = self._locks.get(account)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[account] = lock
        return lock

    async def recompute(self, account: str) -> RecomputeOutcome:
        """Rebuild every derived row for the account from its full history.

        Raises:
            InvalidAccountError: If the account id is empty or malformed.
        """
        account = normalize_account(account)
        self._waiters[account] = self._waiters.get(account, 0) + 1
        try:
            async with self.lock_for(account):
                with account_context(account):
                    return await self._recompute_locked(account)
        finally:
            self._waiters[account] -= 1
            if not self._waiters[account]:
                del self._waiters[account]
                self._locks.pop(account, None)

    async def _recompute_locked(self, account: str) -> RecomputeOutcome:
        started = time.monotonic()
        logger.info("recompute_started")

        if not await self._store.account_exists(account):
            logger.info("recompute_empty", reason="unknown_account")
            return RecomputeOutcome(account=account, status="empty")

        events = await self._store.get_events(account)
        margins = await self._store.get_margin_snapshots(account)
        marks = await self._store.get_mark_snapshots()

        result = compute_account_analytics(
            events, margins, marks, settings=self._settings, account=account
        )
        if result.is_empty:
            logger.info("recompute_empty", reason="no_events")
            return RecomputeOutcome(account=account, status="empty")

        await self._store.replace_results(account, result)
        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "recompute_completed",
            closed_trades=len(result.closed_trades),
            days=len(result.equity_curve),
            duration_ms=duration_ms,
        )
        return RecomputeOutcome(
            account=account, status="ok", result=result, duration_ms=duration_ms
        )

    async def recompute_many(self, accounts: Iterable[str]) -> list[RecomputeOutcome]:
        """Recompute several accounts concurrently."""
        return list(await asyncio.gather(*(self.recompute(a) for a in accounts)))
