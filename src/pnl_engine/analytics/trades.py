"""Closed-trade reconstruction from the perp fill stream.

A closed trade is one round trip on an instrument: from the fill that took
the position off Flat to the fill that brought it back to Flat, or to the
closing half of a fill that flipped it. Partial reductions along the way
accumulate into the same trade. A flip closes the current trade and opens
the next one at the flip fill's price and timestamp.

Trades whose opening was never observed (the log starts while a position
was already open) still drive the ledger but are not emitted.

CRITICAL: All monetary values use Decimal. Never use float for prices, quantities, or fees.
"""

from collections import defaultdict
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterable

from pnl_engine.analytics.funding import FundingAllocator
from pnl_engine.analytics.margin import MarginLookup
from pnl_engine.ledger.perp import FillOutcome, Flat, PerpLedger
from pnl_engine.logging import get_logger
from pnl_engine.models import ZERO, PerpFill, PositionSide, to_ms, utc_day

logger = get_logger(__name__)

_MS_PER_HOUR = Decimal("3600000")


@dataclass(frozen=True)
class ClosedTrade:
    """A reconstructed round trip on one instrument.

    Attributes:
        instrument: Perp market.
        side: Direction of the position that was closed.
        entry_time: When the position left Flat (or the flip that opened it).
        exit_time: Fill that brought the position back to Flat.
        entry_price: Volume-weighted average of the opening fills.
        exit_price: Volume-weighted average of the closing fills.
        size: Total quantity closed.
        notional: size * entry_price.
        margin_used: Estimated margin backing the trade.
        leverage: notional / margin_used.
        leverage_source: "snapshot" or "default".
        realized_pnl: Price P&L of the closed quantity, before fees.
        fees: Fees of every fill in the round trip.
        funding: Funding attributed by the FundingAllocator.
        net_pnl: realized_pnl + funding - fees.
        is_win: True iff net_pnl > 0.
    """

    instrument: str
    side: PositionSide
    entry_time: datetime
    exit_time: datetime
    entry_price: Decimal
    exit_price: Decimal
    size: Decimal
    notional: Decimal
    margin_used: Decimal
    leverage: Decimal
    leverage_source: str
    realized_pnl: Decimal
    fees: Decimal
    funding: Decimal
    net_pnl: Decimal
    is_win: bool

    @property
    def duration(self) -> timedelta:
        return self.exit_time - self.entry_time

    @property
    def duration_hours(self) -> Decimal:
        return Decimal(self.duration // timedelta(milliseconds=1)) / _MS_PER_HOUR

    def to_dict(self) -> dict:
        """Serialize to dict for JSON output; Decimals as strings, times as Unix ms."""
        return {
            "instrument": self.instrument,
            "side": self.side.value,
            "entry_time_ms": to_ms(self.entry_time),
            "exit_time_ms": to_ms(self.exit_time),
            "entry_price": str(self.entry_price),
            "exit_price": str(self.exit_price),
            "size": str(self.size),
            "notional": str(self.notional),
            "margin_used": str(self.margin_used),
            "leverage": str(self.leverage),
            "leverage_source": self.leverage_source,
            "realized_pnl": str(self.realized_pnl),
            "fees": str(self.fees),
            "funding": str(self.funding),
            "net_pnl": str(self.net_pnl),
            "is_win": self.is_win,
            "duration_hours": str(self.duration_hours),
        }


@dataclass
class _OpenCycle:
    """Running totals for the round trip currently open on an instrument."""

    instrument: str
    side: PositionSide
    entry_time: datetime | None
    entry_qty: Decimal = ZERO
    entry_cost: Decimal = ZERO
    closed_qty: Decimal = ZERO
    exit_proceeds: Decimal = ZERO
    gross_pnl: Decimal = ZERO
    fees: Decimal = ZERO
    fills: int = 0


class TradeReconstructor:
    """Feeds fills through a PerpLedger and cuts them into ClosedTrades.

    One instance serves exactly one fold. Fills must arrive in timestamp
    order; reconstruct() sorts them for you.

    Args:
        ledger: Perp ledger arena for this fold.
        margin_lookup: Margin snapshots for leverage estimation.
        funding_allocator: Policy assigning funding to each trade.
        merge_same_exit: Merge trades on one instrument that share an exit timestamp.
    """

    def __init__(
        self,
        ledger: PerpLedger,
        margin_lookup: MarginLookup,
        funding_allocator: FundingAllocator,
        merge_same_exit: bool = True,
    ) -> None:
        self._ledger = ledger
        self._margin_lookup = margin_lookup
        self._funding_allocator = funding_allocator
        self._merge_same_exit = merge_same_exit
        self._cycles: dict[str, _OpenCycle] = {}
        self._trades: list[ClosedTrade] = []
        self._skipped = 0

    @property
    def skipped_closes(self) -> int:
        """Round trips closed without an observed entry (not emitted)."""
        return self._skipped

    def reconstruct(self, fills: Iterable[PerpFill]) -> list[ClosedTrade]:
        """Process fills in timestamp order and return the closed trades."""
        for fill in sorted(fills, key=lambda f: f.ts):
            self.on_fill(fill)
        return self.closed_trades()

    def on_fill(self, fill: PerpFill) -> FillOutcome:
        """Apply one fill to the ledger and update trade boundaries."""
        outcome = self._ledger.apply(fill)
        instrument = fill.instrument
        cycle = self._cycles.get(instrument)

        if outcome.seeded or (outcome.is_closing and cycle is None):
            # position predates the log: track it, but it has no entry time
            cycle = self._untracked_cycle(instrument, outcome)

        if not outcome.is_closing:
            if outcome.opened_qty > ZERO:
                if cycle is None or isinstance(outcome.prior, Flat):
                    cycle = self._open_cycle(fill, outcome, outcome.opened_qty, outcome.fee)
                else:
                    cycle.entry_qty += outcome.opened_qty
                    cycle.entry_cost += outcome.opened_qty * fill.price
                    cycle.fees += outcome.fee
                    cycle.fills += 1
            elif cycle is not None:
                cycle.fees += outcome.fee
                cycle.fills += 1
            return outcome

        close_fee = outcome.fee
        open_fee = ZERO
        if outcome.flipped:
            total_qty = outcome.closed_qty + outcome.opened_qty
            close_fee = outcome.fee * outcome.closed_qty / total_qty
            open_fee = outcome.fee - close_fee

        cycle.closed_qty += outcome.closed_qty
        cycle.exit_proceeds += outcome.closed_qty * fill.price
        cycle.gross_pnl += outcome.gross_pnl
        cycle.fees += close_fee
        cycle.fills += 1

        if outcome.went_flat or outcome.flipped:
            self._finish_cycle(cycle, fill.ts)
            del self._cycles[instrument]
            if outcome.flipped:
                self._open_cycle(fill, outcome, outcome.opened_qty, open_fee)

        return outcome

    def open_cycles(self) -> dict[str, datetime | None]:
        """Entry time of each instrument's currently open round trip."""
        return {k: v.entry_time for k, v in sorted(self._cycles.items())}

    def closed_trades(self) -> list[ClosedTrade]:
        """Trades closed so far, ordered by exit time then instrument."""
        trades = sorted(self._trades, key=lambda t: (t.exit_time, t.instrument))
        if self._merge_same_exit:
            trades = merge_same_exit(trades)
        return trades

    # ──────────────────────────────────────────────
    # Internals
    # ──────────────────────────────────────────────

    def _untracked_cycle(self, instrument: str, outcome: FillOutcome) -> _OpenCycle:
        prior = outcome.prior
        qty = abs(prior.signed_size)
        cycle = _OpenCycle(
            instrument=instrument,
            side=prior.side,  # type: ignore[arg-type]
            entry_time=None,
            entry_qty=qty,
            entry_cost=qty * prior.avg_entry,
        )
        self._cycles[instrument] = cycle
        return cycle

    def _open_cycle(
        self,
        fill: PerpFill,
        outcome: FillOutcome,
        qty: Decimal,
        fee: Decimal,
    ) -> _OpenCycle:
        cycle = _OpenCycle(
            instrument=fill.instrument,
            side=outcome.position.side,  # type: ignore[arg-type]
            entry_time=fill.ts,
            entry_qty=qty,
            entry_cost=qty * fill.price,
            fees=fee,
            fills=1,
        )
        self._cycles[fill.instrument] = cycle
        return cycle

    def _finish_cycle(self, cycle: _OpenCycle, exit_time: datetime) -> None:
        if cycle.entry_time is None:
            self._skipped += 1
            logger.info(
                "closed_trade_skipped_no_entry",
                instrument=cycle.instrument,
                exit_time_ms=to_ms(exit_time),
                closed_qty=str(cycle.closed_qty),
            )
            return

        entry_price = cycle.entry_cost / cycle.entry_qty if cycle.entry_qty > ZERO else ZERO
        exit_price = cycle.exit_proceeds / cycle.closed_qty
        size = cycle.closed_qty
        notional = size * entry_price
        estimate = self._margin_lookup.estimate(notional, utc_day(cycle.entry_time))
        funding = self._funding_allocator.allocate(cycle.instrument, cycle.entry_time, exit_time)
        net = cycle.gross_pnl + funding - cycle.fees

        trade = ClosedTrade(
            instrument=cycle.instrument,
            side=cycle.side,
            entry_time=cycle.entry_time,
            exit_time=exit_time,
            entry_price=entry_price,
            exit_price=exit_price,
            size=size,
            notional=notional,
            margin_used=estimate.margin_used,
            leverage=estimate.leverage,
            leverage_source=estimate.source,
            realized_pnl=cycle.gross_pnl,
            fees=cycle.fees,
            funding=funding,
            net_pnl=net,
            is_win=net > ZERO,
        )
        self._trades.append(trade)

        logger.debug(
            "closed_trade_reconstructed",
            instrument=trade.instrument,
            side=trade.side.value,
            size=str(trade.size),
            net_pnl=str(trade.net_pnl),
            fills=cycle.fills,
            leverage_source=trade.leverage_source,
        )


def merge_same_exit(trades: list[ClosedTrade]) -> list[ClosedTrade]:
    """Merge trades on the same instrument that share an exit timestamp.

    The venue reports partial fills of one execution as separate rows, which
    can surface as several closes at one instant. Size, notional, margin,
    realized P&L, fees, funding and net P&L are summed; is_win and leverage
    are recomputed. The first trade's entry time and prices are kept.
    """
    merged: dict[tuple[str, datetime], ClosedTrade] = {}
    counts: dict[tuple[str, datetime], int] = defaultdict(int)

    for trade in trades:
        key = (trade.instrument, trade.exit_time)
        counts[key] += 1
        existing = merged.get(key)
        if existing is None:
            merged[key] = trade
            continue

        notional = existing.notional + trade.notional
        margin_used = existing.margin_used + trade.margin_used
        net = existing.net_pnl + trade.net_pnl
        merged[key] = replace(
            existing,
            size=existing.size + trade.size,
            notional=notional,
            margin_used=margin_used,
            leverage=notional / margin_used if margin_used > ZERO else existing.leverage,
            realized_pnl=existing.realized_pnl + trade.realized_pnl,
            fees=existing.fees + trade.fees,
            funding=existing.funding + trade.funding,
            net_pnl=net,
            is_win=net > ZERO,
        )

    fragments = sum(n - 1 for n in counts.values())
    if fragments:
        logger.info("closed_trades_merged", before=len(trades), after=len(merged))
    return list(merged.values())
