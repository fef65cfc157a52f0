"""Daily equity curve, mark-to-market and monthly rollups.

The curve has one point per UTC day on which at least one event happened.
Quiet days are never materialized; consumers must not assume the points
are contiguous.

CRITICAL: All monetary values use Decimal. Never use float for prices, quantities, or fees.
"""

from collections import defaultdict
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Iterable, Mapping

from pnl_engine.ledger.perp import PerpPosition
from pnl_engine.ledger.perp import unrealized_pnl as perp_unrealized_pnl
from pnl_engine.ledger.spot import SpotPosition
from pnl_engine.logging import get_logger
from pnl_engine.models import ZERO, MarkSnapshot

logger = get_logger(__name__)


@dataclass(frozen=True)
class EquityPoint:
    """One day of the equity curve.

    trading_pnl is gross realized P&L; fees are carried separately so that
    net_change = trading_pnl + funding_pnl - fees. cumulative_equity only
    moves with realized cash flows; unrealized P&L is reported alongside.
    """

    day: date
    trading_pnl: Decimal
    funding_pnl: Decimal
    fees: Decimal
    net_change: Decimal
    starting_equity: Decimal
    cumulative_trading_pnl: Decimal
    cumulative_funding_pnl: Decimal
    cumulative_fees: Decimal
    cumulative_equity: Decimal
    peak_equity: Decimal
    drawdown: Decimal
    drawdown_pct: Decimal
    trades_count: int = 0
    volume: Decimal = ZERO
    unrealized_pnl: Decimal = ZERO
    unrealized_change: Decimal = ZERO
    total_pnl: Decimal = ZERO

    def to_dict(self) -> dict:
        """Serialize to dict for JSON output; Decimals as strings."""
        return {
            "day": self.day.isoformat(),
            "trading_pnl": str(self.trading_pnl),
            "funding_pnl": str(self.funding_pnl),
            "fees": str(self.fees),
            "net_change": str(self.net_change),
            "starting_equity": str(self.starting_equity),
            "cumulative_trading_pnl": str(self.cumulative_trading_pnl),
            "cumulative_funding_pnl": str(self.cumulative_funding_pnl),
            "cumulative_fees": str(self.cumulative_fees),
            "cumulative_equity": str(self.cumulative_equity),
            "peak_equity": str(self.peak_equity),
            "drawdown": str(self.drawdown),
            "drawdown_pct": str(self.drawdown_pct),
            "trades_count": self.trades_count,
            "volume": str(self.volume),
            "unrealized_pnl": str(self.unrealized_pnl),
            "unrealized_change": str(self.unrealized_change),
            "total_pnl": str(self.total_pnl),
        }


@dataclass(frozen=True)
class MonthlyPnL:
    """Calendar-month rollup of equity points.

    Attributes:
        month: First day of the month.
        closed_pnl: Sum of daily net_change.
        total_pnl: Sum of daily total_pnl (includes unrealized changes).
        profitable_days: Days with net_change > 0.
        trading_days: Days with at least one trade.

    win_rate is profitable_days over trading_days, 0 for a month without trades.
    """

    month: date
    closed_pnl: Decimal
    total_pnl: Decimal
    funding: Decimal
    fees: Decimal
    volume: Decimal
    profitable_days: int
    trading_days: int

    @property
    def win_rate(self) -> Decimal:
        if self.trading_days == 0:
            return ZERO
        return Decimal(self.profitable_days) / Decimal(self.trading_days)

    def to_dict(self) -> dict:
        return {
            "month": self.month.isoformat(),
            "closed_pnl": str(self.closed_pnl),
            "total_pnl": str(self.total_pnl),
            "funding": str(self.funding),
            "fees": str(self.fees),
            "volume": str(self.volume),
            "profitable_days": self.profitable_days,
            "trading_days": self.trading_days,
            "win_rate": str(self.win_rate),
        }


@dataclass
class _DayActivity:
    trading_pnl: Decimal = ZERO
    funding_pnl: Decimal = ZERO
    fees: Decimal = ZERO
    trades_count: int = 0
    volume: Decimal = ZERO
    unrealized_pnl: Decimal = ZERO


class MarkBook:
    """End-of-day marks indexed by day, then instrument."""

    def __init__(self, marks: Iterable[MarkSnapshot] = ()) -> None:
        self._by_day: dict[date, dict[str, Decimal]] = defaultdict(dict)
        for mark in marks:
            self._by_day[mark.day][mark.instrument] = mark.mark_price

    def __len__(self) -> int:
        return len(self._by_day)

    def marks_for(self, day: date) -> dict[str, Decimal] | None:
        """Marks recorded for `day`, or None when that day has none."""
        return self._by_day.get(day)


def mark_to_market(
    marks: Mapping[str, Decimal] | None,
    spot_positions: Mapping[str, SpotPosition],
    perp_positions: Mapping[str, PerpPosition],
) -> Decimal:
    """Unrealized P&L of the open positions against one day's marks.

    With no marks at all the result is zero. A perp without a mark is
    valued at its own average entry (zero P&L); a spot holding without a
    mark contributes nothing.
    """
    if not marks:
        return ZERO

    total = ZERO
    for instrument, position in perp_positions.items():
        mark = marks.get(instrument, position.avg_entry)
        total += perp_unrealized_pnl(position, mark)
    for instrument, holding in spot_positions.items():
        mark = marks.get(instrument)
        if mark is not None:
            total += holding.unrealized_pnl(mark)
    return total


class EquityCurveBuilder:
    """Accumulates per-day activity and folds it into EquityPoints.

    Record calls may come in any order; build() walks the days ascending.
    """

    def __init__(self) -> None:
        self._days: dict[date, _DayActivity] = {}

    def _day(self, day: date) -> _DayActivity:
        activity = self._days.get(day)
        if activity is None:
            activity = _DayActivity()
            self._days[day] = activity
        return activity

    def touch(self, day: date) -> None:
        """Materialize a point for a day whose events moved no money."""
        self._day(day)

    def record_realized(self, day: date, gross_pnl: Decimal) -> None:
        self._day(day).trading_pnl += gross_pnl

    def record_funding(self, day: date, amount: Decimal) -> None:
        self._day(day).funding_pnl += amount

    def record_fee(self, day: date, fee: Decimal) -> None:
        self._day(day).fees += fee

    def record_trade(self, day: date, volume: Decimal) -> None:
        """Count one execution (spot trade or perp fill) and its volume."""
        activity = self._day(day)
        activity.trades_count += 1
        activity.volume += volume

    def set_unrealized(self, day: date, unrealized: Decimal) -> None:
        """End-of-day unrealized P&L of all open positions."""
        self._day(day).unrealized_pnl = unrealized

    def build(self) -> list[EquityPoint]:
        """Fold the recorded days into the equity curve.

        Returns:
            Points in ascending day order. Peak starts at zero, so an account
            that only ever loses has peak 0 and drawdown_pct 0 throughout.
        """
        points: list[EquityPoint] = []
        cumulative = ZERO
        cum_trading = ZERO
        cum_funding = ZERO
        cum_fees = ZERO
        peak = ZERO
        prev_unrealized = ZERO

        for day in sorted(self._days):
            activity = self._days[day]
            net_change = activity.trading_pnl + activity.funding_pnl - activity.fees
            starting = cumulative
            cumulative += net_change
            cum_trading += activity.trading_pnl
            cum_funding += activity.funding_pnl
            cum_fees += activity.fees
            peak = max(peak, cumulative)
            drawdown = peak - cumulative
            drawdown_pct = drawdown / peak if peak > ZERO else ZERO
            unrealized_change = activity.unrealized_pnl - prev_unrealized
            prev_unrealized = activity.unrealized_pnl

            points.append(
                EquityPoint(
                    day=day,
                    trading_pnl=activity.trading_pnl,
                    funding_pnl=activity.funding_pnl,
                    fees=activity.fees,
                    net_change=net_change,
                    starting_equity=starting,
                    cumulative_trading_pnl=cum_trading,
                    cumulative_funding_pnl=cum_funding,
                    cumulative_fees=cum_fees,
                    cumulative_equity=cumulative,
                    peak_equity=peak,
                    drawdown=drawdown,
                    drawdown_pct=drawdown_pct,
                    trades_count=activity.trades_count,
                    volume=activity.volume,
                    unrealized_pnl=activity.unrealized_pnl,
                    unrealized_change=unrealized_change,
                    total_pnl=net_change + unrealized_change,
                )
            )

        if points:
            logger.debug(
                "equity_curve_built",
                days=len(points),
                final_equity=str(points[-1].cumulative_equity),
                peak_equity=str(peak),
            )
        return points


def build_equity_curve(net_changes: Iterable[tuple[date, Decimal]]) -> list[EquityPoint]:
    """Build a curve directly from (day, net change) pairs.

    Each change is booked as trading P&L. Useful for replaying stored daily
    figures without the underlying events.
    """
    builder = EquityCurveBuilder()
    for day, change in net_changes:
        builder.record_realized(day, change)
    return builder.build()


def monthly_rollup(points: Iterable[EquityPoint]) -> list[MonthlyPnL]:
    """Group equity points by calendar month, ascending."""
    months: dict[date, list[EquityPoint]] = defaultdict(list)
    for point in points:
        months[point.day.replace(day=1)].append(point)

    rollup: list[MonthlyPnL] = []
    for month in sorted(months):
        group = months[month]
        rollup.append(
            MonthlyPnL(
                month=month,
                closed_pnl=sum((p.net_change for p in group), ZERO),
                total_pnl=sum((p.total_pnl for p in group), ZERO),
                funding=sum((p.funding_pnl for p in group), ZERO),
                fees=sum((p.fees for p in group), ZERO),
                volume=sum((p.volume for p in group), ZERO),
                profitable_days=sum(1 for p in group if p.net_change > ZERO),
                trading_days=sum(1 for p in group if p.trades_count > 0),
            )
        )
    return rollup
