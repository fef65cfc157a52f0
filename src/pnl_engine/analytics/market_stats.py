"""Per-instrument performance statistics over closed trades."""

from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable

from pnl_engine.analytics.trades import ClosedTrade
from pnl_engine.models import ZERO

# Profit factor when an instrument has winners but no losers.
PROFIT_FACTOR_UNBOUNDED = Decimal("Infinity")


@dataclass(frozen=True)
class MarketStats:
    """Rolled-up performance of one instrument.

    Attributes:
        losses: Trades that are not wins (zero net P&L counts as a loss).
        total_pnl: Sum of net P&L.
        total_volume: Sum of trade notional.
        avg_loss: Mean absolute net P&L of losing trades.
        profit_factor: Gross wins / gross losses; PROFIT_FACTOR_UNBOUNDED
            when there are wins but no losing P&L, 0 when there is no P&L.
    """

    instrument: str
    total_trades: int
    wins: int
    losses: int
    win_rate: Decimal
    total_pnl: Decimal
    total_volume: Decimal
    total_fees: Decimal
    total_funding: Decimal
    avg_trade_size: Decimal
    avg_leverage: Decimal
    avg_win: Decimal
    avg_loss: Decimal
    profit_factor: Decimal

    @property
    def profit_factor_unbounded(self) -> bool:
        return self.profit_factor.is_infinite()

    def to_dict(self) -> dict:
        return {
            "instrument": self.instrument,
            "total_trades": self.total_trades,
            "wins": self.wins,
            "losses": self.losses,
            "win_rate": str(self.win_rate),
            "total_pnl": str(self.total_pnl),
            "total_volume": str(self.total_volume),
            "total_fees": str(self.total_fees),
            "total_funding": str(self.total_funding),
            "avg_trade_size": str(self.avg_trade_size),
            "avg_leverage": str(self.avg_leverage),
            "avg_win": str(self.avg_win),
            "avg_loss": str(self.avg_loss),
            "profit_factor": None if self.profit_factor_unbounded else str(self.profit_factor),
        }


def profit_factor(gross_wins: Decimal, gross_losses: Decimal) -> Decimal:
    """Ratio of winning to losing P&L (both given as non-negative sums).

    Returns:
        gross_wins / gross_losses, PROFIT_FACTOR_UNBOUNDED when only wins
        carry P&L, and 0 when neither does.
    """
    if gross_losses > ZERO:
        return gross_wins / gross_losses
    if gross_wins > ZERO:
        return PROFIT_FACTOR_UNBOUNDED
    return ZERO


def market_stats_for(instrument: str, trades: list[ClosedTrade]) -> MarketStats:
    """Aggregate one instrument's closed trades.

    Raises:
        ValueError: If trades is empty.
    """
    if not trades:
        raise ValueError(f"no trades for {instrument}")

    total = len(trades)
    winners = [t for t in trades if t.is_win]
    losers = [t for t in trades if not t.is_win]
    gross_wins = sum((t.net_pnl for t in winners), ZERO)
    gross_losses = sum((abs(t.net_pnl) for t in losers), ZERO)
    n = Decimal(total)

    return MarketStats(
        instrument=instrument,
        total_trades=total,
        wins=len(winners),
        losses=len(losers),
        win_rate=Decimal(len(winners)) / n,
        total_pnl=sum((t.net_pnl for t in trades), ZERO),
        total_volume=sum((t.notional for t in trades), ZERO),
        total_fees=sum((t.fees for t in trades), ZERO),
        total_funding=sum((t.funding for t in trades), ZERO),
        avg_trade_size=sum((t.size for t in trades), ZERO) / n,
        avg_leverage=sum((t.leverage for t in trades), ZERO) / n,
        avg_win=gross_wins / len(winners) if winners else ZERO,
        avg_loss=gross_losses / len(losers) if losers else ZERO,
        profit_factor=profit_factor(gross_wins, gross_losses),
    )


def aggregate_market_stats(trades: Iterable[ClosedTrade]) -> list[MarketStats]:
    """Group closed trades by instrument and aggregate each group.

    Returns:
        One MarketStats per instrument that has trades, sorted by instrument.
    """
    grouped: dict[str, list[ClosedTrade]] = defaultdict(list)
    for trade in trades:
        grouped[trade.instrument].append(trade)

    return [market_stats_for(instrument, grouped[instrument]) for instrument in sorted(grouped)]
