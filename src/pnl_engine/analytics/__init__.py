"""Derived analytics over the ledger fold.

Closed-trade reconstruction with margin and funding attribution, the daily
equity curve with its monthly rollup, drawdown episodes, and
per-instrument market statistics.
"""

from pnl_engine.analytics.drawdown import DrawdownEvent, detect_drawdowns
from pnl_engine.analytics.equity import (
    EquityCurveBuilder,
    EquityPoint,
    MarkBook,
    MonthlyPnL,
    build_equity_curve,
    mark_to_market,
    monthly_rollup,
)
from pnl_engine.analytics.funding import (
    DailyWindowFundingAllocator,
    FundingAllocator,
    make_funding_allocator,
)
from pnl_engine.analytics.margin import DEFAULT_LEVERAGE, LeverageEstimate, MarginLookup
from pnl_engine.analytics.market_stats import (
    PROFIT_FACTOR_UNBOUNDED,
    MarketStats,
    aggregate_market_stats,
)
from pnl_engine.analytics.trades import ClosedTrade, TradeReconstructor, merge_same_exit

__all__ = [
    "DEFAULT_LEVERAGE",
    "PROFIT_FACTOR_UNBOUNDED",
    "ClosedTrade",
    "DailyWindowFundingAllocator",
    "DrawdownEvent",
    "EquityCurveBuilder",
    "EquityPoint",
    "FundingAllocator",
    "LeverageEstimate",
    "MarginLookup",
    "MarkBook",
    "MarketStats",
    "MonthlyPnL",
    "TradeReconstructor",
    "aggregate_market_stats",
    "build_equity_curve",
    "detect_drawdowns",
    "make_funding_allocator",
    "mark_to_market",
    "merge_same_exit",
    "monthly_rollup",
]
