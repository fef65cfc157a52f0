"""Funding attribution policies for reconstructed trades.

The default policy credits a trade with every funding payment on its
instrument whose calendar day falls inside [entry_day, exit_day]. It is an
approximation: funding is neither pro-rated by position size nor clipped
to the exact holding interval, so two trades sharing a day both see that
day's funding. Swap in another FundingAllocator for finer attribution.
"""

import bisect
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import date, datetime
from decimal import Decimal
from typing import Iterable

from pnl_engine.models import ZERO, PerpFunding, utc_day


class FundingAllocator(ABC):
    """Assigns funding cash flow to a position-holding window."""

    @abstractmethod
    def allocate(self, instrument: str, entry_time: datetime, exit_time: datetime) -> Decimal:
        ...


class DailyWindowFundingAllocator(FundingAllocator):
    """Sum of funding on the instrument for each day from entry day to exit day, inclusive."""

    def __init__(self, funding: Iterable[PerpFunding]) -> None:
        daily: dict[str, dict[date, Decimal]] = defaultdict(lambda: defaultdict(lambda: ZERO))
        for event in funding:
            daily[event.instrument][event.day] += event.amount

        self._days: dict[str, list[date]] = {}
        self._amounts: dict[str, list[Decimal]] = {}
        for instrument, by_day in daily.items():
            days = sorted(by_day)
            self._days[instrument] = days
            self._amounts[instrument] = [by_day[d] for d in days]

    def allocate(self, instrument: str, entry_time: datetime, exit_time: datetime) -> Decimal:
        days = self._days.get(instrument)
        if not days:
            return ZERO
        lo = bisect.bisect_left(days, utc_day(entry_time))
        hi = bisect.bisect_right(days, utc_day(exit_time))
        return sum(self._amounts[instrument][lo:hi], ZERO)


def make_funding_allocator(policy: str, funding: Iterable[PerpFunding]) -> FundingAllocator:
    """Build the allocator named by EngineSettings.funding_policy.

    Raises:
        ValueError: If the policy name is unknown.
    """
    if policy == "daily_window":
        return DailyWindowFundingAllocator(funding)
    raise ValueError(f"unknown funding policy: {policy!r}")
