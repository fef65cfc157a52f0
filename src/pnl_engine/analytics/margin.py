"""Per-trade margin and leverage estimation from daily account snapshots.

The account's margin utilization (total_margin_used / account_value) on
the trade's entry day is applied to the trade's notional. This is an
estimate: the venue does not report margin per position.
"""

import bisect
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Iterable, Literal

from pnl_engine.logging import get_logger
from pnl_engine.models import ZERO, MarginSnapshot

logger = get_logger(__name__)

DEFAULT_LEVERAGE = Decimal("5")


@dataclass(frozen=True)
class LeverageEstimate:
    """Margin attributed to one trade.

    Attributes:
        margin_used: Notional times the account's margin ratio.
        leverage: notional / margin_used.
        source: "snapshot" when derived from a margin snapshot, "default" otherwise.
    """

    margin_used: Decimal
    leverage: Decimal
    source: Literal["snapshot", "default"]


class MarginLookup:
    """Nearest-prior-day lookup over margin snapshots.

    Args:
        snapshots: Daily snapshots in any order; a later duplicate day wins.
        default_leverage: Leverage assumed when no usable snapshot exists.
    """

    def __init__(
        self,
        snapshots: Iterable[MarginSnapshot] = (),
        default_leverage: Decimal = DEFAULT_LEVERAGE,
    ) -> None:
        by_day: dict[date, MarginSnapshot] = {}
        for snapshot in snapshots:
            by_day[snapshot.day] = snapshot
        self._days = sorted(by_day)
        self._snapshots = [by_day[d] for d in self._days]
        self._default_leverage = default_leverage

    def __len__(self) -> int:
        return len(self._days)

    def snapshot_for(self, day: date) -> MarginSnapshot | None:
        """Snapshot for `day`, or the closest earlier one, or None."""
        idx = bisect.bisect_right(self._days, day)
        if idx == 0:
            return None
        return self._snapshots[idx - 1]

    def margin_ratio(self, day: date) -> Decimal | None:
        """total_margin_used / account_value for the day, None when unusable."""
        snapshot = self.snapshot_for(day)
        if snapshot is None or snapshot.account_value <= ZERO:
            return None
        ratio = snapshot.total_margin_used / snapshot.account_value
        return ratio if ratio > ZERO else None

    def estimate(self, notional: Decimal, day: date) -> LeverageEstimate:
        """Estimate margin and leverage for a trade entered on `day`."""
        ratio = self.margin_ratio(day)
        if ratio is None:
            return LeverageEstimate(
                margin_used=notional / self._default_leverage,
                leverage=self._default_leverage,
                source="default",
            )

        margin_used = notional * ratio
        leverage = notional / margin_used if margin_used > ZERO else Decimal(1) / ratio
        return LeverageEstimate(margin_used=margin_used, leverage=leverage, source="snapshot")
