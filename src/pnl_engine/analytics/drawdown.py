"""Peak-to-trough drawdown episodes over the equity curve.

One forward pass, one episode at a time: nested or overlapping declines
inside an open episode only deepen its trough.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Sequence

from pnl_engine.analytics.equity import EquityPoint
from pnl_engine.logging import get_logger
from pnl_engine.models import ZERO

logger = get_logger(__name__)


@dataclass(frozen=True)
class DrawdownEvent:
    """A decline from a peak, with its recovery if the curve got back above it.

    Attributes:
        peak_date: Day of the high the decline started from.
        trough_date: Day of the lowest equity inside the episode.
        recovery_date: First day equity exceeded the peak again, or None.
        depth: peak_equity - trough_equity (never negative).
        depth_pct: depth / peak_equity, 0 when the peak is not positive.
        recovery_days: Calendar days from peak_date to recovery_date, or None.
    """

    peak_date: date
    trough_date: date
    recovery_date: date | None
    peak_equity: Decimal
    trough_equity: Decimal
    depth: Decimal
    depth_pct: Decimal
    recovery_days: int | None
    is_recovered: bool

    def to_dict(self) -> dict:
        return {
            "peak_date": self.peak_date.isoformat(),
            "trough_date": self.trough_date.isoformat(),
            "recovery_date": self.recovery_date.isoformat() if self.recovery_date else None,
            "peak_equity": str(self.peak_equity),
            "trough_equity": str(self.trough_equity),
            "depth": str(self.depth),
            "depth_pct": str(self.depth_pct),
            "recovery_days": self.recovery_days,
            "is_recovered": self.is_recovered,
        }


def _episode(
    peak_date: date,
    peak: Decimal,
    trough_date: date,
    trough: Decimal,
    recovery_date: date | None,
) -> DrawdownEvent:
    depth = peak - trough
    return DrawdownEvent(
        peak_date=peak_date,
        trough_date=trough_date,
        recovery_date=recovery_date,
        peak_equity=peak,
        trough_equity=trough,
        depth=depth,
        depth_pct=depth / peak if peak > ZERO else ZERO,
        recovery_days=(recovery_date - peak_date).days if recovery_date else None,
        is_recovered=recovery_date is not None,
    )


def detect_drawdowns(points: Sequence[EquityPoint]) -> list[DrawdownEvent]:
    """Scan the equity curve for drawdown episodes.

    The first point seeds both peak and trough. A new high closes the open
    episode as recovered; a new low inside an episode moves its trough. An
    episode still open at the end of the curve is emitted unrecovered.

    Args:
        points: Equity points in ascending day order.

    Returns:
        Episodes in the order they started. Empty for fewer than two points.
    """
    if len(points) < 2:
        return []

    first = points[0]
    peak = trough = first.cumulative_equity
    peak_date = trough_date = first.day
    in_drawdown = False
    events: list[DrawdownEvent] = []

    for point in points[1:]:
        equity = point.cumulative_equity
        if equity > peak:
            if in_drawdown and peak > trough:
                events.append(_episode(peak_date, peak, trough_date, trough, point.day))
            peak = trough = equity
            peak_date = trough_date = point.day
            in_drawdown = False
        elif equity < trough:
            trough = equity
            trough_date = point.day
            in_drawdown = True

    if in_drawdown:
        events.append(_episode(peak_date, peak, trough_date, trough, None))

    if events:
        logger.debug(
            "drawdowns_detected",
            episodes=len(events),
            unrecovered=sum(1 for e in events if not e.is_recovered),
            max_depth=str(max(e.depth for e in events)),
        )
    return events
