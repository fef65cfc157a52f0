"""Spot position ledger with weighted-average cost basis.

Sells larger than the tracked balance clamp the balance at zero; the
excess is treated as coming from an out-of-band source (e.g. a deposit the
log never saw) rather than raising.
"""

from dataclasses import dataclass
from decimal import Decimal

from pnl_engine.logging import get_logger
from pnl_engine.models import (
    ZERO,
    Event,
    SpotBuy,
    SpotSell,
    SpotTransferIn,
    SpotTransferOut,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class SpotPosition:
    """Holding of one spot asset. average_cost is meaningless when balance is zero."""

    balance: Decimal = ZERO
    average_cost: Decimal = ZERO

    @property
    def is_empty(self) -> bool:
        return self.balance == ZERO

    def unrealized_pnl(self, mark_price: Decimal) -> Decimal:
        if self.balance == ZERO:
            return ZERO
        return self.balance * (mark_price - self.average_cost)


@dataclass(frozen=True)
class SpotOutcome:
    """Result of applying one spot event.

    Attributes:
        position: Position after the event.
        realized: Realized P&L net of the sell fee (zero for buys/transfers).
        gross_pnl: Realized P&L before fees.
        underflow: Quantity sold or sent out beyond the tracked balance.
    """

    position: SpotPosition
    realized: Decimal = ZERO
    gross_pnl: Decimal = ZERO
    underflow: Decimal = ZERO


def apply_buy(position: SpotPosition, qty: Decimal, price: Decimal) -> SpotPosition:
    """Add qty at price, re-weighting the average cost."""
    new_balance = position.balance + qty
    if new_balance > ZERO:
        new_avg = (position.balance * position.average_cost + qty * price) / new_balance
    else:
        new_avg = price
    return SpotPosition(balance=new_balance, average_cost=new_avg)


def apply_sell(
    position: SpotPosition,
    qty: Decimal,
    price: Decimal,
    fee: Decimal = ZERO,
) -> tuple[SpotPosition, Decimal]:
    """Sell qty at price against the average cost.

    realized = qty * (price - average_cost) - fee. The balance is clamped
    at zero; the average cost is unchanged.

    Returns:
        (new position, realized P&L net of fee).
    """
    realized = qty * (price - position.average_cost) - fee
    new_balance = max(ZERO, position.balance - qty)
    return SpotPosition(balance=new_balance, average_cost=position.average_cost), realized


def apply_transfer_out(position: SpotPosition, qty: Decimal) -> SpotPosition:
    """Remove qty without realizing P&L (clamped at zero)."""
    return SpotPosition(
        balance=max(ZERO, position.balance - qty),
        average_cost=position.average_cost,
    )


class SpotLedger:
    """Per-fold arena of spot positions keyed by instrument.

    One instance lives for exactly one recompute; nothing is shared across
    accounts or calls.
    """

    def __init__(self) -> None:
        self._positions: dict[str, SpotPosition] = {}

    def position(self, instrument: str) -> SpotPosition:
        return self._positions.get(instrument, SpotPosition())

    def positions(self) -> dict[str, SpotPosition]:
        """Non-empty positions, sorted by instrument."""
        return {k: v for k, v in sorted(self._positions.items()) if not v.is_empty}

    def apply(self, event: Event) -> SpotOutcome:
        """Apply a spot buy, sell or transfer.

        Raises:
            TypeError: If the event is not a spot event.
        """
        current = self.position(event.instrument)

        if isinstance(event, (SpotBuy, SpotTransferIn)):
            outcome = SpotOutcome(position=apply_buy(current, event.qty, event.price))
        elif isinstance(event, SpotSell):
            new_position, realized = apply_sell(current, event.qty, event.price, event.fee)
            outcome = SpotOutcome(
                position=new_position,
                realized=realized,
                gross_pnl=realized + event.fee,
                underflow=max(ZERO, event.qty - current.balance),
            )
        elif isinstance(event, SpotTransferOut):
            outcome = SpotOutcome(
                position=apply_transfer_out(current, event.qty),
                underflow=max(ZERO, event.qty - current.balance),
            )
        else:
            raise TypeError(f"not a spot event: {type(event).__name__}")

        if outcome.underflow > ZERO:
            logger.warning(
                "spot_ledger_underflow",
                instrument=event.instrument,
                event_type=event.kind.value,
                tracked_balance=str(current.balance),
                requested=str(event.qty),
                excess=str(outcome.underflow),
            )

        self._positions[event.instrument] = outcome.position
        return outcome
