"""Perpetual-futures position ledger.

A position is one of three states: Flat, Long(size, cost_basis) or
Short(size, cost_basis), where size is always a positive magnitude and
avg_entry = cost_basis / size. Every fill moves the position through
apply_fill(), which is the single definition of realized P&L in the engine:

  - from Flat: open in the fill's direction at the fill price
  - same direction: add, re-weighting the average entry by volume
  - opposite direction: close min(|fill|, size) at the fill price; any
    remainder of the old position keeps its average, any remainder of the
    fill opens the opposite direction at the fill price (a flip)

Fees are always charged against realized P&L of the fill that paid them.
"""

from dataclasses import dataclass, replace
from decimal import Decimal

from pnl_engine.logging import get_logger
from pnl_engine.models import ZERO, PerpFill, PositionSide

logger = get_logger(__name__)


@dataclass(frozen=True)
class Flat:
    @property
    def signed_size(self) -> Decimal:
        return ZERO

    @property
    def avg_entry(self) -> Decimal:
        return ZERO

    @property
    def side(self) -> None:
        return None


@dataclass(frozen=True)
class Long:
    size: Decimal
    cost_basis: Decimal

    @property
    def avg_entry(self) -> Decimal:
        return self.cost_basis / self.size

    @property
    def signed_size(self) -> Decimal:
        return self.size

    @property
    def side(self) -> PositionSide:
        return PositionSide.LONG


@dataclass(frozen=True)
class Short:
    size: Decimal
    cost_basis: Decimal

    @property
    def avg_entry(self) -> Decimal:
        return self.cost_basis / self.size

    @property
    def signed_size(self) -> Decimal:
        return -self.size

    @property
    def side(self) -> PositionSide:
        return PositionSide.SHORT


PerpPosition = Flat | Long | Short

FLAT = Flat()


def position_from_signed(signed_size: Decimal, avg_entry: Decimal) -> PerpPosition:
    """Build a position from a signed size (positive = long)."""
    if signed_size > ZERO:
        return Long(size=signed_size, cost_basis=signed_size * avg_entry)
    if signed_size < ZERO:
        return Short(size=-signed_size, cost_basis=-signed_size * avg_entry)
    return FLAT


def unrealized_pnl(position: PerpPosition, mark_price: Decimal) -> Decimal:
    """Mark-to-market P&L of an open position."""
    match position:
        case Long(size=size, avg_entry=avg):
            return size * (mark_price - avg)
        case Short(size=size, avg_entry=avg):
            return size * (avg - mark_price)
        case _:
            return ZERO


@dataclass(frozen=True)
class FillOutcome:
    """Transition produced by one fill.

    A flip is reported as both a close (closed_qty > 0) and an open
    (opened_qty > 0, flipped=True) so callers can treat it as two logical
    events.

    Attributes:
        prior: Position before the fill (after any seeding).
        position: Position after the fill.
        realized: gross_pnl - fee.
        gross_pnl: Price P&L of the closed quantity.
        fee: Fee charged by the fill.
        closed_qty: Quantity of the prior position that was closed.
        opened_qty: Quantity opened or added in the fill's direction.
        flipped: True when one fill closed one side and opened the other.
        seeded: True when the ledger adopted the venue's start position first.
        clamped_qty: Quantity of a reducing fill dropped because it exceeded the position.
    """

    prior: PerpPosition
    position: PerpPosition
    realized: Decimal
    gross_pnl: Decimal
    fee: Decimal
    closed_qty: Decimal = ZERO
    opened_qty: Decimal = ZERO
    flipped: bool = False
    seeded: bool = False
    clamped_qty: Decimal = ZERO

    @property
    def is_closing(self) -> bool:
        return self.closed_qty > ZERO

    @property
    def went_flat(self) -> bool:
        return self.closed_qty > ZERO and isinstance(self.position, Flat)


def apply_fill(
    position: PerpPosition,
    size: Decimal,
    price: Decimal,
    fee: Decimal = ZERO,
) -> FillOutcome:
    """Apply a signed fill of `size` at `price` paying `fee`."""
    if size == ZERO:
        return FillOutcome(prior=position, position=position, realized=-fee, gross_pnl=ZERO, fee=fee)

    qty = abs(size)

    match position:
        case Flat():
            return FillOutcome(
                prior=position,
                position=position_from_signed(size, price),
                realized=-fee,
                gross_pnl=ZERO,
                fee=fee,
                opened_qty=qty,
            )

        case Long(size=held, cost_basis=cost) if size > ZERO:
            return FillOutcome(
                prior=position,
                position=Long(size=held + qty, cost_basis=cost + qty * price),
                realized=-fee,
                gross_pnl=ZERO,
                fee=fee,
                opened_qty=qty,
            )

        case Short(size=held, cost_basis=cost) if size < ZERO:
            return FillOutcome(
                prior=position,
                position=Short(size=held + qty, cost_basis=cost + qty * price),
                realized=-fee,
                gross_pnl=ZERO,
                fee=fee,
                opened_qty=qty,
            )

        case Long(size=held, cost_basis=cost) | Short(size=held, cost_basis=cost):
            close_qty = min(qty, held)
            # full closes release the whole basis so round trips stay exact
            released = cost if close_qty == held else cost * close_qty / held
            proceeds = close_qty * price
            gross = proceeds - released if isinstance(position, Long) else released - proceeds
            remaining_old = held - close_qty
            remaining_new = qty - close_qty

            if remaining_old > ZERO:
                new_position: PerpPosition = type(position)(
                    size=remaining_old, cost_basis=cost - released
                )
            elif remaining_new > ZERO:
                new_position = position_from_signed(
                    remaining_new if size > ZERO else -remaining_new, price
                )
            else:
                new_position = FLAT

            return FillOutcome(
                prior=position,
                position=new_position,
                realized=gross - fee,
                gross_pnl=gross,
                fee=fee,
                closed_qty=close_qty,
                opened_qty=remaining_new,
                flipped=remaining_new > ZERO,
            )

    raise TypeError(f"unknown position state: {position!r}")


class PerpLedger:
    """Per-fold arena of perp positions keyed by instrument.

    Applies the venue's direction tag on top of apply_fill():
      - a reducing/closing fill never flips; any excess over the tracked
        position is clamped and logged as a ledger underflow
      - a reducing/closing fill that lands on a Flat ledger but reports a
        non-zero start position (log starts mid-history) first seeds the
        ledger at that start position, priced at the fill
    """

    def __init__(self) -> None:
        self._positions: dict[str, PerpPosition] = {}

    def position(self, instrument: str) -> PerpPosition:
        return self._positions.get(instrument, FLAT)

    def positions(self) -> dict[str, PerpPosition]:
        """Open positions, sorted by instrument."""
        return {
            k: v for k, v in sorted(self._positions.items()) if not isinstance(v, Flat)
        }

    def apply(self, fill: PerpFill) -> FillOutcome:
        current = self.position(fill.instrument)
        size = fill.size
        seeded = False
        clamped = ZERO

        if fill.direction.is_reducing and size != ZERO:
            start = fill.start_position
            if (
                isinstance(current, Flat)
                and start is not None
                and start != ZERO
                and (start > ZERO) != (size > ZERO)
            ):
                current = position_from_signed(start, fill.price)
                seeded = True
                logger.info(
                    "perp_ledger_seeded",
                    instrument=fill.instrument,
                    start_position=str(start),
                    price=str(fill.price),
                )

            held = abs(current.signed_size)
            reduces = isinstance(current, Flat) or (current.signed_size > ZERO) != (size > ZERO)
            if reduces and abs(size) > held:
                clamped = abs(size) - held
                logger.warning(
                    "perp_ledger_underflow",
                    instrument=fill.instrument,
                    direction=fill.direction.value,
                    tracked_size=str(current.signed_size),
                    fill_size=str(size),
                    clamped=str(clamped),
                )
                size = held if size > ZERO else -held

        outcome = apply_fill(current, size, fill.price, fill.fee)
        if seeded or clamped > ZERO:
            outcome = replace(outcome, seeded=seeded, clamped_qty=clamped)
        self._positions[fill.instrument] = outcome.position
        return outcome