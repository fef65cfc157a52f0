"""Shared input models for the P&L reconstruction engine.

Events are immutable and append-only. Each carries a stable dedupe key so
re-ingesting the same exchange record is a no-op.

CRITICAL: All monetary values use Decimal. Never use float for prices, quantities, or fees.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import ClassVar

ZERO = Decimal("0")

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class EventType(str, Enum):
    """Kind of economic event in the account log."""

    SPOT_BUY = "spot_buy"
    SPOT_SELL = "spot_sell"
    SPOT_TRANSFER_IN = "spot_transfer_in"
    SPOT_TRANSFER_OUT = "spot_transfer_out"
    PERP_FILL = "perp_fill"
    PERP_FUNDING = "perp_funding"
    PERP_FEE = "perp_fee"


class FillDirection(str, Enum):
    """What a perp fill does to the position it lands on, as tagged by the venue."""

    OPEN = "open"
    ADD = "add"
    REDUCE = "reduce"
    CLOSE = "close"
    FLIP = "flip"
    UNKNOWN = "unknown"

    @property
    def is_reducing(self) -> bool:
        return self in (FillDirection.REDUCE, FillDirection.CLOSE)


class PositionSide(str, Enum):
    """Position direction."""

    LONG = "long"
    SHORT = "short"


def to_ms(ts: datetime) -> int:
    """Unix milliseconds for a tz-aware timestamp."""
    return (ts - _EPOCH) // timedelta(milliseconds=1)


def utc_day(ts: datetime) -> date:
    """UTC calendar day of a timestamp."""
    return ts.astimezone(timezone.utc).date()


def from_ms(ms: int) -> datetime:
    """UTC datetime from Unix milliseconds."""
    return _EPOCH + timedelta(milliseconds=ms)


@dataclass(frozen=True)
class _Event:
    """Fields common to every event.

    Attributes:
        account: Account (wallet) the event belongs to.
        ts: Execution time, timezone-aware UTC.
        instrument: Spot asset or perp market identifier.
        fee: Fee paid in quote units (positive = paid).
        source: Venue the record came from.
        exchange_id: Venue-assigned id; falls back to the timestamp in the dedupe key.
    """

    kind: ClassVar[EventType]

    account: str
    ts: datetime
    instrument: str
    fee: Decimal = field(default=ZERO, kw_only=True)
    source: str = field(default="hypercore", kw_only=True)
    exchange_id: str | None = field(default=None, kw_only=True)

    @property
    def day(self) -> date:
        """UTC calendar day of the event."""
        return utc_day(self.ts)

    @property
    def dedupe_key(self) -> str:
        ident = self.exchange_id if self.exchange_id else str(to_ms(self.ts))
        return f"{self.source}:{self.kind.value}:{self.instrument}:{ident}"


@dataclass(frozen=True)
class SpotBuy(_Event):
    kind: ClassVar[EventType] = EventType.SPOT_BUY

    qty: Decimal = ZERO
    price: Decimal = ZERO


@dataclass(frozen=True)
class SpotSell(_Event):
    kind: ClassVar[EventType] = EventType.SPOT_SELL

    qty: Decimal = ZERO
    price: Decimal = ZERO


@dataclass(frozen=True)
class SpotTransferIn(_Event):
    """Asset deposited into the account; priced at the observed market price."""

    kind: ClassVar[EventType] = EventType.SPOT_TRANSFER_IN

    qty: Decimal = ZERO
    price: Decimal = ZERO


@dataclass(frozen=True)
class SpotTransferOut(_Event):
    kind: ClassVar[EventType] = EventType.SPOT_TRANSFER_OUT

    qty: Decimal = ZERO
    price: Decimal = ZERO


@dataclass(frozen=True)
class PerpFill(_Event):
    """A single perpetual-futures execution.

    Attributes:
        size: Signed fill size (positive buys, negative sells).
        price: Execution price.
        direction: Venue tag (open/add/reduce/close/flip).
        start_position: Signed position size just before the fill, if reported.
        closed_pnl: Venue-reported realized P&L, informational only.
    """

    kind: ClassVar[EventType] = EventType.PERP_FILL

    size: Decimal = ZERO
    price: Decimal = ZERO
    direction: FillDirection = FillDirection.UNKNOWN
    start_position: Decimal | None = None
    closed_pnl: Decimal | None = None

    @property
    def volume(self) -> Decimal:
        return abs(self.size) * self.price


@dataclass(frozen=True)
class PerpFunding(_Event):
    """Funding cash flow; positive = received."""

    kind: ClassVar[EventType] = EventType.PERP_FUNDING

    amount: Decimal = ZERO


@dataclass(frozen=True)
class PerpFee(_Event):
    """Standalone fee not attached to a fill."""

    kind: ClassVar[EventType] = EventType.PERP_FEE


Event = (
    SpotBuy
    | SpotSell
    | SpotTransferIn
    | SpotTransferOut
    | PerpFill
    | PerpFunding
    | PerpFee
)

EVENT_CLASSES: dict[EventType, type] = {
    cls.kind: cls
    for cls in (
        SpotBuy,
        SpotSell,
        SpotTransferIn,
        SpotTransferOut,
        PerpFill,
        PerpFunding,
        PerpFee,
    )
}


@dataclass(frozen=True)
class MarginSnapshot:
    """Daily account margin state, used only for leverage estimation."""

    day: date
    account_value: Decimal
    total_margin_used: Decimal


@dataclass(frozen=True)
class MarkSnapshot:
    """End-of-day mark price for an instrument, used for unrealized P&L."""

    day: date
    instrument: str
    mark_price: Decimal
