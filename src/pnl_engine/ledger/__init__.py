"""Position ledgers: spot lot-averaging and perp signed-position state machine."""

from pnl_engine.ledger.perp import (
    FLAT,
    FillOutcome,
    Flat,
    Long,
    PerpLedger,
    PerpPosition,
    Short,
    apply_fill,
    position_from_signed,
    unrealized_pnl,
)
from pnl_engine.ledger.spot import (
    SpotLedger,
    SpotOutcome,
    SpotPosition,
    apply_buy,
    apply_sell,
    apply_transfer_out,
)

__all__ = [
    "FLAT",
    "FillOutcome",
    "Flat",
    "Long",
    "PerpLedger",
    "PerpPosition",
    "Short",
    "SpotLedger",
    "SpotOutcome",
    "SpotPosition",
    "apply_buy",
    "apply_fill",
    "apply_sell",
    "apply_transfer_out",
    "position_from_signed",
    "unrealized_pnl",
]
