"""Tests for the perp position state machine and PerpLedger direction policy.

Tests verify:
- Flat -> Long/Short opens at the fill price with realized = -fee
- Adds re-weight the average entry by volume
- Opposite fills close min(|fill|, size), keep the remainder's average,
  and open the leftover at the fill price (flip)
- CLOSE/REDUCE fills never flip: excess is clamped
- A CLOSE/REDUCE fill on a Flat ledger seeds from the reported start position
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from pnl_engine.ledger.perp import (
    FLAT,
    Flat,
    Long,
    PerpLedger,
    Short,
    apply_fill,
    position_from_signed,
    unrealized_pnl,
)
from pnl_engine.models import FillDirection, PerpFill, PositionSide

ACCOUNT = "0x" + "b" * 40
TS = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def _fill(
    size: str,
    price: str,
    direction: FillDirection = FillDirection.UNKNOWN,
    start_position: str | None = None,
    fee: str = "0",
    instrument: str = "BTC",
) -> PerpFill:
    return PerpFill(
        ACCOUNT,
        TS,
        instrument,
        size=Decimal(size),
        price=Decimal(price),
        direction=direction,
        start_position=Decimal(start_position) if start_position is not None else None,
        fee=Decimal(fee),
    )


class TestApplyFill:
    """Pure transitions of apply_fill()."""

    def test_open_long_from_flat(self) -> None:
        outcome = apply_fill(FLAT, Decimal("10"), Decimal("100"), Decimal("1"))
        assert outcome.position == Long(size=Decimal("10"), cost_basis=Decimal("1000"))
        assert outcome.position.avg_entry == Decimal("100")
        assert outcome.realized == Decimal("-1")
        assert outcome.opened_qty == Decimal("10")
        assert not outcome.is_closing

    def test_open_short_from_flat(self) -> None:
        outcome = apply_fill(FLAT, Decimal("-2"), Decimal("50"))
        assert isinstance(outcome.position, Short)
        assert outcome.position.signed_size == Decimal("-2")
        assert outcome.position.side is PositionSide.SHORT

    def test_add_reweights_average(self) -> None:
        pos = position_from_signed(Decimal("10"), Decimal("100"))
        outcome = apply_fill(pos, Decimal("5"), Decimal("110"), Decimal("0.5"))
        assert outcome.position.signed_size == Decimal("15")
        assert outcome.position.cost_basis == Decimal("1550")  # type: ignore[union-attr]
        assert outcome.realized == Decimal("-0.5")
        assert outcome.gross_pnl == Decimal("0")

    def test_full_close_is_exact_after_uneven_average(self) -> None:
        pos = position_from_signed(Decimal("10"), Decimal("100"))
        pos = apply_fill(pos, Decimal("5"), Decimal("110")).position
        outcome = apply_fill(pos, Decimal("-15"), Decimal("120"), Decimal("1.5"))
        assert outcome.position is FLAT
        assert outcome.gross_pnl == Decimal("250")
        assert outcome.realized == Decimal("248.5")
        assert outcome.closed_qty == Decimal("15")
        assert outcome.went_flat

    def test_partial_close_keeps_average(self) -> None:
        pos = position_from_signed(Decimal("10"), Decimal("100"))
        outcome = apply_fill(pos, Decimal("-4"), Decimal("120"))
        assert outcome.gross_pnl == Decimal("80")
        assert outcome.position == Long(size=Decimal("6"), cost_basis=Decimal("600"))
        assert outcome.position.avg_entry == Decimal("100")
        assert not outcome.went_flat

    def test_short_profit_when_price_falls(self) -> None:
        pos = position_from_signed(Decimal("-3"), Decimal("200"))
        outcome = apply_fill(pos, Decimal("3"), Decimal("150"))
        assert outcome.gross_pnl == Decimal("150")
        assert isinstance(outcome.position, Flat)

    def test_flip_closes_then_opens_at_fill_price(self) -> None:
        pos = position_from_signed(Decimal("10"), Decimal("100"))
        outcome = apply_fill(pos, Decimal("-15"), Decimal("90"), Decimal("3"))
        assert outcome.flipped
        assert outcome.closed_qty == Decimal("10")
        assert outcome.opened_qty == Decimal("5")
        assert outcome.gross_pnl == Decimal("-100")
        assert outcome.realized == Decimal("-103")
        assert outcome.position == Short(size=Decimal("5"), cost_basis=Decimal("450"))
        assert outcome.position.avg_entry == Decimal("90")

    def test_zero_size_only_charges_fee(self) -> None:
        pos = position_from_signed(Decimal("1"), Decimal("10"))
        outcome = apply_fill(pos, Decimal("0"), Decimal("11"), Decimal("0.2"))
        assert outcome.position == pos
        assert outcome.realized == Decimal("-0.2")

    @pytest.mark.parametrize(
        "signed,mark,expected",
        [
            ("2", "110", "20"),
            ("-2", "110", "-20"),
            ("-2", "90", "20"),
            ("0", "90", "0"),
        ],
    )
    def test_unrealized_pnl(self, signed: str, mark: str, expected: str) -> None:
        pos = position_from_signed(Decimal(signed), Decimal("100"))
        assert unrealized_pnl(pos, Decimal(mark)) == Decimal(expected)


class TestPerpLedger:
    """Direction-tag policy on top of apply_fill()."""

    def test_untagged_overclose_flips(self) -> None:
        ledger = PerpLedger()
        ledger.apply(_fill("2", "100"))
        outcome = ledger.apply(_fill("-5", "100"))
        assert outcome.flipped
        assert ledger.position("BTC").signed_size == Decimal("-3")

    def test_close_tag_clamps_instead_of_flipping(self) -> None:
        ledger = PerpLedger()
        ledger.apply(_fill("2", "100", FillDirection.OPEN))
        outcome = ledger.apply(_fill("-5", "110", FillDirection.CLOSE, start_position="2"))
        assert not outcome.flipped
        assert outcome.clamped_qty == Decimal("3")
        assert outcome.closed_qty == Decimal("2")
        assert outcome.gross_pnl == Decimal("20")
        assert ledger.position("BTC") is FLAT

    def test_reduce_on_flat_seeds_from_start_position(self) -> None:
        ledger = PerpLedger()
        outcome = ledger.apply(_fill("-1", "50", FillDirection.REDUCE, start_position="3"))
        assert outcome.seeded
        assert outcome.prior == Long(size=Decimal("3"), cost_basis=Decimal("150"))
        assert outcome.gross_pnl == Decimal("0")
        assert ledger.position("BTC") == Long(size=Decimal("2"), cost_basis=Decimal("100"))

    def test_close_on_flat_without_start_position_is_dropped(self) -> None:
        ledger = PerpLedger()
        outcome = ledger.apply(_fill("-1", "50", FillDirection.CLOSE, fee="0.1"))
        assert outcome.clamped_qty == Decimal("1")
        assert outcome.realized == Decimal("-0.1")
        assert ledger.position("BTC") is FLAT

    def test_positions_skip_flat_instruments(self) -> None:
        ledger = PerpLedger()
        ledger.apply(_fill("1", "10", instrument="ETH"))
        ledger.apply(_fill("1", "10", instrument="BTC"))
        ledger.apply(_fill("-1", "12", instrument="ETH"))
        assert list(ledger.positions()) == ["BTC"]
