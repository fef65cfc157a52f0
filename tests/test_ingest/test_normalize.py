"""Tests for raw payload normalization.

Tests verify:
- Hyperliquid fills become PerpFill (signed by side) or spot events
- direction labels map onto FillDirection
- malformed numerics coerce to zero instead of raising
- unknown event kinds raise from the parser and are skipped by the batch
- flat records round-trip through event_to_record / event_from_record
"""

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from pnl_engine.exceptions import InvalidAccountError, MalformedEventError, UnknownEventTypeError
from pnl_engine.ingest.normalize import (
    event_from_record,
    event_to_record,
    margin_snapshot_from_record,
    mark_snapshot_from_record,
    normalize_account,
    normalize_batch,
    normalize_hyperliquid_fill,
    normalize_hyperliquid_funding,
    parse_direction,
    to_day,
    to_decimal,
    to_timestamp,
)
from pnl_engine.models import (
    FillDirection,
    PerpFee,
    PerpFill,
    PerpFunding,
    SpotBuy,
    SpotSell,
)

ACCOUNT = "0x" + "e" * 40
TIME_MS = 1709294400000  # 2024-03-01T12:00:00Z


def _hl_fill(**overrides: object) -> dict:
    fill = {
        "coin": "BTC",
        "px": "62000.5",
        "sz": "0.25",
        "side": "A",
        "time": TIME_MS,
        "startPosition": "0.25",
        "dir": "Close Long",
        "closedPnl": "120.5",
        "fee": "1.75",
        "oid": 111,
        "tid": 999,
    }
    fill.update(overrides)
    return fill


class TestScalars:
    """Numeric, time and account coercion."""

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("1.5", Decimal("1.5")),
            (2, Decimal("2")),
            (0.1, Decimal("0.1")),
            (None, Decimal("0")),
            ("", Decimal("0")),
            ("abc", Decimal("0")),
            ("NaN", Decimal("0")),
            ("Infinity", Decimal("0")),
            ("1e999999", Decimal("0")),
            ("-2E+31", Decimal("0")),
            ("1E+30", Decimal("1E+30")),
            ("1e-12", Decimal("1e-12")),
        ],
    )
    def test_to_decimal(self, raw: object, expected: Decimal) -> None:
        assert to_decimal(raw, "field") == expected

    def test_to_timestamp_accepts_ms_and_iso(self) -> None:
        expected = datetime(2024, 3, 1, 12, tzinfo=timezone.utc)
        assert to_timestamp(TIME_MS) == expected
        assert to_timestamp(str(TIME_MS)) == expected
        assert to_timestamp("2024-03-01T12:00:00Z") == expected
        assert to_timestamp("2024-03-01T12:00:00") == expected

    @pytest.mark.parametrize(
        "raw", [None, "", "yesterday", True, 10**20, "99999999999999999999", float("nan"), float("inf")]
    )
    def test_to_timestamp_rejects_garbage(self, raw: object) -> None:
        with pytest.raises(MalformedEventError):
            to_timestamp(raw)

    def test_to_day(self) -> None:
        assert to_day("2024-03-01") == date(2024, 3, 1)
        assert to_day(TIME_MS) == date(2024, 3, 1)
        assert to_day(date(2024, 3, 2)) == date(2024, 3, 2)

    def test_normalize_account(self) -> None:
        assert normalize_account("  0x" + "AB" * 20 + " ") == "0x" + "ab" * 20
        assert normalize_account("Desk-1") == "desk-1"
        with pytest.raises(InvalidAccountError):
            normalize_account("")
        with pytest.raises(InvalidAccountError):
            normalize_account("0x1234")


class TestParseDirection:
    """Venue labels to FillDirection."""

    @pytest.mark.parametrize(
        "label,size,start,expected",
        [
            ("Open Long", "1", "0", FillDirection.OPEN),
            ("Open Long", "1", "2", FillDirection.ADD),
            ("Close Short", "1", "-3", FillDirection.REDUCE),
            ("Close Short", "3", "-3", FillDirection.CLOSE),
            ("Long > Short", "-5", "2", FillDirection.FLIP),
            ("reduce", "-1", None, FillDirection.REDUCE),
            ("", "1", None, FillDirection.UNKNOWN),
            ("Liquidation", "1", None, FillDirection.UNKNOWN),
        ],
    )
    def test_labels(self, label: str, size: str, start: str | None, expected: FillDirection) -> None:
        start_position = Decimal(start) if start is not None else None
        assert parse_direction(label, Decimal(size), start_position) is expected


class TestHyperliquid:
    """Venue-shaped payloads."""

    def test_perp_fill(self) -> None:
        event = normalize_hyperliquid_fill(ACCOUNT, _hl_fill())
        assert isinstance(event, PerpFill)
        assert event.size == Decimal("-0.25")
        assert event.price == Decimal("62000.5")
        assert event.fee == Decimal("1.75")
        assert event.direction is FillDirection.CLOSE
        assert event.start_position == Decimal("0.25")
        assert event.closed_pnl == Decimal("120.5")
        assert event.exchange_id == "999"
        assert event.dedupe_key == "hypercore:perp_fill:BTC:999"

    def test_oid_used_without_tid(self) -> None:
        fill = _hl_fill()
        del fill["tid"]
        assert normalize_hyperliquid_fill(ACCOUNT, fill).exchange_id == "111"

    def test_spot_buy_and_sell(self) -> None:
        buy = normalize_hyperliquid_fill(ACCOUNT, _hl_fill(coin="HYPE", dir="Buy", side="B"))
        sell = normalize_hyperliquid_fill(ACCOUNT, _hl_fill(coin="HYPE", dir="Sell"))
        assert isinstance(buy, SpotBuy)
        assert isinstance(sell, SpotSell)
        assert sell.qty == Decimal("0.25")

    def test_malformed_price_is_zeroed(self) -> None:
        event = normalize_hyperliquid_fill(ACCOUNT, _hl_fill(px="not-a-number"))
        assert event.price == Decimal("0")

    def test_funding_delta(self) -> None:
        event = normalize_hyperliquid_funding(
            ACCOUNT,
            {"time": TIME_MS, "hash": "0xabc", "delta": {"type": "funding", "coin": "ETH", "usdc": "-0.42"}},
        )
        assert isinstance(event, PerpFunding)
        assert event.instrument == "ETH"
        assert event.amount == Decimal("-0.42")
        assert event.dedupe_key == f"hypercore:perp_funding:ETH:{TIME_MS}"


class TestRecords:
    """Flat engine records."""

    def test_unknown_type_raises(self) -> None:
        with pytest.raises(UnknownEventTypeError):
            event_from_record({"type": "spot_airdrop", "ts": TIME_MS})

    def test_perp_fee_record(self) -> None:
        event = event_from_record(
            {"type": "perp_fee", "account": ACCOUNT, "ts": TIME_MS, "instrument": "BTC", "fee": "0.3"}
        )
        assert isinstance(event, PerpFee)
        assert event.fee == Decimal("0.3")

    def test_record_round_trip(self) -> None:
        original = normalize_hyperliquid_fill(ACCOUNT, _hl_fill())
        assert event_from_record(event_to_record(original)) == original

    def test_snapshot_records(self) -> None:
        margin = margin_snapshot_from_record(
            {"day": "2024-03-01", "account_value": "1000", "total_margin_used": "250"}
        )
        assert margin.total_margin_used == Decimal("250")
        mark = mark_snapshot_from_record({"day": TIME_MS, "instrument": "BTC", "mark_price": "61000"})
        assert mark.day == date(2024, 3, 1)
        assert mark.mark_price == Decimal("61000")


class TestNormalizeBatch:
    """Whole-payload normalization."""

    def test_bad_records_are_skipped(self) -> None:
        payload = {
            "fills": [
                _hl_fill(),
                _hl_fill(time=None, tid=1000),
                _hl_fill(time=10**20, tid=1001),
                _hl_fill(time=float("nan"), tid=1002),
            ],
            "funding": [{"time": TIME_MS, "delta": {"coin": "BTC", "usdc": "1"}}],
            "events": [
                {"type": "spot_transfer_in", "ts": TIME_MS, "instrument": "HYPE", "qty": "3", "price": "20"},
                {"type": "mystery", "ts": TIME_MS},
                "not-a-record",
            ],
        }
        events = normalize_batch(ACCOUNT, payload)
        assert [e.kind.value for e in events] == ["perp_fill", "perp_funding", "spot_transfer_in"]
        assert all(e.account == ACCOUNT for e in events)

    def test_empty_payload(self) -> None:
        assert normalize_batch(ACCOUNT, {}) == []
