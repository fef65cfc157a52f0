"""Tests for margin lookup and the funding allocation policy."""

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from pnl_engine.analytics.funding import DailyWindowFundingAllocator, make_funding_allocator
from pnl_engine.analytics.margin import DEFAULT_LEVERAGE, MarginLookup
from pnl_engine.models import MarginSnapshot, PerpFunding

ACCOUNT = "0x" + "d" * 40


def _snap(day: date, value: str, used: str) -> MarginSnapshot:
    return MarginSnapshot(day=day, account_value=Decimal(value), total_margin_used=Decimal(used))


def _funding(day: int, hour: int, amount: str, instrument: str = "BTC") -> PerpFunding:
    ts = datetime(2024, 3, day, hour, tzinfo=timezone.utc)
    return PerpFunding(ACCOUNT, ts, instrument, amount=Decimal(amount))


class TestMarginLookup:
    """Nearest-prior-day snapshot selection and leverage estimate."""

    def test_exact_day_preferred(self) -> None:
        lookup = MarginLookup([_snap(date(2024, 3, 1), "100", "10"), _snap(date(2024, 3, 2), "100", "20")])
        assert lookup.snapshot_for(date(2024, 3, 2)).total_margin_used == Decimal("20")  # type: ignore[union-attr]

    def test_falls_back_to_nearest_prior(self) -> None:
        lookup = MarginLookup([_snap(date(2024, 3, 1), "100", "10"), _snap(date(2024, 3, 9), "100", "20")])
        assert lookup.margin_ratio(date(2024, 3, 5)) == Decimal("0.1")

    def test_nothing_before_first_snapshot(self) -> None:
        lookup = MarginLookup([_snap(date(2024, 3, 5), "100", "10")])
        assert lookup.snapshot_for(date(2024, 3, 4)) is None
        estimate = lookup.estimate(Decimal("1000"), date(2024, 3, 4))
        assert estimate.source == "default"
        assert estimate.leverage == DEFAULT_LEVERAGE
        assert estimate.margin_used == Decimal("200")

    @pytest.mark.parametrize("value,used", [("0", "10"), ("-5", "10"), ("100", "0")])
    def test_unusable_snapshot_uses_default(self, value: str, used: str) -> None:
        lookup = MarginLookup([_snap(date(2024, 3, 1), value, used)])
        assert lookup.estimate(Decimal("50"), date(2024, 3, 1)).source == "default"

    def test_snapshot_estimate(self) -> None:
        lookup = MarginLookup([_snap(date(2024, 3, 1), "2000", "500")])
        estimate = lookup.estimate(Decimal("1000"), date(2024, 3, 1))
        assert estimate.margin_used == Decimal("250")
        assert estimate.leverage == Decimal("4")
        assert estimate.source == "snapshot"

    def test_configurable_default(self) -> None:
        lookup = MarginLookup([], default_leverage=Decimal("10"))
        estimate = lookup.estimate(Decimal("1000"), date(2024, 3, 1))
        assert estimate.leverage == Decimal("10")
        assert estimate.margin_used == Decimal("100")
        assert len(lookup) == 0


class TestDailyWindowFunding:
    """Inclusive calendar-day window attribution."""

    def test_window_is_inclusive_of_both_days(self) -> None:
        allocator = DailyWindowFundingAllocator(
            [
                _funding(1, 0, "1"),
                _funding(1, 8, "2"),
                _funding(2, 8, "3"),
                _funding(3, 8, "4"),
                _funding(4, 8, "100"),
            ]
        )
        entry = datetime(2024, 3, 1, 23, tzinfo=timezone.utc)
        exit_ = datetime(2024, 3, 3, 1, tzinfo=timezone.utc)
        assert allocator.allocate("BTC", entry, exit_) == Decimal("10")

    def test_other_instruments_are_ignored(self) -> None:
        allocator = DailyWindowFundingAllocator([_funding(1, 8, "5", instrument="ETH")])
        ts = datetime(2024, 3, 1, tzinfo=timezone.utc)
        assert allocator.allocate("BTC", ts, ts) == Decimal("0")

    def test_shared_day_is_counted_for_each_trade(self) -> None:
        allocator = DailyWindowFundingAllocator([_funding(2, 8, "6")])
        first = allocator.allocate(
            "BTC",
            datetime(2024, 3, 2, 1, tzinfo=timezone.utc),
            datetime(2024, 3, 2, 2, tzinfo=timezone.utc),
        )
        second = allocator.allocate(
            "BTC",
            datetime(2024, 3, 2, 20, tzinfo=timezone.utc),
            datetime(2024, 3, 2, 21, tzinfo=timezone.utc),
        )
        assert first == second == Decimal("6")

    def test_factory(self) -> None:
        assert isinstance(make_funding_allocator("daily_window", []), DailyWindowFundingAllocator)
        with pytest.raises(ValueError):
            make_funding_allocator("pro_rata", [])
