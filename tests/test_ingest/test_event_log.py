"""Tests for the deduplicating in-memory event log."""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

from pnl_engine.ingest.event_log import EventLog
from pnl_engine.models import PerpFill, PerpFunding

ACCOUNT = "0x" + "f" * 40
T0 = datetime(2024, 3, 1, 12, tzinfo=timezone.utc)


def _fill(ts: datetime, exchange_id: str | None, size: str = "1") -> PerpFill:
    return PerpFill(
        ACCOUNT, ts, "BTC", size=Decimal(size), price=Decimal("100"), exchange_id=exchange_id
    )


class TestEventLog:
    """Dedupe on append and stable timestamp ordering."""

    def test_duplicate_key_is_a_no_op(self) -> None:
        log = EventLog()
        assert log.append(_fill(T0, "1"))
        assert not log.append(_fill(T0, "1", size="5"))
        assert len(log) == 1

    def test_extend_counts_new_events(self) -> None:
        log = EventLog([_fill(T0, "1")])
        added = log.extend([_fill(T0, "1"), _fill(T0, "2"), _fill(T0, "2")])
        assert added == 1
        assert len(log) == 2

    def test_timestamp_used_when_no_exchange_id(self) -> None:
        log = EventLog()
        assert log.append(_fill(T0, None))
        assert not log.append(_fill(T0, None))
        assert log.append(_fill(T0 + timedelta(milliseconds=1), None))

    def test_same_id_different_kind_is_distinct(self) -> None:
        log = EventLog()
        log.append(_fill(T0, "7"))
        assert log.append(
            PerpFunding(ACCOUNT, T0, "BTC", amount=Decimal("1"), exchange_id="7")
        )

    def test_ordered_is_stable_for_ties(self) -> None:
        later = _fill(T0 + timedelta(hours=1), "a")
        tie_first = _fill(T0, "b")
        tie_second = _fill(T0, "c")
        log = EventLog([later, tie_first, tie_second])
        assert log.ordered() == [tie_first, tie_second, later]
        assert list(log) == log.ordered()

    def test_ordered_day_range(self) -> None:
        events = [_fill(T0 + timedelta(days=i), str(i)) for i in range(5)]
        log = EventLog(reversed(events))
        window = log.ordered(start=date(2024, 3, 2), end=date(2024, 3, 4))
        assert window == events[1:4]
