"""Tests for RecomputeService: per-account locking and replace semantics."""

import asyncio
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from pnl_engine.config import EngineSettings
from pnl_engine.engine import AnalyticsResult, RecomputeService
from pnl_engine.exceptions import InvalidAccountError
from pnl_engine.models import Event, MarginSnapshot, MarkSnapshot, PerpFill

ALICE = "0x" + "a" * 40
BOB = "0x" + "b" * 40
T0 = datetime(2024, 3, 1, 10, tzinfo=timezone.utc)


def _round_trip(account: str) -> list[Event]:
    return [
        PerpFill(account, T0, "BTC", size=Decimal("1"), price=Decimal("100"), exchange_id="1"),
        PerpFill(
            account,
            T0.replace(hour=12),
            "BTC",
            size=Decimal("-1"),
            price=Decimal("104"),
            exchange_id="2",
        ),
    ]


class FakeRepository:
    """In-memory repository that records when each read starts and ends."""

    def __init__(self, events: dict[str, list[Event]], delay: float = 0.0) -> None:
        self.events = events
        self.delay = delay
        self.call_order: list[str] = []
        self.replace_results = AsyncMock()

    async def account_exists(self, account: str) -> bool:
        return account in self.events

    async def get_events(self, account: str) -> list[Event]:
        self.call_order.append(f"start:{account[:3]}")
        await asyncio.sleep(self.delay)
        self.call_order.append(f"end:{account[:3]}")
        return list(self.events[account])

    async def get_margin_snapshots(self, account: str) -> list[MarginSnapshot]:
        return []

    async def get_mark_snapshots(self) -> list[MarkSnapshot]:
        return []


class TestRecompute:
    """Single-account recompute outcomes."""

    @pytest.mark.asyncio
    async def test_results_are_replaced(self, engine_settings: EngineSettings) -> None:
        repo = FakeRepository({ALICE: _round_trip(ALICE)})
        service = RecomputeService(repo, engine_settings)

        outcome = await service.recompute(ALICE.upper().replace("0X", "0x"))

        assert outcome.status == "ok"
        assert outcome.account == ALICE
        assert outcome.result is not None
        assert outcome.result.closed_trades[0].net_pnl == Decimal("4")
        repo.replace_results.assert_awaited_once()
        account, result = repo.replace_results.await_args.args
        assert account == ALICE
        assert isinstance(result, AnalyticsResult)

    @pytest.mark.asyncio
    async def test_unknown_account_is_empty(self) -> None:
        repo = FakeRepository({})
        outcome = await RecomputeService(repo).recompute(ALICE)

        assert outcome.status == "empty"
        assert outcome.result is None
        repo.replace_results.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_account_without_events_is_empty(self) -> None:
        repo = FakeRepository({ALICE: []})
        outcome = await RecomputeService(repo).recompute(ALICE)

        assert outcome.status == "empty"
        repo.replace_results.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_invalid_account_raises(self) -> None:
        service = RecomputeService(FakeRepository({}))
        with pytest.raises(InvalidAccountError):
            await service.recompute("0x12")

    @pytest.mark.asyncio
    async def test_recompute_twice_gives_same_result(self) -> None:
        repo = FakeRepository({ALICE: _round_trip(ALICE)})
        service = RecomputeService(repo)

        first = await service.recompute(ALICE)
        second = await service.recompute(ALICE)

        assert first.result == second.result
        assert repo.replace_results.await_count == 2


class TestAccountLock:
    """Recomputes of one account never overlap; different accounts may."""

    @pytest.mark.asyncio
    async def test_same_account_is_serialized(self) -> None:
        repo = FakeRepository({ALICE: _round_trip(ALICE)}, delay=0.05)
        service = RecomputeService(repo)

        await asyncio.gather(service.recompute(ALICE), service.recompute(ALICE))

        assert repo.call_order == ["start:0xa", "end:0xa", "start:0xa", "end:0xa"]

    @pytest.mark.asyncio
    async def test_different_accounts_run_concurrently(self) -> None:
        repo = FakeRepository({ALICE: _round_trip(ALICE), BOB: _round_trip(BOB)}, delay=0.05)
        service = RecomputeService(repo)

        outcomes = await service.recompute_many([ALICE, BOB])

        assert [o.status for o in outcomes] == ["ok", "ok"]
        assert repo.call_order[:2] == ["start:0xa", "start:0xb"]
        assert service.lock_for(ALICE) is not service.lock_for(BOB)

    @pytest.mark.asyncio
    async def test_lock_is_released_after_failure(self) -> None:
        repo = FakeRepository({ALICE: _round_trip(ALICE)})
        repo.replace_results.side_effect = [RuntimeError("disk full"), None]
        service = RecomputeService(repo)

        with pytest.raises(RuntimeError):
            await service.recompute(ALICE)

        assert not service.lock_for(ALICE).locked()
        assert (await service.recompute(ALICE)).status == "ok"

    @pytest.mark.asyncio
    async def test_idle_locks_are_dropped(self) -> None:
        accounts = ["0x" + f"{i:040x}" for i in range(50)]
        repo = FakeRepository({a: _round_trip(a) for a in [ALICE, *accounts]}, delay=0.01)
        service = RecomputeService(repo)

        tasks = [asyncio.create_task(service.recompute(ALICE)) for _ in range(2)]
        await asyncio.sleep(0)
        assert list(service._locks) == [ALICE]
        assert service._waiters == {ALICE: 2}

        await asyncio.gather(*tasks)
        await service.recompute_many(accounts)
        repo.replace_results.side_effect = RuntimeError("disk full")
        with pytest.raises(RuntimeError):
            await service.recompute(accounts[0])

        assert service._locks == {}
        assert service._waiters == {}
