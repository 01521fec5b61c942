"""
Tests for repeating tasks, billing sessions and the session registry.
"""

import asyncio
from decimal import Decimal

import pytest
from conftest import (
    FakeAssignmentDirectory,
    FakeCallEventSource,
    TickingClock,
    make_assignment,
    make_event,
)

from callbilling.config import Settings
from callbilling.ledger.models import TransactionType
from callbilling.ledger.service import BalanceLedger
from callbilling.processing.poller import BillingSession, BillingSessionRegistry, RepeatingTask
from callbilling.processing.processor import CallEventProcessor
from callbilling.shared.exceptions import LedgerInconsistencyError

USER = "user-1"


class TestRepeatingTask:
    @pytest.mark.asyncio
    async def test_runs_until_stopped(self) -> None:
        calls = 0

        async def callback() -> None:
            nonlocal calls
            calls += 1

        task = RepeatingTask("counter", 0.01, callback)
        task.start()
        await asyncio.sleep(0.1)
        await task.stop()
        seen = calls
        await asyncio.sleep(0.05)

        assert seen >= 2
        assert calls == seen
        assert not task.running

    @pytest.mark.asyncio
    async def test_overlapping_tick_is_skipped(self) -> None:
        release = asyncio.Event()
        started = 0

        async def slow() -> None:
            nonlocal started
            started += 1
            await release.wait()

        task = RepeatingTask("slow", 60, slow)
        assert task.tick()
        await asyncio.sleep(0)
        assert not task.tick()
        assert not task.tick()

        release.set()
        await asyncio.sleep(0.01)

        assert started == 1
        assert task.ticks_skipped == 2
        assert task.tick()
        await asyncio.sleep(0.01)
        assert started == 2

    @pytest.mark.asyncio
    async def test_stop_waits_for_in_flight_cycle(self) -> None:
        finished = False

        async def slow() -> None:
            nonlocal finished
            await asyncio.sleep(0.05)
            finished = True

        task = RepeatingTask("graceful", 60, slow)
        task.start()
        await asyncio.sleep(0.01)
        await task.stop()

        assert finished

    @pytest.mark.asyncio
    async def test_failing_cycle_does_not_stop_ticker(self) -> None:
        attempts = 0

        async def flaky() -> None:
            nonlocal attempts
            attempts += 1
            raise RuntimeError("boom")

        task = RepeatingTask("flaky", 0.01, flaky)
        task.start()
        await asyncio.sleep(0.08)
        await task.stop()

        assert attempts >= 2

    def test_rejects_non_positive_interval(self) -> None:
        with pytest.raises(ValueError):
            RepeatingTask("bad", 0, lambda: None)


def _processor(ledger: BalanceLedger, settings: Settings, clock: TickingClock, events: FakeCallEventSource) -> CallEventProcessor:
    assignments = FakeAssignmentDirectory([make_assignment("a1", "0.60", is_primary=True)])
    return CallEventProcessor(events, assignments, ledger, settings=settings, clock=clock)


class TestBillingSession:
    @pytest.mark.asyncio
    async def test_session_bills_and_refreshes_balance(
        self, ledger: BalanceLedger, settings: Settings, clock: TickingClock
    ) -> None:
        await ledger.apply_transaction(USER, Decimal("10"), TransactionType.DEPOSIT, "Deposit")
        events = FakeCallEventSource([make_event("call-s", duration_sec=60)])
        session = BillingSession(USER, _processor(ledger, settings, clock, events), ledger, settings=settings)

        session.start()
        await asyncio.sleep(0.3)
        await session.stop()

        assert session.balance is not None
        assert session.balance.current_balance == Decimal("9.4")
        assert (await ledger.get_balance(USER)).current_balance == Decimal("9.4")
        assert not session.running

    @pytest.mark.asyncio
    async def test_refresh_failure_keeps_last_balance(
        self,
        ledger: BalanceLedger,
        settings: Settings,
        clock: TickingClock,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        await ledger.apply_transaction(USER, Decimal("5"), TransactionType.DEPOSIT, "Deposit")
        session = BillingSession(
            USER, _processor(ledger, settings, clock, FakeCallEventSource()), ledger, settings=settings
        )
        await session.refresh_balance()

        async def broken(user_id: str):
            raise OSError("network")

        monkeypatch.setattr(ledger, "get_balance", broken)
        await session.refresh_balance()

        assert session.balance.current_balance == Decimal("5")
        assert "network" in session.last_error

    @pytest.mark.asyncio
    async def test_inconsistency_halts_detection(
        self, ledger: BalanceLedger, settings: Settings, clock: TickingClock
    ) -> None:
        class ExplodingProcessor:
            calls = 0

            async def process_user(self, user_id: str):
                ExplodingProcessor.calls += 1
                raise LedgerInconsistencyError(user_id, "rollback failed", call_id_ref="c-1")

        session = BillingSession(USER, ExplodingProcessor(), ledger, settings=settings)
        session.start()
        await asyncio.sleep(0.3)
        await session.stop()

        assert session.halted
        assert ExplodingProcessor.calls == 1
        assert session.last_error == "rollback failed"


class TestBillingSessionRegistry:
    @pytest.mark.asyncio
    async def test_one_session_per_user(
        self, ledger: BalanceLedger, settings: Settings, clock: TickingClock
    ) -> None:
        registry = BillingSessionRegistry(
            ledger,
            lambda user_id: _processor(ledger, settings, clock, FakeCallEventSource()),
            settings=settings,
        )

        first = registry.start("a")
        again = registry.start("a")
        other = registry.start("b")

        assert first is again
        assert other is not first
        assert len(registry) == 2

        assert await registry.stop("a")
        assert not await registry.stop("a")
        await registry.stop_all()

        assert len(registry) == 0
        assert not other.running
