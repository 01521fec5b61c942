"""
Tests for cost calculation and duration recovery.
"""

import asyncio
from decimal import Decimal

import pytest
from conftest import make_event

from callbilling.billing.cost import (
    CostCalculator,
    calculate_cost,
    estimate_remaining_minutes,
)


class StaticProbe:
    def __init__(self, result: int | None = None, delay: float = 0.0, error: Exception | None = None) -> None:
        self.result = result
        self.delay = delay
        self.error = error
        self.calls: list[str] = []

    async def probe(self, recording_url: str) -> int | None:
        self.calls.append(recording_url)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result


class TestCalculateCost:
    def test_two_minutes_at_ten_cents(self) -> None:
        assert calculate_cost(120, Decimal("0.10")) == Decimal("0.2000")

    def test_rounds_half_up_to_four_places(self) -> None:
        # 1s at 0.0003/min = 0.000005 -> 0.0000; 10s -> 0.00005 -> 0.0001
        assert calculate_cost(1, Decimal("0.0003")) == Decimal("0.0000")
        assert calculate_cost(10, Decimal("0.0003")) == Decimal("0.0001")

    def test_zero_duration_costs_nothing(self) -> None:
        assert calculate_cost(0, Decimal("0.25")) == 0

    def test_monotonic_in_duration(self) -> None:
        rate = Decimal("0.137")
        costs = [calculate_cost(d, rate) for d in range(0, 400, 7)]
        assert costs == sorted(costs)

    def test_negative_input_rejected(self) -> None:
        with pytest.raises(ValueError):
            calculate_cost(-1, Decimal("0.10"))
        with pytest.raises(ValueError):
            calculate_cost(10, Decimal("-0.10"))


class TestEstimateRemainingMinutes:
    def test_average_rate(self) -> None:
        assert estimate_remaining_minutes(Decimal("10"), [Decimal("0.10"), Decimal("0.30")]) == 50

    def test_no_rates_or_no_balance(self) -> None:
        assert estimate_remaining_minutes(Decimal("10"), []) == 0
        assert estimate_remaining_minutes(Decimal("0"), [Decimal("0.10")]) == 0


class TestCostCalculator:
    @pytest.mark.asyncio
    async def test_known_duration_skips_probe(self) -> None:
        probe = StaticProbe(result=600)
        calculator = CostCalculator(probe=probe)

        result = await calculator.cost_for_event(
            make_event(duration_sec=90, recording_url="https://rec/1.wav"),
            Decimal("0.10"),
        )

        assert result.cost == Decimal("0.1500")
        assert not result.duration_recovered
        assert probe.calls == []

    @pytest.mark.asyncio
    async def test_recovers_missing_duration_once(self) -> None:
        probe = StaticProbe(result=60)
        calculator = CostCalculator(probe=probe)

        result = await calculator.cost_for_event(
            make_event(duration_sec=0, recording_url="https://rec/2.wav"),
            Decimal("0.10"),
        )

        assert result.cost == Decimal("0.1000")
        assert result.duration_recovered
        assert probe.calls == ["https://rec/2.wav"]

    @pytest.mark.asyncio
    async def test_probe_timeout_yields_zero_cost(self) -> None:
        calculator = CostCalculator(probe=StaticProbe(result=60, delay=1.0), probe_timeout_seconds=0.05)

        result = await calculator.cost_for_event(
            make_event(duration_sec=0, recording_url="https://rec/slow.wav"),
            Decimal("0.10"),
        )

        assert result.cost == 0
        assert not result.billable
        assert result.reason == "no recoverable duration"

    @pytest.mark.asyncio
    async def test_probe_error_yields_zero_cost(self) -> None:
        calculator = CostCalculator(probe=StaticProbe(error=RuntimeError("boom")))

        result = await calculator.cost_for_event(
            make_event(duration_sec=0, recording_url="https://rec/broken.wav"),
            Decimal("0.10"),
        )

        assert not result.billable
        assert not result.duration_recovered
