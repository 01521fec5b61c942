"""
Call cost calculation.
"""

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from callbilling.billing.recording import RecordingDurationProbe
from callbilling.calls.events import CallEvent
from callbilling.shared.logging import get_logger

logger = get_logger(__name__)

COST_QUANTUM = Decimal("0.0001")
_SECONDS_PER_MINUTE = Decimal(60)


def calculate_cost(duration_sec: int | Decimal, rate_per_minute: Decimal) -> Decimal:
    """Cost of a call: ``duration / 60 * rate``, rounded half-up to 4 decimals.

    Raises:
        ValueError: on negative duration or rate.
    """
    duration = Decimal(duration_sec)
    rate = Decimal(rate_per_minute)
    if duration < 0 or rate < 0:
        raise ValueError("duration and rate must be non-negative")
    return (duration * rate / _SECONDS_PER_MINUTE).quantize(COST_QUANTUM, rounding=ROUND_HALF_UP)


def estimate_remaining_minutes(balance: Decimal, rates: Sequence[Decimal]) -> int:
    """Whole minutes of calling the balance buys at the average of ``rates``."""
    usable = [Decimal(r) for r in rates if r and r > 0]
    if balance <= 0 or not usable:
        return 0
    average = sum(usable) / len(usable)
    return int(balance / average)


@dataclass(frozen=True)
class CostResult:
    cost: Decimal
    duration_sec: int
    duration_recovered: bool = False
    reason: str | None = None

    @property
    def billable(self) -> bool:
        return self.cost > 0


class CostCalculator:
    """Turns a call event and a rate into a cost, recovering missing durations once."""

    def __init__(
        self,
        probe: RecordingDurationProbe | None = None,
        probe_timeout_seconds: float = 5.0,
    ) -> None:
        self._probe = probe
        self._probe_timeout = probe_timeout_seconds

    async def cost_for_event(self, event: CallEvent, rate_per_minute: Decimal) -> CostResult:
        duration = event.duration_sec
        recovered = False

        if duration == 0 and event.recording_url:
            duration = await self._recover_duration(event)
            recovered = duration > 0

        if duration == 0:
            # Cannot bill; the caller marks the call processed so it is not probed forever.
            logger.warning(
                "Call has no recoverable duration; not billed",
                extra={"call_id": event.call_id, "user_id": event.user_id},
            )
            return CostResult(cost=Decimal("0"), duration_sec=0, reason="no recoverable duration")

        cost = calculate_cost(duration, rate_per_minute)
        if cost <= 0:
            return CostResult(cost=cost, duration_sec=duration, duration_recovered=recovered, reason="zero cost")
        return CostResult(cost=cost, duration_sec=duration, duration_recovered=recovered)

    async def _recover_duration(self, event: CallEvent) -> int:
        if self._probe is None or not event.recording_url:
            return 0
        try:
            duration = await asyncio.wait_for(
                self._probe.probe(event.recording_url),
                timeout=self._probe_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Recording duration probe timed out",
                extra={"call_id": event.call_id, "timeout_seconds": self._probe_timeout},
            )
            return 0
        except Exception:
            logger.exception("Recording duration probe failed", extra={"call_id": event.call_id})
            return 0
        if duration:
            logger.info(
                "Recovered call duration from recording",
                extra={"call_id": event.call_id, "duration_sec": duration},
            )
        return max(0, duration or 0)
