"""
Idempotent billing of finished calls.

The processor turns call events into ledger deductions. It never decides on its own
whether a call was billed: the ledger (and its unique index) is the authority, the
in-memory cache only avoids re-reading obviously settled calls.
"""

import asyncio
from collections import OrderedDict
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import TypeVar
from uuid import uuid4

from callbilling.agents.repository import AgentAssignmentDirectory
from callbilling.agents.resolver import AgentAssignment, resolve_rate
from callbilling.billing.cost import CostCalculator
from callbilling.calls.events import CallEvent
from callbilling.calls.repository import CallEventSource
from callbilling.config import Settings, get_settings
from callbilling.ledger.models import TransactionType
from callbilling.ledger.schemas import BalanceSnapshot
from callbilling.ledger.service import BalanceLedger
from callbilling.notifications.notifier import LowBalanceNotifier
from callbilling.shared.exceptions import (
    AgentResolutionError,
    CallNotBillableError,
    LedgerInconsistencyError,
    LedgerWriteError,
    NotFoundError,
    TransientBillingError,
)
from callbilling.shared.logging import correlation_id_var, get_audit_logger, get_logger

logger = get_logger(__name__)
audit_logger = get_audit_logger()

T = TypeVar("T")


class ProcessedCallCache:
    """Bounded LRU set of call ids already settled in this session."""

    def __init__(self, max_size: int = 5000) -> None:
        self._max_size = max_size
        self._ids: OrderedDict[str, None] = OrderedDict()

    def __contains__(self, call_id: object) -> bool:
        return call_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def add(self, call_id: str) -> None:
        self._ids[call_id] = None
        self._ids.move_to_end(call_id)
        while len(self._ids) > self._max_size:
            self._ids.popitem(last=False)

    def clear(self) -> None:
        self._ids.clear()


class EventOutcome(str, Enum):
    BILLED = "billed"
    DUPLICATE = "duplicate"
    ZERO_COST = "zero_cost"
    HELD = "held"
    FAILED = "failed"


@dataclass
class ProcessingReport:
    """Summary of one billing cycle for a user."""

    user_id: str
    billed: list[str] = field(default_factory=list)
    duplicates: list[str] = field(default_factory=list)
    zero_cost: list[str] = field(default_factory=list)
    held: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    total_charged: Decimal = Decimal("0")
    balance: Decimal | None = None

    @property
    def processed_count(self) -> int:
        return len(self.billed)

    def record(self, call_id: str, outcome: EventOutcome) -> None:
        bucket = {
            EventOutcome.BILLED: self.billed,
            EventOutcome.DUPLICATE: self.duplicates,
            EventOutcome.ZERO_COST: self.zero_cost,
            EventOutcome.HELD: self.held,
            EventOutcome.FAILED: self.failed,
        }[outcome]
        bucket.append(call_id)


class CallEventProcessor:
    """Bills a user's finished calls exactly once."""

    def __init__(
        self,
        events: CallEventSource,
        assignments: AgentAssignmentDirectory,
        ledger: BalanceLedger,
        cost_calculator: CostCalculator | None = None,
        notifier: LowBalanceNotifier | None = None,
        settings: Settings | None = None,
        cache: ProcessedCallCache | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._events = events
        self._assignments = assignments
        self._ledger = ledger
        self._costs = cost_calculator or CostCalculator()
        self._notifier = notifier
        self._settings = settings or get_settings()
        self._cache = cache or ProcessedCallCache(self._settings.processed_cache_size)
        self._clock = clock

    @property
    def cache(self) -> ProcessedCallCache:
        return self._cache

    @property
    def notifier(self) -> LowBalanceNotifier | None:
        return self._notifier

    async def _read(self, what: str, user_id: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self._settings.io_timeout_seconds)
        except asyncio.TimeoutError as exc:
            logger.warning(
                "Billing read timed out",
                extra={"user_id": user_id, "read": what, "timeout_seconds": self._settings.io_timeout_seconds},
            )
            raise TransientBillingError(f"Timed out reading {what} for user {user_id}") from exc
        except Exception as exc:
            logger.warning(
                "Billing read failed",
                extra={"user_id": user_id, "read": what, "error": str(exc)},
            )
            raise TransientBillingError(f"Failed reading {what} for user {user_id}: {exc}") from exc

    async def process_user(self, user_id: str, lookback: timedelta | None = None) -> ProcessingReport:
        """Bill every eligible, not yet billed call of the user inside the lookback window.

        Raises:
            TransientBillingError: reading events, assignments, billed ids or the balance failed.
            LedgerInconsistencyError: a ledger rollback failed; the cycle stops.
        """
        token = correlation_id_var.set(f"billing-{uuid4().hex[:12]}")
        try:
            lookback = lookback or timedelta(minutes=self._settings.billing_lookback_minutes)
            since = self._clock() - lookback
            report = ProcessingReport(user_id=user_id)

            events = await self._read("call events", user_id, self._events.list_for_user(user_id, since))
            candidates = [
                event
                for event in events
                if event.user_id == user_id
                and event.is_billable_status
                and event.has_recoverable_duration
                and event.call_id not in self._cache
            ]
            if not candidates:
                logger.debug("No new billable calls", extra={"user_id": user_id})
                return report

            billed = await self._read(
                "billed call ids",
                user_id,
                self._ledger.billed_call_ids(user_id, [e.call_id for e in candidates]),
            )
            for call_id in billed:
                self._cache.add(call_id)
            pending = [e for e in candidates if e.call_id not in billed]
            if not pending:
                return report

            assignments = await self._read("agent assignments", user_id, self._assignments.list_for_user(user_id))
            snapshot = await self._read("balance", user_id, self._ledger.ensure_balance(user_id))

            # oldest first so balance_after follows call order
            for event in sorted(pending, key=lambda e: (e.timestamp, e.call_id)):
                outcome = await self._bill_event(event, assignments, snapshot, report)
                report.record(event.call_id, outcome)

            logger.info(
                "Billing cycle finished",
                extra={
                    "user_id": user_id,
                    "billed": len(report.billed),
                    "duplicates": len(report.duplicates),
                    "zero_cost": len(report.zero_cost),
                    "held": len(report.held),
                    "failed": len(report.failed),
                    "total_charged": str(report.total_charged),
                },
            )
            return report
        finally:
            correlation_id_var.reset(token)

    async def process_call(self, user_id: str, call_id: str) -> ProcessingReport:
        """Bill a single call on demand through the regular path.

        Raises:
            NotFoundError: unknown call for this user.
            CallNotBillableError: the call has not finished or has no duration.
            AgentResolutionError: no rate could be resolved; the call is held.
        """
        event = await self._read("call event", user_id, self._events.get(user_id, call_id))
        if event is None:
            raise NotFoundError(f"Call {call_id} not found for user {user_id}")
        # one deduction per call, so only finished calls are charged
        if not (event.is_billable_status and event.has_recoverable_duration):
            raise CallNotBillableError(call_id, event.call_status)

        report = ProcessingReport(user_id=user_id)
        billed = await self._read("billed call ids", user_id, self._ledger.billed_call_ids(user_id, [call_id]))
        if call_id in billed:
            self._cache.add(call_id)
            report.record(call_id, EventOutcome.DUPLICATE)
            snapshot = await self._read("balance", user_id, self._ledger.get_balance(user_id))
            report.balance = snapshot.current_balance if snapshot else None
            return report

        assignments = await self._read("agent assignments", user_id, self._assignments.list_for_user(user_id))
        resolution = resolve_rate(
            event,
            assignments,
            policy=self._settings.unmatched_agent_policy,
            default_rate=self._settings.default_rate_per_minute,
        )
        if not resolution.resolved:
            self._audit_held(event, resolution.reason)
            raise AgentResolutionError(call_id, resolution.reason or "no rate resolved")

        snapshot = await self._read("balance", user_id, self._ledger.ensure_balance(user_id))
        outcome = await self._bill_event(event, assignments, snapshot, report)
        report.record(call_id, outcome)
        return report

    async def _bill_event(
        self,
        event: CallEvent,
        assignments: Sequence[AgentAssignment],
        snapshot: BalanceSnapshot,
        report: ProcessingReport,
    ) -> EventOutcome:
        resolution = resolve_rate(
            event,
            assignments,
            policy=self._settings.unmatched_agent_policy,
            default_rate=self._settings.default_rate_per_minute,
        )
        if not resolution.resolved:
            # not cached: re-evaluated next cycle in case an agent gets assigned
            self._audit_held(event, resolution.reason)
            return EventOutcome.HELD
        if resolution.flagged:
            audit_logger.warning(
                "Call billed at default rate",
                extra={
                    "user_id": event.user_id,
                    "call_id": event.call_id,
                    "rate_per_minute": str(resolution.rate_per_minute),
                    "reason": resolution.reason,
                },
            )

        try:
            cost = await self._costs.cost_for_event(event, resolution.rate_per_minute)
            if not cost.billable:
                logger.warning(
                    "Call marked processed without charge",
                    extra={"user_id": event.user_id, "call_id": event.call_id, "reason": cost.reason},
                )
                self._cache.add(event.call_id)
                return EventOutcome.ZERO_COST

            agent_label = resolution.assignment.agent_name if resolution.assignment else "default rate"
            result = await self._ledger.apply_transaction(
                event.user_id,
                cost.cost,
                TransactionType.DEDUCTION,
                description=(
                    f"Call {event.call_id} ({cost.duration_sec}s @ ${resolution.rate_per_minute}/min, "
                    f"{agent_label or resolution.rule.value})"
                ),
                call_id_ref=event.call_id,
            )
        except LedgerInconsistencyError:
            raise
        except LedgerWriteError as exc:
            logger.error(
                "Deduction failed; call stays unbilled",
                extra={"user_id": event.user_id, "call_id": event.call_id, "error": exc.message},
            )
            return EventOutcome.FAILED
        except Exception:
            logger.exception(
                "Unexpected error billing call",
                extra={"user_id": event.user_id, "call_id": event.call_id},
            )
            return EventOutcome.FAILED

        self._cache.add(event.call_id)
        report.balance = result.balance_after
        if result.duplicate:
            return EventOutcome.DUPLICATE

        report.total_charged += cost.cost
        await self._notify(event.user_id, result.balance_after, snapshot)
        return EventOutcome.BILLED

    async def _notify(self, user_id: str, balance: Decimal, snapshot: BalanceSnapshot) -> None:
        if self._notifier is None:
            return
        try:
            await self._notifier.observe(
                user_id,
                balance,
                snapshot.warning_threshold,
                snapshot.critical_threshold,
                now=self._clock(),
            )
        except Exception:
            # delivery problems never undo a committed deduction
            logger.exception("Balance notification failed", extra={"user_id": user_id})

    def _audit_held(self, event: CallEvent, reason: str | None) -> None:
        audit_logger.warning(
            "Call held: no billable agent rate",
            extra={
                "user_id": event.user_id,
                "call_id": event.call_id,
                "agent_id": event.agent_id,
                "reason": reason,
            },
        )
