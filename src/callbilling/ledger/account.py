"""
Account-facing operations: balance overview, history, admission and admin credits.
"""

from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from callbilling.agents.repository import AgentAssignmentDirectory
from callbilling.billing.cost import estimate_remaining_minutes
from callbilling.ledger.models import TransactionDirection, TransactionType
from callbilling.ledger.repository import TransactionRepository
from callbilling.ledger.schemas import (
    BalanceStats,
    CanCallResult,
    LedgerResult,
    TransactionView,
)
from callbilling.ledger.service import BalanceLedger
from callbilling.notifications.notifier import classify_balance
from callbilling.shared.exceptions import ValidationError
from callbilling.shared.logging import get_audit_logger, get_logger

logger = get_logger(__name__)
audit_logger = get_audit_logger()

MAX_TRANSACTIONS_LIMIT = 500


class AccountService:
    """Service layer exposed to the API for a user's prepaid account."""

    def __init__(
        self,
        ledger: BalanceLedger,
        session_factory: async_sessionmaker[AsyncSession],
        assignments: AgentAssignmentDirectory | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._ledger = ledger
        self._session_factory = session_factory
        self._assignments = assignments
        self._clock = clock

    async def balance_stats(self, user_id: str) -> BalanceStats:
        """Balance plus 24h activity and an estimate of remaining call minutes.

        Accounts that do not exist yet are created with the configured defaults.
        """
        snapshot = await self._ledger.ensure_balance(user_id)
        now = self._clock()
        start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)

        async with self._session_factory() as session:
            transactions = TransactionRepository(session)
            recent_count = await transactions.count_since(user_id, now - timedelta(hours=24))
            spent_today = await transactions.debits_since(user_id, start_of_day)

        rates: list[Decimal] = []
        if self._assignments is not None:
            rates = [a.rate_per_minute for a in await self._assignments.list_for_user(user_id)]

        if snapshot.is_blocked:
            status = "blocked"
        else:
            status = classify_balance(
                snapshot.current_balance,
                snapshot.warning_threshold,
                snapshot.critical_threshold,
            ).value

        return BalanceStats(
            user_id=user_id,
            current_balance=snapshot.current_balance,
            warning_threshold=snapshot.warning_threshold,
            critical_threshold=snapshot.critical_threshold,
            is_blocked=snapshot.is_blocked,
            balance_status=status,
            recent_transactions_24h=recent_count,
            total_spent_today=spent_today,
            estimated_minutes=estimate_remaining_minutes(snapshot.current_balance, rates),
        )

    async def recent_transactions(self, user_id: str, limit: int = 20) -> list[TransactionView]:
        if limit < 1 or limit > MAX_TRANSACTIONS_LIMIT:
            raise ValidationError(
                f"limit must be between 1 and {MAX_TRANSACTIONS_LIMIT}",
                field="limit",
            )
        async with self._session_factory() as session:
            rows = await TransactionRepository(session).recent(user_id, limit)
        return [TransactionView.model_validate(row) for row in rows]

    async def can_make_call(self, user_id: str, estimated_cost: Decimal = Decimal("0.02")) -> CanCallResult:
        """Pre-call admission check. Never used when billing a finished call."""
        if estimated_cost < 0:
            raise ValidationError("estimated_cost must not be negative", field="estimated_cost")

        snapshot = await self._ledger.get_balance(user_id)
        if snapshot is None:
            return CanCallResult(can_call=False, balance=Decimal("0"), message="No balance available")
        if snapshot.is_blocked:
            return CanCallResult(
                can_call=False,
                balance=snapshot.current_balance,
                message="Your account is blocked. Please contact support to reactivate.",
            )
        if not await self._ledger.has_sufficient_balance(user_id, estimated_cost):
            return CanCallResult(
                can_call=False,
                balance=snapshot.current_balance,
                message=(
                    f"Insufficient balance. You need ${estimated_cost:.2f} "
                    f"but only have ${snapshot.current_balance:.2f}."
                ),
            )
        return CanCallResult(
            can_call=True,
            balance=snapshot.current_balance,
            message="Balance sufficient for call",
        )

    async def adjust_credits(
        self,
        user_id: str,
        amount: Decimal,
        reason: str,
        admin_id: str,
    ) -> LedgerResult:
        """Apply a signed admin adjustment.

        Raises:
            ValidationError: blank reason or zero amount.
        """
        if not reason or not reason.strip():
            raise ValidationError("A reason is required for credit adjustments", field="reason")
        if amount == 0:
            raise ValidationError("Adjustment amount must not be zero", field="amount")

        direction = TransactionDirection.CREDIT if amount > 0 else TransactionDirection.DEBIT
        result = await self._ledger.apply_transaction(
            user_id,
            abs(amount),
            TransactionType.ADJUSTMENT,
            description=reason.strip(),
            call_id_ref=None,
            direction=direction,
        )
        audit_logger.info(
            "Credit adjustment applied",
            extra={
                "user_id": user_id,
                "admin_id": admin_id,
                "amount": str(amount),
                "reason": reason.strip(),
                "balance_after": str(result.balance_after),
            },
        )
        return result

    async def deposit(self, user_id: str, amount: Decimal, description: str = "Deposit") -> LedgerResult:
        if amount <= 0:
            raise ValidationError("Deposit amount must be positive", field="amount")
        return await self._ledger.apply_transaction(
            user_id,
            amount,
            TransactionType.DEPOSIT,
            description=description or "Deposit",
        )
