"""
Balance ledger: atomic balance mutation plus append-only transaction log.
"""

import inspect
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from callbilling.billing.cost import COST_QUANTUM
from callbilling.config import Settings, get_settings
from callbilling.ledger.models import (
    BalanceTransaction,
    TransactionDirection,
    TransactionType,
)
from callbilling.ledger.repository import BalanceRepository, TransactionRepository
from callbilling.ledger.schemas import BalanceSnapshot, LedgerResult, ReconciliationReport
from callbilling.shared.exceptions import (
    LedgerInconsistencyError,
    LedgerWriteError,
    ValidationError,
)
from callbilling.shared.logging import get_logger, get_reconciliation_logger

logger = get_logger(__name__)
reconciliation_logger = get_reconciliation_logger()

InconsistencyHandler = Callable[[LedgerInconsistencyError], Awaitable[None] | None]

_DEFAULT_DIRECTION = {
    TransactionType.DEPOSIT: TransactionDirection.CREDIT,
    TransactionType.DEDUCTION: TransactionDirection.DEBIT,
    TransactionType.ADJUSTMENT: TransactionDirection.CREDIT,
}


def _money(value: Decimal | int | str | float) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"Invalid amount: {value!r}", field="amount") from exc
    return amount.quantize(COST_QUANTUM)


class BalanceLedger:
    """Applies ledger entries atomically.

    Every entry runs in a single database transaction: the relative balance update
    and the transaction insert commit together or not at all. The unique index on
    deduction ``call_id_ref`` makes repeated billing of one call a no-op.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings | None = None,
        on_inconsistency: InconsistencyHandler | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings or get_settings()
        self._on_inconsistency = on_inconsistency
        self._clock = clock

    async def apply_transaction(
        self,
        user_id: str,
        amount: Decimal,
        transaction_type: TransactionType,
        description: str,
        call_id_ref: str | None = None,
        direction: TransactionDirection | None = None,
    ) -> LedgerResult:
        """Apply one ledger entry.

        Args:
            user_id: Account owner.
            amount: Unsigned magnitude of the entry.
            transaction_type: deposit, deduction or adjustment.
            description: Human readable reason.
            call_id_ref: Call billed by a deduction.
            direction: Sign of the entry; defaults from the type (adjustments credit).

        Returns:
            LedgerResult; ``duplicate=True`` when the call was already billed.

        Raises:
            ValidationError: invalid amount or direction.
            LedgerWriteError: write failed and was rolled back; safe to retry.
            LedgerInconsistencyError: rollback failed; must not be retried.
        """
        transaction_type = TransactionType(transaction_type)
        magnitude = _money(amount)
        if magnitude <= 0:
            raise ValidationError("Ledger amounts must be positive magnitudes", field="amount")
        direction = TransactionDirection(direction or _DEFAULT_DIRECTION[transaction_type])
        if transaction_type is TransactionType.DEPOSIT and direction is not TransactionDirection.CREDIT:
            raise ValidationError("Deposits are always credits", field="direction")
        if transaction_type is TransactionType.DEDUCTION and direction is not TransactionDirection.DEBIT:
            raise ValidationError("Deductions are always debits", field="direction")

        delta = magnitude if direction is TransactionDirection.CREDIT else -magnitude

        await self.ensure_balance(user_id)

        session = self._session_factory()
        try:
            try:
                now = self._clock()
                balances = BalanceRepository(session)
                updated = await balances.apply_delta(
                    user_id,
                    delta,
                    now=now,
                    block_on_empty=self._settings.block_on_empty_balance,
                )
                if updated != 1:
                    raise SQLAlchemyError(f"balance row for {user_id} not updated (rows={updated})")
                balance_after = (await balances.current_balance(user_id) or Decimal("0")).quantize(COST_QUANTUM)

                entry = BalanceTransaction(
                    user_id=user_id,
                    amount=magnitude,
                    transaction_type=transaction_type,
                    direction=direction,
                    description=description,
                    call_id_ref=call_id_ref,
                    balance_after=balance_after,
                    created_at=now,
                )
                await TransactionRepository(session).add(entry)
                balance = await balances.get(user_id)
                is_blocked = bool(balance.is_blocked) if balance is not None else False
                await session.commit()

            except IntegrityError as exc:
                await self._compensate(session, user_id, call_id_ref, exc)
                if transaction_type is TransactionType.DEDUCTION and call_id_ref:
                    if await self._deduction_exists(call_id_ref):
                        return await self._duplicate_result(user_id, call_id_ref)
                logger.error(
                    "Ledger insert rejected by constraint",
                    extra={"user_id": user_id, "call_id_ref": call_id_ref, "error": str(exc.orig)},
                )
                raise LedgerWriteError(user_id, f"Ledger insert rejected: {exc.orig}") from exc

            except (SQLAlchemyError, OSError) as exc:
                await self._compensate(session, user_id, call_id_ref, exc)
                logger.error(
                    "Ledger write failed; balance delta rolled back",
                    extra={"user_id": user_id, "call_id_ref": call_id_ref, "error": str(exc)},
                )
                raise LedgerWriteError(user_id, f"Ledger write failed: {exc}") from exc
        finally:
            await session.close()

        logger.info(
            "Ledger entry applied",
            extra={
                "user_id": user_id,
                "transaction_type": transaction_type.value,
                "direction": direction.value,
                "amount": str(magnitude),
                "balance_after": str(balance_after),
                "call_id_ref": call_id_ref,
            },
        )
        return LedgerResult(
            ok=True,
            balance_after=balance_after,
            transaction_id=entry.id,
            duplicate=False,
            is_blocked=is_blocked,
        )

    async def _compensate(
        self,
        session: AsyncSession,
        user_id: str,
        call_id_ref: str | None,
        cause: BaseException,
    ) -> None:
        """Revert the uncommitted balance delta; escalate if that fails."""
        try:
            await session.rollback()
        except Exception as rollback_exc:
            error = LedgerInconsistencyError(
                user_id,
                f"Rollback failed after ledger error ({cause}); balance may not match the ledger",
                call_id_ref=call_id_ref,
            )
            reconciliation_logger.critical(
                "Ledger inconsistency: compensating rollback failed",
                extra={
                    "user_id": user_id,
                    "call_id_ref": call_id_ref,
                    "cause": repr(cause),
                    "rollback_error": repr(rollback_exc),
                },
            )
            if self._on_inconsistency is not None:
                outcome = self._on_inconsistency(error)
                if inspect.isawaitable(outcome):
                    await outcome
            raise error from rollback_exc

    async def _deduction_exists(self, call_id_ref: str) -> bool:
        async with self._session_factory() as session:
            return await TransactionRepository(session).deduction_exists(call_id_ref)

    async def _duplicate_result(self, user_id: str, call_id_ref: str) -> LedgerResult:
        snapshot = await self.get_balance(user_id)
        logger.info(
            "Call already billed; skipping duplicate deduction",
            extra={"user_id": user_id, "call_id_ref": call_id_ref},
        )
        return LedgerResult(
            ok=True,
            balance_after=snapshot.current_balance if snapshot else Decimal("0"),
            transaction_id=None,
            duplicate=True,
            is_blocked=snapshot.is_blocked if snapshot else False,
        )

    async def ensure_balance(self, user_id: str) -> BalanceSnapshot:
        """Return the user's balance, creating it with configured defaults if missing."""
        async with self._session_factory() as session:
            repo = BalanceRepository(session)
            balance = await repo.get(user_id)
            if balance is not None:
                return BalanceSnapshot.model_validate(balance)
            try:
                balance = await repo.create(
                    user_id,
                    initial_balance=self._settings.default_initial_balance,
                    warning_threshold=self._settings.default_warning_threshold,
                    critical_threshold=self._settings.default_critical_threshold,
                    now=self._clock(),
                )
                await session.commit()
                logger.info("Balance account created", extra={"user_id": user_id})
                return BalanceSnapshot.model_validate(balance)
            except IntegrityError:
                # created concurrently by another writer
                await session.rollback()
        snapshot = await self.get_balance(user_id)
        if snapshot is None:
            raise LedgerWriteError(user_id, "Balance account could not be created")
        return snapshot

    async def get_balance(self, user_id: str) -> BalanceSnapshot | None:
        async with self._session_factory() as session:
            balance = await BalanceRepository(session).get(user_id)
            return BalanceSnapshot.model_validate(balance) if balance is not None else None

    async def has_sufficient_balance(self, user_id: str, amount: Decimal) -> bool:
        """Read-only admission check; never consulted when billing finished calls."""
        snapshot = await self.get_balance(user_id)
        if snapshot is None or snapshot.is_blocked:
            return False
        return snapshot.current_balance >= _money(amount)

    async def billed_call_ids(self, user_id: str, call_ids: Iterable[str]) -> set[str]:
        """Durable answer to "was this call already billed?"."""
        async with self._session_factory() as session:
            return await TransactionRepository(session).billed_call_ids(user_id, call_ids)

    async def verify_conservation(self, user_id: str) -> ReconciliationReport:
        """Check ``current_balance == initial_balance + Σ signed(amount)``."""
        async with self._session_factory() as session:
            balance = await BalanceRepository(session).get(user_id)
            ledger_total = (await TransactionRepository(session).signed_total(user_id)).quantize(COST_QUANTUM)
        if balance is None:
            zero = Decimal("0").quantize(COST_QUANTUM)
            return ReconciliationReport(
                user_id=user_id,
                current_balance=zero,
                initial_balance=zero,
                ledger_total=ledger_total,
                expected_balance=ledger_total,
                difference=-ledger_total,
                consistent=ledger_total == 0,
            )
        current = Decimal(balance.current_balance).quantize(COST_QUANTUM)
        initial = Decimal(balance.initial_balance).quantize(COST_QUANTUM)
        expected = initial + ledger_total
        report = ReconciliationReport(
            user_id=user_id,
            current_balance=current,
            initial_balance=initial,
            ledger_total=ledger_total,
            expected_balance=expected,
            difference=current - expected,
            consistent=current == expected,
        )
        if not report.consistent:
            reconciliation_logger.error(
                "Balance does not match ledger",
                extra={"user_id": user_id, "difference": str(report.difference)},
            )
        return report
