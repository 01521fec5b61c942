"""
Repositories for balance rows and ledger transactions.

Both operate inside a caller-owned session so the ledger controls transaction
boundaries.
"""

from collections.abc import Iterable, Sequence
from datetime import datetime
from decimal import Decimal

from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from callbilling.ledger.models import (
    BalanceTransaction,
    TransactionDirection,
    TransactionType,
    UserBalance,
)


class BalanceRepository:
    """Repository for ``user_balances`` rows."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with database session.

        Args:
            session: Async database session.
        """
        self._session = session

    async def get(self, user_id: str) -> UserBalance | None:
        stmt = select(UserBalance).where(UserBalance.user_id == user_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def create(
        self,
        user_id: str,
        initial_balance: Decimal,
        warning_threshold: Decimal,
        critical_threshold: Decimal,
        now: datetime,
    ) -> UserBalance:
        """Insert a balance row; raises IntegrityError if one already exists."""
        balance = UserBalance(
            user_id=user_id,
            current_balance=initial_balance,
            initial_balance=initial_balance,
            warning_threshold=warning_threshold,
            critical_threshold=critical_threshold,
            is_blocked=False,
            created_at=now,
            updated_at=now,
        )
        self._session.add(balance)
        await self._session.flush()
        return balance

    async def apply_delta(
        self,
        user_id: str,
        delta: Decimal,
        now: datetime,
        block_on_empty: bool = True,
    ) -> int:
        """Add ``delta`` to the balance as a relative update.

        Expressed as ``current_balance = current_balance + delta`` so concurrent
        writers never overwrite each other.

        Returns:
            Number of rows updated (0 when the user has no balance row).
        """
        new_balance = UserBalance.current_balance + delta
        values: dict = {"current_balance": new_balance, "updated_at": now}
        if block_on_empty and delta < 0:
            values["is_blocked"] = case((new_balance <= 0, True), else_=UserBalance.is_blocked)
        elif block_on_empty and delta > 0:
            values["is_blocked"] = case((new_balance > 0, False), else_=UserBalance.is_blocked)

        stmt = (
            update(UserBalance)
            .where(UserBalance.user_id == user_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount

    async def current_balance(self, user_id: str) -> Decimal | None:
        stmt = select(UserBalance.current_balance).where(UserBalance.user_id == user_id)
        result = await self._session.execute(stmt)
        value = result.scalar_one_or_none()
        return Decimal(value) if value is not None else None


class TransactionRepository:
    """Repository for the append-only ``balance_transactions`` log."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def add(self, transaction: BalanceTransaction) -> BalanceTransaction:
        """Insert a ledger entry; unique violations surface as IntegrityError on flush."""
        self._session.add(transaction)
        await self._session.flush()
        return transaction

    async def billed_call_ids(self, user_id: str, call_ids: Iterable[str]) -> set[str]:
        """Subset of ``call_ids`` that already carry a deduction for the user."""
        ids = list(dict.fromkeys(call_ids))
        if not ids:
            return set()
        stmt = select(BalanceTransaction.call_id_ref).where(
            BalanceTransaction.user_id == user_id,
            BalanceTransaction.transaction_type == TransactionType.DEDUCTION,
            BalanceTransaction.call_id_ref.in_(ids),
        )
        result = await self._session.execute(stmt)
        return {row for row in result.scalars().all() if row is not None}

    async def deduction_exists(self, call_id_ref: str) -> bool:
        stmt = select(func.count()).select_from(BalanceTransaction).where(
            BalanceTransaction.transaction_type == TransactionType.DEDUCTION,
            BalanceTransaction.call_id_ref == call_id_ref,
        )
        result = await self._session.execute(stmt)
        return bool(result.scalar_one())

    async def recent(self, user_id: str, limit: int = 20) -> Sequence[BalanceTransaction]:
        """Newest-first ledger entries of a user."""
        stmt = (
            select(BalanceTransaction)
            .where(BalanceTransaction.user_id == user_id)
            .order_by(BalanceTransaction.created_at.desc(), BalanceTransaction.id.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def count_since(self, user_id: str, since: datetime) -> int:
        stmt = select(func.count()).select_from(BalanceTransaction).where(
            BalanceTransaction.user_id == user_id,
            BalanceTransaction.created_at >= since,
        )
        result = await self._session.execute(stmt)
        return int(result.scalar_one())

    async def debits_since(self, user_id: str, since: datetime) -> Decimal:
        """Sum of debit magnitudes (deductions and negative adjustments) since ``since``."""
        stmt = select(func.coalesce(func.sum(BalanceTransaction.amount), 0)).where(
            BalanceTransaction.user_id == user_id,
            BalanceTransaction.direction == TransactionDirection.DEBIT,
            BalanceTransaction.created_at >= since,
        )
        result = await self._session.execute(stmt)
        return Decimal(str(result.scalar_one()))

    async def signed_total(self, user_id: str) -> Decimal:
        """Σ signed(amount) over the user's whole ledger."""
        signed = case(
            (BalanceTransaction.direction == TransactionDirection.CREDIT, BalanceTransaction.amount),
            else_=-BalanceTransaction.amount,
        )
        stmt = select(func.coalesce(func.sum(signed), 0)).where(
            BalanceTransaction.user_id == user_id,
        )
        result = await self._session.execute(stmt)
        return Decimal(str(result.scalar_one()))
