"""
SQLAlchemy models for user balances and the append-only transaction log.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SQLEnum,
    Index,
    Numeric,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from callbilling.shared.database import Base

MONEY = Numeric(14, 4)


class TransactionType(str, Enum):
    """Kind of ledger entry."""

    DEPOSIT = "deposit"
    DEDUCTION = "deduction"
    ADJUSTMENT = "adjustment"


class TransactionDirection(str, Enum):
    """Sign of a ledger entry; amounts are stored as magnitudes."""

    CREDIT = "credit"
    DEBIT = "debit"


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class UserBalance(Base):
    """One prepaid balance per user. Mutated only by the ledger."""

    __tablename__ = "user_balances"

    user_id: Mapped[str] = mapped_column(
        String(255),
        primary_key=True,
    )
    current_balance: Mapped[Decimal] = mapped_column(
        MONEY,
        nullable=False,
        default=Decimal("0"),
    )
    initial_balance: Mapped[Decimal] = mapped_column(
        MONEY,
        nullable=False,
        default=Decimal("0"),
    )
    warning_threshold: Mapped[Decimal] = mapped_column(
        MONEY,
        nullable=False,
        default=Decimal("40"),
    )
    critical_threshold: Mapped[Decimal] = mapped_column(
        MONEY,
        nullable=False,
        default=Decimal("20"),
    )
    is_blocked: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return f"<UserBalance(user_id={self.user_id}, current_balance={self.current_balance})>"


class BalanceTransaction(Base):
    """Immutable ledger entry."""

    __tablename__ = "balance_transactions"
    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_balance_transactions_amount_unsigned"),
        # Idempotency boundary: one deduction per call, enforced by the database.
        Index(
            "uq_balance_transactions_deduction_call_ref",
            "call_id_ref",
            unique=True,
            postgresql_where=text("transaction_type = 'deduction'"),
            sqlite_where=text("transaction_type = 'deduction'"),
        ),
        Index("ix_balance_transactions_user_created", "user_id", "created_at"),
    )

    id: Mapped[UUID] = mapped_column(
        primary_key=True,
        default=uuid4,
    )
    user_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    amount: Mapped[Decimal] = mapped_column(
        MONEY,
        nullable=False,
    )
    transaction_type: Mapped[TransactionType] = mapped_column(
        SQLEnum(
            TransactionType,
            name="transaction_type",
            native_enum=False,
            values_callable=_enum_values,
            length=20,
        ),
        nullable=False,
    )
    direction: Mapped[TransactionDirection] = mapped_column(
        SQLEnum(
            TransactionDirection,
            name="transaction_direction",
            native_enum=False,
            values_callable=_enum_values,
            length=10,
        ),
        nullable=False,
    )
    description: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default="",
    )
    call_id_ref: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    balance_after: Mapped[Decimal] = mapped_column(
        MONEY,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    @property
    def signed_amount(self) -> Decimal:
        if self.direction == TransactionDirection.CREDIT:
            return Decimal(self.amount)
        return -Decimal(self.amount)

    def __repr__(self) -> str:
        return (
            f"<BalanceTransaction(user_id={self.user_id}, type={self.transaction_type}, "
            f"amount={self.amount}, call_id_ref={self.call_id_ref})>"
        )
