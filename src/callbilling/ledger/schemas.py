"""
Pydantic schemas returned by the ledger and account operations.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from callbilling.ledger.models import TransactionDirection, TransactionType


class LedgerResult(BaseModel):
    """Outcome of ``BalanceLedger.apply_transaction``."""

    ok: bool = Field(..., description="The balance reflects the requested entry")
    balance_after: Decimal = Field(..., description="Balance right after the entry")
    transaction_id: UUID | None = Field(None, description="Created entry; None for duplicates")
    duplicate: bool = Field(False, description="The call was already billed; nothing changed")
    is_blocked: bool = Field(False, description="Account blocked after the entry")


class BalanceSnapshot(BaseModel):
    """Point-in-time copy of a balance row."""

    model_config = ConfigDict(from_attributes=True)

    user_id: str
    current_balance: Decimal
    initial_balance: Decimal
    warning_threshold: Decimal
    critical_threshold: Decimal
    is_blocked: bool
    updated_at: datetime


class TransactionView(BaseModel):
    """Read model of a ledger entry."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: str
    amount: Decimal = Field(..., ge=0, description="Unsigned magnitude")
    transaction_type: TransactionType
    direction: TransactionDirection
    description: str
    call_id_ref: str | None = None
    created_at: datetime
    balance_after: Decimal


class BalanceStats(BaseModel):
    """Account overview for the UI/API layer."""

    user_id: str
    current_balance: Decimal
    warning_threshold: Decimal
    critical_threshold: Decimal
    is_blocked: bool
    balance_status: str
    recent_transactions_24h: int
    total_spent_today: Decimal
    estimated_minutes: int = 0


class CanCallResult(BaseModel):
    """Admission decision before starting a new call."""

    can_call: bool
    balance: Decimal
    message: str


class ReconciliationReport(BaseModel):
    """Result of checking ``current == initial + Σ signed(amount)``."""

    user_id: str
    current_balance: Decimal
    initial_balance: Decimal
    ledger_total: Decimal
    expected_balance: Decimal
    difference: Decimal
    consistent: bool
