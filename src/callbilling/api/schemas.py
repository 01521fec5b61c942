"""
Request and response bodies of the billing API.
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from callbilling.processing.processor import ProcessingReport


class CanCallRequest(BaseModel):
    estimated_cost: Decimal = Field(default=Decimal("0.02"), ge=0, description="Expected cost of the call")


class CreditAdjustmentRequest(BaseModel):
    """Signed admin adjustment: positive credits, negative debits."""

    amount: Decimal = Field(..., description="Signed amount; must not be zero")
    reason: str = Field(..., description="Mandatory justification")
    admin_id: str = Field(..., min_length=1, description="Administrator applying the change")


class ProcessingReportResponse(BaseModel):
    user_id: str
    billed: list[str]
    duplicates: list[str]
    zero_cost: list[str]
    held: list[str]
    failed: list[str]
    total_charged: Decimal
    balance: Decimal | None = None

    @classmethod
    def from_report(cls, report: ProcessingReport) -> "ProcessingReportResponse":
        return cls(
            user_id=report.user_id,
            billed=report.billed,
            duplicates=report.duplicates,
            zero_cost=report.zero_cost,
            held=report.held,
            failed=report.failed,
            total_charged=report.total_charged,
            balance=report.balance,
        )


class SessionStatusResponse(BaseModel):
    user_id: str
    running: bool
    halted: bool
    balance: Decimal | None = None
    last_error: str | None = None
    last_refresh_at: datetime | None = None
