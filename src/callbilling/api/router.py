"""
Billing API router.
"""

from fastapi import APIRouter, Depends, Query, Request, status

from callbilling.api.schemas import (
    CanCallRequest,
    CreditAdjustmentRequest,
    ProcessingReportResponse,
    SessionStatusResponse,
)
from callbilling.ledger.account import MAX_TRANSACTIONS_LIMIT, AccountService
from callbilling.ledger.schemas import BalanceStats, CanCallResult, LedgerResult, TransactionView
from callbilling.processing.poller import BillingSession, BillingSessionRegistry
from callbilling.processing.processor import CallEventProcessor
from callbilling.shared.exceptions import NotFoundError
from callbilling.shared.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/api/billing", tags=["billing"])


def get_account_service(request: Request) -> AccountService:
    return request.app.state.account_service


def get_registry(request: Request) -> BillingSessionRegistry:
    return request.app.state.session_registry


def get_processor(request: Request) -> CallEventProcessor:
    return request.app.state.processor


def _session_status(session: BillingSession) -> SessionStatusResponse:
    return SessionStatusResponse(
        user_id=session.user_id,
        running=session.running,
        halted=session.halted,
        balance=session.balance.current_balance if session.balance else None,
        last_error=session.last_error,
        last_refresh_at=session.last_refresh_at,
    )


@router.get(
    "/users/{user_id}/balance",
    response_model=BalanceStats,
    summary="Get balance overview",
)
async def get_balance(
    user_id: str,
    service: AccountService = Depends(get_account_service),
) -> BalanceStats:
    return await service.balance_stats(user_id)


@router.get(
    "/users/{user_id}/transactions",
    response_model=list[TransactionView],
    summary="List recent ledger entries, newest first",
)
async def list_transactions(
    user_id: str,
    limit: int = Query(default=20, ge=1, le=MAX_TRANSACTIONS_LIMIT),
    service: AccountService = Depends(get_account_service),
) -> list[TransactionView]:
    return await service.recent_transactions(user_id, limit)


@router.post(
    "/users/{user_id}/can-call",
    response_model=CanCallResult,
    summary="Check whether a new call may start",
)
async def can_call(
    user_id: str,
    body: CanCallRequest,
    service: AccountService = Depends(get_account_service),
) -> CanCallResult:
    return await service.can_make_call(user_id, body.estimated_cost)


@router.post(
    "/users/{user_id}/adjustments",
    response_model=LedgerResult,
    status_code=status.HTTP_201_CREATED,
    summary="Apply an admin credit adjustment",
)
async def adjust_credits(
    user_id: str,
    body: CreditAdjustmentRequest,
    service: AccountService = Depends(get_account_service),
) -> LedgerResult:
    logger.info(
        "Credit adjustment requested",
        extra={"user_id": user_id, "admin_id": body.admin_id, "amount": str(body.amount)},
    )
    return await service.adjust_credits(user_id, body.amount, body.reason, body.admin_id)


@router.post(
    "/users/{user_id}/calls/{call_id}/process",
    response_model=ProcessingReportResponse,
    summary="Bill a single call now",
)
async def process_call(
    user_id: str,
    call_id: str,
    processor: CallEventProcessor = Depends(get_processor),
) -> ProcessingReportResponse:
    report = await processor.process_call(user_id, call_id)
    return ProcessingReportResponse.from_report(report)


@router.post(
    "/users/{user_id}/session",
    response_model=SessionStatusResponse,
    summary="Start (or return) the user's billing session",
)
async def start_session(
    user_id: str,
    registry: BillingSessionRegistry = Depends(get_registry),
) -> SessionStatusResponse:
    session = registry.start(user_id)
    return _session_status(session)


@router.delete(
    "/users/{user_id}/session",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Stop the user's billing session",
)
async def stop_session(
    user_id: str,
    registry: BillingSessionRegistry = Depends(get_registry),
) -> None:
    if not await registry.stop(user_id):
        raise NotFoundError(f"No billing session for user {user_id}")
