"""
Low-balance classification and debounced alerting.
"""

import inspect
from collections.abc import Awaitable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Protocol

from callbilling.shared.logging import get_logger

logger = get_logger(__name__)


class BalanceStatus(str, Enum):
    """Balance bucket, ordered from best to worst."""

    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"
    EMPTY = "empty"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]


_SEVERITY = {
    BalanceStatus.HEALTHY: 0,
    BalanceStatus.WARNING: 1,
    BalanceStatus.CRITICAL: 2,
    BalanceStatus.EMPTY: 3,
}


def classify_balance(balance: Decimal, warning: Decimal, critical: Decimal) -> BalanceStatus:
    """Bucket a balance: ``<= 0`` empty, ``<= critical`` critical, ``<= warning`` warning."""
    if balance <= 0:
        return BalanceStatus.EMPTY
    if balance <= critical:
        return BalanceStatus.CRITICAL
    if balance <= warning:
        return BalanceStatus.WARNING
    return BalanceStatus.HEALTHY


@dataclass(frozen=True)
class BalanceAlert:
    user_id: str
    status: BalanceStatus
    previous_status: BalanceStatus
    balance: Decimal
    warning_threshold: Decimal
    critical_threshold: Decimal
    created_at: datetime

    @property
    def message(self) -> str:
        if self.status is BalanceStatus.EMPTY:
            return "Your balance is empty. New calls are blocked until you add credits."
        if self.status is BalanceStatus.CRITICAL:
            return f"Critical: your balance is ${self.balance:.2f}. Add credits to keep calling."
        return f"Low balance: ${self.balance:.2f} left (warning at ${self.warning_threshold:.2f})."


class NotificationSink(Protocol):
    """Delivery channel for balance alerts."""

    def send(self, alert: BalanceAlert) -> Awaitable[None] | None:
        ...


class LoggingNotificationSink:
    """Default sink: writes alerts to the application log."""

    def send(self, alert: BalanceAlert) -> None:
        logger.warning(
            alert.message,
            extra={
                "user_id": alert.user_id,
                "balance_status": alert.status.value,
                "previous_status": alert.previous_status.value,
                "balance": str(alert.balance),
            },
        )


@dataclass
class _TrackedStatus:
    status: BalanceStatus
    alerted_at: datetime | None = None


class LowBalanceNotifier:
    """Emits an alert when a user's balance moves into a worse bucket.

    A repeat alert for the same bucket is allowed only after the debounce window;
    improvements reset the tracked bucket silently.
    """

    def __init__(
        self,
        sink: NotificationSink | None = None,
        debounce_minutes: int = 24 * 60,
    ) -> None:
        self._sink = sink or LoggingNotificationSink()
        self._debounce = timedelta(minutes=debounce_minutes)
        self._tracked: dict[str, _TrackedStatus] = {}

    def status_for(self, user_id: str) -> BalanceStatus | None:
        tracked = self._tracked.get(user_id)
        return tracked.status if tracked else None

    async def observe(
        self,
        user_id: str,
        balance: Decimal,
        warning: Decimal,
        critical: Decimal,
        now: datetime | None = None,
    ) -> BalanceAlert | None:
        now = now or datetime.now(timezone.utc)
        status = classify_balance(balance, warning, critical)
        tracked = self._tracked.get(user_id)
        previous = tracked.status if tracked else BalanceStatus.HEALTHY

        if status is BalanceStatus.HEALTHY:
            self._tracked[user_id] = _TrackedStatus(status)
            return None

        if tracked is not None and status.severity < tracked.status.severity:
            # improved but still low: track the new bucket without alerting
            self._tracked[user_id] = _TrackedStatus(status)
            return None

        if tracked is not None and status is tracked.status:
            if tracked.alerted_at is not None and now - tracked.alerted_at < self._debounce:
                return None
            if tracked.alerted_at is None:
                # reached through an improvement; nothing new to report
                return None

        alert = BalanceAlert(
            user_id=user_id,
            status=status,
            previous_status=previous,
            balance=balance,
            warning_threshold=warning,
            critical_threshold=critical,
            created_at=now,
        )
        self._tracked[user_id] = _TrackedStatus(status, alerted_at=now)

        outcome = self._sink.send(alert)
        if inspect.isawaitable(outcome):
            await outcome
        return alert
