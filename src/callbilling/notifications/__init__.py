"""
Low-balance notifications.
"""

from callbilling.notifications.notifier import (
    BalanceAlert,
    BalanceStatus,
    LoggingNotificationSink,
    LowBalanceNotifier,
    NotificationSink,
    classify_balance,
)

__all__ = [
    "BalanceAlert",
    "BalanceStatus",
    "LoggingNotificationSink",
    "LowBalanceNotifier",
    "NotificationSink",
    "classify_balance",
]
