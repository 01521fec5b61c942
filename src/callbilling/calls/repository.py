"""
Read-only repository over ingested call records.
"""

from collections.abc import Sequence
from datetime import datetime
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from callbilling.calls.events import BILLABLE_STATUSES, CallEvent, normalize_call_event
from callbilling.calls.models import CallRecord
from callbilling.shared.exceptions import CallEventNormalizationError
from callbilling.shared.logging import get_logger

logger = get_logger(__name__)


class CallEventSource(Protocol):
    """Protocol for the call event feed consumed by the processor."""

    async def list_for_user(self, user_id: str, since: datetime) -> Sequence[CallEvent]:
        """Return the user's call events at or after ``since``, newest first."""
        ...

    async def get(self, user_id: str, call_id: str) -> CallEvent | None:
        """Return a single call event of the user."""
        ...


class CallEventRepository:
    """Repository reading ``calls`` rows and normalizing them into CallEvents.

    Each read opens its own short-lived session so that a slow read never holds a
    connection across billing writes.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        """Initialize repository with a session factory.

        Args:
            session_factory: Async session factory.
        """
        self._session_factory = session_factory

    async def list_for_user(self, user_id: str, since: datetime) -> Sequence[CallEvent]:
        """Get the user's calls in a billable status started at or after ``since``.

        Status filtering is repeated in Python after normalization because
        providers are inconsistent about case.

        Args:
            user_id: Owner of the calls.
            since: Lower bound (inclusive) of the call timestamp.

        Returns:
            Normalized call events, newest first. Rows that cannot be normalized are
            skipped and logged.
        """
        stmt = (
            select(CallRecord)
            .where(CallRecord.user_id == user_id)
            .where(CallRecord.timestamp >= since)
            .order_by(CallRecord.timestamp.desc())
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            rows = result.scalars().all()

        events: list[CallEvent] = []
        for row in rows:
            try:
                event = normalize_call_event(row)
            except CallEventNormalizationError:
                logger.warning(
                    "Skipping malformed call row",
                    extra={"call_id": row.call_id, "user_id": user_id},
                )
                continue
            if event.call_status in BILLABLE_STATUSES:
                events.append(event)
        return events

    async def get(self, user_id: str, call_id: str) -> CallEvent | None:
        """Get a single call of the user by its call identifier."""
        stmt = select(CallRecord).where(
            CallRecord.call_id == call_id,
            CallRecord.user_id == user_id,
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            row = result.scalar_one_or_none()
        if row is None:
            return None
        return normalize_call_event(row)
