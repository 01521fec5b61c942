"""
Pytest configuration and fixtures for the billing tests.
"""

import asyncio
from collections.abc import AsyncGenerator, Sequence
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from uuid import uuid4

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

import callbilling.agents.models  # noqa: F401
import callbilling.calls.models  # noqa: F401
import callbilling.ledger.models  # noqa: F401
from callbilling.agents.models import Agent, UserAgentAssignment
from callbilling.agents.resolver import AgentAssignment
from callbilling.calls.events import CallEvent
from callbilling.calls.models import CallRecord
from callbilling.config import Settings
from callbilling.ledger.service import BalanceLedger
from callbilling.shared.database import DatabaseManager

NOW = datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)


class TickingClock:
    """Deterministic clock advancing one millisecond per reading."""

    def __init__(self, start: datetime = NOW) -> None:
        self.current = start

    def __call__(self) -> datetime:
        self.current += timedelta(milliseconds=1)
        return self.current

    def advance(self, **kwargs: float) -> None:
        self.current += timedelta(**kwargs)


@pytest.fixture
def clock() -> TickingClock:
    return TickingClock()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings pointing at a throwaway SQLite file."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}",
        default_initial_balance=Decimal("0"),
        default_warning_threshold=Decimal("40"),
        default_critical_threshold=Decimal("20"),
        balance_refresh_seconds=0.05,
        detection_interval_seconds=0.05,
        io_timeout_seconds=2.0,
        recording_probe_timeout_seconds=0.5,
        unmatched_agent_policy="hold",
    )


@pytest_asyncio.fixture
async def db(settings: Settings) -> AsyncGenerator[DatabaseManager, None]:
    """File-backed SQLite so concurrent sessions get their own connections."""
    manager = DatabaseManager(settings.database_url)

    # Every transaction takes the write lock up front; concurrent writers then
    # wait on the busy timeout instead of failing on a lock upgrade.
    @event.listens_for(manager.engine.sync_engine, "connect")
    def _disable_implicit_begin(dbapi_connection, _record) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(manager.engine.sync_engine, "begin")
    def _begin_immediate(conn) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    await manager.create_all()
    yield manager
    await manager.close()


@pytest.fixture
def session_factory(db: DatabaseManager) -> async_sessionmaker[AsyncSession]:
    return db.session_factory


@pytest.fixture
def ledger(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings,
    clock: TickingClock,
) -> BalanceLedger:
    return BalanceLedger(session_factory, settings=settings, clock=clock)


async def add_agent(
    session_factory: async_sessionmaker[AsyncSession],
    user_id: str,
    rate: str,
    telephony_agent_id: str | None = None,
    is_primary: bool = False,
    assigned_at: datetime = NOW - timedelta(days=1),
    name: str = "Agent",
    status: str = "active",
) -> Agent:
    async with session_factory() as session:
        agent = Agent(
            id=uuid4(),
            name=name,
            telephony_agent_id=telephony_agent_id,
            rate_per_minute=Decimal(rate),
            status=status,
        )
        session.add(agent)
        await session.flush()
        session.add(
            UserAgentAssignment(
                id=uuid4(),
                user_id=user_id,
                agent_id=agent.id,
                is_primary=is_primary,
                assigned_at=assigned_at,
            )
        )
        await session.commit()
        return agent


async def add_call(
    session_factory: async_sessionmaker[AsyncSession],
    call_id: str,
    user_id: str,
    duration_sec: int | None = 60,
    agent_id: str | None = None,
    call_status: str = "completed",
    timestamp: datetime = NOW - timedelta(minutes=10),
    recording_url: str | None = None,
) -> CallRecord:
    async with session_factory() as session:
        record = CallRecord(
            call_id=call_id,
            user_id=user_id,
            agent_id=agent_id,
            duration_sec=duration_sec,
            call_status=call_status,
            timestamp=timestamp,
            recording_url=recording_url,
        )
        session.add(record)
        await session.commit()
        return record


def make_event(
    call_id: str = "call-1",
    user_id: str = "user-1",
    duration_sec: int = 60,
    agent_id: str | None = None,
    call_status: str = "completed",
    timestamp: datetime = NOW - timedelta(minutes=10),
    recording_url: str | None = None,
) -> CallEvent:
    return CallEvent(
        call_id=call_id,
        user_id=user_id,
        agent_id=agent_id,
        duration_sec=duration_sec,
        call_status=call_status,
        timestamp=timestamp,
        recording_url=recording_url,
    )


def make_assignment(
    agent_id: str,
    rate: str,
    telephony_agent_id: str | None = None,
    is_primary: bool = False,
    assigned_at: datetime = NOW - timedelta(days=1),
    user_id: str = "user-1",
) -> AgentAssignment:
    return AgentAssignment(
        user_id=user_id,
        agent_id=agent_id,
        telephony_agent_id=telephony_agent_id,
        rate_per_minute=Decimal(rate),
        is_primary=is_primary,
        assigned_at=assigned_at,
        agent_name=f"Agent {agent_id}",
    )


class FakeCallEventSource:
    """In-memory call event feed."""

    def __init__(self, events: Sequence[CallEvent] = ()) -> None:
        self.events = list(events)
        self.fail_with: Exception | None = None
        self.delay: float = 0.0
        self.list_calls = 0

    async def list_for_user(self, user_id: str, since: datetime) -> Sequence[CallEvent]:
        self.list_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with
        return [e for e in self.events if e.user_id == user_id and e.timestamp >= since]

    async def get(self, user_id: str, call_id: str) -> CallEvent | None:
        for event_ in self.events:
            if event_.user_id == user_id and event_.call_id == call_id:
                return event_
        return None


class FakeAssignmentDirectory:
    def __init__(self, assignments: Sequence[AgentAssignment] = ()) -> None:
        self.assignments = list(assignments)

    async def list_for_user(self, user_id: str) -> Sequence[AgentAssignment]:
        return [a for a in self.assignments if a.user_id == user_id]


class RecordingSink:
    """Notification sink collecting alerts."""

    def __init__(self) -> None:
        self.alerts = []

    def send(self, alert) -> None:
        self.alerts.append(alert)
