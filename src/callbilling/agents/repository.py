"""
Read-only directory of a user's agent assignments.
"""

from collections.abc import Sequence
from decimal import Decimal
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from callbilling.agents.models import Agent, UserAgentAssignment
from callbilling.agents.resolver import AgentAssignment


class AgentAssignmentDirectory(Protocol):
    """Protocol for the assignment lookup consumed by the processor."""

    async def list_for_user(self, user_id: str) -> Sequence[AgentAssignment]:
        """Return the user's assignments to active agents."""
        ...


class AgentAssignmentRepository:
    """Repository flattening assignments and agents into ``AgentAssignment`` values."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def list_for_user(self, user_id: str) -> Sequence[AgentAssignment]:
        """Get the user's assignments to active agents, newest first.

        Args:
            user_id: User identifier.

        Returns:
            Assignment snapshots detached from the session.
        """
        stmt = (
            select(UserAgentAssignment, Agent)
            .join(Agent, Agent.id == UserAgentAssignment.agent_id)
            .where(UserAgentAssignment.user_id == user_id)
            .where(Agent.status == "active")
            .order_by(UserAgentAssignment.assigned_at.desc())
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            rows = result.all()

        return [
            AgentAssignment(
                user_id=assignment.user_id,
                agent_id=str(agent.id),
                telephony_agent_id=agent.telephony_agent_id,
                rate_per_minute=Decimal(agent.rate_per_minute),
                is_primary=bool(assignment.is_primary),
                assigned_at=assignment.assigned_at,
                agent_name=agent.name,
            )
            for assignment, agent in rows
        ]
