"""
Deterministic selection of the billing agent and rate for a call.

Everything in this module is pure: identical inputs always produce identical outputs.
"""

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from callbilling.calls.events import CallEvent
from callbilling.config import UnmatchedAgentPolicy


@dataclass(frozen=True)
class AgentAssignment:
    """An agent assigned to a user, flattened with the agent's billing data."""

    user_id: str
    agent_id: str
    telephony_agent_id: str | None
    rate_per_minute: Decimal
    is_primary: bool
    assigned_at: datetime
    agent_name: str = ""


class MatchRule(str, Enum):
    """Which selection rule produced a rate."""

    EXACT = "exact"
    PRIMARY = "primary"
    MOST_RECENT = "most_recent"
    DEFAULT_RATE = "default_rate"


@dataclass(frozen=True)
class RateResolution:
    """Outcome of resolving a call to a billable rate."""

    rate_per_minute: Decimal | None
    rule: MatchRule | None
    assignment: AgentAssignment | None = None
    reason: str | None = None

    @property
    def resolved(self) -> bool:
        return self.rate_per_minute is not None

    @property
    def flagged(self) -> bool:
        """Billed at the system default rate rather than an assigned agent's rate."""
        return self.rule is MatchRule.DEFAULT_RATE


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _preference_key(assignment: AgentAssignment) -> tuple:
    # primary first, then newest, then agent_id for a total order
    return (
        not assignment.is_primary,
        -_aware(assignment.assigned_at).timestamp(),
        assignment.agent_id,
    )


def select_agent_for_call(
    telephony_agent_id: str | None,
    assignments: Sequence[AgentAssignment],
) -> tuple[AgentAssignment, MatchRule] | None:
    """Pick the assignment whose rate bills a call.

    Priority:
        1. exact match on ``telephony_agent_id``;
        2. the primary assignment;
        3. the most recently assigned.

    Returns:
        The chosen assignment and the rule that chose it, or None for an empty list.
    """
    if not assignments:
        return None

    ordered = sorted(assignments, key=_preference_key)

    if telephony_agent_id:
        for assignment in ordered:
            if assignment.telephony_agent_id == telephony_agent_id:
                return assignment, MatchRule.EXACT

    for assignment in ordered:
        if assignment.is_primary:
            return assignment, MatchRule.PRIMARY

    most_recent = min(
        assignments,
        key=lambda a: (-_aware(a.assigned_at).timestamp(), a.agent_id),
    )
    return most_recent, MatchRule.MOST_RECENT


def resolve_rate(
    event: CallEvent,
    assignments: Sequence[AgentAssignment],
    policy: UnmatchedAgentPolicy = "hold",
    default_rate: Decimal | None = None,
) -> RateResolution:
    """Resolve the per-minute rate for a call, applying the unmatched-agent policy."""
    selected = select_agent_for_call(event.agent_id, assignments)

    if selected is None:
        if policy == "default_rate" and default_rate is not None and default_rate > 0:
            return RateResolution(
                rate_per_minute=default_rate,
                rule=MatchRule.DEFAULT_RATE,
                reason="no agent assigned to user; billed at default rate",
            )
        return RateResolution(
            rate_per_minute=None,
            rule=None,
            reason="no agent assigned to user",
        )

    assignment, rule = selected
    if assignment.rate_per_minute is None or assignment.rate_per_minute <= 0:
        return RateResolution(
            rate_per_minute=None,
            rule=rule,
            assignment=assignment,
            reason=f"agent {assignment.agent_id} has invalid rate {assignment.rate_per_minute}",
        )
    return RateResolution(
        rate_per_minute=assignment.rate_per_minute,
        rule=rule,
        assignment=assignment,
    )
