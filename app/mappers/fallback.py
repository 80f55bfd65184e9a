"""Deterministic choice of the staff member who receives an escalated task.

Order:
1. the agent's primary fallback staff member, if active staff
2. the first active staff member in the agent's ordered backup list
3. any active staff member, lowest id first
4. ``last_resort_id``

Step 4 always yields a value, so escalation is never blocked here.
"""

from collections.abc import Iterable

from app.schemas.agents import Agent

LAST_RESORT_STAFF_ID = "sarah"


def resolve_fallback_staff(
    agent: Agent | None,
    staff: Iterable[Agent],
    last_resort_id: str = LAST_RESORT_STAFF_ID,
) -> str:
    directory = {s.id: s for s in staff if s.is_active_staff}

    if agent is not None:
        if agent.fallback_staff_id and agent.fallback_staff_id in directory:
            return agent.fallback_staff_id

        for backup_id in agent.backup_staff_ids:
            if backup_id in directory:
                return backup_id

    if directory:
        return sorted(directory)[0]

    return last_resort_id or LAST_RESORT_STAFF_ID
