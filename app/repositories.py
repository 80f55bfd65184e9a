"""Storage seams for tasks, call attempts and agents.

Core services only use point lookups and saves. The in-memory implementations
back the default process and the tests; they hand out copies so callers never
mutate stored state without an explicit save.
"""

import itertools
from datetime import datetime
from typing import Protocol

from app.schemas.agents import Agent, AgentType
from app.schemas.calls import CallRecord
from app.schemas.tasks import Task, TaskStatus


class TaskRepository(Protocol):
    async def find_by_id(self, task_id: int) -> Task | None: ...

    async def create(self, task: Task) -> Task: ...

    async def save(self, task: Task) -> Task: ...

    async def list_due_retries(self, now: datetime) -> list[Task]: ...


class CallRepository(Protocol):
    async def find_by_id(self, call_id: str) -> CallRecord | None: ...

    async def create(self, call: CallRecord) -> CallRecord: ...

    async def save(self, call: CallRecord) -> CallRecord: ...

    async def find_by_task_id(self, task_id: int) -> list[CallRecord]: ...


class AgentRepository(Protocol):
    async def find_by_id(self, agent_id: str) -> Agent | None: ...

    async def list_staff(self) -> list[Agent]: ...

    async def save(self, agent: Agent) -> Agent: ...


class InMemoryTaskRepository:
    def __init__(self) -> None:
        self._tasks: dict[int, Task] = {}
        self._ids = itertools.count(1)

    async def find_by_id(self, task_id: int) -> Task | None:
        task = self._tasks.get(task_id)
        return task.model_copy(deep=True) if task else None

    async def create(self, task: Task) -> Task:
        stored = task.model_copy(deep=True, update={"id": next(self._ids)})
        self._tasks[stored.id] = stored
        return stored.model_copy(deep=True)

    async def save(self, task: Task) -> Task:
        if task.id not in self._tasks:
            raise KeyError(f"Task {task.id} does not exist")
        self._tasks[task.id] = task.model_copy(deep=True)
        return task

    async def list_due_retries(self, now: datetime) -> list[Task]:
        due = [
            t for t in self._tasks.values()
            if t.status == TaskStatus.scheduled
            and t.next_retry_at is not None
            and t.next_retry_at <= now
        ]
        due.sort(key=lambda t: (t.next_retry_at, t.id))
        return [t.model_copy(deep=True) for t in due]


class InMemoryCallRepository:
    def __init__(self) -> None:
        self._calls: dict[str, CallRecord] = {}

    async def find_by_id(self, call_id: str) -> CallRecord | None:
        call = self._calls.get(call_id)
        return call.model_copy(deep=True) if call else None

    async def create(self, call: CallRecord) -> CallRecord:
        self._calls[call.id] = call.model_copy(deep=True)
        return call

    async def save(self, call: CallRecord) -> CallRecord:
        self._calls[call.id] = call.model_copy(deep=True)
        return call

    async def find_by_task_id(self, task_id: int) -> list[CallRecord]:
        calls = [c for c in self._calls.values() if c.task_id == task_id]
        calls.sort(key=lambda c: c.created_at)
        return [c.model_copy(deep=True) for c in calls]


class InMemoryAgentRepository:
    def __init__(self, agents: list[Agent] | None = None) -> None:
        self._agents: dict[str, Agent] = {a.id: a for a in agents or []}

    async def find_by_id(self, agent_id: str) -> Agent | None:
        agent = self._agents.get(agent_id)
        return agent.model_copy(deep=True) if agent else None

    async def list_staff(self) -> list[Agent]:
        staff = [a for a in self._agents.values() if a.type == AgentType.staff]
        staff.sort(key=lambda a: a.id)
        return [a.model_copy(deep=True) for a in staff]

    async def save(self, agent: Agent) -> Agent:
        self._agents[agent.id] = agent.model_copy(deep=True)
        return agent
