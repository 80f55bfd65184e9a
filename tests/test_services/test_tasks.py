import asyncio

import pytest

from app.exceptions.custom import InvalidPhoneNumberError
from app.locks import KeyedLocks
from app.mappers.outcome import classify_ended_reason
from app.repositories import InMemoryAgentRepository, InMemoryTaskRepository
from app.schemas.agents import Agent, AgentType
from app.schemas.calls import CallRecord, CallStatus
from app.schemas.responses import CreateTaskRequest
from app.schemas.tasks import TaskStatus, TaskType, TimelineEventType
from app.services.retry_engine import TaskRetryEngine
from app.services.tasks import TaskService


def _service():
    agents = InMemoryAgentRepository([
        Agent(id="ai-1", name="AI", type=AgentType.ai, vapi_assistant_id="asst", max_retries=3),
    ])
    return TaskService(InMemoryTaskRepository(), agents)


def _request(**kwargs):
    data = {
        "patient_id": "p-1",
        "patient_name": "Jane Doe",
        "phone_number": "(650) 253-0000",
        "type": TaskType.recall,
        "description": "Six-month recall",
    }
    data.update(kwargs)
    return CreateTaskRequest(**data)


@pytest.mark.asyncio
async def test_create_task_seeds_created_event():
    task = await _service().create_task(_request())
    assert task.id == 1
    assert task.status == TaskStatus.pending
    assert task.phone_number == "+16502530000"
    assert task.max_retries == 5
    assert [e.type for e in task.timeline] == [TimelineEventType.created]
    assert task.timeline[0].description == "Six-month recall"


@pytest.mark.asyncio
async def test_create_task_uses_agent_budget():
    task = await _service().create_task(_request(assigned_agent_id="ai-1"))
    assert task.max_retries == 3


@pytest.mark.asyncio
async def test_create_task_explicit_budget_wins():
    task = await _service().create_task(_request(assigned_agent_id="ai-1", max_retries=7))
    assert task.max_retries == 7


@pytest.mark.asyncio
async def test_create_task_rejects_bad_phone():
    with pytest.raises(InvalidPhoneNumberError):
        await _service().create_task(_request(phone_number="12"))


@pytest.mark.asyncio
async def test_add_note():
    service = _service()
    task = await service.create_task(_request())

    updated = await service.add_note(task.id, "Prefers mornings")
    assert updated.timeline[-1].type == TimelineEventType.note
    assert updated.timeline[-1].content == "Prefers mornings"
    assert (await service.get_task(task.id)).timeline[-1].content == "Prefers mornings"


@pytest.mark.asyncio
async def test_add_note_missing_task():
    assert await _service().add_note(42, "hello") is None


@pytest.mark.asyncio
async def test_record_call_started():
    service = _service()
    task = await service.create_task(_request())

    call = CallRecord(id="call-1", task_id=task.id, phone_number=task.phone_number)
    updated = await service.record_call_started(task.id, call)

    assert updated.status == TaskStatus.in_progress
    assert updated.next_retry_at is None
    assert updated.timeline[-1].type == TimelineEventType.call
    assert updated.timeline[-1].call_id == "call-1"


# --- concurrency with the retry engine ---


class SuspendingTaskRepository(InMemoryTaskRepository):
    """Yields to the event loop on every read, like a networked store."""

    async def find_by_id(self, task_id):
        await asyncio.sleep(0.01)
        return await super().find_by_id(task_id)


@pytest.mark.asyncio
async def test_note_and_outcome_share_task_lock():
    repo = SuspendingTaskRepository()
    agents = InMemoryAgentRepository([
        Agent(id="ai-1", name="AI", type=AgentType.ai, vapi_assistant_id="asst"),
    ])
    locks = KeyedLocks()
    service = TaskService(repo, agents, locks=locks)
    engine = TaskRetryEngine(repo, agents, locks=locks)
    task = await service.create_task(_request(assigned_agent_id="ai-1"))
    call = CallRecord(
        id="call-1",
        task_id=task.id,
        agent_id="ai-1",
        phone_number=task.phone_number,
        status=CallStatus.ended,
        ended_reason="assistant-ended-call",
    )

    await asyncio.gather(
        engine.apply_outcome(task.id, call, classify_ended_reason("assistant-ended-call")),
        service.add_note(task.id, "Patient called back"),
    )

    stored = await repo.find_by_id(task.id)
    assert stored.status == TaskStatus.completed
    assert {e.type for e in stored.timeline} == {
        TimelineEventType.created,
        TimelineEventType.completed,
        TimelineEventType.note,
    }
    assert len(locks) == 0
