"""Tests for CallOrchestrator (mocked VAPI, in-memory repositories)."""

import asyncio
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from app.exceptions.custom import CallNotEndedError, RateLimitError, VapiError
from app.jobs import JobStatus, JobStore
from app.locks import KeyedLocks
from app.repositories import (
    InMemoryAgentRepository,
    InMemoryCallRepository,
    InMemoryTaskRepository,
)
from app.schemas.agents import Agent, AgentType
from app.schemas.calls import CallStatus, PatientContext, WebhookEvent, WebhookEventKind
from app.schemas.responses import CreateTaskRequest
from app.schemas.tasks import TaskAction, TaskStatus, TimelineEventType
from app.schemas.vapi import VapiCallResponse
from app.services.call_tracker import CallStateTracker
from app.services.orchestrator import PROCESS_CALL_JOB, CallOrchestrator
from app.services.reconciliation import ArtifactReconciler, RetryPolicy
from app.services.retry_engine import TaskRetryEngine
from app.services.tasks import TaskService
from app.services.vapi import VapiService

AGENTS = [
    Agent(
        id="ai-1",
        name="Confirmations",
        type=AgentType.ai,
        vapi_assistant_id="asst-1",
        fallback_staff_id="maria",
        max_retries=2,
    ),
    Agent(id="ai-draft", name="Draft", type=AgentType.ai),
    Agent(id="maria", name="Maria", type=AgentType.staff),
]

PATIENT = PatientContext(name="Jane Doe", phone_number="(650) 253-0000")


class Harness:
    def __init__(self, vapi=None, configured=True):
        self.vapi = vapi if vapi is not None else AsyncMock(spec=VapiService)
        self.tasks_repo = InMemoryTaskRepository()
        self.calls_repo = InMemoryCallRepository()
        self.agents_repo = InMemoryAgentRepository(AGENTS)
        self.jobs = JobStore()
        self.tracker = CallStateTracker(self.calls_repo)
        self.task_locks = KeyedLocks()
        self.task_service = TaskService(self.tasks_repo, self.agents_repo, locks=self.task_locks)
        provider = self.vapi if configured else None
        self.orchestrator = CallOrchestrator(
            provider,
            self.tracker,
            ArtifactReconciler(provider, self.tracker, RetryPolicy(max_attempts=3, delay_seconds=0)),
            TaskRetryEngine(self.tasks_repo, self.agents_repo, locks=self.task_locks),
            self.task_service,
            self.agents_repo,
            self.jobs,
        )

    async def new_task(self):
        return await self.task_service.create_task(CreateTaskRequest(
            patient_id="p-1",
            patient_name="Jane Doe",
            phone_number="+16502530000",
            assigned_agent_id="ai-1",
        ))

    async def started_call(self, call_id="call-1"):
        task = await self.new_task()
        self.vapi.start_call.return_value = VapiCallResponse(id=call_id, status="queued")
        result = await self.orchestrator.start_outbound_call(task.id, "ai-1", PATIENT)
        return task, result.call


def _ended(call_id="call-1", reason="assistant-ended-call", complete=True):
    data = {"id": call_id, "status": "ended", "endedReason": reason}
    if complete:
        data["recordingUrl"] = "https://rec/1.wav"
        data["analysis"] = {"summary": "Done", "structuredData": {"confirmed": True}}
    return VapiCallResponse.model_validate(data)


# --- start_outbound_call ---


@pytest.mark.asyncio
async def test_start_outbound_call_success():
    h = Harness()
    task, call = await h.started_call()

    h.vapi.start_call.assert_awaited_once_with(
        "asst-1", "+16502530000", {"patient_name": "Jane Doe"},
    )
    assert call.id == "call-1"
    assert call.status == CallStatus.queued
    assert call.task_id == task.id
    assert (await h.tracker.get("call-1")) is not None

    task = await h.task_service.get_task(task.id)
    assert task.status == TaskStatus.in_progress
    assert task.timeline[-1].type == TimelineEventType.call


@pytest.mark.asyncio
async def test_start_call_without_provider_config():
    h = Harness(configured=False)
    task = await h.new_task()
    result = await h.orchestrator.start_outbound_call(task.id, "ai-1", PATIENT)
    assert result.ok is False
    assert "not configured" in result.error


@pytest.mark.asyncio
@pytest.mark.parametrize("agent_id", ["ai-draft", "maria", "ghost"])
async def test_start_call_agent_without_capability(agent_id):
    h = Harness()
    task = await h.new_task()
    result = await h.orchestrator.start_outbound_call(task.id, agent_id, PATIENT)
    assert result.ok is False
    assert result.error == "Agent not found or has no VAPI assistant ID"
    h.vapi.start_call.assert_not_awaited()


@pytest.mark.asyncio
async def test_start_call_invalid_phone_is_structured_error():
    h = Harness()
    task = await h.new_task()
    result = await h.orchestrator.start_outbound_call(
        task.id, "ai-1", PatientContext(name="Jane", phone_number="abc"),
    )
    assert result.ok is False
    assert "Could not parse" in result.error
    h.vapi.start_call.assert_not_awaited()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [
        VapiError("Bad Request", status_code=400),
        RateLimitError("VAPI"),
        httpx.ConnectTimeout("timed out"),
    ],
)
async def test_start_call_provider_failure_is_structured(error):
    h = Harness()
    task = await h.new_task()
    h.vapi.start_call.side_effect = error

    result = await h.orchestrator.start_outbound_call(task.id, "ai-1", PATIENT)

    assert result.ok is False
    assert result.error.startswith("Failed to start VAPI call")
    assert await h.orchestrator.list_calls_for_task(task.id) == []
    assert (await h.task_service.get_task(task.id)).status == TaskStatus.pending


@pytest.mark.asyncio
async def test_start_call_unknown_or_closed_task():
    h = Harness()
    result = await h.orchestrator.start_outbound_call(99, "ai-1", PATIENT)
    assert result.error == "Task 99 not found"

    task, _ = await h.started_call()
    h.vapi.get_call.return_value = _ended()
    await h.orchestrator.process_call_completion("call-1")

    again = await h.orchestrator.start_outbound_call(task.id, "ai-1", PATIENT)
    assert again.ok is False
    assert "already completed" in again.error


# --- get_call_status / end_call ---


@pytest.mark.asyncio
async def test_get_call_status_from_provider():
    h = Harness()
    await h.started_call()
    h.vapi.get_call.return_value = VapiCallResponse.model_validate({
        "id": "call-1",
        "status": "in-progress",
        "messages": [{"role": "user", "message": "Who is this?"}],
    })

    view = await h.orchestrator.get_call_status("call-1")

    assert view.source == "provider"
    assert view.status == CallStatus.in_progress
    assert view.messages[0].text == "Who is this?"
    assert view.transcript == "Patient: Who is this?"
    assert (await h.tracker.get("call-1")).status == CallStatus.in_progress


@pytest.mark.asyncio
async def test_get_call_status_falls_back_to_local():
    h = Harness()
    await h.started_call()
    await h.tracker.apply_status("call-1", CallStatus.ringing)
    h.vapi.get_call.side_effect = VapiError("down", status_code=500)

    view = await h.orchestrator.get_call_status("call-1")

    assert view.source == "local"
    assert view.status == CallStatus.ringing
    assert view.reason_info.can_retry is True


@pytest.mark.asyncio
async def test_get_call_status_unknown_call():
    assert await Harness().orchestrator.get_call_status("ghost") is None


@pytest.mark.asyncio
async def test_end_call_confirmed():
    h = Harness()
    await h.started_call()
    h.vapi.end_call.return_value = True

    result = await h.orchestrator.end_call("call-1")

    assert result.success is True
    assert result.provider_confirmed is True
    call = await h.tracker.get("call-1")
    assert call.status == CallStatus.ended
    assert call.ended_reason == "manually-canceled"


@pytest.mark.asyncio
async def test_end_call_provider_failure_still_ends_locally():
    h = Harness()
    await h.started_call()
    h.vapi.end_call.side_effect = httpx.ConnectError("refused")

    result = await h.orchestrator.end_call("call-1")

    assert result.success is True
    assert result.provider_confirmed is False
    assert (await h.tracker.get("call-1")).ended_reason == "manually-canceled"


# --- process_call_completion ---


@pytest.mark.asyncio
async def test_process_completion_success():
    h = Harness()
    task, _ = await h.started_call()
    await h.tracker.apply_status("call-1", CallStatus.ended, "assistant-ended-call")
    h.vapi.get_call.return_value = _ended()

    result = await h.orchestrator.process_call_completion("call-1")

    assert result.action == TaskAction.completed
    assert result.artifacts_complete is True
    task = await h.task_service.get_task(task.id)
    assert task.status == TaskStatus.completed
    assert [e.type for e in task.timeline].count(TimelineEventType.completed) == 1

    call = await h.tracker.get("call-1")
    assert call.processed_action == "completed"
    assert len(h.tracker._locks) == 0
    assert len(h.orchestrator._completion_locks) == 0
    assert len(h.task_locks) == 0


@pytest.mark.asyncio
async def test_process_completion_twice_is_idempotent():
    h = Harness()
    task, _ = await h.started_call()
    h.vapi.get_call.return_value = _ended(reason="customer-did-not-answer")

    first = await h.orchestrator.process_call_completion("call-1")
    snapshot = await h.task_service.get_task(task.id)
    second = await h.orchestrator.process_call_completion("call-1")
    after = await h.task_service.get_task(task.id)

    assert first.action == TaskAction.retry_scheduled
    assert second.action == TaskAction.retry_scheduled
    assert second.duplicate is True
    assert after.retry_count == 1
    assert len(after.retry_history) == 1
    assert after.timeline == snapshot.timeline


@pytest.mark.asyncio
async def test_concurrent_process_completion_applies_once():
    h = Harness()
    task, _ = await h.started_call()
    h.vapi.get_call.return_value = _ended(reason="customer-busy")

    results = await asyncio.gather(
        *(h.orchestrator.process_call_completion("call-1") for _ in range(5))
    )

    task = await h.task_service.get_task(task.id)
    assert task.retry_count == 1
    assert sum(1 for r in results if not r.duplicate) == 1


@pytest.mark.asyncio
async def test_process_completion_without_artifacts_still_decides():
    h = Harness()
    task, _ = await h.started_call()
    h.vapi.get_call.return_value = _ended(reason="customer-busy", complete=False)

    result = await h.orchestrator.process_call_completion("call-1")

    assert result.action == TaskAction.retry_scheduled
    assert result.artifacts_complete is False
    assert h.vapi.get_call.await_count == 4  # one status read plus the reconciliation budget


@pytest.mark.asyncio
async def test_process_completion_detects_abuse_from_transcript():
    h = Harness()
    task, _ = await h.started_call()
    h.vapi.get_call.return_value = VapiCallResponse.model_validate({
        "id": "call-1",
        "status": "ended",
        "endedReason": "assistant-ended-call",
        "messages": [
            {"role": "assistant", "message": "Hi Jane, confirming tomorrow."},
            {"role": "user", "message": "Stop calling me you stupid robot"},
        ],
    })

    with patch("app.services.reconciliation.asyncio.sleep", new_callable=AsyncMock):
        result = await h.orchestrator.process_call_completion("call-1")

    assert result.action == TaskAction.flagged
    task = await h.task_service.get_task(task.id)
    assert task.status == TaskStatus.escalated
    assert task.assigned_agent_id == "maria"


@pytest.mark.asyncio
async def test_process_completion_live_call_rejected():
    h = Harness()
    await h.started_call()
    h.vapi.get_call.return_value = VapiCallResponse(id="call-1", status="in-progress")

    with pytest.raises(CallNotEndedError):
        await h.orchestrator.process_call_completion("call-1")


@pytest.mark.asyncio
async def test_process_completion_unknown_call_or_task():
    h = Harness()
    assert await h.orchestrator.process_call_completion("ghost") is None


# --- webhooks ---


@pytest.mark.asyncio
async def test_webhook_unknown_call_ignored():
    h = Harness()
    accepted = await h.orchestrator.handle_webhook_event(
        WebhookEvent(kind=WebhookEventKind.started, call_id="ghost", status=CallStatus.in_progress)
    )
    assert accepted is False


@pytest.mark.asyncio
async def test_webhook_payload_batch_isolates_bad_events():
    h = Harness()
    await h.started_call()

    ack = await h.orchestrator.handle_webhook_payloads([
        {"type": "call-started", "call": {"id": "call-1"}},
        {"type": "transcript", "call": {"id": "call-1"}, "message": {"role": "assistant", "message": "Hi"}},
        {"type": "call-started"},
        {"type": "call-started", "call": {"id": "ghost"}},
        {"type": "speech-update", "call": {"id": "call-1"}},
        "garbage",
    ])

    assert ack.received == 6
    assert ack.accepted == 2
    assert ack.ignored == 4
    call = await h.tracker.get("call-1")
    assert call.status == CallStatus.in_progress
    assert [m.text for m in call.messages] == ["Hi"]


@pytest.mark.asyncio
async def test_webhook_ended_schedules_single_completion_job():
    h = Harness()
    task, _ = await h.started_call()
    h.vapi.get_call.return_value = _ended(reason="voicemail")

    ended = {"type": "call-ended", "call": {"id": "call-1", "endedReason": "voicemail"}}
    await h.orchestrator.handle_webhook_payloads([ended])
    await h.orchestrator.handle_webhook_payloads([ended])

    job = h.jobs.has_active_job(PROCESS_CALL_JOB, "call-1")
    assert job is not None
    await h.orchestrator.drain()

    assert job.status == JobStatus.completed
    assert job.result.action == TaskAction.voicemail
    task = await h.task_service.get_task(task.id)
    assert task.retry_count == 1
    assert task.status == TaskStatus.scheduled
