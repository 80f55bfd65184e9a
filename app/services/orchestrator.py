"""Call lifecycle: start, observe, end and settle outbound patient calls.

Provider failures are caught here and turned into structured results; the
retry engine only ever receives a reconciled call and its classification.
"""

import asyncio
import logging
from collections.abc import Iterable

import httpx

from app.exceptions.custom import (
    CallNotEndedError,
    InvalidPhoneNumberError,
    RateLimitError,
    VapiError,
)
from app.jobs import Job, JobStore
from app.locks import KeyedLocks
from app.mappers.call_mapper import (
    MalformedWebhookError,
    format_transcript,
    parse_webhook_payload,
)
from app.mappers.outcome import MANUALLY_CANCELED_REASON, classify_ended_reason
from app.mappers.phone import normalize_phone
from app.repositories import AgentRepository
from app.schemas.calls import (
    CallRecord,
    CallStatus,
    CallStatusView,
    EndCallResult,
    PatientContext,
    StartCallResult,
    WebhookEvent,
    WebhookEventKind,
)
from app.schemas.responses import WebhookAck
from app.schemas.tasks import TaskAction, TaskActionResult
from app.services.call_tracker import CallStateTracker
from app.services.reconciliation import ArtifactReconciler
from app.services.retry_engine import TaskRetryEngine
from app.services.tasks import TaskService
from app.services.vapi import VapiService

logger = logging.getLogger(__name__)

PROCESS_CALL_JOB = "process_call"

_PROVIDER_ERRORS = (VapiError, RateLimitError, httpx.HTTPError)


def _provider_error_message(exc: Exception) -> str:
    if isinstance(exc, VapiError):
        return exc.message
    if isinstance(exc, httpx.TimeoutException):
        return "request timed out"
    return str(exc) or exc.__class__.__name__


class CallOrchestrator:
    def __init__(
        self,
        vapi: VapiService | None,
        tracker: CallStateTracker,
        reconciler: ArtifactReconciler,
        engine: TaskRetryEngine,
        tasks: TaskService,
        agents: AgentRepository,
        job_store: JobStore,
        default_phone_region: str = "US",
        fatal_ended_reasons: Iterable[str] = (),
    ) -> None:
        self._vapi = vapi
        self._tracker = tracker
        self._reconciler = reconciler
        self._engine = engine
        self._tasks = tasks
        self._agents = agents
        self._jobs = job_store
        self._default_phone_region = default_phone_region
        self._fatal_ended_reasons = tuple(fatal_ended_reasons)
        self._completion_locks = KeyedLocks()
        self._background: set[asyncio.Task] = set()

    async def start_outbound_call(
        self,
        task_id: int | None,
        agent_id: str,
        patient: PatientContext,
    ) -> StartCallResult:
        if self._vapi is None:
            return StartCallResult(ok=False, error="VAPI calling is not configured")

        agent = await self._agents.find_by_id(agent_id)
        if agent is None or not agent.can_call:
            return StartCallResult(
                ok=False, error="Agent not found or has no VAPI assistant ID",
            )

        if task_id is not None:
            task = await self._tasks.get_task(task_id)
            if task is None:
                return StartCallResult(ok=False, error=f"Task {task_id} not found")
            if task.is_terminal:
                return StartCallResult(
                    ok=False, error=f"Task {task_id} is already {task.status}",
                )

        try:
            phone = normalize_phone(patient.phone_number, self._default_phone_region)
        except InvalidPhoneNumberError as exc:
            logger.warning("Call not started for task %s: %s", task_id, exc.message)
            return StartCallResult(ok=False, error=exc.message)

        variables = {"patient_name": patient.name, **patient.variables}
        try:
            started = await self._vapi.start_call(agent.vapi_assistant_id, phone, variables)
        except _PROVIDER_ERRORS as exc:
            logger.warning("VAPI rejected call for task %s: %s", task_id, exc)
            return StartCallResult(
                ok=False,
                error=f"Failed to start VAPI call: {_provider_error_message(exc)}",
            )

        call = await self._tracker.register(CallRecord(
            id=started.id,
            task_id=task_id,
            agent_id=agent.id,
            phone_number=phone,
            status=CallStatus.queued,
        ))
        if task_id is not None:
            await self._tasks.record_call_started(task_id, call)
        return StartCallResult(ok=True, call=call)

    async def get_call(self, call_id: str) -> CallRecord | None:
        return await self._tracker.get(call_id)

    async def list_calls_for_task(self, task_id: int) -> list[CallRecord]:
        return await self._tracker.list_for_task(task_id)

    async def get_call_status(self, call_id: str) -> CallStatusView | None:
        """Poll the provider; on failure fall back to the last local state."""
        call = await self._tracker.get(call_id)
        if call is None:
            return None

        source = "local"
        if self._vapi is not None:
            try:
                snapshot = await self._vapi.get_call(call_id)
            except _PROVIDER_ERRORS as exc:
                logger.warning(
                    "Status poll failed for call %s, using local state: %s", call_id, exc,
                )
            else:
                call = await self._tracker.apply_snapshot(call_id, snapshot) or call
                source = "provider"

        return CallStatusView(
            call_id=call.id,
            status=call.status,
            ended_reason=call.ended_reason,
            messages=call.messages,
            has_abusive_language=call.has_abusive_language,
            recording_url=call.recording_url,
            transcript=call.transcript or format_transcript(call.messages) or None,
            analysis=call.analysis,
            source=source,
            reason_info=classify_ended_reason(call.ended_reason, self._fatal_ended_reasons),
        )

    async def end_call(self, call_id: str) -> EndCallResult | None:
        """Best-effort cancel. The call ends locally even if the provider refuses."""
        call = await self._tracker.get(call_id)
        if call is None:
            return None

        confirmed = False
        if self._vapi is not None:
            try:
                confirmed = await self._vapi.end_call(call_id)
            except _PROVIDER_ERRORS as exc:
                logger.warning("VAPI end call failed for %s: %s", call_id, exc)

        await self._tracker.mark_ended(call_id, MANUALLY_CANCELED_REASON)
        message = "Call ended." if confirmed else (
            "Call marked as ended locally; provider cancellation was not confirmed."
        )
        return EndCallResult(
            call_id=call_id, success=True, provider_confirmed=confirmed, message=message,
        )

    async def handle_webhook_event(self, event: WebhookEvent) -> bool:
        """Apply one event. False when the call id is not tracked."""
        call = await self._tracker.apply_webhook(event)
        if call is None:
            logger.warning("Webhook %s for unknown call %s ignored", event.kind, event.call_id)
            return False
        if event.kind == WebhookEventKind.ended and call.task_id is not None:
            self.schedule_completion(call.id)
        return True

    async def handle_webhook_payloads(self, payloads: list) -> WebhookAck:
        accepted = 0
        ignored = 0
        for payload in payloads:
            try:
                event = parse_webhook_payload(payload)
            except MalformedWebhookError as exc:
                logger.warning("Malformed webhook payload ignored: %s", exc)
                ignored += 1
                continue
            if event is None:
                ignored += 1
                continue
            if await self.handle_webhook_event(event):
                accepted += 1
            else:
                ignored += 1
        return WebhookAck(received=len(payloads), accepted=accepted, ignored=ignored)

    def schedule_completion(self, call_id: str) -> Job:
        existing = self._jobs.has_active_job(PROCESS_CALL_JOB, call_id)
        if existing:
            return existing
        job = self._jobs.create_job(PROCESS_CALL_JOB, subject=call_id)
        background = asyncio.create_task(self._run_completion(job.job_id, call_id))
        self._background.add(background)
        background.add_done_callback(self._background.discard)
        return job

    async def _run_completion(self, job_id: str, call_id: str) -> None:
        self._jobs.mark_running(job_id)
        try:
            result = await self.process_call_completion(call_id)
            self._jobs.mark_completed(job_id, result)
        except Exception as exc:
            logger.exception("Call completion job %s failed for call %s", job_id, call_id)
            self._jobs.mark_failed(job_id, str(exc))

    async def drain(self) -> None:
        """Wait for in-flight completion jobs."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def process_call_completion(self, call_id: str) -> TaskActionResult | None:
        """Settle a terminal call against its task. Safe to call repeatedly.

        Returns None when the call or its task does not exist. Raises
        CallNotEndedError when the call is still live.
        """
        async with self._completion_locks.hold(call_id):
            call = await self._tracker.get(call_id)
            if call is None or call.task_id is None:
                return None

            if call.processed_action:
                return TaskActionResult(
                    task_id=call.task_id,
                    call_id=call.id,
                    action=TaskAction(call.processed_action),
                    message=call.processed_message or "Call already processed.",
                    duplicate=True,
                    artifacts_complete=call.artifacts_complete,
                )

            task = await self._tasks.get_task(call.task_id)
            if task is None:
                logger.warning("Call %s references missing task %s", call_id, call.task_id)
                return None

            already_settled = task.is_terminal or task.has_processed_call(call_id)
            if not already_settled:
                call = await self._ensure_ended(call)
                call = await self._reconciler.reconcile(call_id) or call
                call = await self._tracker.refresh_abuse_flag(call_id) or call

            outcome = classify_ended_reason(call.ended_reason, self._fatal_ended_reasons)
            result = await self._engine.apply_outcome(call.task_id, call, outcome)
            if result is None:
                return None

            await self._tracker.record_decision(call_id, result.action, result.message)
            return result

    async def _ensure_ended(self, call: CallRecord) -> CallRecord:
        if call.status == CallStatus.ended:
            return call
        if self._vapi is not None:
            try:
                snapshot = await self._vapi.get_call(call.id)
            except _PROVIDER_ERRORS as exc:
                logger.warning("Status poll failed for call %s: %s", call.id, exc)
            else:
                call = await self._tracker.apply_snapshot(call.id, snapshot) or call
        if call.status != CallStatus.ended:
            raise CallNotEndedError(call.id, call.status)
        return call
