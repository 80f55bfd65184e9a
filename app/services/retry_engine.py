"""Task decisions after a call ends: complete, retry, or escalate.

Branches are evaluated in order: abusive language, voicemail, success,
retryable failure, fatal. Each branch appends exactly one decision event to
the task timeline and performs at most one status change. A call id that
already produced a decision is never applied twice.
"""

import logging
from datetime import datetime, timedelta, timezone

from app.locks import KeyedLocks
from app.mappers.fallback import LAST_RESORT_STAFF_ID, resolve_fallback_staff
from app.mappers.task_scheduler import compute_next_retry_at
from app.mappers.timeline import (
    build_completed_event,
    build_escalated_event,
    build_retry_scheduled_event,
    build_voicemail_event,
)
from app.repositories import AgentRepository, TaskRepository
from app.schemas.agents import Agent
from app.schemas.calls import CallRecord, OutcomeCategory, OutcomeClassification
from app.schemas.tasks import (
    DECISION_EVENT_TYPES,
    RetryAttempt,
    Task,
    TaskAction,
    TaskActionResult,
    TaskStatus,
    TimelineEvent,
    TimelineEventType,
)

logger = logging.getLogger(__name__)

DEFAULT_RETRY_DELAY_MINUTES = 60
ABUSIVE_LANGUAGE_REASON = "Patient flagged for abusive language during call"
ABUSIVE_LANGUAGE_MESSAGE = "Patient flagged for abusive language. Task escalated for review."

_EVENT_ACTIONS = {
    TimelineEventType.voicemail: TaskAction.voicemail,
    TimelineEventType.retry_scheduled: TaskAction.retry_scheduled,
    TimelineEventType.escalated: TaskAction.escalated,
    TimelineEventType.completed: TaskAction.completed,
}


class TaskRetryEngine:
    def __init__(
        self,
        tasks: TaskRepository,
        agents: AgentRepository,
        last_resort_staff_id: str = LAST_RESORT_STAFF_ID,
        locks: KeyedLocks | None = None,
    ) -> None:
        self._tasks = tasks
        self._agents = agents
        self._last_resort_staff_id = last_resort_staff_id
        self._locks = locks if locks is not None else KeyedLocks()

    async def apply_outcome(
        self,
        task_id: int,
        call: CallRecord,
        outcome: OutcomeClassification,
        now: datetime | None = None,
    ) -> TaskActionResult | None:
        """Apply one terminal call to its task. None when the task does not exist."""
        async with self._locks.hold(task_id):
            task = await self._tasks.find_by_id(task_id)
            if task is None:
                logger.warning("Task %s not found for call %s", task_id, call.id)
                return None

            if task.has_processed_call(call.id):
                logger.info("Task %s: call %s already processed", task.id, call.id)
                return self._previous_result(task, call.id)

            if task.is_terminal:
                logger.info(
                    "Task %s already %s, ignoring call %s", task.id, task.status, call.id,
                )
                return TaskActionResult(
                    task_id=task.id,
                    call_id=call.id,
                    action=TaskAction(task.status.value),
                    message=f"Task already {task.status}.",
                    duplicate=True,
                    assigned_to=task.assigned_agent_id,
                )

            now = now or datetime.now(timezone.utc)
            agent = await self._find_agent(call.agent_id or task.assigned_agent_id)

            if call.has_abusive_language:
                result = await self._escalate(
                    task, call, agent, ABUSIVE_LANGUAGE_REASON, now,
                    action=TaskAction.flagged,
                    message=ABUSIVE_LANGUAGE_MESSAGE,
                    outcome_tag=outcome.retry_tag,
                )
            elif outcome.category == OutcomeCategory.voicemail:
                result = await self._voicemail(task, call, agent, now)
            elif outcome.is_success:
                result = self._complete(task, call, outcome, now)
            elif outcome.can_retry:
                result = await self._retry(task, call, agent, outcome, now)
            else:
                result = await self._escalate(
                    task, call, agent,
                    f"Call outcome: {outcome.title} - {outcome.description}",
                    now,
                    message=f"{outcome.title}: {outcome.description}",
                    outcome_tag=outcome.retry_tag,
                )

            task.updated_at = now
            await self._tasks.save(task)
            logger.info(
                "Task %s: %s after call %s (reason=%r, retries=%d/%d)",
                task.id, result.action, call.id, call.ended_reason,
                task.retry_count, task.max_retries,
            )
            result.artifacts_complete = call.artifacts_complete
            return result

    async def _find_agent(self, agent_id: str | None) -> Agent | None:
        if not agent_id:
            return None
        return await self._agents.find_by_id(agent_id)

    def _record_attempt(
        self, task: Task, call: CallRecord, outcome_tag: str, notes: str, now: datetime,
    ) -> int:
        task.retry_count += 1
        task.last_attempt_at = now
        task.retry_history.append(RetryAttempt(
            attempt_number=task.retry_count,
            call_id=call.id,
            outcome=outcome_tag,
            duration=call.duration_seconds,
            timestamp=now,
            notes=notes,
        ))
        return task.retry_count

    def _next_retry_at(self, agent: Agent | None, now: datetime) -> datetime:
        if agent is None:
            return now + timedelta(minutes=DEFAULT_RETRY_DELAY_MINUTES)
        return compute_next_retry_at(agent, now)

    async def _voicemail(
        self, task: Task, call: CallRecord, agent: Agent | None, now: datetime,
    ) -> TaskActionResult:
        attempt = self._record_attempt(task, call, "voicemail", "Voicemail left", now)

        if attempt >= task.max_retries:
            return await self._escalate(
                task, call, agent,
                "Max retries reached. Last outcome: voicemail",
                now,
                message=(
                    f"Voicemail left. Max retries ({task.max_retries}) reached. "
                    "Task escalated to staff."
                ),
                outcome_tag="voicemail",
                attempt_number=attempt,
            )

        next_retry_at = self._next_retry_at(agent, now)
        task.status = TaskStatus.scheduled
        task.next_retry_at = next_retry_at
        task.timeline.append(build_voicemail_event(call, attempt, next_retry_at, now=now))
        return TaskActionResult(
            task_id=task.id,
            call_id=call.id,
            action=TaskAction.voicemail,
            message="Voicemail left. Retry scheduled.",
            next_retry_at=next_retry_at,
        )

    def _complete(
        self, task: Task, call: CallRecord, outcome: OutcomeClassification, now: datetime,
    ) -> TaskActionResult:
        task.status = TaskStatus.completed
        task.next_retry_at = None
        task.timeline.append(build_completed_event(call, outcome.description, now=now))
        return TaskActionResult(
            task_id=task.id,
            call_id=call.id,
            action=TaskAction.completed,
            message=outcome.description,
        )

    async def _retry(
        self,
        task: Task,
        call: CallRecord,
        agent: Agent | None,
        outcome: OutcomeClassification,
        now: datetime,
    ) -> TaskActionResult:
        attempt = self._record_attempt(task, call, outcome.retry_tag, outcome.title, now)

        if attempt >= task.max_retries:
            return await self._escalate(
                task, call, agent,
                f"Max retries reached. Last outcome: {outcome.retry_tag}",
                now,
                message=(
                    f"{outcome.title}: {outcome.description} "
                    f"Max retries ({task.max_retries}) reached. Task escalated to staff."
                ),
                outcome_tag=outcome.retry_tag,
                attempt_number=attempt,
            )

        next_retry_at = self._next_retry_at(agent, now)
        task.status = TaskStatus.scheduled
        task.next_retry_at = next_retry_at
        task.timeline.append(
            build_retry_scheduled_event(call, outcome, attempt, next_retry_at, now=now)
        )
        return TaskActionResult(
            task_id=task.id,
            call_id=call.id,
            action=TaskAction.retry_scheduled,
            message=(
                f"{outcome.title}: {outcome.description} "
                f"Retry {attempt}/{task.max_retries} scheduled."
            ),
            next_retry_at=next_retry_at,
        )

    async def _escalate(
        self,
        task: Task,
        call: CallRecord,
        agent: Agent | None,
        reason: str,
        now: datetime,
        *,
        message: str,
        action: TaskAction = TaskAction.escalated,
        outcome_tag: str | None = None,
        attempt_number: int | None = None,
    ) -> TaskActionResult:
        staff = await self._agents.list_staff()
        staff_id = resolve_fallback_staff(agent, staff, self._last_resort_staff_id)

        task.status = TaskStatus.escalated
        task.assigned_agent_id = staff_id
        task.next_retry_at = None
        task.timeline.append(build_escalated_event(
            call, staff_id, reason,
            outcome_tag=outcome_tag,
            attempt_number=attempt_number,
            now=now,
        ))
        return TaskActionResult(
            task_id=task.id,
            call_id=call.id,
            action=action,
            message=message,
            assigned_to=staff_id,
        )

    def _previous_result(self, task: Task, call_id: str) -> TaskActionResult:
        event = self._decision_event(task, call_id)
        if event is None:
            action = TaskAction.retry_scheduled
            message = "Call already processed."
        elif event.type == TimelineEventType.escalated and event.reason == ABUSIVE_LANGUAGE_REASON:
            action = TaskAction.flagged
            message = ABUSIVE_LANGUAGE_MESSAGE
        else:
            action = _EVENT_ACTIONS[event.type]
            message = "Call already processed."
        return TaskActionResult(
            task_id=task.id,
            call_id=call_id,
            action=action,
            message=message,
            duplicate=True,
            next_retry_at=event.next_retry_at if event else None,
            assigned_to=event.assigned_to if event else None,
        )

    @staticmethod
    def _decision_event(task: Task, call_id: str) -> TimelineEvent | None:
        for event in reversed(task.timeline):
            if event.call_id == call_id and event.type in DECISION_EVENT_TYPES:
                return event
        return None
