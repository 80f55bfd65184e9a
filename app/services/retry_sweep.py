import logging
from datetime import datetime, timezone

from app.mappers.task_scheduler import is_within_calling_hours
from app.repositories import AgentRepository, TaskRepository
from app.schemas.calls import PatientContext
from app.schemas.responses import RetrySweepResponse, RetrySweepResult
from app.schemas.tasks import Task
from app.services.orchestrator import CallOrchestrator

logger = logging.getLogger(__name__)


class RetrySweepService:
    """Start the next call for every task whose retry is due."""

    def __init__(
        self,
        tasks: TaskRepository,
        agents: AgentRepository,
        orchestrator: CallOrchestrator,
    ) -> None:
        self._tasks = tasks
        self._agents = agents
        self._orchestrator = orchestrator

    async def run(self, now: datetime | None = None) -> RetrySweepResponse:
        now = now or datetime.now(timezone.utc)
        due = await self._tasks.list_due_retries(now)

        results: list[RetrySweepResult] = []
        started = 0
        skipped = 0
        errors = 0

        for task in due:
            try:
                result = await self._process_task(task, now)
            except Exception as exc:
                logger.exception("Error retrying task %s", task.id)
                result = RetrySweepResult(
                    task_id=task.id,
                    agent_id=task.assigned_agent_id,
                    status="error",
                    message=str(exc),
                )
            results.append(result)
            if result.status == "started":
                started += 1
            elif result.status == "skipped":
                skipped += 1
            else:
                errors += 1

        logger.info(
            "Retry sweep: %d due, %d started, %d skipped, %d errors",
            len(due), started, skipped, errors,
        )
        return RetrySweepResponse(
            total_due=len(due),
            started=started,
            skipped=skipped,
            errors=errors,
            results=results,
        )

    async def _process_task(self, task: Task, now: datetime) -> RetrySweepResult:
        agent = None
        if task.assigned_agent_id:
            agent = await self._agents.find_by_id(task.assigned_agent_id)
        if agent is None:
            logger.info("Task %s skipped: no_agent", task.id)
            return RetrySweepResult(
                task_id=task.id,
                agent_id=task.assigned_agent_id,
                status="skipped",
                message="no_agent",
            )

        # Outside hours: silent skip, the next sweep picks it up
        if not is_within_calling_hours(agent, now):
            logger.info(
                "Task %s skipped: outside_hours (agent=%s, tz=%s)",
                task.id, agent.id, agent.timezone,
            )
            return RetrySweepResult(
                task_id=task.id,
                agent_id=agent.id,
                status="skipped",
                message="outside_hours",
            )

        start = await self._orchestrator.start_outbound_call(
            task.id,
            agent.id,
            PatientContext(name=task.patient_name, phone_number=task.phone_number),
        )
        if not start.ok or start.call is None:
            return RetrySweepResult(
                task_id=task.id,
                agent_id=agent.id,
                status="error",
                message=start.error,
            )
        return RetrySweepResult(
            task_id=task.id,
            agent_id=agent.id,
            status="started",
            call_id=start.call.id,
        )
