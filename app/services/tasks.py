import logging
from datetime import datetime, timezone

from app.locks import KeyedLocks
from app.mappers.phone import normalize_phone
from app.mappers.timeline import build_call_started_event, build_created_event, build_note_event
from app.repositories import AgentRepository, TaskRepository
from app.schemas.calls import CallRecord
from app.schemas.responses import CreateTaskRequest
from app.schemas.tasks import Task, TaskStatus

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 5


class TaskService:
    def __init__(
        self,
        tasks: TaskRepository,
        agents: AgentRepository,
        default_phone_region: str = "US",
        locks: KeyedLocks | None = None,
    ) -> None:
        self._tasks = tasks
        self._agents = agents
        self._default_phone_region = default_phone_region
        # Same registry as TaskRetryEngine: one writer per task at a time
        self._locks = locks if locks is not None else KeyedLocks()

    async def create_task(self, request: CreateTaskRequest) -> Task:
        phone = normalize_phone(request.phone_number, self._default_phone_region)

        max_retries = request.max_retries
        if max_retries is None:
            agent = None
            if request.assigned_agent_id:
                agent = await self._agents.find_by_id(request.assigned_agent_id)
            max_retries = agent.max_retries if agent else DEFAULT_MAX_RETRIES

        now = datetime.now(timezone.utc)
        task = Task(
            patient_id=request.patient_id,
            patient_name=request.patient_name,
            phone_number=phone,
            type=request.type,
            description=request.description,
            assigned_agent_id=request.assigned_agent_id,
            max_retries=max_retries,
            timeline=[build_created_event(request.description, now=now)],
            created_at=now,
            updated_at=now,
        )
        created = await self._tasks.create(task)
        logger.info(
            "Task %s created for patient %s (type=%s, agent=%s)",
            created.id, created.patient_id, created.type, created.assigned_agent_id,
        )
        return created

    async def get_task(self, task_id: int) -> Task | None:
        return await self._tasks.find_by_id(task_id)

    async def add_note(self, task_id: int, content: str) -> Task | None:
        async with self._locks.hold(task_id):
            task = await self._tasks.find_by_id(task_id)
            if task is None:
                return None
            now = datetime.now(timezone.utc)
            task.timeline.append(build_note_event(content, now=now))
            task.updated_at = now
            return await self._tasks.save(task)

    async def record_call_started(self, task_id: int, call: CallRecord) -> Task | None:
        """Append the ``call`` event and move the task to in-progress."""
        async with self._locks.hold(task_id):
            task = await self._tasks.find_by_id(task_id)
            if task is None:
                return None
            now = datetime.now(timezone.utc)
            task.timeline.append(build_call_started_event(call, now=now))
            if not task.is_terminal:
                task.status = TaskStatus.in_progress
                task.next_retry_at = None
            task.updated_at = now
            return await self._tasks.save(task)
