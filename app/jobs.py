"""In-process registry for background work (call settlement, retry sweeps).

At most one pending/running job exists per (task_type, subject) pair.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from enum import StrEnum

from pydantic import BaseModel

from app.schemas.responses import RetrySweepResponse
from app.schemas.tasks import TaskActionResult

logger = logging.getLogger(__name__)

JobResult = TaskActionResult | RetrySweepResponse


class JobStatus(StrEnum):
    pending = "pending"
    running = "running"
    completed = "completed"
    failed = "failed"


FINISHED_STATUSES = {JobStatus.completed, JobStatus.failed}


class Job(BaseModel):
    job_id: str
    status: JobStatus
    task_type: str
    subject: str | None = None
    created_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None
    result: JobResult | None = None
    error: str | None = None

    @property
    def key(self) -> tuple[str, str | None]:
        return (self.task_type, self.subject)


class JobStore:
    def __init__(self, max_jobs: int = 1000) -> None:
        self._jobs: dict[str, Job] = {}
        self._active: dict[tuple[str, str | None], str] = {}
        self._max_jobs = max_jobs

    def create_job(self, task_type: str, subject: str | None = None) -> Job:
        job = Job(
            job_id=uuid.uuid4().hex[:12],
            status=JobStatus.pending,
            task_type=task_type,
            subject=subject,
            created_at=datetime.now(timezone.utc),
        )
        self._jobs[job.job_id] = job
        self._active[job.key] = job.job_id
        self._prune()
        logger.debug("Job %s created (%s, subject=%s)", job.job_id, task_type, subject)
        return job

    def get_job(self, job_id: str) -> Job | None:
        return self._jobs.get(job_id)

    def has_active_job(self, task_type: str, subject: str | None) -> Job | None:
        job_id = self._active.get((task_type, subject))
        return self._jobs.get(job_id) if job_id else None

    def mark_running(self, job_id: str) -> None:
        if job := self._jobs.get(job_id):
            job.status = JobStatus.running
            job.started_at = datetime.now(timezone.utc)

    def mark_completed(self, job_id: str, result: JobResult | None) -> None:
        if job := self._jobs.get(job_id):
            job.result = result
            self._finish(job, JobStatus.completed)

    def mark_failed(self, job_id: str, error: str) -> None:
        if job := self._jobs.get(job_id):
            job.error = error
            self._finish(job, JobStatus.failed)

    def _finish(self, job: Job, status: JobStatus) -> None:
        job.status = status
        job.finished_at = datetime.now(timezone.utc)
        if self._active.get(job.key) == job.job_id:
            del self._active[job.key]
        logger.debug("Job %s %s", job.job_id, status)

    def _prune(self) -> None:
        """Drop the oldest finished jobs once over capacity. Live jobs always stay."""
        overflow = len(self._jobs) - self._max_jobs
        if overflow <= 0:
            return
        finished = sorted(
            (j for j in self._jobs.values() if j.status in FINISHED_STATUSES),
            key=lambda j: j.created_at,
        )
        for job in finished[:overflow]:
            del self._jobs[job.job_id]
