from __future__ import annotations

from datetime import datetime, timezone
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


class TaskStatus(StrEnum):
    pending = "pending"
    in_progress = "in-progress"
    scheduled = "scheduled"
    escalated = "escalated"
    completed = "completed"


TERMINAL_TASK_STATUSES = {TaskStatus.completed, TaskStatus.escalated}


class TaskType(StrEnum):
    confirmation = "confirmation"
    no_show = "no-show"
    pre_visit = "pre-visit"
    post_visit = "post-visit"
    recall = "recall"
    collections = "collections"


class TimelineEventType(StrEnum):
    created = "created"
    call = "call"
    voicemail = "voicemail"
    retry_scheduled = "retry_scheduled"
    escalated = "escalated"
    completed = "completed"
    note = "note"


DECISION_EVENT_TYPES = {
    TimelineEventType.voicemail,
    TimelineEventType.retry_scheduled,
    TimelineEventType.escalated,
    TimelineEventType.completed,
}


class TimelineEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    type: TimelineEventType
    timestamp: datetime
    title: str
    description: str | None = None
    call_id: str | None = None
    ended_reason: str | None = None
    outcome: str | None = None
    attempt_number: int | None = None
    next_retry_at: datetime | None = None
    assigned_to: str | None = None
    reason: str | None = None
    summary: str | None = None
    recording_url: str | None = None
    content: str | None = None


class RetryAttempt(BaseModel):
    model_config = ConfigDict(frozen=True)

    attempt_number: int
    call_id: str
    outcome: str  # no-answer | voicemail | busy | disconnected | failed
    duration: int | None = None  # seconds
    timestamp: datetime
    notes: str | None = None


class Task(BaseModel):
    id: int = 0
    patient_id: str
    patient_name: str
    phone_number: str
    type: TaskType = TaskType.confirmation
    description: str = ""
    status: TaskStatus = TaskStatus.pending
    assigned_agent_id: str | None = None
    retry_count: int = 0
    max_retries: int = 5
    next_retry_at: datetime | None = None
    last_attempt_at: datetime | None = None
    retry_history: list[RetryAttempt] = []
    timeline: list[TimelineEvent] = []
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES

    def has_processed_call(self, call_id: str) -> bool:
        if any(a.call_id == call_id for a in self.retry_history):
            return True
        return any(
            e.call_id == call_id and e.type in DECISION_EVENT_TYPES
            for e in self.timeline
        )


class TaskAction(StrEnum):
    completed = "completed"
    escalated = "escalated"
    retry_scheduled = "retry_scheduled"
    voicemail = "voicemail"
    flagged = "flagged"


class TaskActionResult(BaseModel):
    task_id: int
    call_id: str | None = None
    action: TaskAction
    message: str
    duplicate: bool = False
    next_retry_at: datetime | None = None
    assigned_to: str | None = None
    artifacts_complete: bool | None = None
