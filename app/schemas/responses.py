from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel

from app.schemas.calls import CallRecord
from app.schemas.tasks import TaskActionResult, TaskType


class OutboundCallRequest(BaseModel):
    task_id: int
    agent_id: str
    patient_name: str
    customer_number: str
    variables: dict[str, str] = {}


class OutboundCallResponse(BaseModel):
    call_id: str
    call: CallRecord


class WebhookAck(BaseModel):
    received: int
    accepted: int
    ignored: int


class CreateTaskRequest(BaseModel):
    patient_id: str
    patient_name: str
    phone_number: str
    type: TaskType = TaskType.confirmation
    description: str = ""
    assigned_agent_id: str | None = None
    max_retries: int | None = None


class NoteRequest(BaseModel):
    content: str


class RetrySweepResult(BaseModel):
    task_id: int
    agent_id: str | None = None
    status: str  # "started" | "skipped" | "error"
    call_id: str | None = None
    message: str | None = None


class RetrySweepResponse(BaseModel):
    total_due: int
    started: int
    skipped: int
    errors: int
    results: list[RetrySweepResult]


class JobSubmittedResponse(BaseModel):
    job_id: str
    status: str
    message: str


class JobStatusResponse(BaseModel):
    job_id: str
    status: str
    task_type: str
    subject: str | None = None
    created_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None
    result: TaskActionResult | RetrySweepResponse | None = None
    error: str | None = None
