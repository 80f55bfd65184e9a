from __future__ import annotations

from datetime import datetime, timezone
from enum import StrEnum

from pydantic import BaseModel, Field


class CallStatus(StrEnum):
    queued = "queued"
    ringing = "ringing"
    in_progress = "in-progress"
    ended = "ended"


CALL_STATUS_ORDER: dict[CallStatus, int] = {
    CallStatus.queued: 0,
    CallStatus.ringing: 1,
    CallStatus.in_progress: 2,
    CallStatus.ended: 3,
}


class Speaker(StrEnum):
    agent = "agent"
    patient = "patient"


class OutcomeCategory(StrEnum):
    success = "success"
    voicemail = "voicemail"
    retryable = "retryable"
    fatal = "fatal"


class TranscriptMessage(BaseModel):
    speaker: Speaker
    text: str
    timestamp: datetime | None = None


class CallAnalysis(BaseModel):
    summary: str | None = None
    structured_data: dict = {}
    success_evaluation: str | None = None


class CallRecord(BaseModel):
    """One call attempt, keyed by the provider call id."""

    id: str
    task_id: int | None = None
    agent_id: str | None = None
    phone_number: str
    status: CallStatus = CallStatus.queued
    ended_reason: str | None = None
    messages: list[TranscriptMessage] = []
    transcript: str | None = None
    recording_url: str | None = None
    analysis: CallAnalysis | None = None
    has_abusive_language: bool = False
    artifacts_complete: bool | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    processed_action: str | None = None
    processed_message: str | None = None
    processed_at: datetime | None = None

    @property
    def duration_seconds(self) -> int | None:
        if self.started_at is None or self.ended_at is None:
            return None
        return max(0, int((self.ended_at - self.started_at).total_seconds()))

    @property
    def has_artifacts(self) -> bool:
        return bool(
            self.recording_url
            and self.analysis is not None
            and (self.analysis.structured_data or self.analysis.summary)
        )


class OutcomeClassification(BaseModel):
    title: str
    description: str
    can_retry: bool
    is_success: bool
    category: OutcomeCategory
    retry_tag: str  # no-answer | busy | disconnected | failed | voicemail | completed


class WebhookEventKind(StrEnum):
    started = "started"
    status = "status"
    transcript = "transcript"
    ended = "ended"


class WebhookEvent(BaseModel):
    """Provider push, already validated and converted at the boundary."""

    kind: WebhookEventKind
    call_id: str
    status: CallStatus | None = None
    ended_reason: str | None = None
    messages: list[TranscriptMessage] = []
    transcript: str | None = None
    recording_url: str | None = None
    analysis: CallAnalysis | None = None


class PatientContext(BaseModel):
    name: str
    phone_number: str
    variables: dict[str, str] = {}


class StartCallResult(BaseModel):
    ok: bool
    call: CallRecord | None = None
    error: str | None = None


class EndCallResult(BaseModel):
    call_id: str
    success: bool
    provider_confirmed: bool
    message: str


class CallStatusView(BaseModel):
    call_id: str
    status: CallStatus
    ended_reason: str | None = None
    messages: list[TranscriptMessage] = []
    has_abusive_language: bool = False
    recording_url: str | None = None
    transcript: str | None = None
    analysis: CallAnalysis | None = None
    source: str  # "provider" | "local"
    reason_info: OutcomeClassification
