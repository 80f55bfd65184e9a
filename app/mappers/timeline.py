import uuid
from datetime import datetime, timezone

from app.schemas.calls import CallRecord, OutcomeClassification
from app.schemas.tasks import TimelineEvent, TimelineEventType


def _event_id(event_type: TimelineEventType) -> str:
    return f"{event_type.value}-{uuid.uuid4().hex[:12]}"


def _now(now: datetime | None) -> datetime:
    return now or datetime.now(timezone.utc)


def _call_fields(call: CallRecord | None) -> dict:
    if call is None:
        return {}
    return {
        "call_id": call.id,
        "ended_reason": call.ended_reason,
        "recording_url": call.recording_url,
        "summary": call.analysis.summary if call.analysis else None,
    }


def build_created_event(description: str, now: datetime | None = None) -> TimelineEvent:
    return TimelineEvent(
        id=_event_id(TimelineEventType.created),
        type=TimelineEventType.created,
        timestamp=_now(now),
        title="Task Created",
        description=description or None,
    )


def build_call_started_event(call: CallRecord, now: datetime | None = None) -> TimelineEvent:
    return TimelineEvent(
        id=_event_id(TimelineEventType.call),
        type=TimelineEventType.call,
        timestamp=_now(now),
        title="Outbound Call",
        description=f"Outbound call started to {call.phone_number}",
        call_id=call.id,
    )


def build_note_event(
    content: str, title: str = "Note Added", now: datetime | None = None,
) -> TimelineEvent:
    return TimelineEvent(
        id=_event_id(TimelineEventType.note),
        type=TimelineEventType.note,
        timestamp=_now(now),
        title=title,
        content=content,
    )


def build_voicemail_event(
    call: CallRecord,
    attempt_number: int,
    next_retry_at: datetime,
    now: datetime | None = None,
) -> TimelineEvent:
    return TimelineEvent(
        id=_event_id(TimelineEventType.voicemail),
        type=TimelineEventType.voicemail,
        timestamp=_now(now),
        title="Voicemail Left",
        description=f"Voicemail left on attempt {attempt_number}. Retry scheduled.",
        outcome="voicemail",
        attempt_number=attempt_number,
        next_retry_at=next_retry_at,
        **_call_fields(call),
    )


def build_retry_scheduled_event(
    call: CallRecord,
    outcome: OutcomeClassification,
    attempt_number: int,
    next_retry_at: datetime,
    now: datetime | None = None,
) -> TimelineEvent:
    return TimelineEvent(
        id=_event_id(TimelineEventType.retry_scheduled),
        type=TimelineEventType.retry_scheduled,
        timestamp=_now(now),
        title="Retry Scheduled",
        description=f"{outcome.title}: {outcome.description}",
        outcome=outcome.retry_tag,
        attempt_number=attempt_number,
        next_retry_at=next_retry_at,
        **_call_fields(call),
    )


def build_escalated_event(
    call: CallRecord | None,
    assigned_to: str,
    reason: str,
    outcome_tag: str | None = None,
    attempt_number: int | None = None,
    now: datetime | None = None,
) -> TimelineEvent:
    return TimelineEvent(
        id=_event_id(TimelineEventType.escalated),
        type=TimelineEventType.escalated,
        timestamp=_now(now),
        title="Escalated to Staff",
        assigned_to=assigned_to,
        reason=reason,
        outcome=outcome_tag,
        attempt_number=attempt_number,
        **_call_fields(call),
    )


def build_completed_event(
    call: CallRecord | None, description: str, now: datetime | None = None,
) -> TimelineEvent:
    return TimelineEvent(
        id=_event_id(TimelineEventType.completed),
        type=TimelineEventType.completed,
        timestamp=_now(now),
        title="Task Completed",
        description=description or "Task marked as complete",
        **_call_fields(call),
    )
