"""Conversion of provider payloads into typed call data.

Nothing downstream of this module sees raw provider JSON.
"""

import logging
import re
from datetime import datetime, timezone

from pydantic import ValidationError

from app.schemas.calls import (
    CallAnalysis,
    CallStatus,
    Speaker,
    TranscriptMessage,
    WebhookEvent,
    WebhookEventKind,
)
from app.schemas.vapi import (
    VapiAnalysis,
    VapiCallResponse,
    VapiLegacyWebhook,
    VapiMessage,
    VapiServerWebhook,
)

logger = logging.getLogger(__name__)

PROVIDER_STATUS_MAP: dict[str, CallStatus] = {
    "queued": CallStatus.queued,
    "scheduled": CallStatus.queued,
    "ringing": CallStatus.ringing,
    "in-progress": CallStatus.in_progress,
    "forwarding": CallStatus.in_progress,
    "ended": CallStatus.ended,
}

_AGENT_ROLES = {"assistant", "bot", "ai", "agent"}
_DROPPED_ROLES = {"system", "tool", "tool_calls", "tool_call_result", "function", "function_call"}

_TRANSCRIPT_LINE_RE = re.compile(r"^\s*(ai|assistant|bot|user|patient|human|customer)\s*:\s*", re.IGNORECASE)


class MalformedWebhookError(ValueError):
    pass


def map_provider_status(status: str | None) -> CallStatus | None:
    if not status:
        return None
    return PROVIDER_STATUS_MAP.get(status.strip().lower())


def map_role(role: str | None) -> Speaker | None:
    key = (role or "").strip().lower()
    if key in _DROPPED_ROLES:
        return None
    if key in _AGENT_ROLES:
        return Speaker.agent
    return Speaker.patient


def parse_timestamp(value: str | float | int | None) -> datetime | None:
    """Provider times are epoch milliseconds on messages and ISO strings on calls."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Unparseable provider timestamp %r", value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _convert_messages(raw: list[VapiMessage]) -> list[TranscriptMessage]:
    messages: list[TranscriptMessage] = []
    for msg in raw:
        speaker = map_role(msg.role)
        text = (msg.message or "").strip()
        if speaker is None or not text:
            continue
        messages.append(TranscriptMessage(
            speaker=speaker,
            text=text,
            timestamp=parse_timestamp(msg.time),
        ))
    return messages


def parse_transcript_text(text: str | None) -> list[TranscriptMessage]:
    """Parse an "AI: ...\\nUser: ..." transcript string."""
    messages: list[TranscriptMessage] = []
    for line in (text or "").splitlines():
        if not line.strip():
            continue
        match = _TRANSCRIPT_LINE_RE.match(line)
        role = match.group(1).lower() if match else "user"
        body = line[match.end():] if match else line
        if not body.strip():
            continue
        messages.append(TranscriptMessage(
            speaker=Speaker.agent if role in _AGENT_ROLES else Speaker.patient,
            text=body.strip(),
        ))
    return messages


def parse_provider_messages(call: VapiCallResponse) -> list[TranscriptMessage]:
    raw = call.messages or (call.artifact.messages if call.artifact else [])
    messages = _convert_messages(raw)
    if messages:
        return messages
    return parse_transcript_text(transcript_of(call))


def transcript_of(call: VapiCallResponse) -> str | None:
    if call.artifact and call.artifact.transcript:
        return call.artifact.transcript
    return call.transcript


def recording_url_of(call: VapiCallResponse) -> str | None:
    if call.recording_url:
        return call.recording_url
    if call.artifact:
        return call.artifact.recording_url or call.artifact.stereo_recording_url
    return None


def to_call_analysis(analysis: VapiAnalysis | None) -> CallAnalysis | None:
    if analysis is None:
        return None
    if not (analysis.summary or analysis.structured_data or analysis.success_evaluation is not None):
        return None
    evaluation = analysis.success_evaluation
    return CallAnalysis(
        summary=analysis.summary,
        structured_data=analysis.structured_data or {},
        success_evaluation=str(evaluation) if evaluation is not None else None,
    )


def _content_key(msg: TranscriptMessage) -> tuple[str, str]:
    return (msg.speaker.value, " ".join(msg.text.split()).lower())


def _message_keys(messages: list[TranscriptMessage]) -> list[tuple[str, str, int]]:
    """Content key plus ordinal among identical turns."""
    seen: dict[tuple[str, str], int] = {}
    keys: list[tuple[str, str, int]] = []
    for msg in messages:
        content = _content_key(msg)
        ordinal = seen.get(content, 0)
        seen[content] = ordinal + 1
        keys.append((content[0], content[1], ordinal))
    return keys


def _is_redelivery(existing: list[TranscriptMessage], msg: TranscriptMessage) -> bool:
    content = _content_key(msg)
    if msg.timestamp is not None and any(
        m.timestamp == msg.timestamp and _content_key(m) == content for m in existing
    ):
        return True
    if not existing:
        return False
    tail = existing[-1]
    if _content_key(tail) != content:
        return False
    return tail.timestamp is None or msg.timestamp is None or tail.timestamp == msg.timestamp


def merge_messages(
    existing: list[TranscriptMessage],
    incoming: list[TranscriptMessage],
) -> tuple[list[TranscriptMessage], int]:
    """Merge provider turns into the local transcript. Returns (merged, added).

    A single turn is a live delta: it is a repeat only when it matches the
    current last turn, or an earlier turn with the same timestamp. A batch of
    several turns is the conversation from its first turn, keyed by ordinal;
    when it covers every local turn its order wins.
    """
    if not incoming:
        return list(existing), 0

    if len(incoming) == 1:
        if _is_redelivery(existing, incoming[0]):
            return list(existing), 0
        return [*existing, incoming[0]], 1

    existing_keys = _message_keys(existing)
    incoming_keys = _message_keys(incoming)
    if set(existing_keys) <= set(incoming_keys):
        local = dict(zip(existing_keys, existing))
        merged = [local.get(key, msg) for key, msg in zip(incoming_keys, incoming)]
        return merged, len(merged) - len(existing)

    known = set(existing_keys)
    merged = list(existing)
    for key, msg in zip(incoming_keys, incoming):
        if key in known:
            continue
        known.add(key)
        merged.append(msg)
    return merged, len(merged) - len(existing)


def format_transcript(messages: list[TranscriptMessage]) -> str:
    lines: list[str] = []
    for msg in messages:
        role = "AI" if msg.speaker == Speaker.agent else "Patient"
        lines.append(f"{role}: {msg.text}")
    return "\n".join(lines)


def parse_webhook_payload(payload: dict) -> WebhookEvent | None:
    """Validate one webhook payload. Returns None for event types we do not track.

    Raises MalformedWebhookError when the payload matches neither vocabulary
    or carries no call id.
    """
    if not isinstance(payload, dict):
        raise MalformedWebhookError("Webhook payload must be a JSON object")
    try:
        if isinstance(payload.get("message"), dict) and "type" in payload["message"]:
            return _from_server_message(VapiServerWebhook.model_validate(payload))
        return _from_legacy(VapiLegacyWebhook.model_validate(payload))
    except ValidationError as exc:
        raise MalformedWebhookError(f"Invalid webhook payload: {exc.error_count()} errors") from exc


def _require_call_id(call_id: str | None) -> str:
    if not call_id:
        raise MalformedWebhookError("Webhook payload has no call id")
    return call_id


def _from_legacy(event: VapiLegacyWebhook) -> WebhookEvent | None:
    call_id = _require_call_id(event.call.id if event.call else None)
    kind = event.type.strip().lower()

    if kind == "call-started":
        return WebhookEvent(
            kind=WebhookEventKind.started,
            call_id=call_id,
            status=CallStatus.in_progress,
        )
    if kind == "transcript":
        if event.message is None:
            return None
        speaker = map_role(event.message.role)
        text = event.message.message.strip()
        if speaker is None or not text:
            return None
        return WebhookEvent(
            kind=WebhookEventKind.transcript,
            call_id=call_id,
            messages=[TranscriptMessage(
                speaker=speaker,
                text=text,
                timestamp=parse_timestamp(event.message.time),
            )],
        )
    if kind == "call-ended":
        return WebhookEvent(
            kind=WebhookEventKind.ended,
            call_id=call_id,
            status=CallStatus.ended,
            ended_reason=event.call.ended_reason if event.call else None,
        )
    return None


def _from_server_message(envelope: VapiServerWebhook) -> WebhookEvent | None:
    msg = envelope.message
    call_id = _require_call_id(msg.call.id if msg.call else None)
    kind = msg.type.strip().lower()

    if kind == "status-update":
        status = map_provider_status(msg.status)
        if status is None:
            return None
        if status == CallStatus.ended:
            return WebhookEvent(
                kind=WebhookEventKind.ended,
                call_id=call_id,
                status=status,
                ended_reason=msg.ended_reason,
            )
        return WebhookEvent(kind=WebhookEventKind.status, call_id=call_id, status=status)

    if kind == "transcript":
        if (msg.transcript_type or "final").lower() == "partial":
            return None
        speaker = map_role(msg.role)
        text = (msg.transcript or "").strip()
        if speaker is None or not text:
            return None
        return WebhookEvent(
            kind=WebhookEventKind.transcript,
            call_id=call_id,
            messages=[TranscriptMessage(speaker=speaker, text=text)],
        )

    if kind == "end-of-call-report":
        artifact = msg.artifact
        messages = _convert_messages(artifact.messages) if artifact else []
        transcript = (artifact.transcript if artifact else None) or msg.transcript
        if not messages:
            messages = parse_transcript_text(transcript)
        recording = msg.recording_url or (
            (artifact.recording_url or artifact.stereo_recording_url) if artifact else None
        )
        return WebhookEvent(
            kind=WebhookEventKind.ended,
            call_id=call_id,
            status=CallStatus.ended,
            ended_reason=msg.ended_reason,
            messages=messages,
            transcript=transcript,
            recording_url=recording,
            analysis=to_call_analysis(msg.analysis),
        )

    return None
