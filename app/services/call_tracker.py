"""Per-call state machine fed by both provider polls and webhook pushes.

Status only moves forward through queued -> ringing -> in-progress -> ended;
older or repeated statuses are no-ops and ``ended`` is absorbing. Transcript
turns are append-only and deduplicated, so overlapping deliveries from the
two sources converge on the same record.
"""

import logging
import re
from datetime import datetime, timezone

from app.locks import KeyedLocks
from app.mappers.abuse import ABUSIVE_PATTERNS, detect_abusive_language
from app.mappers.call_mapper import (
    map_provider_status,
    merge_messages,
    parse_provider_messages,
    parse_timestamp,
    recording_url_of,
    to_call_analysis,
    transcript_of,
)
from app.repositories import CallRepository
from app.schemas.calls import (
    CALL_STATUS_ORDER,
    CallAnalysis,
    CallRecord,
    CallStatus,
    TranscriptMessage,
    WebhookEvent,
)
from app.schemas.vapi import VapiCallResponse

logger = logging.getLogger(__name__)


class CallStateTracker:
    def __init__(
        self,
        calls: CallRepository,
        abuse_patterns: list[re.Pattern[str]] = ABUSIVE_PATTERNS,
    ) -> None:
        self._calls = calls
        self._abuse_patterns = abuse_patterns
        self._locks = KeyedLocks()

    async def get(self, call_id: str) -> CallRecord | None:
        return await self._calls.find_by_id(call_id)

    async def list_for_task(self, task_id: int) -> list[CallRecord]:
        return await self._calls.find_by_task_id(task_id)

    async def register(self, call: CallRecord) -> CallRecord:
        async with self._locks.hold(call.id):
            return await self._calls.create(call)

    async def apply_status(
        self,
        call_id: str,
        status: CallStatus,
        ended_reason: str | None = None,
    ) -> CallRecord | None:
        async with self._locks.hold(call_id):
            call = await self._calls.find_by_id(call_id)
            if call is None:
                return None
            if self._transition(call, status, ended_reason):
                await self._calls.save(call)
            return call

    async def append_messages(
        self, call_id: str, messages: list[TranscriptMessage],
    ) -> CallRecord | None:
        async with self._locks.hold(call_id):
            call = await self._calls.find_by_id(call_id)
            if call is None:
                return None
            if self._merge(call, messages):
                await self._calls.save(call)
            return call

    async def mark_ended(self, call_id: str, ended_reason: str) -> CallRecord | None:
        """Force the call to ``ended``. A call that already ended keeps its reason."""
        return await self.apply_status(call_id, CallStatus.ended, ended_reason)

    async def apply_snapshot(
        self, call_id: str, snapshot: VapiCallResponse,
    ) -> CallRecord | None:
        """Merge one provider read into the local record."""
        async with self._locks.hold(call_id):
            call = await self._calls.find_by_id(call_id)
            if call is None:
                return None

            started_at = parse_timestamp(snapshot.started_at)
            if started_at and call.started_at is None:
                call.started_at = started_at

            status = map_provider_status(snapshot.status)
            if status is not None:
                self._transition(call, status, snapshot.ended_reason)
            elif snapshot.status:
                logger.info("Call %s: ignoring unknown provider status %r", call_id, snapshot.status)

            ended_at = parse_timestamp(snapshot.ended_at)
            if ended_at and call.status == CallStatus.ended:
                call.ended_at = ended_at

            self._merge(call, parse_provider_messages(snapshot))
            self._apply_artifacts(
                call,
                transcript=transcript_of(snapshot),
                recording_url=recording_url_of(snapshot),
                analysis=to_call_analysis(snapshot.analysis),
            )
            await self._calls.save(call)
            return call

    async def apply_webhook(self, event: WebhookEvent) -> CallRecord | None:
        """Apply one validated webhook event. None when the call is unknown."""
        async with self._locks.hold(event.call_id):
            call = await self._calls.find_by_id(event.call_id)
            if call is None:
                return None
            if event.status is not None:
                self._transition(call, event.status, event.ended_reason)
            self._merge(call, event.messages)
            self._apply_artifacts(
                call,
                transcript=event.transcript,
                recording_url=event.recording_url,
                analysis=event.analysis,
            )
            await self._calls.save(call)
            return call

    async def set_artifacts_complete(self, call_id: str, complete: bool) -> CallRecord | None:
        async with self._locks.hold(call_id):
            call = await self._calls.find_by_id(call_id)
            if call is None:
                return None
            call.artifacts_complete = complete
            await self._calls.save(call)
            return call

    async def refresh_abuse_flag(self, call_id: str) -> CallRecord | None:
        async with self._locks.hold(call_id):
            call = await self._calls.find_by_id(call_id)
            if call is None:
                return None
            if not call.has_abusive_language and detect_abusive_language(
                call.messages, self._abuse_patterns,
            ):
                call.has_abusive_language = True
                await self._calls.save(call)
            return call

    async def record_decision(self, call_id: str, action: str, message: str) -> CallRecord | None:
        async with self._locks.hold(call_id):
            call = await self._calls.find_by_id(call_id)
            if call is None:
                return None
            call.processed_action = action
            call.processed_message = message
            call.processed_at = datetime.now(timezone.utc)
            await self._calls.save(call)
            return call

    def _transition(
        self, call: CallRecord, status: CallStatus, ended_reason: str | None,
    ) -> bool:
        current = CALL_STATUS_ORDER[call.status]
        target = CALL_STATUS_ORDER[status]

        if target < current:
            logger.info(
                "Call %s: ignoring out-of-order status %s (current %s)",
                call.id, status, call.status,
            )
            return False

        if target == current:
            # Late reason for an already-ended call fills the gap, never overwrites.
            if status == CallStatus.ended and ended_reason and not call.ended_reason:
                call.ended_reason = ended_reason
                return True
            return False

        call.status = status
        now = datetime.now(timezone.utc)
        if status in (CallStatus.in_progress, CallStatus.ended) and call.started_at is None:
            call.started_at = now
        if status == CallStatus.ended:
            call.ended_at = call.ended_at or now
            if ended_reason:
                call.ended_reason = ended_reason
        logger.info("Call %s: status -> %s", call.id, status)
        return True

    def _merge(self, call: CallRecord, messages: list[TranscriptMessage]) -> bool:
        if not messages:
            return False
        merged, added = merge_messages(call.messages, messages)
        if added < len(messages):
            logger.debug(
                "Call %s: dropped %d duplicate transcript turns",
                call.id, len(messages) - added,
            )
        if merged == call.messages:
            return False
        call.messages = merged
        if not call.has_abusive_language:
            call.has_abusive_language = detect_abusive_language(merged, self._abuse_patterns)
        return True

    @staticmethod
    def _apply_artifacts(
        call: CallRecord,
        transcript: str | None,
        recording_url: str | None,
        analysis: CallAnalysis | None,
    ) -> None:
        if transcript:
            call.transcript = transcript
        if recording_url:
            call.recording_url = recording_url
        if analysis is not None:
            call.analysis = analysis
