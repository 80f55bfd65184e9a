"""Pure classification of provider end reasons.

The provider vocabulary is open: any reason not listed here maps to a
retryable failure so new provider values never stall the pipeline.
"""

from collections.abc import Iterable

from app.schemas.calls import OutcomeCategory, OutcomeClassification

VOICEMAIL_REASON = "voicemail"
MANUALLY_CANCELED_REASON = "manually-canceled"

TECHNICAL_ERROR_REASONS = {
    "assistant-error",
    "assistant-did-not-give-response",
    "assistant-request-failed",
    "pipeline-error",
    "unknown-error",
}

# reason -> (title, description, category, retry_tag)
_KNOWN_REASONS: dict[str, tuple[str, str, OutcomeCategory, str]] = {
    "assistant-ended-call": (
        "Call Completed",
        "The AI assistant successfully completed the call.",
        OutcomeCategory.success,
        "completed",
    ),
    VOICEMAIL_REASON: (
        "Voicemail Left",
        "A voicemail message was left for the patient.",
        OutcomeCategory.voicemail,
        "voicemail",
    ),
    "customer-ended-call": (
        "Patient Ended Call",
        "The patient ended the call.",
        OutcomeCategory.retryable,
        "disconnected",
    ),
    "customer-did-not-answer": (
        "No Answer",
        "The patient did not answer the call.",
        OutcomeCategory.retryable,
        "no-answer",
    ),
    "customer-busy": (
        "Line Busy",
        "The patient's line was busy.",
        OutcomeCategory.retryable,
        "busy",
    ),
    MANUALLY_CANCELED_REASON: (
        "Call Cancelled",
        "The call was cancelled.",
        OutcomeCategory.retryable,
        "failed",
    ),
    "silence-timed-out": (
        "Silence Timeout",
        "The call ended due to silence timeout.",
        OutcomeCategory.retryable,
        "disconnected",
    ),
    "exceeded-max-duration": (
        "Max Duration Exceeded",
        "The call exceeded the maximum duration.",
        OutcomeCategory.retryable,
        "disconnected",
    ),
    "phone-call-provider-closed-websocket": (
        "Call Disconnected",
        "The phone provider closed the connection.",
        OutcomeCategory.retryable,
        "disconnected",
    ),
}


def classify_ended_reason(
    reason: str | None,
    fatal_reasons: Iterable[str] = (),
) -> OutcomeClassification:
    """Map a provider end reason to an outcome. Total over all inputs."""
    key = (reason or "").strip().lower()

    if key and key in {r.strip().lower() for r in fatal_reasons}:
        return OutcomeClassification(
            title="Call Failed",
            description=f"The call ended with a non-retryable reason: {reason}.",
            can_retry=False,
            is_success=False,
            category=OutcomeCategory.fatal,
            retry_tag="failed",
        )

    if key in _KNOWN_REASONS:
        title, description, category, tag = _KNOWN_REASONS[key]
        return OutcomeClassification(
            title=title,
            description=description,
            can_retry=category != OutcomeCategory.success,
            is_success=category in (OutcomeCategory.success, OutcomeCategory.voicemail),
            category=category,
            retry_tag=tag,
        )

    if key in TECHNICAL_ERROR_REASONS or "error" in key or "failed" in key:
        return OutcomeClassification(
            title="Technical Error",
            description="A technical error occurred during the call.",
            can_retry=True,
            is_success=False,
            category=OutcomeCategory.retryable,
            retry_tag="failed",
        )

    return OutcomeClassification(
        title="Call Ended",
        description=reason or "The call has ended.",
        can_retry=True,
        is_success=False,
        category=OutcomeCategory.retryable,
        retry_tag=_fallback_tag(key),
    )


def _fallback_tag(key: str) -> str:
    if "no-answer" in key or "did-not-answer" in key:
        return "no-answer"
    if "busy" in key:
        return "busy"
    if "timed-out" in key or "disconnect" in key or "hangup" in key:
        return "disconnected"
    return "failed"
