"""Tests for end-reason classification (pure function, no I/O)."""

import pytest

from app.mappers.outcome import classify_ended_reason
from app.schemas.calls import OutcomeCategory


def test_assistant_ended_call_is_terminal_success():
    outcome = classify_ended_reason("assistant-ended-call")
    assert outcome.is_success is True
    assert outcome.can_retry is False
    assert outcome.category == OutcomeCategory.success
    assert outcome.title == "Call Completed"


def test_voicemail_is_success_but_retryable():
    outcome = classify_ended_reason("voicemail")
    assert outcome.is_success is True
    assert outcome.can_retry is True
    assert outcome.category == OutcomeCategory.voicemail
    assert outcome.retry_tag == "voicemail"


@pytest.mark.parametrize(
    "reason, tag",
    [
        ("customer-did-not-answer", "no-answer"),
        ("customer-busy", "busy"),
        ("customer-ended-call", "disconnected"),
        ("silence-timed-out", "disconnected"),
        ("exceeded-max-duration", "disconnected"),
        ("manually-canceled", "failed"),
    ],
)
def test_known_retryable_reasons(reason, tag):
    outcome = classify_ended_reason(reason)
    assert outcome.can_retry is True
    assert outcome.is_success is False
    assert outcome.category == OutcomeCategory.retryable
    assert outcome.retry_tag == tag


def test_technical_errors_are_retryable_failures():
    for reason in ("pipeline-error", "assistant-error", "twilio-failed-to-connect-call"):
        outcome = classify_ended_reason(reason)
        assert outcome.title == "Technical Error"
        assert outcome.can_retry is True
        assert outcome.retry_tag == "failed"


def test_unknown_reason_defaults_to_retryable():
    outcome = classify_ended_reason("some-future-provider-reason")
    assert outcome.can_retry is True
    assert outcome.is_success is False
    assert outcome.category == OutcomeCategory.retryable
    assert outcome.description == "some-future-provider-reason"


def test_missing_reason_defaults_to_retryable():
    outcome = classify_ended_reason(None)
    assert outcome.can_retry is True
    assert outcome.is_success is False
    assert outcome.title == "Call Ended"


def test_case_and_whitespace_insensitive():
    assert classify_ended_reason("  Customer-Busy ").retry_tag == "busy"


def test_configured_fatal_reason_is_not_retryable():
    outcome = classify_ended_reason("customer-busy", fatal_reasons=["Customer-Busy"])
    assert outcome.category == OutcomeCategory.fatal
    assert outcome.can_retry is False
    assert outcome.is_success is False


def test_fatal_category_empty_by_default():
    reasons = [
        "assistant-ended-call", "voicemail", "customer-did-not-answer",
        "customer-busy", "pipeline-error", "whatever",
    ]
    assert all(
        classify_ended_reason(r).category != OutcomeCategory.fatal for r in reasons
    )
