from __future__ import annotations

import random
from datetime import timedelta

import pytest

from webhook_service.core.exceptions import InvalidStatusTransitionError
from webhook_service.domain.enums import DeliveryStatus, FailureKind
from webhook_service.domain.webhooks import AttemptOutcome
from webhook_service.services.retry_policy import RetryPolicy
from webhook_service.services.state_machine import (
    classify,
    next_transition,
    rejected_transition,
    validate_delivery_transition,
)

from tests.utils import NOW, make_config, make_delivery

POLICY = RetryPolicy(max_attempts=3, base_seconds=10, cap_seconds=100, jitter=0)


def _claimed(attempt_count: int = 0):
    return make_delivery(
        make_config(),
        status=DeliveryStatus.DELIVERING,
        attempt_count=attempt_count,
        claimed_at=NOW,
    )


@pytest.mark.parametrize(
    "outcome, expected",
    [
        (AttemptOutcome(status_code=200), None),
        (AttemptOutcome(status_code=204), None),
        (AttemptOutcome(status_code=500), FailureKind.TRANSIENT),
        (AttemptOutcome(status_code=503), FailureKind.TRANSIENT),
        (AttemptOutcome(status_code=429), FailureKind.TRANSIENT),
        (AttemptOutcome(status_code=408), FailureKind.TRANSIENT),
        (AttemptOutcome(error="timeout after 10s"), FailureKind.TRANSIENT),
        (AttemptOutcome(status_code=400), FailureKind.PERMANENT),
        (AttemptOutcome(status_code=401), FailureKind.PERMANENT),
        (AttemptOutcome(status_code=404), FailureKind.PERMANENT),
        (AttemptOutcome(status_code=410), FailureKind.PERMANENT),
        (AttemptOutcome(status_code=302), FailureKind.PERMANENT),
        (AttemptOutcome(error="request cannot be encoded", permanent=True), FailureKind.PERMANENT),
        (AttemptOutcome(blocked_reason="resolved to 10.0.0.1"), FailureKind.VALIDATION_REJECTED),
    ],
)
def test_classify(outcome, expected):
    assert classify(outcome) is expected


def test_success_is_terminal():
    transition = next_transition(_claimed(), AttemptOutcome(status_code=200, body="ok"), policy=POLICY, now=NOW)
    assert transition.status is DeliveryStatus.DELIVERED
    assert transition.attempt_count == 1
    assert transition.completed_at == NOW
    assert transition.next_retry_at is None
    assert transition.response_status == 200
    assert transition.response_body == "ok"
    assert transition.error_message is None
    assert transition.failure_kind is None


def test_transient_failure_schedules_retry():
    transition = next_transition(_claimed(), AttemptOutcome(status_code=503), policy=POLICY, now=NOW)
    assert transition.status is DeliveryStatus.RETRYING
    assert transition.attempt_count == 1
    assert transition.next_retry_at == NOW + timedelta(seconds=20)
    assert transition.completed_at is None
    assert transition.error_message == "HTTP 503"
    assert transition.failure_kind is FailureKind.TRANSIENT


def test_network_error_keeps_message():
    transition = next_transition(
        _claimed(1), AttemptOutcome(error="ClientConnectorError: refused"), policy=POLICY, now=NOW
    )
    assert transition.status is DeliveryStatus.RETRYING
    assert transition.attempt_count == 2
    assert transition.response_status is None
    assert transition.error_message == "ClientConnectorError: refused"


def test_permanent_failure_is_not_retried():
    transition = next_transition(_claimed(), AttemptOutcome(status_code=404), policy=POLICY, now=NOW)
    assert transition.status is DeliveryStatus.FAILED
    assert transition.completed_at == NOW
    assert transition.next_retry_at is None
    assert transition.failure_kind is FailureKind.PERMANENT


def test_last_attempt_exhausts():
    transition = next_transition(_claimed(2), AttemptOutcome(status_code=500), policy=POLICY, now=NOW)
    assert transition.status is DeliveryStatus.FAILED
    assert transition.attempt_count == 3
    assert transition.failure_kind is FailureKind.ATTEMPTS_EXHAUSTED
    assert "attempts exhausted" in transition.error_message


def test_blocked_at_connect_time_fails_without_retry():
    outcome = AttemptOutcome(blocked_reason="hooks.example.com resolved to blocked address 10.0.0.7")
    transition = next_transition(_claimed(), outcome, policy=POLICY, now=NOW)
    assert transition.status is DeliveryStatus.FAILED
    assert transition.failure_kind is FailureKind.VALIDATION_REJECTED
    assert transition.error_message.startswith("blocked by safety policy")


def test_rejected_transition_keeps_attempt_count():
    delivery = _claimed(2)
    transition = rejected_transition(delivery, "Private/internal addresses are not allowed: 10.0.0.1", now=NOW)
    assert transition.status is DeliveryStatus.FAILED
    assert transition.attempt_count == 2
    assert transition.completed_at == NOW
    assert transition.failure_kind is FailureKind.VALIDATION_REJECTED
    assert transition.error_message == (
        "blocked by safety policy: Private/internal addresses are not allowed: 10.0.0.1"
    )


def test_jittered_retry_is_within_bounds():
    policy = RetryPolicy(max_attempts=5, base_seconds=10, cap_seconds=1000, jitter=0.2)
    transition = next_transition(
        _claimed(), AttemptOutcome(status_code=500), policy=policy, now=NOW, rng=random.Random(1)
    )
    delay = (transition.next_retry_at - NOW).total_seconds()
    assert 16 <= delay <= 24


def test_transition_requires_claimed_delivery():
    pending = make_delivery(make_config())
    with pytest.raises(InvalidStatusTransitionError):
        next_transition(pending, AttemptOutcome(status_code=200), policy=POLICY, now=NOW)


@pytest.mark.parametrize(
    "current, new",
    [
        (DeliveryStatus.DELIVERED, DeliveryStatus.DELIVERING),
        (DeliveryStatus.FAILED, DeliveryStatus.RETRYING),
        (DeliveryStatus.PENDING, DeliveryStatus.DELIVERED),
    ],
)
def test_invalid_transitions(current, new):
    with pytest.raises(InvalidStatusTransitionError):
        validate_delivery_transition(current, new)
