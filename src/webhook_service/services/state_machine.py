"""Delivery state machine: classify an attempt and compute the next state."""
from __future__ import annotations

import random
from datetime import datetime

from webhook_service.core.exceptions import InvalidStatusTransitionError
from webhook_service.domain.enums import DeliveryStatus, FailureKind
from webhook_service.domain.webhooks import AttemptOutcome, DeliveryTransition, WebhookDelivery
from webhook_service.services.retry_policy import RetryPolicy

BLOCKED_BY_POLICY = "blocked by safety policy"

DELIVERY_TRANSITIONS: dict[DeliveryStatus, set[DeliveryStatus]] = {
    DeliveryStatus.PENDING: {DeliveryStatus.DELIVERING},
    DeliveryStatus.RETRYING: {DeliveryStatus.DELIVERING},
    DeliveryStatus.DELIVERING: {
        DeliveryStatus.DELIVERED,
        DeliveryStatus.RETRYING,
        DeliveryStatus.FAILED,
    },
    DeliveryStatus.DELIVERED: set(),
    DeliveryStatus.FAILED: set(),
}

# Request timeout, too early, rate limited
RETRYABLE_CLIENT_STATUSES = frozenset({408, 425, 429})


def validate_delivery_transition(current: DeliveryStatus, new: DeliveryStatus) -> None:
    if new not in DELIVERY_TRANSITIONS.get(current, set()):
        raise InvalidStatusTransitionError(
            f"Invalid delivery status transition: {current.value} → {new.value}"
        )


def classify(outcome: AttemptOutcome) -> FailureKind | None:
    """Map an attempt outcome onto a failure category (``None`` means delivered)."""
    if outcome.blocked_reason is not None:
        return FailureKind.VALIDATION_REJECTED
    if outcome.permanent:
        return FailureKind.PERMANENT
    status = outcome.status_code
    if status is None:
        return FailureKind.TRANSIENT
    if 200 <= status < 300:
        return None
    if status >= 500 or status in RETRYABLE_CLIENT_STATUSES:
        return FailureKind.TRANSIENT
    return FailureKind.PERMANENT


def _describe(outcome: AttemptOutcome) -> str:
    if outcome.blocked_reason is not None:
        return f"{BLOCKED_BY_POLICY}: {outcome.blocked_reason}"
    if outcome.status_code is not None:
        return f"HTTP {outcome.status_code}"
    return outcome.error or "delivery failed"


def next_transition(
    delivery: WebhookDelivery,
    outcome: AttemptOutcome,
    *,
    policy: RetryPolicy,
    now: datetime,
    rng: random.Random | None = None,
) -> DeliveryTransition:
    """Transition for a claimed delivery after the dispatcher returned ``outcome``."""
    attempt = delivery.attempt_count + 1
    kind = classify(outcome)

    if kind is None:
        new_status = DeliveryStatus.DELIVERED
    elif kind is FailureKind.TRANSIENT and not policy.exhausted(attempt):
        new_status = DeliveryStatus.RETRYING
    else:
        new_status = DeliveryStatus.FAILED
        if kind is FailureKind.TRANSIENT:
            kind = FailureKind.ATTEMPTS_EXHAUSTED
    validate_delivery_transition(delivery.status, new_status)

    error = None
    if kind is not None:
        error = _describe(outcome)
        if kind is FailureKind.ATTEMPTS_EXHAUSTED:
            error = f"{error} (attempts exhausted after {attempt})"

    return DeliveryTransition(
        status=new_status,
        attempt_count=attempt,
        last_attempt_at=now,
        next_retry_at=now + policy.backoff(attempt, rng) if new_status is DeliveryStatus.RETRYING else None,
        completed_at=now if new_status.is_terminal else None,
        response_status=outcome.status_code,
        response_body=outcome.body,
        error_message=error,
        failure_kind=kind,
    )


def rejected_transition(delivery: WebhookDelivery, reason: str, *, now: datetime) -> DeliveryTransition:
    """Fail a delivery whose target no longer passes the safety policy.

    Nothing was sent, so the attempt count stays where it was.
    """
    validate_delivery_transition(delivery.status, DeliveryStatus.FAILED)
    return DeliveryTransition(
        status=DeliveryStatus.FAILED,
        attempt_count=delivery.attempt_count,
        last_attempt_at=delivery.last_attempt_at,
        next_retry_at=None,
        completed_at=now,
        response_status=delivery.response_status,
        response_body=delivery.response_body,
        error_message=f"{BLOCKED_BY_POLICY}: {reason}",
        failure_kind=FailureKind.VALIDATION_REJECTED,
    )
