"""Webhook domain enums."""
from __future__ import annotations

from enum import Enum


class DeliveryStatus(str, Enum):
    """Delivery lifecycle states."""

    PENDING = "pending"
    DELIVERING = "delivering"
    DELIVERED = "delivered"
    RETRYING = "retrying"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (DeliveryStatus.DELIVERED, DeliveryStatus.FAILED)


class WebhookKind(str, Enum):
    """Payload shape sent to the receiver."""

    GENERIC = "generic"
    SLACK = "slack"
    EMAIL = "email"  # sent with the generic envelope


class WebhookEvent(str, Enum):
    """Domain events the application emits."""

    RUN_COMPLETED = "RUN_COMPLETED"
    RUN_FAILED = "RUN_FAILED"
    COVERAGE_THRESHOLD_BREACH = "COVERAGE_THRESHOLD_BREACH"
    PACKAGE_COMPLETED = "PACKAGE_COMPLETED"
    PACKAGE_FAILED = "PACKAGE_FAILED"
    WEBHOOK_TEST = "WEBHOOK_TEST"


class FailureKind(str, Enum):
    """Why an attempt did not end in ``DELIVERED``."""

    VALIDATION_REJECTED = "validation_rejected"
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    ATTEMPTS_EXHAUSTED = "attempts_exhausted"
    STALE_CLAIM_RECOVERED = "stale_claim_recovered"
