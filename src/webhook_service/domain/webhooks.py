"""Webhook domain primitives."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

from webhook_service.domain.enums import DeliveryStatus, FailureKind, WebhookKind


class WebhookConfig(BaseModel):
    id: UUID
    name: str
    url: str
    kind: WebhookKind = WebhookKind.GENERIC
    events: list[str] = Field(default_factory=list)
    headers: dict[str, str] = Field(default_factory=dict)
    secret: str | None = None
    is_active: bool = True
    owner: str
    created_at: datetime
    updated_at: datetime


class WebhookDelivery(BaseModel):
    id: UUID
    config_id: UUID
    event_type: str
    payload: str
    status: DeliveryStatus = DeliveryStatus.PENDING
    attempt_count: int = 0
    last_attempt_at: datetime | None = None
    next_retry_at: datetime | None = None
    claimed_at: datetime | None = None
    response_status: int | None = None
    response_body: str | None = None
    error_message: str | None = None
    failure_kind: FailureKind | None = None
    created_at: datetime
    completed_at: datetime | None = None

    @model_validator(mode="after")
    def check_timestamps(self) -> "WebhookDelivery":
        if (self.completed_at is not None) != self.status.is_terminal:
            raise ValueError(f"completed_at must be set iff status is terminal (status={self.status.value})")
        if (self.next_retry_at is not None) != (self.status is DeliveryStatus.RETRYING):
            raise ValueError(f"next_retry_at must be set iff status is retrying (status={self.status.value})")
        return self


class DeliveryClaim(BaseModel):
    """A delivery exclusively owned by one worker, together with its config."""

    delivery: WebhookDelivery
    config: WebhookConfig


@dataclass(frozen=True)
class AttemptOutcome:
    """Result of a single HTTP attempt. Exactly one of the shapes applies:

    * ``status_code`` set: the receiver answered (``body`` holds a truncated copy);
    * ``error`` set: the request never produced a response (network, timeout);
    * ``blocked_reason`` set: the target was refused by the safety policy.

    ``permanent`` marks an ``error`` that no retry can fix (the request
    could not even be built).
    """

    status_code: int | None = None
    body: str | None = None
    error: str | None = None
    blocked_reason: str | None = None
    permanent: bool = False


@dataclass(frozen=True)
class DeliveryTransition:
    """Fields written back to the store once an attempt is classified."""

    status: DeliveryStatus
    attempt_count: int
    last_attempt_at: datetime | None
    next_retry_at: datetime | None
    completed_at: datetime | None
    response_status: int | None = None
    response_body: str | None = None
    error_message: str | None = None
    failure_kind: FailureKind | None = None


@dataclass(frozen=True)
class DeliveryBacklog:
    pending: int
    retrying: int
    delivering: int

    @property
    def total(self) -> int:
        return self.pending + self.retrying + self.delivering
