"""In-process webhook store.

Backs ``store_backend = "memory"`` (single-process deployments, local runs,
tests). Every mutating operation runs without awaiting in between its read
and write, so on a single event loop each one is atomic with respect to other
coroutines, matching the claim guarantees of the PostgreSQL store.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Tuple
from uuid import UUID

from webhook_service.domain.enums import DeliveryStatus, FailureKind
from webhook_service.domain.webhooks import (
    DeliveryBacklog,
    DeliveryClaim,
    DeliveryTransition,
    WebhookConfig,
    WebhookDelivery,
)
from webhook_service.repositories.webhooks import STALE_CLAIM_MESSAGE


@dataclass
class InMemoryStorage:
    configs: dict[UUID, WebhookConfig] = field(default_factory=dict)
    deliveries: dict[UUID, WebhookDelivery] = field(default_factory=dict)


class InMemoryConfigRepository:
    def __init__(self, storage: InMemoryStorage):
        self._storage = storage

    async def upsert(self, config: WebhookConfig) -> WebhookConfig:
        existing = self._storage.configs.get(config.id)
        if existing is not None:
            config = config.model_copy(update={"owner": existing.owner, "created_at": existing.created_at})
        self._storage.configs[config.id] = config.model_copy(deep=True)
        return config

    async def get(self, config_id: UUID) -> WebhookConfig | None:
        config = self._storage.configs.get(config_id)
        return config.model_copy(deep=True) if config else None

    async def list_active(self) -> List[WebhookConfig]:
        configs = [c for c in self._storage.configs.values() if c.is_active]
        return [c.model_copy(deep=True) for c in sorted(configs, key=lambda c: c.created_at)]

    async def list_by_owner(
        self, owner: str, *, limit: int = 50, offset: int = 0
    ) -> Tuple[List[WebhookConfig], int]:
        owned = sorted(
            (c for c in self._storage.configs.values() if c.owner == owner),
            key=lambda c: c.created_at,
            reverse=True,
        )
        return [c.model_copy(deep=True) for c in owned[offset : offset + limit]], len(owned)

    async def delete(self, config_id: UUID) -> bool:
        if self._storage.configs.pop(config_id, None) is None:
            return False
        for delivery_id in [d.id for d in self._storage.deliveries.values() if d.config_id == config_id]:
            del self._storage.deliveries[delivery_id]
        return True


class InMemoryDeliveryRepository:
    def __init__(self, storage: InMemoryStorage):
        self._storage = storage

    async def create(self, delivery: WebhookDelivery) -> WebhookDelivery:
        if delivery.config_id not in self._storage.configs:
            raise ValueError(f"unknown webhook config {delivery.config_id}")
        self._storage.deliveries[delivery.id] = delivery.model_copy()
        return delivery

    async def get(self, delivery_id: UUID) -> WebhookDelivery | None:
        delivery = self._storage.deliveries.get(delivery_id)
        return delivery.model_copy() if delivery else None

    def _is_due(self, delivery: WebhookDelivery, now: datetime) -> bool:
        config = self._storage.configs.get(delivery.config_id)
        if config is None or not config.is_active:
            return False
        if delivery.status is DeliveryStatus.PENDING:
            return True
        return (
            delivery.status is DeliveryStatus.RETRYING
            and delivery.next_retry_at is not None
            and delivery.next_retry_at <= now
        )

    async def claim_due(self, limit: int, *, now: datetime) -> List[DeliveryClaim]:
        due = [d for d in self._storage.deliveries.values() if self._is_due(d, now)]
        due.sort(key=lambda d: (d.next_retry_at or d.created_at, d.created_at))
        claims: List[DeliveryClaim] = []
        for delivery in due[:limit]:
            claimed = delivery.model_copy(
                update={
                    "status": DeliveryStatus.DELIVERING,
                    "claimed_at": now,
                    "next_retry_at": None,
                }
            )
            self._storage.deliveries[claimed.id] = claimed
            config = self._storage.configs[claimed.config_id]
            claims.append(DeliveryClaim(delivery=claimed.model_copy(), config=config.model_copy(deep=True)))
        return claims

    async def record_outcome(
        self, delivery_id: UUID, claimed_at: datetime, transition: DeliveryTransition
    ) -> bool:
        current = self._storage.deliveries.get(delivery_id)
        if (
            current is None
            or current.status is not DeliveryStatus.DELIVERING
            or current.claimed_at != claimed_at
            or transition.attempt_count < current.attempt_count
        ):
            return False
        self._storage.deliveries[delivery_id] = WebhookDelivery.model_validate(
            {
                **current.model_dump(),
                "status": transition.status,
                "attempt_count": transition.attempt_count,
                "last_attempt_at": transition.last_attempt_at,
                "next_retry_at": transition.next_retry_at,
                "completed_at": transition.completed_at,
                "response_status": transition.response_status,
                "response_body": transition.response_body,
                "error_message": transition.error_message,
                "failure_kind": transition.failure_kind,
                "claimed_at": None,
            }
        )
        return True

    async def reclaim_stale(self, lease_timeout: timedelta, *, now: datetime) -> int:
        cutoff = now - lease_timeout
        stale = [
            d
            for d in self._storage.deliveries.values()
            if d.status is DeliveryStatus.DELIVERING and d.claimed_at is not None and d.claimed_at < cutoff
        ]
        for delivery in stale:
            self._storage.deliveries[delivery.id] = delivery.model_copy(
                update={
                    "status": DeliveryStatus.RETRYING,
                    "claimed_at": None,
                    "next_retry_at": now,
                    "failure_kind": FailureKind.STALE_CLAIM_RECOVERED,
                    "error_message": STALE_CLAIM_MESSAGE,
                }
            )
        return len(stale)

    async def list_recent(self, config_id: UUID, *, limit: int = 10) -> List[WebhookDelivery]:
        owned = [d for d in self._storage.deliveries.values() if d.config_id == config_id]
        owned.sort(key=lambda d: d.created_at, reverse=True)
        return [d.model_copy() for d in owned[:limit]]

    async def count_failed(self, config_id: UUID) -> int:
        return sum(
            1
            for d in self._storage.deliveries.values()
            if d.config_id == config_id and d.status is DeliveryStatus.FAILED
        )

    async def backlog(self) -> DeliveryBacklog:
        counts = {status: 0 for status in DeliveryStatus}
        for delivery in self._storage.deliveries.values():
            counts[delivery.status] += 1
        return DeliveryBacklog(
            pending=counts[DeliveryStatus.PENDING],
            retrying=counts[DeliveryStatus.RETRYING],
            delivering=counts[DeliveryStatus.DELIVERING],
        )

    async def purge_completed(self, completed_before: datetime) -> int:
        expired = [
            d.id
            for d in self._storage.deliveries.values()
            if d.completed_at is not None and d.completed_at < completed_before
        ]
        for delivery_id in expired:
            del self._storage.deliveries[delivery_id]
        return len(expired)
