"""Repository layer exports."""
from __future__ import annotations

from dataclasses import dataclass

from asyncpg import Pool  # type: ignore[import-untyped]

from webhook_service.repositories.base import WebhookConfigStore, WebhookDeliveryStore
from webhook_service.repositories.memory import (
    InMemoryConfigRepository,
    InMemoryDeliveryRepository,
    InMemoryStorage,
)
from webhook_service.repositories.webhooks import WebhookConfigRepository, WebhookDeliveryRepository


@dataclass(frozen=True)
class WebhookStores:
    configs: WebhookConfigStore
    deliveries: WebhookDeliveryStore


def postgres_stores(pool: Pool) -> WebhookStores:
    return WebhookStores(
        configs=WebhookConfigRepository(pool),
        deliveries=WebhookDeliveryRepository(pool),
    )


def memory_stores(storage: InMemoryStorage | None = None) -> WebhookStores:
    storage = storage or InMemoryStorage()
    return WebhookStores(
        configs=InMemoryConfigRepository(storage),
        deliveries=InMemoryDeliveryRepository(storage),
    )


__all__ = [
    "InMemoryConfigRepository",
    "InMemoryDeliveryRepository",
    "InMemoryStorage",
    "WebhookConfigRepository",
    "WebhookConfigStore",
    "WebhookDeliveryRepository",
    "WebhookDeliveryStore",
    "WebhookStores",
    "memory_stores",
    "postgres_stores",
]
