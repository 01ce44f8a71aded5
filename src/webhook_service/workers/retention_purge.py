"""Worker: delete old delivered/failed deliveries."""
from __future__ import annotations

from datetime import datetime, timedelta

from webhook_service.repositories.base import WebhookDeliveryStore
from webhook_service.worker import TaskFn


def retention_purge(store: WebhookDeliveryStore, retention: timedelta) -> TaskFn:
    async def purge(now: datetime) -> str | None:
        deleted = await store.purge_completed(now - retention)
        return f"deleted={deleted}" if deleted else None

    return purge
