"""Worker: return deliveries stuck in ``delivering`` to the retry queue."""
from __future__ import annotations

from datetime import datetime, timedelta

from webhook_service.repositories.base import WebhookDeliveryStore
from webhook_service.worker import TaskFn


def stale_claim_reaper(store: WebhookDeliveryStore, lease_timeout: timedelta) -> TaskFn:
    """Build a task reclaiming claims older than ``lease_timeout`` (crashed workers)."""

    async def reap(now: datetime) -> str | None:
        reclaimed = await store.reclaim_stale(lease_timeout, now=now)
        return f"reclaimed={reclaimed}" if reclaimed else None

    return reap
