"""Housekeeping workers for the delivery outbox.

Each module builds one task function compatible with
:class:`webhook_service.worker.WorkerTask`; :func:`build_worker` bundles them.
"""
from __future__ import annotations

from datetime import timedelta

from webhook_service.repositories.base import WebhookDeliveryStore
from webhook_service.worker import BackgroundWorker, WorkerTask
from webhook_service.workers.retention_purge import retention_purge
from webhook_service.workers.stale_claim_reaper import stale_claim_reaper


def build_worker(store: WebhookDeliveryStore, settings) -> BackgroundWorker:
    return BackgroundWorker(
        interval_seconds=settings.worker_interval_seconds,
        tasks=[
            WorkerTask(
                name="stale_claim_reaper",
                fn=stale_claim_reaper(
                    store, timedelta(seconds=settings.webhook_lease_timeout_seconds)
                ),
            ),
            WorkerTask(
                name="delivery_retention",
                fn=retention_purge(store, timedelta(days=settings.webhook_retention_days)),
            ),
        ],
    )


__all__ = [
    "build_worker",
    "retention_purge",
    "stale_claim_reaper",
]
