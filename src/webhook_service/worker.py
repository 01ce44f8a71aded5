"""Periodic housekeeping worker for the webhook service.

Usage::

    worker = BackgroundWorker(
        interval_seconds=settings.worker_interval_seconds,
        tasks=[WorkerTask(name="stale_claim_reaper", fn=reap_stale_claims)],
    )

    app.on_startup.append(worker.start)
    app.on_cleanup.append(worker.stop)
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Sequence

import structlog
from aiohttp import web

logger = structlog.get_logger(__name__)

# A task receives the sweep time (UTC) and may return a short summary to log.
TaskFn = Callable[[datetime], Awaitable[str | None]]


@dataclass
class WorkerTask:
    """A named periodic task executed by :class:`BackgroundWorker`."""

    name: str
    fn: TaskFn


_WORKER_TASK_KEY = "__background_worker_task__"


@dataclass
class BackgroundWorker:
    """Runs its tasks every ``interval_seconds``; one failing task does not stop the others."""

    interval_seconds: float = 60.0
    tasks: Sequence[WorkerTask] = field(default_factory=list)

    async def start(self, app: web.Application) -> None:
        """Create the worker asyncio task. Register with ``app.on_startup``."""
        app[_WORKER_TASK_KEY] = asyncio.create_task(self._loop())

    async def stop(self, app: web.Application) -> None:
        """Cancel the worker task. Register with ``app.on_cleanup``."""
        task = app.get(_WORKER_TASK_KEY)
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def run_once(self, now: datetime | None = None) -> dict[str, str | None]:
        """Run every task once. Returns task name -> summary (``None`` when idle or failed)."""
        now = now or datetime.now(timezone.utc)
        summaries: dict[str, str | None] = {}
        for task in self.tasks:
            try:
                summary = await task.fn(now)
            except Exception:
                logger.exception("background task failed", task=task.name)
                summary = None
            else:
                if summary:
                    logger.info("background task completed", task=task.name, summary=summary)
            summaries[task.name] = summary
        return summaries

    async def _loop(self) -> None:
        logger.info(
            "background worker started",
            interval_seconds=self.interval_seconds,
            tasks=[t.name for t in self.tasks],
        )
        while True:
            try:
                await asyncio.sleep(self.interval_seconds)
                await self.run_once()
            except asyncio.CancelledError:
                logger.info("background worker stopped")
                raise
