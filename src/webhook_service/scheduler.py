"""Background delivery scheduler (claims due work from the outbox and drives it)."""
from __future__ import annotations

import asyncio
import random
from datetime import datetime, timezone
from typing import Callable, Protocol

import structlog
from aiohttp import web

from webhook_service.core.exceptions import StoreUnavailableError
from webhook_service.domain.webhooks import (
    AttemptOutcome,
    DeliveryClaim,
    DeliveryTransition,
    WebhookConfig,
    WebhookDelivery,
)
from webhook_service.repositories.base import WebhookDeliveryStore
from webhook_service.security.url_validator import UrlValidator
from webhook_service.services.retry_policy import RetryPolicy
from webhook_service.services.state_machine import next_transition, rejected_transition

logger = structlog.get_logger(__name__)

_SCHEDULER_TASK_KEY = "__webhook_scheduler_task__"

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AttemptRunner(Protocol):
    async def attempt(self, delivery: WebhookDelivery, config: WebhookConfig) -> AttemptOutcome: ...


class DeliveryScheduler:
    """Sole driver of delivery state transitions.

    Each cycle claims up to ``batch_size`` due deliveries, attempts them in
    parallel (at most ``concurrency`` at a time), joins them and persists
    every transition before claiming again. Several schedulers may run
    against the same store; the store's atomic claim keeps them apart.
    """

    def __init__(
        self,
        store: WebhookDeliveryStore,
        dispatcher: AttemptRunner,
        validator: UrlValidator,
        *,
        policy: RetryPolicy | None = None,
        batch_size: int = 50,
        concurrency: int = 10,
        poll_interval_seconds: float = 1.0,
        clock: Clock = utcnow,
        rng: random.Random | None = None,
    ):
        self._store = store
        self._dispatcher = dispatcher
        self._validator = validator
        self._policy = policy or RetryPolicy()
        self._batch_size = batch_size
        self._semaphore = asyncio.Semaphore(concurrency)
        self._poll_interval = poll_interval_seconds
        self._clock = clock
        self._rng = rng
        self._consecutive_store_failures = 0

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    async def run_once(self) -> int:
        """Claim and process one batch. Returns the number of claimed deliveries."""
        claims = await self._store.claim_due(self._batch_size, now=self._clock())
        if not claims:
            return 0
        results = await asyncio.gather(*(self._guarded(c) for c in claims), return_exceptions=True)
        for claim, result in zip(claims, results):
            if isinstance(result, StoreUnavailableError):
                raise result
            if isinstance(result, BaseException):
                logger.error(
                    "webhook delivery processing crashed",
                    delivery_id=str(claim.delivery.id),
                    error=repr(result),
                )
        return len(claims)

    async def _guarded(self, claim: DeliveryClaim) -> DeliveryTransition:
        async with self._semaphore:
            return await self.process(claim)

    async def process(self, claim: DeliveryClaim) -> DeliveryTransition:
        """Validate, attempt and record a single claimed delivery."""
        delivery, config = claim.delivery, claim.config
        assert delivery.claimed_at is not None

        check = self._validator.validate(config.url)
        if not check.ok:
            transition = rejected_transition(delivery, check.reason or "rejected", now=self._clock())
            logger.warning(
                "webhook target rejected by safety policy",
                delivery_id=str(delivery.id),
                config_id=str(config.id),
                reason=check.reason,
            )
        else:
            outcome = await self._dispatcher.attempt(delivery, config)
            transition = next_transition(
                delivery, outcome, policy=self._policy, now=self._clock(), rng=self._rng
            )

        recorded = await self._store.record_outcome(delivery.id, delivery.claimed_at, transition)
        if not recorded:
            logger.warning(
                "webhook delivery claim lost before outcome was recorded",
                delivery_id=str(delivery.id),
                status=transition.status.value,
            )
        elif transition.status.is_terminal:
            logger.info(
                "webhook delivery completed",
                delivery_id=str(delivery.id),
                config_id=str(config.id),
                status=transition.status.value,
                attempts=transition.attempt_count,
                failure_kind=transition.failure_kind.value if transition.failure_kind else None,
            )
        else:
            logger.info(
                "webhook delivery scheduled for retry",
                delivery_id=str(delivery.id),
                attempts=transition.attempt_count,
                next_retry_at=transition.next_retry_at.isoformat() if transition.next_retry_at else None,
            )
        return transition

    async def run_forever(self) -> None:
        logger.info(
            "webhook scheduler started",
            batch_size=self._batch_size,
            poll_interval_seconds=self._poll_interval,
            max_attempts=self._policy.max_attempts,
        )
        while True:
            try:
                claimed = await self.run_once()
                self._consecutive_store_failures = 0
            except asyncio.CancelledError:
                logger.info("webhook scheduler stopped")
                raise
            except StoreUnavailableError:
                self._consecutive_store_failures += 1
                logger.exception(
                    "webhook store unavailable",
                    consecutive_failures=self._consecutive_store_failures,
                )
                await asyncio.sleep(self._poll_interval)
                continue
            except Exception:
                logger.exception("webhook scheduler cycle failed")
                await asyncio.sleep(self._poll_interval)
                continue
            if claimed < self._batch_size:
                await asyncio.sleep(self._poll_interval)

    async def start(self, app: web.Application) -> None:
        """Create the scheduler asyncio task. Register with ``app.on_startup``."""
        app[_SCHEDULER_TASK_KEY] = asyncio.create_task(self.run_forever())

    async def stop(self, app: web.Application) -> None:
        """Cancel the scheduler task. Register with ``app.on_cleanup``."""
        task = app.get(_SCHEDULER_TASK_KEY)
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
