"""Store interfaces and shared asyncpg helpers for repositories."""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Iterable, Protocol
from uuid import UUID

import asyncpg  # type: ignore[import-untyped]

from webhook_service.core.exceptions import StoreUnavailableError
from webhook_service.domain.webhooks import (
    DeliveryBacklog,
    DeliveryClaim,
    DeliveryTransition,
    WebhookConfig,
    WebhookDelivery,
)

_UNAVAILABLE_ERRORS = (
    OSError,
    asyncio.TimeoutError,
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.InterfaceError,
    asyncpg.exceptions.CannotConnectNowError,
)


class WebhookConfigStore(Protocol):
    async def upsert(self, config: WebhookConfig) -> WebhookConfig: ...

    async def get(self, config_id: UUID) -> WebhookConfig | None: ...

    async def list_active(self) -> list[WebhookConfig]: ...

    async def list_by_owner(
        self, owner: str, *, limit: int = 50, offset: int = 0
    ) -> tuple[list[WebhookConfig], int]: ...

    async def delete(self, config_id: UUID) -> bool: ...


class WebhookDeliveryStore(Protocol):
    async def create(self, delivery: WebhookDelivery) -> WebhookDelivery: ...

    async def get(self, delivery_id: UUID) -> WebhookDelivery | None: ...

    async def claim_due(self, limit: int, *, now: datetime) -> list[DeliveryClaim]:
        """Flip due ``pending``/``retrying`` rows of active configs to ``delivering``.

        Each row is handed to exactly one caller, even across processes.
        """
        ...

    async def record_outcome(
        self, delivery_id: UUID, claimed_at: datetime, transition: DeliveryTransition
    ) -> bool:
        """Persist ``transition`` if the caller still holds the claim."""
        ...

    async def reclaim_stale(self, lease_timeout: timedelta, *, now: datetime) -> int: ...

    async def list_recent(self, config_id: UUID, *, limit: int = 10) -> list[WebhookDelivery]: ...

    async def count_failed(self, config_id: UUID) -> int: ...

    async def backlog(self) -> DeliveryBacklog: ...

    async def purge_completed(self, completed_before: datetime) -> int: ...


class BaseRepository:
    """Thin wrapper over asyncpg pool operations."""

    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
        try:
            async with self._pool.acquire() as conn:
                yield conn
        except _UNAVAILABLE_ERRORS as exc:
            raise StoreUnavailableError(f"database unavailable: {exc}") from exc

    async def _fetchrow(self, query: str, *args: Any) -> asyncpg.Record | None:
        async with self._connection() as conn:
            return await conn.fetchrow(query, *args)

    async def _fetch(self, query: str, *args: Any) -> Iterable[asyncpg.Record]:
        async with self._connection() as conn:
            return await conn.fetch(query, *args)

    async def _fetchval(self, query: str, *args: Any) -> Any:
        async with self._connection() as conn:
            return await conn.fetchval(query, *args)

    async def _execute(self, query: str, *args: Any) -> str:
        async with self._connection() as conn:
            return await conn.execute(query, *args)

    @staticmethod
    def _rowcount(status: str) -> int:
        # asyncpg returns command tags such as "UPDATE 3" / "DELETE 0"
        return int(status.split()[-1])
