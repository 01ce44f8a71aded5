"""PostgreSQL webhook repositories (configs + deliveries outbox)."""
from __future__ import annotations

import json
from datetime import datetime, timedelta
from typing import Any, List, Tuple
from uuid import UUID

from asyncpg import Pool, Record  # type: ignore[import-untyped]

from webhook_service.domain.enums import DeliveryStatus
from webhook_service.domain.webhooks import (
    DeliveryBacklog,
    DeliveryClaim,
    DeliveryTransition,
    WebhookConfig,
    WebhookDelivery,
)
from webhook_service.repositories.base import BaseRepository

STALE_CLAIM_MESSAGE = "claim lease expired; reclaimed for retry"


class WebhookConfigRepository(BaseRepository):
    def __init__(self, pool: Pool):
        super().__init__(pool)

    @staticmethod
    def _to_model(record: Record) -> WebhookConfig:
        payload = dict(record)
        headers = payload.get("headers")
        if isinstance(headers, str):
            payload["headers"] = json.loads(headers)
        payload["events"] = list(payload.get("events") or [])
        return WebhookConfig.model_validate(payload)

    async def upsert(self, config: WebhookConfig) -> WebhookConfig:
        record = await self._fetchrow(
            """
            INSERT INTO webhook_configs (
                id, name, url, kind, events, headers, secret, is_active, owner, created_at, updated_at
            )
            VALUES ($1, $2, $3, $4, $5::text[], $6::jsonb, $7, $8, $9, $10, $11)
            ON CONFLICT (id) DO UPDATE
            SET name = EXCLUDED.name,
                url = EXCLUDED.url,
                kind = EXCLUDED.kind,
                events = EXCLUDED.events,
                headers = EXCLUDED.headers,
                secret = EXCLUDED.secret,
                is_active = EXCLUDED.is_active,
                updated_at = EXCLUDED.updated_at
            RETURNING *
            """,
            config.id,
            config.name,
            config.url,
            config.kind.value,
            config.events,
            json.dumps(config.headers),
            config.secret,
            config.is_active,
            config.owner,
            config.created_at,
            config.updated_at,
        )
        assert record is not None
        return self._to_model(record)

    async def get(self, config_id: UUID) -> WebhookConfig | None:
        record = await self._fetchrow("SELECT * FROM webhook_configs WHERE id = $1", config_id)
        return self._to_model(record) if record else None

    async def list_active(self) -> List[WebhookConfig]:
        records = await self._fetch(
            "SELECT * FROM webhook_configs WHERE is_active = true ORDER BY created_at ASC"
        )
        return [self._to_model(r) for r in records]

    async def list_by_owner(
        self, owner: str, *, limit: int = 50, offset: int = 0
    ) -> Tuple[List[WebhookConfig], int]:
        records = await self._fetch(
            """
            SELECT *,
                   COUNT(*) OVER() AS total_count
            FROM webhook_configs
            WHERE owner = $1
            ORDER BY created_at DESC
            LIMIT $2 OFFSET $3
            """,
            owner,
            limit,
            offset,
        )
        items: List[WebhookConfig] = []
        total: int | None = None
        for rec in records:
            rec_dict = dict(rec)
            total_value = rec_dict.pop("total_count", None)
            if total_value is not None:
                total = int(total_value)
            items.append(self._to_model(rec_dict))
        if total is None:
            total = int(
                await self._fetchval("SELECT COUNT(*) FROM webhook_configs WHERE owner = $1", owner)
            )
        return items, total

    async def delete(self, config_id: UUID) -> bool:
        record = await self._fetchrow(
            "DELETE FROM webhook_configs WHERE id = $1 RETURNING id", config_id
        )
        return record is not None


class WebhookDeliveryRepository(BaseRepository):
    def __init__(self, pool: Pool):
        super().__init__(pool)

    @staticmethod
    def _to_model(record: Record | dict[str, Any]) -> WebhookDelivery:
        return WebhookDelivery.model_validate(dict(record))

    async def create(self, delivery: WebhookDelivery) -> WebhookDelivery:
        record = await self._fetchrow(
            """
            INSERT INTO webhook_deliveries (
                id, config_id, event_type, payload, status, attempt_count, created_at
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            RETURNING *
            """,
            delivery.id,
            delivery.config_id,
            delivery.event_type,
            delivery.payload,
            delivery.status.value,
            delivery.attempt_count,
            delivery.created_at,
        )
        assert record is not None
        return self._to_model(record)

    async def get(self, delivery_id: UUID) -> WebhookDelivery | None:
        record = await self._fetchrow("SELECT * FROM webhook_deliveries WHERE id = $1", delivery_id)
        return self._to_model(record) if record else None

    async def claim_due(self, limit: int, *, now: datetime) -> List[DeliveryClaim]:
        """
        Atomically claim due deliveries for processing.

        Row-level locking (FOR UPDATE SKIP LOCKED) keeps concurrent schedulers
        from claiming the same row; the UPDATE makes the claim visible to all.

        Side-effects:
          - status -> delivering
          - claimed_at -> now (doubles as the lease token)
          - next_retry_at -> NULL
        """
        async with self._connection() as conn:
            async with conn.transaction():
                records = await conn.fetch(
                    """
                    WITH cte AS (
                        SELECT d.id
                        FROM webhook_deliveries d
                        JOIN webhook_configs c ON c.id = d.config_id
                        WHERE c.is_active = true
                          AND (
                              d.status = 'pending'
                              OR (d.status = 'retrying' AND d.next_retry_at <= $2)
                          )
                        ORDER BY COALESCE(d.next_retry_at, d.created_at) ASC, d.created_at ASC
                        LIMIT $1
                        FOR UPDATE OF d SKIP LOCKED
                    )
                    UPDATE webhook_deliveries d
                    SET status = 'delivering',
                        claimed_at = $2,
                        next_retry_at = NULL
                    FROM cte
                    WHERE d.id = cte.id
                    RETURNING d.*
                    """,
                    limit,
                    now,
                )
                if not records:
                    return []
                config_records = await conn.fetch(
                    "SELECT * FROM webhook_configs WHERE id = ANY($1::uuid[])",
                    list({r["config_id"] for r in records}),
                )
        configs = {r["id"]: WebhookConfigRepository._to_model(r) for r in config_records}
        claims = [
            DeliveryClaim(delivery=self._to_model(r), config=configs[r["config_id"]]) for r in records
        ]
        claims.sort(key=lambda c: c.delivery.created_at)
        return claims

    async def record_outcome(
        self, delivery_id: UUID, claimed_at: datetime, transition: DeliveryTransition
    ) -> bool:
        record = await self._fetchrow(
            """
            UPDATE webhook_deliveries
            SET status = $3,
                attempt_count = $4,
                last_attempt_at = $5,
                next_retry_at = $6,
                completed_at = $7,
                response_status = $8,
                response_body = $9,
                error_message = $10,
                failure_kind = $11,
                claimed_at = NULL
            WHERE id = $1
              AND status = 'delivering'
              AND claimed_at = $2
              AND attempt_count <= $4
            RETURNING id
            """,
            delivery_id,
            claimed_at,
            transition.status.value,
            transition.attempt_count,
            transition.last_attempt_at,
            transition.next_retry_at,
            transition.completed_at,
            transition.response_status,
            transition.response_body,
            transition.error_message,
            transition.failure_kind.value if transition.failure_kind else None,
        )
        return record is not None

    async def reclaim_stale(self, lease_timeout: timedelta, *, now: datetime) -> int:
        """Release deliveries stuck in ``delivering`` (e.g. after a crash).

        They move to ``retrying`` due immediately, so the next claim picks them up.
        Returns the number of reclaimed rows.
        """
        result = await self._execute(
            """
            UPDATE webhook_deliveries
            SET status = 'retrying',
                claimed_at = NULL,
                next_retry_at = $2,
                failure_kind = 'stale_claim_recovered',
                error_message = $3
            WHERE status = 'delivering'
              AND claimed_at < $1
            """,
            now - lease_timeout,
            now,
            STALE_CLAIM_MESSAGE,
        )
        return self._rowcount(result)

    async def list_recent(self, config_id: UUID, *, limit: int = 10) -> List[WebhookDelivery]:
        records = await self._fetch(
            """
            SELECT *
            FROM webhook_deliveries
            WHERE config_id = $1
            ORDER BY created_at DESC
            LIMIT $2
            """,
            config_id,
            limit,
        )
        return [self._to_model(r) for r in records]

    async def count_failed(self, config_id: UUID) -> int:
        value = await self._fetchval(
            "SELECT COUNT(*) FROM webhook_deliveries WHERE config_id = $1 AND status = 'failed'",
            config_id,
        )
        return int(value or 0)

    async def backlog(self) -> DeliveryBacklog:
        records = await self._fetch(
            """
            SELECT status, COUNT(*) AS total
            FROM webhook_deliveries
            WHERE status IN ('pending', 'retrying', 'delivering')
            GROUP BY status
            """
        )
        counts = {r["status"]: int(r["total"]) for r in records}
        return DeliveryBacklog(
            pending=counts.get(DeliveryStatus.PENDING.value, 0),
            retrying=counts.get(DeliveryStatus.RETRYING.value, 0),
            delivering=counts.get(DeliveryStatus.DELIVERING.value, 0),
        )

    async def purge_completed(self, completed_before: datetime) -> int:
        """Delete terminal deliveries completed before *completed_before*. Returns count."""
        result = await self._execute(
            "DELETE FROM webhook_deliveries WHERE completed_at IS NOT NULL AND completed_at < $1",
            completed_before,
        )
        return self._rowcount(result)
