"""Webhook domain service (config management, event intake, diagnostics)."""
from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Callable, List, Mapping
from uuid import UUID, uuid4

import structlog

from webhook_service.core.exceptions import (
    DeliveryNotTerminalError,
    NotFoundError,
    UnsafeUrlError,
)
from webhook_service.domain.enums import DeliveryStatus, WebhookEvent, WebhookKind
from webhook_service.domain.webhooks import DeliveryBacklog, WebhookConfig, WebhookDelivery
from webhook_service.repositories import WebhookStores
from webhook_service.security.url_validator import UrlValidator
from webhook_service.services.matcher import match, normalize_event_patterns
from webhook_service.services.payloads import decode_event_data, format_payload

logger = structlog.get_logger(__name__)

MAX_CUSTOM_HEADERS = 20
MAX_HEADER_VALUE_LENGTH = 1024
MAX_NAME_LENGTH = 255

# RFC 7230 token characters
_HEADER_NAME_RE = re.compile(r"^[!#$%&'*+.^_`|~0-9A-Za-z-]+$")
_RESERVED_HEADERS = frozenset(
    {"host", "content-length", "content-type", "transfer-encoding", "connection"}
)

_UNSET: Any = object()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WebhookService:
    def __init__(
        self,
        stores: WebhookStores,
        validator: UrlValidator,
        *,
        signature_header: str = "X-Signature",
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._configs = stores.configs
        self._deliveries = stores.deliveries
        self._validator = validator
        self._signature_header = signature_header
        self._clock = clock

    # -- config management ------------------------------------------------

    def normalize_headers(self, headers: Mapping[str, str] | None) -> dict[str, str]:
        headers = dict(headers or {})
        if len(headers) > MAX_CUSTOM_HEADERS:
            raise ValueError(f"at most {MAX_CUSTOM_HEADERS} custom headers are allowed")
        reserved = _RESERVED_HEADERS | {self._signature_header.lower()}
        cleaned: dict[str, str] = {}
        for name, value in headers.items():
            name = name.strip()
            if not _HEADER_NAME_RE.match(name):
                raise ValueError(f"invalid header name: {name!r}")
            if name.lower() in reserved:
                raise ValueError(f"header {name} cannot be overridden")
            if not isinstance(value, str) or len(value) > MAX_HEADER_VALUE_LENGTH:
                raise ValueError(f"invalid value for header {name}")
            if "\r" in value or "\n" in value:
                raise ValueError(f"header {name} must not contain line breaks")
            cleaned[name] = value
        return cleaned

    async def validate_and_upsert(self, config: WebhookConfig) -> WebhookConfig:
        """Persist ``config`` if its URL passes the safety policy, else raise ``UnsafeUrlError``."""
        result = self._validator.validate(config.url)
        if not result.ok:
            logger.info(
                "webhook config rejected",
                config_id=str(config.id),
                category=result.category,
                reason=result.reason,
            )
            raise UnsafeUrlError(result.reason or "rejected")
        return await self._configs.upsert(config)

    async def create_config(
        self,
        *,
        owner: str,
        name: str,
        url: str,
        events: list[str],
        kind: WebhookKind = WebhookKind.GENERIC,
        headers: Mapping[str, str] | None = None,
        secret: str | None = None,
        is_active: bool = True,
    ) -> WebhookConfig:
        now = self._clock()
        config = WebhookConfig(
            id=uuid4(),
            name=self._normalize_name(name),
            url=url.strip(),
            kind=kind,
            events=normalize_event_patterns(events),
            headers=self.normalize_headers(headers),
            secret=secret or None,
            is_active=is_active,
            owner=owner,
            created_at=now,
            updated_at=now,
        )
        created = await self.validate_and_upsert(config)
        logger.info("webhook config created", config_id=str(created.id), kind=created.kind.value)
        return created

    async def get_config(self, config_id: UUID, *, owner: str | None = None) -> WebhookConfig:
        config = await self._configs.get(config_id)
        if config is None or (owner is not None and config.owner != owner):
            raise NotFoundError(f"Webhook {config_id} not found")
        return config

    async def list_configs(
        self, owner: str, *, limit: int = 50, offset: int = 0
    ) -> tuple[List[WebhookConfig], int]:
        return await self._configs.list_by_owner(owner, limit=limit, offset=offset)

    async def list_active(self) -> List[WebhookConfig]:
        return await self._configs.list_active()

    async def update_config(
        self,
        config_id: UUID,
        *,
        owner: str | None = None,
        name: str | None = None,
        url: str | None = None,
        events: list[str] | None = None,
        kind: WebhookKind | None = None,
        headers: Mapping[str, str] | None = None,
        secret: str | None = _UNSET,
        is_active: bool | None = None,
    ) -> WebhookConfig:
        """Partial update. ``secret=None`` clears the secret; omitting it keeps it.

        The URL is re-validated on every update, so tightening the policy
        surfaces on the next edit even when the URL itself is unchanged.
        """
        current = await self.get_config(config_id, owner=owner)
        changes: dict[str, Any] = {"updated_at": self._clock()}
        if name is not None:
            changes["name"] = self._normalize_name(name)
        if url is not None:
            changes["url"] = url.strip()
        if events is not None:
            changes["events"] = normalize_event_patterns(events)
        if kind is not None:
            changes["kind"] = kind
        if headers is not None:
            changes["headers"] = self.normalize_headers(headers)
        if secret is not _UNSET:
            changes["secret"] = secret or None
        if is_active is not None:
            changes["is_active"] = is_active
        return await self.validate_and_upsert(current.model_copy(update=changes))

    async def set_active(self, config_id: UUID, active: bool, *, owner: str | None = None) -> WebhookConfig:
        current = await self.get_config(config_id, owner=owner)
        if current.is_active == active:
            return current
        changed = current.model_copy(update={"is_active": active, "updated_at": self._clock()})
        if active:
            # The policy may have tightened since the URL was accepted
            updated = await self.validate_and_upsert(changed)
        else:
            updated = await self._configs.upsert(changed)
        logger.info("webhook config toggled", config_id=str(config_id), is_active=active)
        return updated

    async def delete_config(self, config_id: UUID, *, owner: str | None = None) -> None:
        await self.get_config(config_id, owner=owner)
        if not await self._configs.delete(config_id):
            raise NotFoundError(f"Webhook {config_id} not found")
        logger.info("webhook config deleted", config_id=str(config_id))

    @staticmethod
    def _normalize_name(name: str) -> str:
        name = name.strip()
        if not name or len(name) > MAX_NAME_LENGTH:
            raise ValueError(f"name must be 1..{MAX_NAME_LENGTH} characters")
        return name

    # -- event intake -----------------------------------------------------

    async def notify(self, event_type: str, payload: Any) -> List[WebhookDelivery]:
        """Record one PENDING delivery per matching active config and return them.

        Nothing is sent here; the scheduler picks the records up.
        """
        data = decode_event_data(payload)
        configs = match(event_type, await self._configs.list_active())
        now = self._clock()
        deliveries = [await self._enqueue(config, event_type, data, now=now) for config in configs]
        logger.info("webhook event accepted", event_type=event_type, deliveries=len(deliveries))
        return deliveries

    async def send_test_event(self, config_id: UUID, *, owner: str | None = None) -> WebhookDelivery:
        config = await self.get_config(config_id, owner=owner)
        if not config.is_active:
            raise ValueError("webhook is inactive")
        now = self._clock()
        data = {
            "message": "This is a test event",
            "webhook_id": str(config.id),
            "webhook_name": config.name,
        }
        return await self._enqueue(config, WebhookEvent.WEBHOOK_TEST.value, data, now=now)

    async def redeliver(self, delivery_id: UUID, *, owner: str | None = None) -> WebhookDelivery:
        """Start a new lineage from a finished delivery; the original stays as it is."""
        original = await self._deliveries.get(delivery_id)
        if original is None:
            raise NotFoundError(f"Delivery {delivery_id} not found")
        await self.get_config(original.config_id, owner=owner)
        if not original.status.is_terminal:
            raise DeliveryNotTerminalError(
                f"Delivery {delivery_id} is {original.status.value}; only delivered or failed deliveries can be re-sent"
            )
        delivery = WebhookDelivery(
            id=uuid4(),
            config_id=original.config_id,
            event_type=original.event_type,
            payload=original.payload,
            status=DeliveryStatus.PENDING,
            created_at=self._clock(),
        )
        created = await self._deliveries.create(delivery)
        logger.info("webhook delivery re-queued", delivery_id=str(created.id), source_id=str(delivery_id))
        return created

    async def _enqueue(
        self, config: WebhookConfig, event_type: str, data: Any, *, now: datetime
    ) -> WebhookDelivery:
        delivery = WebhookDelivery(
            id=uuid4(),
            config_id=config.id,
            event_type=event_type,
            payload=format_payload(config.kind, event_type, data, now=now),
            status=DeliveryStatus.PENDING,
            created_at=now,
        )
        return await self._deliveries.create(delivery)

    # -- diagnostics ------------------------------------------------------

    async def get_delivery(self, delivery_id: UUID, *, owner: str | None = None) -> WebhookDelivery:
        delivery = await self._deliveries.get(delivery_id)
        if delivery is None:
            raise NotFoundError(f"Delivery {delivery_id} not found")
        await self.get_config(delivery.config_id, owner=owner)
        return delivery

    async def recent_deliveries(
        self, config_id: UUID, *, owner: str | None = None, limit: int = 10
    ) -> List[WebhookDelivery]:
        await self.get_config(config_id, owner=owner)
        return await self._deliveries.list_recent(config_id, limit=limit)

    async def failed_count(self, config_id: UUID, *, owner: str | None = None) -> int:
        await self.get_config(config_id, owner=owner)
        return await self._deliveries.count_failed(config_id)

    async def backlog(self) -> DeliveryBacklog:
        return await self._deliveries.backlog()
