from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator
from uuid import uuid4

from aiohttp import web

from webhook_service.domain.enums import DeliveryStatus, WebhookKind
from webhook_service.domain.webhooks import WebhookConfig, WebhookDelivery
from webhook_service.security.url_validator import UrlValidationResult, UrlValidator

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class AllowLoopbackValidator(UrlValidator):
    """Validator for tests that talk to receivers bound on 127.0.0.1."""

    def check_address(self, address):
        if str(address) in ("127.0.0.1", "::1"):
            return UrlValidationResult.valid()
        return super().check_address(address)

    def validate(self, url: str, *, resolved_address: str | None = None) -> UrlValidationResult:
        if url.startswith("http://127.0.0.1:"):
            return UrlValidationResult.valid()
        return super().validate(url, resolved_address=resolved_address)


def make_config(**overrides) -> WebhookConfig:
    data = {
        "id": uuid4(),
        "name": "ci alerts",
        "url": "https://hooks.example.com/ci",
        "kind": WebhookKind.GENERIC,
        "events": ["*"],
        "headers": {},
        "secret": None,
        "is_active": True,
        "owner": "user-1",
        "created_at": NOW,
        "updated_at": NOW,
    }
    data.update(overrides)
    return WebhookConfig.model_validate(data)


def make_delivery(config: WebhookConfig, **overrides) -> WebhookDelivery:
    data = {
        "id": uuid4(),
        "config_id": config.id,
        "event_type": "RUN_COMPLETED",
        "payload": '{"event":"RUN_COMPLETED","data":{"run_id":"r-1"}}',
        "status": DeliveryStatus.PENDING,
        "created_at": NOW,
    }
    data.update(overrides)
    return WebhookDelivery.model_validate(data)


@asynccontextmanager
async def run_receiver(app: web.Application) -> AsyncIterator[str]:
    """Serve ``app`` on an ephemeral 127.0.0.1 port; yields the base URL."""
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, "127.0.0.1", 0)
    await site.start()
    port = site._server.sockets[0].getsockname()[1]  # type: ignore[union-attr]
    try:
        yield f"http://127.0.0.1:{port}"
    finally:
        await runner.cleanup()
