"""Shared dependency providers for aiohttp handlers."""
from __future__ import annotations

from typing import Awaitable, Callable, TypeVar

from aiohttp import web

from webhook_service.repositories import WebhookStores
from webhook_service.security.url_validator import UrlValidator
from webhook_service.services.webhooks import WebhookService
from webhook_service.settings import settings

TService = TypeVar("TService")

STORES_KEY = "webhook_stores"
VALIDATOR_KEY = "webhook_url_validator"

_WEBHOOK_SERVICE_KEY = "webhook_service"

USER_ID_HEADER = "X-User-Id"


def require_owner(request: web.Request) -> str:
    """Caller identity, set by the API gateway (authentication happens upstream)."""
    owner = request.headers.get(USER_ID_HEADER, "").strip()
    if not owner:
        raise web.HTTPUnauthorized(reason=f"Header {USER_ID_HEADER} is required")
    return owner


async def _get_or_create_service(
    request: web.Request,
    cache_key: str,
    builder: Callable[[web.Request], Awaitable[TService]],
) -> TService:
    service = request.get(cache_key)
    if service is None:
        service = await builder(request)
        request[cache_key] = service
    return service


async def get_webhook_service(request: web.Request) -> WebhookService:
    async def builder(req: web.Request) -> WebhookService:
        stores: WebhookStores = req.app[STORES_KEY]
        validator: UrlValidator = req.app[VALIDATOR_KEY]
        return WebhookService(
            stores,
            validator,
            signature_header=settings.webhook_signature_header,
        )

    return await _get_or_create_service(request, _WEBHOOK_SERVICE_KEY, builder)
