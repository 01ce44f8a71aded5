"""Webhook config endpoints (CRUD, activation, test event, diagnostics)."""
from __future__ import annotations

import json
from typing import Any

from aiohttp import web
from pydantic import BaseModel, Field

from webhook_service.api.utils import (
    paginated_response,
    pagination_params,
    parse_uuid,
    read_json,
    validate_body,
)
from webhook_service.core.exceptions import NotFoundError, UnsafeUrlError
from webhook_service.domain.enums import WebhookKind
from webhook_service.domain.webhooks import WebhookConfig, WebhookDelivery
from webhook_service.services.dependencies import get_webhook_service, require_owner

routes = web.RouteTableDef()


class WebhookCreateDTO(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    url: str = Field(min_length=1)
    events: list[str] = Field(min_length=1)
    kind: WebhookKind = WebhookKind.GENERIC
    headers: dict[str, str] = Field(default_factory=dict)
    secret: str | None = Field(default=None, max_length=255)
    is_active: bool = True


class WebhookUpdateDTO(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    url: str | None = Field(default=None, min_length=1)
    events: list[str] | None = Field(default=None, min_length=1)
    kind: WebhookKind | None = None
    headers: dict[str, str] | None = None
    secret: str | None = Field(default=None, max_length=255)
    is_active: bool | None = None


def config_to_dict(config: WebhookConfig) -> dict[str, Any]:
    """Public representation: the secret is write-only."""
    data = config.model_dump(mode="json", exclude={"secret"})
    data["has_secret"] = bool(config.secret)
    return data


def delivery_to_dict(delivery: WebhookDelivery) -> dict[str, Any]:
    return delivery.model_dump(mode="json", exclude={"claimed_at"})


def unsafe_url_response(exc: UnsafeUrlError) -> web.HTTPUnprocessableEntity:
    return web.HTTPUnprocessableEntity(
        text=json.dumps({"error": "url rejected", "reason": exc.reason}),
        content_type="application/json",
    )


@routes.get("/api/v1/webhooks")
async def list_webhooks(request: web.Request):
    owner = require_owner(request)
    service = await get_webhook_service(request)
    limit, offset = pagination_params(request)
    items, total = await service.list_configs(owner, limit=limit, offset=offset)
    payload = paginated_response(
        [config_to_dict(item) for item in items],
        limit=limit,
        offset=offset,
        key="webhooks",
        total=total,
    )
    return web.json_response(payload)


@routes.post("/api/v1/webhooks")
async def create_webhook(request: web.Request):
    owner = require_owner(request)
    dto: WebhookCreateDTO = validate_body(WebhookCreateDTO, await read_json(request))
    service = await get_webhook_service(request)
    try:
        config = await service.create_config(owner=owner, **dto.model_dump())
    except UnsafeUrlError as exc:
        raise unsafe_url_response(exc) from exc
    except ValueError as exc:
        raise web.HTTPBadRequest(text=str(exc)) from exc
    return web.json_response(config_to_dict(config), status=201)


@routes.get("/api/v1/webhooks/{webhook_id}")
async def get_webhook(request: web.Request):
    owner = require_owner(request)
    webhook_id = parse_uuid(request.match_info["webhook_id"], "webhook_id")
    service = await get_webhook_service(request)
    try:
        config = await service.get_config(webhook_id, owner=owner)
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    return web.json_response(config_to_dict(config))


@routes.patch("/api/v1/webhooks/{webhook_id}")
async def update_webhook(request: web.Request):
    owner = require_owner(request)
    webhook_id = parse_uuid(request.match_info["webhook_id"], "webhook_id")
    dto: WebhookUpdateDTO = validate_body(WebhookUpdateDTO, await read_json(request))
    # an explicit "secret": null clears it, a missing key keeps it
    changes = dto.model_dump(exclude_unset=True)
    service = await get_webhook_service(request)
    try:
        config = await service.update_config(webhook_id, owner=owner, **changes)
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    except UnsafeUrlError as exc:
        raise unsafe_url_response(exc) from exc
    except ValueError as exc:
        raise web.HTTPBadRequest(text=str(exc)) from exc
    return web.json_response(config_to_dict(config))


@routes.delete("/api/v1/webhooks/{webhook_id}")
async def delete_webhook(request: web.Request):
    owner = require_owner(request)
    webhook_id = parse_uuid(request.match_info["webhook_id"], "webhook_id")
    service = await get_webhook_service(request)
    try:
        await service.delete_config(webhook_id, owner=owner)
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    return web.Response(status=204)


async def _set_active(request: web.Request, active: bool) -> web.Response:
    owner = require_owner(request)
    webhook_id = parse_uuid(request.match_info["webhook_id"], "webhook_id")
    service = await get_webhook_service(request)
    try:
        config = await service.set_active(webhook_id, active, owner=owner)
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    except UnsafeUrlError as exc:
        raise unsafe_url_response(exc) from exc
    return web.json_response(config_to_dict(config))


@routes.post("/api/v1/webhooks/{webhook_id}/activate")
async def activate_webhook(request: web.Request):
    return await _set_active(request, True)


@routes.post("/api/v1/webhooks/{webhook_id}/deactivate")
async def deactivate_webhook(request: web.Request):
    return await _set_active(request, False)


@routes.post("/api/v1/webhooks/{webhook_id}/test")
async def test_webhook(request: web.Request):
    owner = require_owner(request)
    webhook_id = parse_uuid(request.match_info["webhook_id"], "webhook_id")
    service = await get_webhook_service(request)
    try:
        delivery = await service.send_test_event(webhook_id, owner=owner)
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    except ValueError as exc:
        raise web.HTTPConflict(text=str(exc)) from exc
    return web.json_response(delivery_to_dict(delivery), status=202)


@routes.get("/api/v1/webhooks/{webhook_id}/deliveries")
async def list_webhook_deliveries(request: web.Request):
    owner = require_owner(request)
    webhook_id = parse_uuid(request.match_info["webhook_id"], "webhook_id")
    limit, _ = pagination_params(request, default_limit=10)
    service = await get_webhook_service(request)
    try:
        deliveries = await service.recent_deliveries(webhook_id, owner=owner, limit=limit)
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    return web.json_response({"deliveries": [delivery_to_dict(d) for d in deliveries]})


@routes.get("/api/v1/webhooks/{webhook_id}/stats")
async def webhook_stats(request: web.Request):
    owner = require_owner(request)
    webhook_id = parse_uuid(request.match_info["webhook_id"], "webhook_id")
    service = await get_webhook_service(request)
    try:
        failed = await service.failed_count(webhook_id, owner=owner)
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    return web.json_response({"webhook_id": str(webhook_id), "failed": failed})
