"""Delivery endpoints (re-send, backlog)."""
from __future__ import annotations

from aiohttp import web

from webhook_service.api.routes.webhooks import delivery_to_dict
from webhook_service.api.utils import parse_uuid
from webhook_service.core.exceptions import DeliveryNotTerminalError, NotFoundError
from webhook_service.services.dependencies import get_webhook_service, require_owner

routes = web.RouteTableDef()


@routes.get("/api/v1/deliveries/backlog")
async def delivery_backlog(request: web.Request):
    service = await get_webhook_service(request)
    backlog = await service.backlog()
    return web.json_response(
        {
            "pending": backlog.pending,
            "retrying": backlog.retrying,
            "delivering": backlog.delivering,
            "total": backlog.total,
        }
    )


@routes.get("/api/v1/deliveries/{delivery_id}")
async def get_delivery(request: web.Request):
    owner = require_owner(request)
    delivery_id = parse_uuid(request.match_info["delivery_id"], "delivery_id")
    service = await get_webhook_service(request)
    try:
        delivery = await service.get_delivery(delivery_id, owner=owner)
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    return web.json_response(delivery_to_dict(delivery))


@routes.post("/api/v1/deliveries/{delivery_id}/redeliver")
async def redeliver(request: web.Request):
    owner = require_owner(request)
    delivery_id = parse_uuid(request.match_info["delivery_id"], "delivery_id")
    service = await get_webhook_service(request)
    try:
        delivery = await service.redeliver(delivery_id, owner=owner)
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    except DeliveryNotTerminalError as exc:
        raise web.HTTPConflict(text=str(exc)) from exc
    return web.json_response(delivery_to_dict(delivery), status=202)
