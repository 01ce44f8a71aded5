"""Event intake endpoint used by producers inside the platform."""
from __future__ import annotations

from typing import Any

from aiohttp import web
from pydantic import BaseModel, Field

from webhook_service.api.utils import read_json, validate_body
from webhook_service.services.payloads import dumps
from webhook_service.services.dependencies import get_webhook_service

routes = web.RouteTableDef()


class EventDTO(BaseModel):
    event_type: str = Field(min_length=1, max_length=128)
    payload: Any = None


@routes.post("/api/v1/events")
async def publish_event(request: web.Request):
    dto: EventDTO = validate_body(EventDTO, await read_json(request))
    service = await get_webhook_service(request)
    try:
        deliveries = await service.notify(dto.event_type, dumps(dto.payload).encode("utf-8"))
    except ValueError as exc:
        raise web.HTTPBadRequest(text=str(exc)) from exc
    return web.json_response(
        {"event_type": dto.event_type, "delivery_ids": [str(d.id) for d in deliveries]},
        status=202,
    )
