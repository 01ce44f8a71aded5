"""Request tracing middleware: trace/request ids bound into the log context."""
from __future__ import annotations

import time
from typing import Mapping
from uuid import UUID, uuid4

import structlog
from aiohttp import web

TRACE_ID_HEADER = "X-Trace-Id"
REQUEST_ID_HEADER = "X-Request-Id"

logger = structlog.get_logger(__name__)

SENSITIVE_HEADERS = {
    "authorization",
    "cookie",
    "set-cookie",
    "x-api-key",
    "x-auth-token",
}


def _valid_uuid(value: str | None) -> bool:
    if not value:
        return False
    try:
        UUID(value)
    except ValueError:
        return False
    return True


def safe_headers(headers: Mapping[str, str]) -> dict[str, str]:
    return {k: v for k, v in headers.items() if k.lower() not in SENSITIVE_HEADERS}


def create_trace_middleware(service_name: str):
    @web.middleware
    async def trace_middleware(request: web.Request, handler):
        started = time.monotonic()

        trace_id = request.headers.get(TRACE_ID_HEADER)
        if not _valid_uuid(trace_id):
            trace_id = str(uuid4())
        request_id = request.headers.get(REQUEST_ID_HEADER)
        if not _valid_uuid(request_id):
            request_id = str(uuid4())
        request["trace_id"] = trace_id
        request["request_id"] = request_id

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            trace_id=trace_id,
            request_id=request_id,
            service=service_name,
            method=request.method,
            path=request.path,
        )
        logger.info(
            "incoming request",
            query_string=request.query_string or None,
            remote=request.remote,
            headers=safe_headers(request.headers),
        )

        try:
            response = await handler(request)
        except web.HTTPException as exc:
            logger.warning(
                "request failed with http exception",
                status_code=exc.status_code,
                duration_ms=round((time.monotonic() - started) * 1000, 2),
            )
            raise
        except Exception as exc:
            logger.error(
                "request failed with exception",
                duration_ms=round((time.monotonic() - started) * 1000, 2),
                error=str(exc),
                error_type=type(exc).__name__,
                exc_info=True,
            )
            raise
        else:
            log = logger.warning if response.status >= 400 else logger.info
            log(
                "request completed",
                status_code=response.status,
                duration_ms=round((time.monotonic() - started) * 1000, 2),
            )
            response.headers[TRACE_ID_HEADER] = trace_id
            response.headers[REQUEST_ID_HEADER] = request_id
            return response
        finally:
            structlog.contextvars.clear_contextvars()

    return trace_middleware
