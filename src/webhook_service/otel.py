"""OpenTelemetry instrumentation for webhook-service.

Activated only when ``otel_exporter_endpoint`` is set in settings; otherwise
``get_tracer`` hands out the no-op tracer and delivery spans cost nothing.
"""
from __future__ import annotations

import structlog
from aiohttp import web

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.aiohttp_server import AioHttpServerInstrumentor
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from webhook_service.settings import settings

logger = structlog.get_logger(__name__)

_provider: TracerProvider | None = None


def setup_otel() -> None:
    """Initialise tracing if ``otel_exporter_endpoint`` is configured.

    Must run before the aiohttp application is created so the server
    instrumentation can hook into it.
    """
    global _provider

    endpoint = settings.otel_exporter_endpoint
    if not endpoint:
        logger.info("otel disabled", reason="otel_exporter_endpoint not set")
        return

    _provider = TracerProvider(resource=Resource.create({SERVICE_NAME: settings.app_name}))
    _provider.add_span_processor(
        BatchSpanProcessor(OTLPSpanExporter(endpoint=f"{str(endpoint).rstrip('/')}/v1/traces"))
    )
    trace.set_tracer_provider(_provider)
    AioHttpServerInstrumentor().instrument()

    logger.info("otel enabled", endpoint=str(endpoint), service=settings.app_name)


async def shutdown_otel(_app: web.Application) -> None:
    """Flush pending spans on application shutdown."""
    global _provider
    if _provider is not None:
        _provider.shutdown()
        _provider = None


def get_tracer(name: str = __name__) -> trace.Tracer:
    return trace.get_tracer(name)
