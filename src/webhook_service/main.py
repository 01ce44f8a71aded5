"""aiohttp application entrypoint."""
from __future__ import annotations

from aiohttp import web
from aiohttp_cors import ResourceOptions, setup as cors_setup

from webhook_service.api.router import setup_routes
from webhook_service.db.migrations import create_migration_runner
from webhook_service.db.pool import close_pool, init_pool
from webhook_service.dispatcher import Dispatcher
from webhook_service.logging_config import configure_logging
from webhook_service.middleware.trace import create_trace_middleware
from webhook_service.otel import setup_otel, shutdown_otel
from webhook_service.repositories import WebhookStores, memory_stores, postgres_stores
from webhook_service.scheduler import DeliveryScheduler
from webhook_service.security.url_validator import UrlValidator
from webhook_service.services.dependencies import STORES_KEY, VALIDATOR_KEY
from webhook_service.services.retry_policy import RetryPolicy
from webhook_service.settings import settings
from webhook_service.workers import build_worker

_SCHEDULER_KEY = "webhook_scheduler"
_DISPATCHER_KEY = "webhook_dispatcher"
_WORKER_KEY = "webhook_worker"


async def healthcheck(request: web.Request) -> web.Response:
    return web.json_response({"status": "ok", "service": settings.app_name, "env": settings.env})


async def init_postgres_stores(app: web.Application) -> None:
    pool = await init_pool(str(settings.database_url), settings.db_pool_size)
    app[STORES_KEY] = postgres_stores(pool)


async def start_delivery(app: web.Application) -> None:
    """Start the delivery scheduler and the housekeeping worker."""
    stores: WebhookStores = app[STORES_KEY]
    validator: UrlValidator = app[VALIDATOR_KEY]

    dispatcher = Dispatcher.from_settings(validator, settings)
    await dispatcher.start()
    scheduler = DeliveryScheduler(
        stores.deliveries,
        dispatcher,
        validator,
        policy=RetryPolicy.from_settings(settings),
        batch_size=settings.webhook_batch_size,
        concurrency=settings.webhook_dispatch_concurrency,
        poll_interval_seconds=settings.webhook_poll_interval_seconds,
    )
    worker = build_worker(stores.deliveries, settings)

    app[_DISPATCHER_KEY] = dispatcher
    app[_SCHEDULER_KEY] = scheduler
    app[_WORKER_KEY] = worker
    await scheduler.start(app)
    await worker.start(app)


async def stop_delivery(app: web.Application) -> None:
    worker = app.get(_WORKER_KEY)
    if worker is not None:
        await worker.stop(app)
    scheduler = app.get(_SCHEDULER_KEY)
    if scheduler is not None:
        await scheduler.stop(app)
    dispatcher = app.get(_DISPATCHER_KEY)
    if dispatcher is not None:
        await dispatcher.close()


def create_app(*, stores: WebhookStores | None = None, run_scheduler: bool = True) -> web.Application:
    """Build the application.

    ``stores`` overrides the configured backend (tests pass in-memory stores);
    ``run_scheduler=False`` serves the API without delivering anything.
    """
    app = web.Application()
    app[VALIDATOR_KEY] = UrlValidator.from_settings(settings)

    app.middlewares.append(create_trace_middleware(settings.app_name))

    cors = cors_setup(
        app,
        defaults={
            origin: ResourceOptions(
                allow_credentials=True,
                expose_headers="*",
                allow_headers="*",
                allow_methods="*",
            )
            for origin in settings.cors_allowed_origins
        },
    )

    app.router.add_get("/health", healthcheck)
    setup_routes(app)

    if stores is not None:
        app[STORES_KEY] = stores
    elif settings.store_backend == "memory":
        app[STORES_KEY] = memory_stores()
    else:
        app.on_startup.append(create_migration_runner(str(settings.database_url)))
        app.on_startup.append(init_postgres_stores)

    if run_scheduler:
        app.on_startup.append(start_delivery)
        app.on_cleanup.append(stop_delivery)
    if stores is None and settings.store_backend == "postgres":
        app.on_cleanup.append(close_pool)
    app.on_cleanup.append(shutdown_otel)

    for route in list(app.router.routes()):
        cors.add(route)

    return app


def main() -> None:
    configure_logging(settings.log_level)
    setup_otel()
    web.run_app(create_app(), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
