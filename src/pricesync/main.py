"""FastAPI application factory for the webhook receiver and operator API.

The lifespan opens the database, builds the SyncServices bundle and, unless
SYNC_PROCESSOR_ENABLED is off, starts the queue workers in-process.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.pricesync.api import webhook
from src.pricesync.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.pricesync.api.v1 import health
from src.pricesync.api.v1.router import router as v1_router
from src.pricesync.config import get_settings
from src.pricesync.core.database import close_db, get_session, init_db
from src.pricesync.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.pricesync.core.redis import QueueNotifier, close_redis, get_redis_pool
from src.pricesync.sync.service import build_sync_services


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB, sync core and Sentry on startup, close on shutdown."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()
    await init_db()

    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    notifier = QueueNotifier(get_redis_pool(), settings.SYNC_NOTIFY_CHANNEL)
    services = build_sync_services(settings, get_session, notifier=notifier)
    app.state.sync = services

    if settings.SYNC_PROCESSOR_ENABLED:
        services.processor.start()
    else:
        log.info("processor.disabled", hint="run src.pricesync.worker to process the queue")

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────
    await services.close()
    app.state.sync = None
    await close_db()
    await close_redis()


def _cors_origins(raw: str) -> list[str]:
    if raw.strip() == "*":
        return ["*"]
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


def create_app() -> FastAPI:
    """Build the app. SyncServices are attached by the lifespan, or by tests directly."""
    settings = get_settings()

    app = FastAPI(
        title="pricesync",
        version="0.1.0",
        description="Bidirectional pricing sync between the product catalog and the ERP",
        lifespan=lifespan,
    )
    app.state.sync = None

    # Last added runs first: metrics wrap logging, which wraps CORS.
    origins = _cors_origins(settings.CORS_ALLOWED_ORIGINS)
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_methods=["GET", "POST", "PUT", "DELETE"],
            allow_headers=["Content-Type", "X-API-Key", "X-Request-ID"],
            expose_headers=["X-Request-ID"],
        )
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(MetricsMiddleware)

    app.include_router(health.router)
    app.include_router(webhook.router)
    app.include_router(v1_router, prefix="/api/v1")
    app.add_api_route("/metrics", get_metrics_response, methods=["GET"], include_in_schema=False)
    return app


app = create_app()
