"""FastAPI application factory for the sync engine.

The app factory creates a FastAPI instance with:
- Lifespan handler that builds (or adopts) the service graph and closes it
- Health endpoint at GET /api/health and Prometheus metrics at GET /metrics
- Routers for provider webhooks, cron triggers, reservation intake and stats
- Calendar helpers: calendar lists, timezones, reminder settings, .ics feed
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

from fieldsync.api.middleware import register_error_handlers
from fieldsync.api.routers.calendars import router as calendars_router
from fieldsync.api.routers.cron import router as cron_router
from fieldsync.api.routers.reservations import router as reservations_router
from fieldsync.api.routers.stats import router as stats_router
from fieldsync.api.routers.webhooks import router as webhooks_router
from fieldsync.config import FieldSyncConfig
from fieldsync.services import Services, build_services

logger = logging.getLogger(__name__)


def create_app(
    services: Services | None = None,
    config: FieldSyncConfig | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    services:
        A pre-built service graph. When given, the app uses it as-is and
        leaves closing it to the caller (the CLI ``serve`` command and tests).
    config:
        Configuration used to build services at startup when *services* is
        not supplied.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned: Services | None = None
        if getattr(app.state, "services", None) is None:
            if config is None:
                raise RuntimeError("create_app() needs either services or config")
            owned = await build_services(config)
            app.state.services = owned
            logger.info("Services initialized for %s", config.service_name)

        yield

        if owned is not None:
            await owned.aclose()
            app.state.services = None

    app = FastAPI(
        title="FieldSync Calendar API",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.router.redirect_slashes = False
    app.state.services = services

    register_error_handlers(app)

    app.include_router(webhooks_router)
    app.include_router(cron_router)
    app.include_router(reservations_router)
    app.include_router(stats_router)
    app.include_router(calendars_router)

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    @app.get("/metrics", include_in_schema=False)
    async def metrics() -> Response:
        return Response(generate_latest(REGISTRY), media_type=CONTENT_TYPE_LATEST)

    return app
