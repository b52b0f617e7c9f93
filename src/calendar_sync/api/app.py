"""FastAPI application factory.

## Lifespan

Startup, in order:

1. Database engine (`init_db`)
2. One shared `httpx.AsyncClient` for every provider and downstream call
3. Component graph (`build_services`) and the effect dispatcher worker
4. Renewal timer, when RENEWAL_SCHEDULER_ENABLED is set

Shutdown runs the same steps in reverse. Queued effects are drained before
the HTTP client closes.

## Usage

```python
from calendar_sync.api import create_app

app = create_app()
```

or `calendar-sync serve`.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import AsyncGenerator

import httpx
from fastapi import Depends, FastAPI, Request

from calendar_sync.auth.dependencies import require_internal_api_key
from calendar_sync.config import get_settings
from calendar_sync.database.connection import close_db, init_db, ping_db
from calendar_sync.scheduler import RenewalScheduler
from calendar_sync.services import build_dispatcher, build_services

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    settings = get_settings()
    logger.info(f"Starting {settings.app_name} v{settings.app_version}")

    if not settings.webhook_url:
        logger.warning("WEBHOOK_URL is not set; channels cannot be created or renewed")

    await init_db()
    http_client = httpx.AsyncClient(timeout=settings.provider_timeout_seconds)
    dispatcher = build_dispatcher(http_client, settings)
    services = build_services(http_client, settings, dispatcher=dispatcher)
    app.state.services = services
    await dispatcher.start()

    scheduler = None
    if settings.renewal_scheduler_enabled:
        scheduler = RenewalScheduler(
            services.renewer,
            settings.channel_renewal_interval_minutes,
            lookahead=timedelta(hours=settings.channel_renewal_lookahead_hours),
        )
        scheduler.start()

    try:
        yield
    finally:
        logger.info("Shutting down")
        if scheduler is not None:
            scheduler.shutdown()
        await dispatcher.stop()
        await http_client.aclose()
        await close_db()
        app.state.services = None


def create_app() -> FastAPI:
    """Build the application: webhook receiver, internal routes and health check."""
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Push-notification driven calendar synchronization",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
        lifespan=lifespan,
    )

    from calendar_sync.api.routes import internal, webhooks

    app.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])
    app.include_router(
        internal.router,
        prefix="/internal",
        tags=["Internal"],
        dependencies=[Depends(require_internal_api_key)],
    )

    @app.get("/health", tags=["Health"])
    async def health_check(request: Request):
        """Liveness plus database reachability and effect queue depth."""
        database_ok = await ping_db()
        body = {
            "status": "healthy" if database_ok else "degraded",
            "version": settings.app_version,
            "database": "ok" if database_ok else "unreachable",
        }

        services = getattr(request.app.state, "services", None)
        dispatcher = getattr(services, "dispatcher", None)
        if hasattr(dispatcher, "pending"):
            body["effects_pending"] = dispatcher.pending
            body["effects_dropped"] = dispatcher.dropped
        return body

    return app
