"""calsync API: FastAPI application factory.

The app factory creates a FastAPI instance with:
- CORS middleware (configurable origins)
- A lifespan handler that opens the storage pool and Google client from the
  config, unless a ready service was passed in
- Health endpoint at GET /api/health
- The Google Calendar router
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from calsync.api.middleware import register_error_handlers
from calsync.api.routers.google_calendar import router as google_calendar_router
from calsync.config import CalsyncConfig
from calsync.runtime import open_runtime
from calsync.service import CalendarConnectionService

logger = logging.getLogger(__name__)


def create_app(
    config: CalsyncConfig | None = None,
    *,
    service: CalendarConnectionService | None = None,
    cors_origins: list[str] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    config:
        Used by the lifespan handler to build storage, client and service.
    service:
        A pre-built service (tests, embedding). Takes precedence over
        *config*; the lifespan then manages no resources.
    cors_origins:
        Allowed CORS origins. Defaults to ``["http://localhost:3000"]``.
    """
    if config is None and service is None:
        raise ValueError("create_app() needs either a config or a service")

    if cors_origins is None:
        cors_origins = ["http://localhost:3000"]

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if service is not None:
            app.state.connection_service = service
            yield
            return

        assert config is not None
        async with open_runtime(config) as runtime:
            app.state.connection_service = runtime.service
            logger.info("calsync API ready (calendar=%s)", config.google.calendar_id)
            yield
        app.state.connection_service = None

    app = FastAPI(title="calsync API", version="0.1.0", lifespan=lifespan)
    app.router.redirect_slashes = False
    # Available before lifespan runs, e.g. under ASGITransport which skips lifespan.
    app.state.connection_service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)
    app.include_router(google_calendar_router)

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    return app
