"""wedsync HTTP API: FastAPI application factory.

The app factory creates a FastAPI instance with:
- CORS middleware (configurable origins)
- Lifespan handler that starts and stops the ``CalendarRuntime``
- Health endpoint at GET /api/health
- The calendar router and the JSON error envelope
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from wedsync.api.deps import wire_dependencies
from wedsync.api.middleware import register_error_handlers
from wedsync.api.routers.calendar import router as calendar_router
from wedsync.config import WedsyncConfig
from wedsync.daemon import CalendarRuntime

logger = logging.getLogger(__name__)


def create_app(
    config: WedsyncConfig | None = None,
    *,
    cors_origins: list[str] | None = None,
    manage_runtime: bool = True,
    run_poller: bool = False,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    config:
        Loaded configuration; defaults to ``WedsyncConfig()``.
    cors_origins:
        Allowed CORS origins. Defaults to ``["http://localhost:3000"]``.
    manage_runtime:
        When true, the lifespan opens the database pool and wires the
        dependency stubs. Tests pass ``False`` and override dependencies.
    run_poller:
        Also run the background sync poller inside the server process.
    """
    config = config or WedsyncConfig()
    if cors_origins is None:
        cors_origins = ["http://localhost:3000"]

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        runtime = None
        if manage_runtime:
            runtime = CalendarRuntime(config)
            await runtime.start()
            wire_dependencies(app, runtime)
            if run_poller and runtime.poller is not None:
                runtime.poller.start()
        app.state.runtime = runtime

        yield

        if runtime is not None:
            await runtime.shutdown()

    app = FastAPI(
        title="wedsync API",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.router.redirect_slashes = False

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)
    app.include_router(calendar_router)

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    return app
