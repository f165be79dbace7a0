"""FastAPI application for the dirsync service.

Provides REST API endpoints around a running ``SyncEngine``:
- Subscription feed (member updates, joins, leaves, exclusions)
- Selection surface (option lists, submissions, current grant)
- Reconciliation sweeps and engine status

Run standalone with ``uvicorn --factory web.backend.app.main:create_app``
and ``DIRSYNC_CONFIG`` pointing at a configuration file, or via
``dirsync serve``.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from dirsync import __version__
from dirsync.config.loader import load_config
from dirsync.engine import SyncEngine
from dirsync.utils.log import get_logger
from web.backend.app.routers import events, selection, sync

logger = get_logger("web")


def create_app(
    engine: Optional[SyncEngine] = None,
    *,
    config_path: str | Path | None = None,
    start_engine: bool = True,
) -> FastAPI:
    """Build the application.

    Args:
        engine: A ready engine. When omitted, one is built at startup from
            ``config_path`` (or ``$DIRSYNC_CONFIG``).
        config_path: Configuration file for the engine built at startup.
        start_engine: Validate and start the engine in the lifespan.
            Startup validation errors abort application startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        current = app.state.engine
        owned = current is None
        if owned:
            current = SyncEngine.from_config(load_config(config_path))
            app.state.engine = current
        if start_engine:
            await current.start()
        try:
            yield
        finally:
            if owned:
                await current.aclose()
            elif start_engine:
                await current.stop()

    app = FastAPI(
        title="dirsync API",
        description=(
            "REST API for the cross-directory membership synchronization engine. "
            "Receives directory change notifications, serves the selection surface "
            "and exposes reconciliation controls."
        ),
        version=__version__,
        lifespan=lifespan,
    )
    app.state.engine = engine

    # -----------------------------------------------------------------------
    # CORS middleware (allow all origins for development)
    # -----------------------------------------------------------------------
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(events.router)
    app.include_router(selection.router)
    app.include_router(sync.router)

    @app.get("/", tags=["meta"])
    async def root():
        """Return basic API information."""
        return {
            "name": "dirsync API",
            "version": __version__,
            "docs": "/docs",
            "openapi": "/openapi.json",
        }

    @app.get("/health", tags=["meta"])
    async def health_check():
        current = app.state.engine
        return {
            "status": "healthy" if current is not None else "starting",
            "dry_run": current.dry_run if current is not None else None,
        }

    return app
