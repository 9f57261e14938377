"""HTTP server for calendar snapshots.

Serves the latest snapshot of each configured calendar while a background
task keeps them fresh.

## Usage

```
agenda-sync serve --port 8000
curl localhost:8000/api/calendars/primary/next
```

Calendars, poll interval and CORS origins come from `agenda_sync.config`.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from agenda_sync.config import get_settings
from agenda_sync.database.connection import close_db, create_tables, init_db
from agenda_sync.sync import SyncCoordinator

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Start the sync engine with the server and stop it on shutdown.

    Steps:
    - Initialize the database and the sync engine (unless one was injected)
    - Run the polling loop in the background
    - Stop the loop and close the database on shutdown
    """
    settings = get_settings()

    logger.info(f"Starting {settings.app_name} v{settings.app_version}")

    owns_database = app.state.coordinator is None
    if owns_database:
        from agenda_sync.calendar import GoogleCalendarFetcher
        from agenda_sync.service import build_coordinator

        session_factory = await init_db()
        await create_tables()
        app.state.coordinator = build_coordinator(
            settings,
            session_factory,
            GoogleCalendarFetcher.from_settings(settings),
        )

    stop_event = asyncio.Event()
    poller = None
    if app.state.run_sync:
        coordinator: SyncCoordinator = app.state.coordinator
        poller = asyncio.create_task(
            coordinator.run_forever(
                settings.calendar_ids,
                interval=settings.poll_interval_minutes * 60,
                stop_event=stop_event,
            )
        )

    yield

    # Shutdown
    logger.info("Shutting down")
    stop_event.set()
    if poller is not None:
        poller.cancel()
        try:
            await poller
        except asyncio.CancelledError:
            pass
    if owns_database:
        await close_db()


def create_app(
    coordinator: SyncCoordinator | None = None,
    run_sync: bool = True,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        coordinator: Prebuilt coordinator; built from settings on startup if None
        run_sync: Run the polling loop in the background

    Returns:
        Application serving the snapshot routes and `/health`
    """
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Calendar snapshots kept in sync with Google Calendar",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
        lifespan=lifespan,
    )
    app.state.coordinator = coordinator
    app.state.run_sync = run_sync

    # Dashboards in the browser read snapshots cross-origin
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    from agenda_sync.api.routes import calendars

    app.include_router(calendars.router, prefix="/api/calendars", tags=["Calendars"])

    @app.get("/health", tags=["Health"])
    async def health_check():
        """Liveness probe."""
        return {"status": "healthy", "version": settings.app_version}

    return app
