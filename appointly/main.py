"""Appointly API -- Main Application Entry Point

Creates the FastAPI application, configures CORS middleware, registers
all API route modules under the /api/v1 prefix, and mounts the Socket.IO
ASGI application for in-app notification delivery.

Run with::

    uvicorn appointly.main:app --host 0.0.0.0 --port 8000 --reload
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from appointly.api.errors import register_error_handlers
from appointly.api.routes import bookings, notifications, providers, queues
from appointly.core.config import Settings, settings as default_settings
from appointly.core.logging import configure_logging
from appointly.jobs.bookingMaintenance import MaintenanceLoop
from appointly.realtime import (
    ConnectionRegistry,
    create_socket_app,
    create_socket_server,
    register_handlers,
)
from appointly.services.registry import AppServices, build_services

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings = default_settings,
    *,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    services: Optional[AppServices] = None,
) -> FastAPI:
    """Build the application.

    ``services`` may be supplied pre-built (tests do this to inject fake
    transports); otherwise they are built from ``settings`` at startup.
    """
    sio = create_socket_server(settings)
    registry = ConnectionRegistry(sio)
    register_handlers(sio, registry, settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup: build services, start queue workers and the maintenance
        loop. Shutdown: stop the loop, then drain and close the queues.
        """
        configure_logging(settings.log_level)

        factory = session_factory
        if factory is None:
            from appointly.api.deps import async_session_factory

            factory = async_session_factory

        if app.state.services is None:
            app.state.services = build_services(settings, factory, registry=registry)
        app_services: AppServices = app.state.services

        if settings.queue_workers_enabled:
            app_services.queues.start_all()

        maintenance: Optional[MaintenanceLoop] = None
        if settings.maintenance_enabled:
            maintenance = MaintenanceLoop(app_services, factory, settings.maintenance_interval_seconds)
            maintenance.start()

        logger.info("%s %s started", settings.app_name, settings.app_version)
        yield

        if maintenance is not None:
            await maintenance.stop()
        await app_services.queues.shutdown()
        logger.info("%s stopped", settings.app_name)

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        lifespan=lifespan,
    )
    app.state.services = services
    app.state.registry = registry

    # -- CORS --
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)

    # -- Health --
    @app.get("/health", tags=["Health"])
    async def health():
        """Lightweight health check for load balancers and readiness probes."""
        return {"status": "ok", "version": settings.app_version}

    # -- Routes --
    prefix = settings.api_v1_prefix
    app.include_router(bookings.router, prefix=prefix)
    app.include_router(providers.router, prefix=prefix)
    app.include_router(notifications.router, prefix=prefix)
    app.include_router(queues.router, prefix=prefix)

    # -- Socket.IO --
    app.mount("/ws", create_socket_app(sio))

    return app


app = create_app()
