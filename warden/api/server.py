"""API layer — FastAPI application factory.

``create_app()`` is the single entry point for building the FastAPI app.
The SecurityManager is opened in the lifespan handler so that tests can
pass their own ``Settings`` (temporary databases, fixed secrets) or a
ready-made manager.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from warden import __version__
from warden.api.middleware import (
    AccessLogMiddleware,
    RequestIDMiddleware,
    build_error_handler,
)
from warden.api.routes import audit, auth, health, secrets, users
from warden.config import Settings, get_settings
from warden.exceptions import WardenError
from warden.logging import configure_logging, get_logger
from warden.security.manager import SecurityManager

log = get_logger(__name__)


def create_app(
    settings: Settings | None = None,
    security: SecurityManager | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Optional settings override (used in tests).
        security: Optional pre-built SecurityManager.  When given, the app
            does not open or close the stores itself.

    Returns:
        A fully configured FastAPI application instance.
    """
    if settings is None:
        settings = get_settings()

    configure_logging(
        level=settings.logging.level,
        format=settings.logging.format,
        log_file=str(settings.logging.file) if settings.logging.file else None,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        log.info("warden_starting", version=__version__)
        owned = security is None
        manager = await SecurityManager.open(settings) if owned else security
        if not manager.cipher.configured:
            log.warning("secrets_master_key_missing")
        if settings.auth.jwt_secret is None:
            log.warning("auth_jwt_secret_missing")

        app.state.settings = settings
        app.state.security = manager
        log.info(
            "warden_started",
            audit_db=str(settings.audit.db_path),
            users_db=str(settings.users.db_path),
            monitor_enabled=manager.monitor.enabled,
        )
        try:
            yield
        finally:
            log.info("warden_stopping")
            if owned:
                await manager.close()
            else:
                await manager.monitor.drain()

    app = FastAPI(
        title="Warden",
        description="Access control, audit trail and security monitoring service.",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # Middleware (outermost applied last)
    app.add_middleware(AccessLogMiddleware)
    app.add_middleware(RequestIDMiddleware)
    if settings.server.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.server.cors_origins,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    # Exception handlers
    app.add_exception_handler(WardenError, build_error_handler())  # type: ignore[arg-type]

    # Routers
    app.include_router(health.router)
    app.include_router(auth.router)
    app.include_router(audit.router)
    app.include_router(secrets.router)
    app.include_router(users.router)

    return app
