"""FastAPI application entrypoint.

Application startup order:
1. Load settings (from environment, or the instance passed to create_app)
2. Configure structured logging
3. Initialize the control-plane engine and session factory
4. Open the shared HTTP client for identity-provider calls
5. Start the audit retention task (prunes now, then on an interval)

Shutdown order:
1. Stop the audit retention task
2. Dispose tenant engines
3. Close the HTTP client
4. Close the control-plane pool

Process-wide state that request handlers reach through app.state (settings,
permission override cache, applet registry, sync lock, tenant connection
factory) is created in create_app() rather than in the lifespan, so it
exists for every request regardless of how the app is served.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import httpx
import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from identity_core.api.router import api_v1_router, public_router
from identity_core.auth.middleware import AuthMiddleware
from identity_core.config import Settings, get_settings
from identity_core.core.applets import default_registry
from identity_core.core.audit import AuditRetentionTask
from identity_core.core.errors import IdentityError
from identity_core.database import close_db, get_session_factory, init_db
from identity_core.db.tenant_connections import TenantConnectionFactory
from identity_core.services.directory_sync import SyncRunLock
from identity_core.services.permissions import PermissionOverrideCache
from identity_core.telemetry import RequestIdMiddleware, configure_logging

log = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: startup and shutdown."""
    settings: Settings = app.state.settings

    # Configure structured logging first (before any log calls)
    configure_logging(
        json_logs=settings.is_prod,
        log_level="DEBUG" if settings.debug else "INFO",
    )

    log.info(
        "app.starting",
        environment=settings.environment,
        db_url=settings.database_url.split("@")[-1],
    )

    init_db(settings)
    app.state.http_client = httpx.AsyncClient(timeout=settings.provider_timeout_seconds)

    app.state.audit_retention = AuditRetentionTask(
        get_session_factory(),
        retention_days=settings.audit_retention_days,
        interval_seconds=settings.audit_prune_interval_seconds,
    )
    await app.state.audit_retention.start()

    log.info("app.ready")
    yield

    await app.state.audit_retention.shutdown()
    await app.state.tenant_connections.dispose_all()
    await app.state.http_client.aclose()
    app.state.http_client = None
    await close_db()
    log.info("app.shutdown")


def create_app(settings: Settings | None = None) -> FastAPI:
    """Application factory.

    Passing settings (tests, embedding) makes them the instance returned by
    the get_settings dependency as well.
    """
    settings = settings or get_settings()

    app = FastAPI(
        title=settings.app_name,
        description=(
            "Identity, tenant isolation and applet permission service: local and "
            "federated login, directory sync, tenant provisioning and audit logging."
        ),
        version=settings.app_version,
        docs_url="/docs" if settings.is_dev else None,
        redoc_url="/redoc" if settings.is_dev else None,
        openapi_url="/openapi.json" if settings.is_dev else None,
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.http_client = None
    app.state.permission_cache = PermissionOverrideCache()
    app.state.applet_registry = default_registry()
    app.state.sync_lock = SyncRunLock()
    app.state.tenant_connections = TenantConnectionFactory(settings)
    app.dependency_overrides[get_settings] = lambda: settings

    # ------------------------------------------------------------------ #
    # Middleware (added in reverse order - last added = first executed)
    # ------------------------------------------------------------------ #

    # Session cookies need credentialed CORS, so origins are always explicit
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["Authorization", "Content-Type"],
    )

    # Unique request ID for log correlation
    app.add_middleware(RequestIdMiddleware)

    # Session token extraction and validation
    app.add_middleware(AuthMiddleware)

    # ------------------------------------------------------------------ #
    # Routers
    # ------------------------------------------------------------------ #
    app.include_router(public_router)
    app.include_router(api_v1_router)

    # ------------------------------------------------------------------ #
    # Global exception handlers
    # ------------------------------------------------------------------ #

    @app.exception_handler(IdentityError)
    async def identity_error_handler(request: Request, exc: IdentityError) -> JSONResponse:
        log.info(
            "app.domain_error",
            path=request.url.path,
            method=request.method,
            code=exc.code,
            status_code=exc.status_code,
            error=exc.message,
        )
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        log.error(
            "app.unhandled_exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            exc_info=True,
        )
        return JSONResponse(
            status_code=500,
            content={"error": {"code": "internal_error", "message": "Internal server error"}},
        )

    return app
