"""Main API router - aggregates all sub-routers.

All routes are versioned under /api/v1 except health checks.
"""

from __future__ import annotations

from fastapi import APIRouter

from identity_core.api import (
    auth,
    health,
    organization,
    permissions,
    sso,
    system,
    tenants,
    users,
)

# Public router (no auth required)
public_router = APIRouter()
public_router.include_router(health.router)

# Versioned API router
api_v1_router = APIRouter(prefix="/api/v1")
api_v1_router.include_router(auth.router)
api_v1_router.include_router(sso.router)
api_v1_router.include_router(users.router)
api_v1_router.include_router(tenants.router)
api_v1_router.include_router(organization.router)
api_v1_router.include_router(permissions.router)
api_v1_router.include_router(system.router)
