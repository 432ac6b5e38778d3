"""Telemetry package for observability.

This package contains structured logging setup and request-id propagation.
"""

from __future__ import annotations

from identity_core.telemetry.logging import (
    RequestIdMiddleware,
    bind_tenant_context,
    bind_user_context,
    configure_logging,
)

__all__ = [
    "RequestIdMiddleware",
    "bind_tenant_context",
    "bind_user_context",
    "configure_logging",
]
