"""GET /health — liveness plus store and subsystem status."""

from __future__ import annotations

import time

from fastapi import APIRouter

from warden import __version__
from warden.api.dependencies import SecurityDep
from warden.api.schemas import HealthResponse
from warden.exceptions import PersistenceError

router = APIRouter(tags=["health"])

_start_time = time.time()


@router.get("/health", response_model=HealthResponse, summary="Service health check")
async def health(security: SecurityDep) -> HealthResponse:
    try:
        audit_events: int | None = await security.audit.count()
        status = "ok"
    except PersistenceError:
        audit_events = None
        status = "degraded"

    return HealthResponse(
        status=status,
        version=__version__,
        uptime_seconds=round(time.time() - _start_time, 2),
        audit_events=audit_events,
        secrets_configured=security.cipher.configured,
        monitor_enabled=security.monitor.enabled,
    )
