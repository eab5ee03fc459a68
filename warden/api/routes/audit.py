"""GET /audit, /audit/security, /audit/stats, /audit/aggregate, /audit/dashboard,
/audit/export and POST /audit/purge"""

from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, HTTPException, Query, Response, status

from warden.api.dependencies import (
    AdminDep,
    AuditDep,
    AuditExporterDep,
    AuditReaderDep,
    ContextDep,
)
from warden.api.schemas import PurgeRequest, PurgeResponse
from warden.logging import get_logger
from warden.security.audit import event_for
from warden.security.models import (
    AuditAction,
    AuditFilter,
    EventCategory,
    EventResult,
    ResourceType,
    Severity,
)

log = get_logger(__name__)
router = APIRouter(prefix="/audit", tags=["audit"])

_MEDIA_TYPES = {"json": "application/json", "csv": "text/csv"}


def _filter(
    action: str | None,
    resource_type: ResourceType | None,
    resource_id: str | None,
    actor_id: str | None,
    severity: Severity | None,
    category: EventCategory | None,
    result: EventResult | None,
    ip: str | None,
    search: str | None,
    start: float | None,
    end: float | None,
) -> AuditFilter:
    return AuditFilter(
        action=action.upper() if action else None,
        resource_type=resource_type,
        resource_id=resource_id,
        actor_id=actor_id,
        severity=severity,
        category=category,
        result=result,
        ip=ip,
        search=search,
        start=start,
        end=end,
    )


@router.get("", summary="Query the audit trail")
async def list_events(
    _principal: AuditReaderDep,
    audit: AuditDep,
    action: str | None = None,
    resource_type: ResourceType | None = None,
    resource_id: str | None = None,
    actor_id: str | None = None,
    severity: Severity | None = None,
    category: EventCategory | None = None,
    result: EventResult | None = None,
    ip: str | None = None,
    search: str | None = Query(default=None, max_length=200),
    start: float | None = Query(default=None, description="Inclusive lower bound (epoch seconds)."),
    end: float | None = Query(default=None, description="Exclusive upper bound (epoch seconds)."),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=500),
) -> dict[str, Any]:
    flt = _filter(
        action, resource_type, resource_id, actor_id, severity, category, result, ip, search, start, end
    )
    page_ = await audit.query(flt, page=page, page_size=limit)
    return page_.to_dict()


@router.get("/security", summary="Security-relevant events")
async def security_events(
    _principal: AuditReaderDep,
    audit: AuditDep,
    start: float | None = None,
    end: float | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=500),
) -> dict[str, Any]:
    page_ = await audit.security_events(page=page, page_size=limit, start=start, end=end)
    return page_.to_dict()


@router.get("/stats", summary="Audit statistics")
async def statistics(
    _principal: AuditReaderDep,
    audit: AuditDep,
    start: float | None = None,
    end: float | None = None,
) -> dict[str, Any]:
    return await audit.statistics(start=start, end=end)


@router.get("/aggregate", summary="Count events per group")
async def aggregate(
    _principal: AuditReaderDep,
    audit: AuditDep,
    group_by: str = Query(description="action, resource_type, severity, actor_id, category, result, ip, day or hour"),
    start: float | None = None,
    end: float | None = None,
    limit: int | None = Query(default=None, ge=1, le=1000),
) -> dict[str, Any]:
    try:
        buckets = await audit.aggregate(group_by, start=start, end=end, limit=limit)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return {"group_by": group_by, "buckets": [b.to_dict() for b in buckets]}


@router.get("/dashboard", summary="Security dashboard snapshot")
async def dashboard(_principal: AuditReaderDep, audit: AuditDep) -> dict[str, Any]:
    return await audit.dashboard()


@router.get("/export", summary="Export audit events as JSON or CSV")
async def export(
    principal: AuditExporterDep,
    audit: AuditDep,
    ctx: ContextDep,
    format: Literal["json", "csv"] = "json",
    action: str | None = None,
    resource_type: ResourceType | None = None,
    actor_id: str | None = None,
    severity: Severity | None = None,
    start: float | None = None,
    end: float | None = None,
    limit: int | None = Query(default=10_000, ge=1, le=100_000),
) -> Response:
    flt = _filter(action, resource_type, None, actor_id, severity, None, None, None, None, start, end)
    body = await audit.export(flt, fmt=format, limit=limit)
    await audit.append(
        event_for(
            AuditAction.AUDIT_EXPORTED,
            ctx,
            principal,
            resource_type=ResourceType.AUDIT,
            category=EventCategory.DATA,
            description=f"Audit trail exported as {format}",
            details={"format": format, "limit": limit},
        )
    )
    return Response(
        content=body,
        media_type=_MEDIA_TYPES[format],
        headers={"Content-Disposition": f'attachment; filename="audit-export.{format}"'},
    )


@router.post("/purge", response_model=PurgeResponse, summary="Delete events past retention")
async def purge(
    body: PurgeRequest,
    principal: AdminDep,
    audit: AuditDep,
    ctx: ContextDep,
) -> PurgeResponse:
    deleted = await audit.purge_older_than(body.retention_days)
    await audit.append(
        event_for(
            AuditAction.AUDIT_PURGED,
            ctx,
            principal,
            resource_type=ResourceType.AUDIT,
            category=EventCategory.SYSTEM,
            description=f"Purged {deleted} audit events older than {body.retention_days} days",
            details={"retention_days": body.retention_days, "deleted": deleted},
        )
    )
    log.info("audit_purge_requested", deleted=deleted, retention_days=body.retention_days)
    return PurgeResponse(deleted=deleted, retention_days=body.retention_days)
