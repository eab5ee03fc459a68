"""Security layer — AuditTrail.

Semantic layer over :class:`AuditStore`:
  - Normalises event fields (malformed values fall back to safe defaults)
  - Classifies severity through ``severity_of`` unless one is supplied
  - Stamps server time on every appended event
  - Routes events that fail to persist to a fallback EventBus channel

Two write paths exist:

    await trail.append(event)          # best-effort, never raises
    await trail.append_durable(event)  # raises PersistenceError (deny path)

Reporting operations (query, aggregate, statistics, dashboard, export) read
straight from the store.

Usage::

    trail = AuditTrail(store, fallback=LogEventBus(Path("~/.warden/audit-fallback.ndjson")))
    await trail.record_login(principal, RequestContext(ip="10.0.0.7"))
    page = await trail.query(AuditFilter(action="USER_LOGIN_FAILED"), page=1, page_size=20)
"""

from __future__ import annotations

import asyncio
import csv
import dataclasses
import io
import json
import re
import time
from collections.abc import Callable, Iterable
from enum import Enum
from typing import Any, TypeVar

from warden.events.bus import TOPIC_AUDIT_FALLBACK, EventBus, NullEventBus
from warden.exceptions import PersistenceError, ValidationError
from warden.logging import get_logger
from warden.security.audit_store import GROUP_EXPRESSIONS, AuditStore
from warden.security.models import (
    AuditAction,
    AuditEvent,
    AuditFilter,
    AuditPage,
    Bucket,
    EventCategory,
    EventResult,
    Principal,
    RequestContext,
    ResourceType,
    Role,
    Severity,
)
from warden.security.severity import severity_of

log = get_logger(__name__)

_E = TypeVar("_E", bound=Enum)

_ACTION_RE = re.compile(r"^[A-Z][A-Z0-9_]{0,63}$")

_DAY = 86_400.0
_HOUR = 3_600.0

EXPORT_FORMATS = ("json", "csv")

_CSV_COLUMNS = (
    "id",
    "time",
    "actor_id",
    "actor_name",
    "action",
    "resource_type",
    "resource_id",
    "ip",
    "user_agent",
    "category",
    "severity",
    "result",
    "description",
    "details",
)


class AuditTrail:
    """Append-only audit trail with severity classification and reporting.

    Parameters
    ----------
    store:
        Persistence backend.
    fallback:
        Channel receiving events the store could not persist.
    write_timeout:
        Seconds allowed for a single write before it counts as failed.
    clock:
        Source of server time.  Replaced in tests.
    """

    def __init__(
        self,
        store: AuditStore,
        fallback: EventBus | None = None,
        *,
        write_timeout: float = 5.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._fallback = fallback or NullEventBus()
        self._write_timeout = write_timeout
        self._clock = clock

    @property
    def store(self) -> AuditStore:
        return self._store

    def now(self) -> float:
        return self._clock()

    # ------------------------------------------------------------------
    # Write paths
    # ------------------------------------------------------------------

    def prepare(self, event: AuditEvent) -> AuditEvent:
        """Return a normalised, classified, server-stamped copy of *event*."""
        details = _json_safe(event.details)

        action = getattr(event.action, "value", event.action)
        if not isinstance(action, str) or not _ACTION_RE.match(action.upper()):
            self._warn(ValidationError("action", action, AuditAction.UNKNOWN.value))
            details = {**details, "original_action": repr(action)}
            action = AuditAction.UNKNOWN.value
        else:
            action = action.upper()

        resource_type = _coerce(event.resource_type, ResourceType, ResourceType.OTHER, "resource_type")
        category = _coerce(event.category, EventCategory, EventCategory.SYSTEM, "category")
        result = _coerce(event.result, EventResult, EventResult.SUCCESS, "result")

        severity: Severity | None = None
        if event.severity is not None:
            severity = _coerce(event.severity, Severity, None, "severity")
        if severity is None:
            severity = severity_of(action, resource_type, details)

        return dataclasses.replace(
            event,
            action=action,
            resource_type=resource_type,
            category=category,
            result=result,
            severity=severity,
            ip=event.ip or "unknown",
            actor_name=event.actor_name or event.actor_id or "anonymous",
            user_agent=event.user_agent or "",
            details=details,
            timestamp=self._clock(),
        )

    async def append(self, event: AuditEvent) -> str | None:
        """Persist *event*.  Never raises; returns ``None`` when the write failed."""
        prepared = self.prepare(event)
        try:
            await self._write(prepared)
        except Exception as exc:
            log.warning(
                "audit_append_failed",
                event_id=prepared.id,
                action=prepared.action,
                error=str(exc),
            )
            await self._spill(prepared, exc)
            return None
        return prepared.id

    async def append_durable(self, event: AuditEvent) -> str:
        """Persist *event* or raise :class:`PersistenceError`."""
        prepared = self.prepare(event)
        try:
            await self._write(prepared)
        except PersistenceError as exc:
            log.error(
                "audit_durable_append_failed",
                event_id=prepared.id,
                action=prepared.action,
                error=exc.message,
            )
            await self._spill(prepared, exc)
            raise
        return prepared.id

    async def _write(self, event: AuditEvent) -> None:
        try:
            await asyncio.wait_for(self._store.insert(event), timeout=self._write_timeout)
        except asyncio.TimeoutError as exc:
            raise PersistenceError(
                "Audit write timed out",
                context={"event_id": event.id, "timeout": self._write_timeout},
            ) from exc
        except PersistenceError:
            raise
        except Exception as exc:
            raise PersistenceError(
                f"Audit write failed: {exc}",
                context={"event_id": event.id},
            ) from exc

    async def _spill(self, event: AuditEvent, exc: Exception) -> None:
        try:
            await self._fallback.emit(
                TOPIC_AUDIT_FALLBACK,
                {"event": "audit_event", "error": str(exc), "record": event.to_dict()},
            )
        except Exception as spill_exc:
            log.error("audit_fallback_failed", event_id=event.id, error=str(spill_exc))

    @staticmethod
    def _warn(err: ValidationError) -> None:
        log.warning("audit_field_invalid", **err.context)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, event_id: str) -> AuditEvent | None:
        return await self._store.get(event_id)

    async def count(self, flt: AuditFilter | None = None) -> int:
        return await self._store.count(flt)

    async def query(
        self,
        flt: AuditFilter | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> AuditPage:
        """Return matching events newest first, with the total match count."""
        page = max(page, 1)
        page_size = max(page_size, 1)
        events, total = await self._store.query(flt, page=page, page_size=page_size)
        return AuditPage(events=events, total=total, page=page, page_size=page_size)

    async def matching_ids(self, flt: AuditFilter) -> list[str]:
        return await self._store.select_ids(flt)

    async def aggregate(
        self,
        group_by: str,
        start: float | None = None,
        end: float | None = None,
        limit: int | None = None,
        flt: AuditFilter | None = None,
    ) -> list[Bucket]:
        """Count events per *group_by* key within ``[start, end)``."""
        if group_by not in GROUP_EXPRESSIONS:
            raise ValueError(
                f"Unsupported group_by '{group_by}'. Expected one of: {sorted(GROUP_EXPRESSIONS)}"
            )
        scoped = dataclasses.replace(flt) if flt is not None else AuditFilter()
        if start is not None:
            scoped.start = start
        if end is not None:
            scoped.end = end
        rows = await self._store.aggregate(group_by, scoped, limit=limit)
        return [Bucket(key=k, count=n) for k, n in rows]

    async def security_events(
        self,
        page: int = 1,
        page_size: int = 50,
        start: float | None = None,
        end: float | None = None,
    ) -> AuditPage:
        """Security-relevant events: security actions or HIGH / CRITICAL severity."""
        flt = AuditFilter(security_only=True, start=start, end=end)
        return await self.query(flt, page=page, page_size=page_size)

    async def statistics(
        self,
        start: float | None = None,
        end: float | None = None,
    ) -> dict[str, Any]:
        """Totals, top-10 breakdowns, severity distribution and daily activity."""
        flt = AuditFilter(start=start, end=end)
        total = await self.count(flt)
        by_severity = {s.value: 0 for s in Severity}
        for bucket in await self.aggregate("severity", flt=flt):
            by_severity[bucket.key] = bucket.count

        daily_start = start if start is not None else self._clock() - 7 * _DAY
        daily = await self.aggregate("day", start=daily_start, end=end)

        return {
            "total": total,
            "start": start,
            "end": end,
            "by_action": [b.to_dict() for b in await self.aggregate("action", flt=flt, limit=10)],
            "by_resource_type": [
                b.to_dict() for b in await self.aggregate("resource_type", flt=flt, limit=10)
            ],
            "by_actor": [b.to_dict() for b in await self.aggregate("actor_id", flt=flt, limit=10)],
            "by_severity": by_severity,
            "daily": [b.to_dict() for b in daily],
        }

    async def dashboard(self, now: float | None = None) -> dict[str, Any]:
        """Snapshot for the security dashboard."""
        now = self._clock() if now is None else now
        day_ago = now - _DAY
        recent = await self._store.fetch(None, limit=10)
        return {
            "generated_at": now,
            "last_24h": await self.count(AuditFilter(start=day_ago)),
            "last_7d": await self.count(AuditFilter(start=now - 7 * _DAY)),
            "critical_24h": await self.count(
                AuditFilter(severity=Severity.CRITICAL, start=day_ago)
            ),
            "security_24h": await self.count(AuditFilter(security_only=True, start=day_ago)),
            "recent": [e.to_dict() for e in recent],
            "hourly": [b.to_dict() for b in await self.aggregate("hour", start=now - 24 * _HOUR)],
        }

    async def export(
        self,
        flt: AuditFilter | None = None,
        fmt: str = "json",
        limit: int | None = None,
    ) -> str:
        """Render matching events as a JSON array or CSV document."""
        if fmt not in EXPORT_FORMATS:
            raise ValueError(f"Unsupported export format '{fmt}'. Expected one of: {EXPORT_FORMATS}")
        events = await self._store.fetch(flt, limit=limit)
        if fmt == "json":
            return json.dumps([e.to_dict() for e in events], indent=2, default=str)

        buf = io.StringIO()
        writer = csv.writer(buf)
        writer.writerow(_CSV_COLUMNS)
        for event in events:
            row = event.to_dict()
            row["details"] = json.dumps(event.details, default=str)
            writer.writerow([row[c] if row[c] is not None else "" for c in _CSV_COLUMNS])
        return buf.getvalue()

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    async def purge(self, cutoff: float) -> int:
        """Delete events older than *cutoff*.  Independent of capped eviction."""
        deleted = await self._store.delete_before(cutoff)
        log.info("audit_purged", cutoff=cutoff, deleted=deleted)
        return deleted

    async def purge_older_than(self, days: int) -> int:
        return await self.purge(self._clock() - days * _DAY)

    # ------------------------------------------------------------------
    # Typed helpers
    # ------------------------------------------------------------------

    async def record_login(self, principal: Principal, ctx: RequestContext) -> str | None:
        return await self.append(
            event_for(
                AuditAction.USER_LOGIN,
                ctx,
                principal=principal,
                resource_type=ResourceType.USER,
                resource_id=principal.user_id,
                category=EventCategory.AUTHENTICATION,
                description=f"User {principal.username} logged in",
            )
        )

    async def record_login_failure(
        self,
        username: str,
        ctx: RequestContext,
        reason: str,
        *,
        user_id: str | None = None,
        severity: Severity | None = None,
        attempts: int | None = None,
    ) -> str | None:
        details: dict[str, Any] = {"username": username, "reason": reason}
        if attempts is not None:
            details["attempts"] = attempts
        return await self.append(
            AuditEvent(
                action=AuditAction.USER_LOGIN_FAILED.value,
                actor_id=user_id,
                actor_name=username or "anonymous",
                resource_type=ResourceType.USER,
                resource_id=user_id,
                ip=ctx.ip,
                user_agent=ctx.user_agent,
                category=EventCategory.AUTHENTICATION,
                severity=severity,
                result=EventResult.FAILURE,
                description=f"Failed login for {username}: {reason}",
                details=details,
            )
        )

    async def record_logout(self, principal: Principal, ctx: RequestContext) -> str | None:
        return await self.append(
            event_for(
                AuditAction.USER_LOGOUT,
                ctx,
                principal=principal,
                resource_type=ResourceType.USER,
                resource_id=principal.user_id,
                category=EventCategory.AUTHENTICATION,
                description=f"User {principal.username} logged out",
            )
        )

    async def record_account_locked(
        self,
        user_id: str,
        username: str,
        ctx: RequestContext,
        *,
        attempts: int,
        locked_until: float,
    ) -> str | None:
        return await self.append(
            AuditEvent(
                action=AuditAction.USER_LOCKED.value,
                actor_id=user_id,
                actor_name=username,
                resource_type=ResourceType.USER,
                resource_id=user_id,
                ip=ctx.ip,
                user_agent=ctx.user_agent,
                category=EventCategory.SECURITY,
                severity=Severity.CRITICAL,
                result=EventResult.FAILURE,
                description=f"Account {username} locked after {attempts} failed logins",
                details={"attempts": attempts, "locked_until": locked_until},
            )
        )

    async def record_account_unlocked(
        self,
        user_id: str,
        username: str,
        actor: Principal,
        ctx: RequestContext,
    ) -> str | None:
        return await self.append(
            event_for(
                AuditAction.USER_UNLOCKED,
                ctx,
                principal=actor,
                resource_type=ResourceType.USER,
                resource_id=user_id,
                category=EventCategory.SECURITY,
                description=f"Account {username} unlocked by {actor.username}",
                details={"username": username},
            )
        )

    async def record_permission_denied(
        self,
        principal: Principal | None,
        requirement: str,
        ctx: RequestContext,
        *,
        reason: str,
    ) -> str | None:
        return await self.append(
            event_for(
                AuditAction.USER_ACCESS_DENIED,
                ctx,
                principal=principal,
                resource_type=ResourceType.SECURITY,
                category=EventCategory.AUTHORIZATION,
                result=EventResult.FAILURE,
                description=f"Access denied to {requirement}",
                details={"requirement": requirement, "reason": reason},
            )
        )

    async def record_password_change(
        self,
        actor: Principal,
        target_user_id: str,
        ctx: RequestContext,
    ) -> str | None:
        return await self.append(
            event_for(
                AuditAction.PASSWORD_CHANGED,
                ctx,
                principal=actor,
                resource_type=ResourceType.USER,
                resource_id=target_user_id,
                category=EventCategory.SECURITY,
                description="Account password changed",
                details={"self_service": actor.user_id == target_user_id},
            )
        )

    async def record_role_change(
        self,
        actor: Principal,
        target_user_id: str,
        old_roles: Iterable[Role],
        new_roles: Iterable[Role],
        ctx: RequestContext,
    ) -> str | None:
        old = sorted(r.value for r in old_roles)
        new = sorted(r.value for r in new_roles)
        return await self.append(
            event_for(
                AuditAction.ROLE_CHANGED,
                ctx,
                principal=actor,
                resource_type=ResourceType.USER,
                resource_id=target_user_id,
                category=EventCategory.SECURITY,
                description=f"Roles changed from {old} to {new}",
                details={"old_roles": old, "new_roles": new},
            )
        )

    async def record_config_change(
        self,
        actor: Principal | None,
        setting: str,
        ctx: RequestContext,
        details: dict[str, Any] | None = None,
    ) -> str | None:
        return await self.append(
            event_for(
                AuditAction.SYSTEM_CONFIG_CHANGE,
                ctx,
                principal=actor,
                resource_type=ResourceType.SYSTEM,
                resource_id=setting,
                category=EventCategory.SYSTEM,
                description=f"System setting {setting} changed",
                details=details or {},
            )
        )

    async def record_suspicious_activity(
        self,
        ctx: RequestContext,
        description: str,
        *,
        principal: Principal | None = None,
        details: dict[str, Any] | None = None,
    ) -> str | None:
        return await self.append(
            event_for(
                AuditAction.SUSPICIOUS_ACTIVITY,
                ctx,
                principal=principal,
                resource_type=ResourceType.SECURITY,
                category=EventCategory.SECURITY,
                result=EventResult.FAILURE,
                description=description,
                details=details or {},
            )
        )

    async def record_brute_force(
        self,
        ctx: RequestContext,
        username: str,
        attempts: int,
    ) -> str | None:
        return await self.append(
            AuditEvent(
                action=AuditAction.BRUTE_FORCE_ATTEMPT.value,
                actor_name=username or "anonymous",
                resource_type=ResourceType.SECURITY,
                ip=ctx.ip,
                user_agent=ctx.user_agent,
                category=EventCategory.SECURITY,
                result=EventResult.FAILURE,
                description=f"Possible brute-force attack against {username}",
                details={"username": username, "attempts": attempts},
            )
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _coerce(value: Any, enum_cls: type[_E], default: _E | None, field_name: str) -> Any:
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        try:
            return enum_cls(value.upper())
        except ValueError:
            pass
    AuditTrail._warn(ValidationError(field_name, value, default.value if default else None))
    return default


def _json_safe(details: Any) -> dict[str, Any]:
    """Round-trip *details* through JSON; unencodable payloads become their repr."""
    if isinstance(details, dict):
        try:
            safe = json.loads(json.dumps(details, default=str))
        except (TypeError, ValueError):
            pass
        else:
            if isinstance(safe, dict):
                return safe
    return {"value": repr(details)}


def event_for(
    action: AuditAction | str,
    ctx: RequestContext,
    principal: Principal | None = None,
    **fields: Any,
) -> AuditEvent:
    """Build an ``AuditEvent`` for *principal* acting from *ctx*."""
    return AuditEvent(
        action=getattr(action, "value", action),
        actor_id=principal.user_id if principal else None,
        actor_name=principal.username if principal else "anonymous",
        ip=ctx.ip,
        user_agent=ctx.user_agent,
        **fields,
    )
