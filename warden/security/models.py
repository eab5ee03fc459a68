"""Security layer — Roles, audit taxonomy, and data models.

Defines the core types shared by every security component:
  - ``Role``            — closed set of roles, each owning a permission matrix
  - ``AuditAction``     — well-known audit action identifiers
  - ``ResourceType``    — what an audit event is about
  - ``EventCategory``   — AUTHENTICATION / AUTHORIZATION / DATA / SYSTEM / SECURITY
  - ``Severity``        — LOW / MEDIUM / HIGH / CRITICAL classification
  - ``EventResult``     — SUCCESS / FAILURE / ERROR
  - ``Principal``       — runtime identity bound to a request
  - ``AuditEvent``      — immutable audit record
  - ``SecurityAlert``   — ephemeral alert produced by the monitor
  - ``AuditFilter`` / ``AuditPage`` / ``Bucket`` — query and reporting shapes

Audit actions are stored as plain upper-case strings so that callers can
record types the ``AuditAction`` enum does not list (custom monitor event
types, for instance).  The enum exists for discoverability and to keep the
common names consistent.
"""

from __future__ import annotations

import math
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class Role(str, Enum):
    """Closed role set.  Matrices live in ``security.permissions``."""

    ADMIN = "ADMIN"
    SYSTEM_ADMIN = "SYSTEM_ADMIN"
    TECH_SUPPORT = "TECH_SUPPORT"
    DEPARTMENT_MANAGER = "DEPARTMENT_MANAGER"
    OBSERVER = "OBSERVER"


class Severity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class EventCategory(str, Enum):
    AUTHENTICATION = "AUTHENTICATION"
    AUTHORIZATION = "AUTHORIZATION"
    DATA = "DATA"
    SYSTEM = "SYSTEM"
    SECURITY = "SECURITY"


class EventResult(str, Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    ERROR = "ERROR"


class ResourceType(str, Enum):
    USER = "USER"
    DEVICE = "DEVICE"
    LOCATION = "LOCATION"
    PASSWORD = "PASSWORD"
    SERVER = "SERVER"
    ROLE = "ROLE"
    SYSTEM = "SYSTEM"
    AUDIT = "AUDIT"
    SECURITY = "SECURITY"
    OTHER = "OTHER"


class AuditAction(str, Enum):
    """Well-known audit actions."""

    # -- Authentication -----------------------------------------------------
    USER_LOGIN = "USER_LOGIN"
    USER_LOGOUT = "USER_LOGOUT"
    USER_LOGIN_FAILED = "USER_LOGIN_FAILED"
    USER_ACCESS_DENIED = "USER_ACCESS_DENIED"
    USER_LOCKED = "USER_LOCKED"
    USER_UNLOCKED = "USER_UNLOCKED"

    # -- Users --------------------------------------------------------------
    USER_CREATED = "USER_CREATED"
    USER_UPDATED = "USER_UPDATED"
    USER_DELETED = "USER_DELETED"
    PASSWORD_CHANGED = "PASSWORD_CHANGED"
    ROLE_CHANGED = "ROLE_CHANGED"

    # -- Inventory ----------------------------------------------------------
    DEVICE_CREATED = "DEVICE_CREATED"
    DEVICE_UPDATED = "DEVICE_UPDATED"
    DEVICE_DELETED = "DEVICE_DELETED"
    DEVICE_VIEWED = "DEVICE_VIEWED"
    QR_GENERATED = "QR_GENERATED"
    QR_SCANNED = "QR_SCANNED"

    # -- Locations ----------------------------------------------------------
    LOCATION_CREATED = "LOCATION_CREATED"
    LOCATION_UPDATED = "LOCATION_UPDATED"
    LOCATION_DELETED = "LOCATION_DELETED"
    FLOORPLAN_UPLOADED = "FLOORPLAN_UPLOADED"
    FLOORPLAN_DELETED = "FLOORPLAN_DELETED"

    # -- Stored secrets -----------------------------------------------------
    PASSWORD_CREATED = "PASSWORD_CREATED"
    PASSWORD_VIEWED = "PASSWORD_VIEWED"
    PASSWORD_UPDATED = "PASSWORD_UPDATED"
    PASSWORD_DELETED = "PASSWORD_DELETED"
    PASSWORD_DECRYPTED = "PASSWORD_DECRYPTED"

    # -- Servers ------------------------------------------------------------
    SERVER_ACCESSED = "SERVER_ACCESSED"
    SCRIPT_EXECUTED = "SCRIPT_EXECUTED"
    SERVER_INFO_VIEWED = "SERVER_INFO_VIEWED"
    SERVER_LOGS_VIEWED = "SERVER_LOGS_VIEWED"

    # -- System -------------------------------------------------------------
    BACKUP_CREATED = "BACKUP_CREATED"
    BACKUP_RESTORED = "BACKUP_RESTORED"
    SETTINGS_UPDATED = "SETTINGS_UPDATED"
    SYSTEM_CONFIG_CHANGE = "SYSTEM_CONFIG_CHANGE"
    MAINTENANCE_MODE = "MAINTENANCE_MODE"
    EXPORT_PERFORMED = "EXPORT_PERFORMED"

    # -- Roles --------------------------------------------------------------
    ROLE_CREATED = "ROLE_CREATED"
    ROLE_UPDATED = "ROLE_UPDATED"
    ROLE_DELETED = "ROLE_DELETED"
    PERMISSION_GRANTED = "PERMISSION_GRANTED"
    PERMISSION_REVOKED = "PERMISSION_REVOKED"

    # -- Audit trail --------------------------------------------------------
    AUDIT_VIEWED = "AUDIT_VIEWED"
    AUDIT_EXPORTED = "AUDIT_EXPORTED"
    AUDIT_PURGED = "AUDIT_PURGED"

    # -- Security monitor event types --------------------------------------
    UNAUTHORIZED_ACCESS = "UNAUTHORIZED_ACCESS"
    BRUTE_FORCE_ATTEMPT = "BRUTE_FORCE_ATTEMPT"
    SUSPICIOUS_ACTIVITY = "SUSPICIOUS_ACTIVITY"
    MULTIPLE_LOGIN_FAILURES = "MULTIPLE_LOGIN_FAILURES"
    CRITICAL_ROLE_CHANGE = "CRITICAL_ROLE_CHANGE"
    SENSITIVE_ADMIN_ACTION = "SENSITIVE_ADMIN_ACTION"
    SECURITY_ALERT = "SECURITY_ALERT"

    # Placeholder for malformed action names.
    UNKNOWN = "UNKNOWN"


# Actions surfaced by ``AuditTrail.security_events`` regardless of severity.
SECURITY_ACTIONS: frozenset[str] = frozenset(
    {
        AuditAction.USER_LOGIN_FAILED.value,
        AuditAction.USER_ACCESS_DENIED.value,
        AuditAction.USER_LOCKED.value,
        AuditAction.UNAUTHORIZED_ACCESS.value,
        AuditAction.BRUTE_FORCE_ATTEMPT.value,
        AuditAction.SUSPICIOUS_ACTIVITY.value,
        AuditAction.MULTIPLE_LOGIN_FAILURES.value,
        AuditAction.CRITICAL_ROLE_CHANGE.value,
        AuditAction.SENSITIVE_ADMIN_ACTION.value,
        AuditAction.SECURITY_ALERT.value,
    }
)


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Principal
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Principal:
    """Authenticated identity bound to a request.

    Built from a persisted user record at authentication time; never
    persisted itself.
    """

    user_id: str
    username: str
    roles: frozenset[Role] = frozenset()
    is_active: bool = True
    locked_until: float | None = None
    department: str | None = None
    email: str | None = None

    @property
    def is_locked(self) -> bool:
        return self.is_locked_at(time.time())

    def is_locked_at(self, now: float) -> bool:
        return self.locked_until is not None and self.locked_until > now

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "username": self.username,
            "roles": sorted(r.value for r in self.roles),
            "is_active": self.is_active,
            "locked_until": self.locked_until,
            "department": self.department,
            "email": self.email,
        }


@dataclass(frozen=True)
class RequestContext:
    """Network origin of the operation being audited."""

    ip: str = "unknown"
    user_agent: str = ""
    request_id: str | None = None
    path: str | None = None


# ---------------------------------------------------------------------------
# Audit event
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AuditEvent:
    """Immutable audit record.

    ``severity`` may be left as ``None`` by producers; ``AuditTrail.append``
    fills it from the static classification tables.  ``timestamp`` is
    overwritten with server time on append.
    """

    action: str
    actor_id: str | None = None
    actor_name: str = "anonymous"
    resource_type: ResourceType = ResourceType.OTHER
    resource_id: str | None = None
    ip: str = "unknown"
    user_agent: str = ""
    category: EventCategory = EventCategory.SYSTEM
    severity: Severity | None = None
    result: EventResult = EventResult.SUCCESS
    description: str = ""
    details: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: float = field(default_factory=time.time)

    @property
    def subject_key(self) -> str:
        """Actor id when known, otherwise the source IP."""
        return self.actor_id or self.ip

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "time": _iso(self.timestamp),
            "actor_id": self.actor_id,
            "actor_name": self.actor_name,
            "action": self.action,
            "resource_type": self.resource_type.value,
            "resource_id": self.resource_id,
            "ip": self.ip,
            "user_agent": self.user_agent,
            "category": self.category.value,
            "severity": self.severity.value if self.severity else None,
            "result": self.result.value,
            "description": self.description,
            "details": self.details,
        }


# ---------------------------------------------------------------------------
# Security alert
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SecurityAlert:
    """Alert raised once an event type crosses its threshold for a subject."""

    alert_type: str
    subject_key: str
    triggering_event_ids: tuple[str, ...]
    recipients: tuple[str, ...]
    message: str
    count: int
    threshold: int
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "alert_type": self.alert_type,
            "subject_key": self.subject_key,
            "triggering_event_ids": list(self.triggering_event_ids),
            "recipients": list(self.recipients),
            "message": self.message,
            "count": self.count,
            "threshold": self.threshold,
            "timestamp": self.timestamp,
        }


# ---------------------------------------------------------------------------
# Query shapes
# ---------------------------------------------------------------------------


@dataclass
class AuditFilter:
    """Filter for audit queries.  Unset fields do not constrain the result.

    ``start`` is inclusive and ``end`` exclusive, both Unix epoch seconds.
    ``search`` is a case-insensitive substring match over description,
    user agent and actor name.  ``security_only`` keeps events whose action
    is in ``SECURITY_ACTIONS`` or whose severity is HIGH or CRITICAL.
    """

    action: str | None = None
    actions: list[str] | None = None
    resource_type: ResourceType | None = None
    resource_id: str | None = None
    actor_id: str | None = None
    severity: Severity | None = None
    severities: list[Severity] | None = None
    category: EventCategory | None = None
    result: EventResult | None = None
    ip: str | None = None
    search: str | None = None
    start: float | None = None
    end: float | None = None
    security_only: bool = False


@dataclass(frozen=True)
class AuditPage:
    events: list[AuditEvent]
    total: int
    page: int
    page_size: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.page_size) if self.page_size else 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "events": [e.to_dict() for e in self.events],
            "total": self.total,
            "page": self.page,
            "page_size": self.page_size,
            "pages": self.pages,
        }


@dataclass(frozen=True)
class Bucket:
    """One group of an aggregate query."""

    key: str
    count: int

    def to_dict(self) -> dict[str, Any]:
        return {"key": self.key, "count": self.count}


# ---------------------------------------------------------------------------
# Authorization decision
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Decision:
    allowed: bool
    principal: Principal | None = None
    reason: str = "granted"
    event_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "principal": self.principal.to_dict() if self.principal else None,
            "reason": self.reason,
            "event_id": self.event_id,
        }
