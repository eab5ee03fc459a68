"""Security layer — Audit severity classification.

``severity_of`` maps an action name onto a severity tier through three
static tables.  It is pure and total: the same action string always
yields the same tier, and anything not listed is LOW.

The tables carry both the short verb-style names used by external
producers (``USER_DELETE``, ``LOGIN_FAILED``) and the past-tense names of
``AuditAction`` (``USER_DELETED``, ``USER_LOGIN_FAILED``).
"""

from __future__ import annotations

from typing import Any

from warden.security.models import Severity

CRITICAL_ACTIONS: frozenset[str] = frozenset(
    {
        "ACCOUNT_LOCKED",
        "BRUTE_FORCE_ATTEMPT",
        "UNAUTHORIZED_ACCESS",
        "DATA_BREACH",
        "SYSTEM_COMPROMISE",
        "ADMIN_PRIVILEGE_ESCALATION",
        "USER_LOCKED",
        "CRITICAL_ROLE_CHANGE",
    }
)

HIGH_ACTIONS: frozenset[str] = frozenset(
    {
        "LOGIN_FAILED",
        "USER_LOGIN_FAILED",
        "PERMISSION_DENIED",
        "USER_ACCESS_DENIED",
        "PASSWORD_CHANGE",
        "PASSWORD_CHANGED",
        "ROLE_CHANGE",
        "ROLE_CHANGED",
        "USER_DELETE",
        "USER_DELETED",
        "DEVICE_DELETE",
        "DEVICE_DELETED",
        "LOCATION_DELETE",
        "LOCATION_DELETED",
        "SERVER_EXECUTE",
        "SCRIPT_EXECUTED",
        "AUDIT_DELETE",
        "AUDIT_PURGED",
        "SYSTEM_CONFIG_CHANGE",
        "MULTIPLE_LOGIN_FAILURES",
        "SUSPICIOUS_ACTIVITY",
        "SENSITIVE_ADMIN_ACTION",
    }
)

MEDIUM_ACTIONS: frozenset[str] = frozenset(
    {
        "LOGIN_SUCCESS",
        "USER_LOGIN",
        "LOGOUT",
        "USER_LOGOUT",
        "USER_CREATE",
        "USER_CREATED",
        "USER_UPDATE",
        "USER_UPDATED",
        "USER_UNLOCKED",
        "DEVICE_CREATE",
        "DEVICE_CREATED",
        "DEVICE_UPDATE",
        "DEVICE_UPDATED",
        "LOCATION_CREATE",
        "LOCATION_CREATED",
        "LOCATION_UPDATE",
        "LOCATION_UPDATED",
        "PASSWORD_CREATE",
        "PASSWORD_CREATED",
        "PASSWORD_UPDATE",
        "PASSWORD_UPDATED",
        "PASSWORD_DECRYPTED",
        "SERVER_CREATE",
        "SERVER_UPDATE",
    }
)


def severity_of(
    action: str,
    resource_type: Any = None,
    details: dict[str, Any] | None = None,
) -> Severity:
    """Classify *action*.

    ``resource_type`` and ``details`` are accepted so producers can pass the
    whole event shape; the static tables only look at the action.
    """
    name = getattr(action, "value", action)
    if name in CRITICAL_ACTIONS:
        return Severity.CRITICAL
    if name in HIGH_ACTIONS:
        return Severity.HIGH
    if name in MEDIUM_ACTIONS:
        return Severity.MEDIUM
    return Severity.LOW
