"""Security layer — Permissions, authorization gate, audit trail, monitoring, secret encryption."""

from warden.security.accounts import AccountService, LoginResult
from warden.security.audit import AuditTrail, event_for
from warden.security.audit_store import AuditStore
from warden.security.cipher import SecretCipher, generate_master_key
from warden.security.gate import (
    AuthorizationGate,
    PermissionRequirement,
    Requirement,
    RoleRequirement,
)
from warden.security.manager import SecurityManager
from warden.security.models import (
    AuditAction,
    AuditEvent,
    AuditFilter,
    AuditPage,
    Bucket,
    Decision,
    EventCategory,
    EventResult,
    Principal,
    RequestContext,
    ResourceType,
    Role,
    SecurityAlert,
    Severity,
)
from warden.security.monitor import SecurityContext, SecurityMonitor
from warden.security.notifier import (
    EventBusNotifier,
    FanoutNotifier,
    LogNotifier,
    Notifier,
    NullNotifier,
)
from warden.security.permissions import AccessScope, PermissionModel
from warden.security.severity import severity_of
from warden.security.tokens import TokenClaims, TokenService
from warden.security.users import UserRecord, UserStore
from warden.security.window import SlidingWindowCounter

__all__ = [
    # Aggregate
    "SecurityManager",
    # Access control
    "PermissionModel",
    "AccessScope",
    "AuthorizationGate",
    "PermissionRequirement",
    "RoleRequirement",
    "Requirement",
    "Decision",
    # Identity
    "AccountService",
    "LoginResult",
    "TokenService",
    "TokenClaims",
    "UserStore",
    "UserRecord",
    "Principal",
    "Role",
    # Audit
    "AuditTrail",
    "AuditStore",
    "AuditEvent",
    "AuditFilter",
    "AuditPage",
    "AuditAction",
    "Bucket",
    "EventCategory",
    "EventResult",
    "ResourceType",
    "RequestContext",
    "Severity",
    "event_for",
    "severity_of",
    # Monitoring
    "SecurityMonitor",
    "SecurityContext",
    "SecurityAlert",
    "SlidingWindowCounter",
    "Notifier",
    "NullNotifier",
    "LogNotifier",
    "EventBusNotifier",
    "FanoutNotifier",
    # Secrets
    "SecretCipher",
    "generate_master_key",
]
