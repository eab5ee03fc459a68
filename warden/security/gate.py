"""Security layer — AuthorizationGate.

Per-request state machine with terminal states ALLOWED / DENIED:

  1. identity    — verify the bearer token       → AuthenticationError(MISSING|INVALID|EXPIRED)
  2. principal   — load the account              → AuthenticationError(PRINCIPAL_NOT_FOUND)
  3. state       — active and not locked         → AccountStateError(DISABLED|LOCKED)
  4. decision    — permission or role check      → AuthorizationError(INSUFFICIENT_PERMISSION)

Every denial is written to the audit trail *durably* before the error
leaves the gate, so a caller cannot retry past an unrecorded denial.  If
that write fails the gate raises ``PersistenceError`` instead.  Denials
other than a missing credential also feed the SecurityMonitor
(``UNAUTHORIZED_ACCESS``) in the background.

Allowed outcomes are not audited here; controllers record the business
action once it commits.

Row-level department scoping is not enforced by the gate.  It is exposed
through ``scope_filter`` for data-access code.

Usage::

    gate = AuthorizationGate(tokens, users, PermissionModel(), trail, monitor)
    decision = await gate.authorize(token, PermissionRequirement("passwords", "decrypt"), ctx)
"""

from __future__ import annotations

import time
from dataclasses import dataclass

from warden.exceptions import (
    AccountState,
    AccountStateError,
    AuthenticationError,
    AuthenticationFailure,
    AuthorizationError,
    SecurityError,
)
from warden.logging import get_logger
from warden.security.audit import AuditTrail
from warden.security.models import (
    AuditAction,
    AuditEvent,
    Decision,
    EventCategory,
    EventResult,
    Principal,
    RequestContext,
    ResourceType,
    Role,
    Severity,
)
from warden.security.monitor import SecurityContext, SecurityMonitor
from warden.security.permissions import AccessScope, PermissionModel
from warden.security.tokens import TokenService
from warden.security.users import UserStore

log = get_logger(__name__)


# ---------------------------------------------------------------------------
# Requirements
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PermissionRequirement:
    module: str
    action: str

    def __str__(self) -> str:
        return f"{self.module}.{self.action}"


@dataclass(frozen=True)
class RoleRequirement:
    roles: frozenset[Role]

    def __str__(self) -> str:
        return "role:" + "|".join(sorted(r.value for r in self.roles))


Requirement = PermissionRequirement | RoleRequirement

# Credential failures that do not identify anyone get MEDIUM; failures
# tied to a real (or once real) account get HIGH.
_MEDIUM_AUTH_FAILURES = frozenset(
    {
        AuthenticationFailure.MISSING,
        AuthenticationFailure.INVALID,
        AuthenticationFailure.EXPIRED,
    }
)


class AuthorizationGate:
    """Identity resolution, account-state check, permission decision, deny audit."""

    def __init__(
        self,
        tokens: TokenService,
        users: UserStore,
        permissions: PermissionModel,
        trail: AuditTrail,
        monitor: SecurityMonitor | None = None,
    ) -> None:
        self._tokens = tokens
        self._users = users
        self._permissions = permissions
        self._trail = trail
        self._monitor = monitor

    @property
    def permissions(self) -> PermissionModel:
        return self._permissions

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def authenticate(
        self,
        credential: str | None,
        ctx: RequestContext | None = None,
    ) -> Principal:
        """Steps 1-3.  Returns the live principal or raises after auditing."""
        ctx = ctx or RequestContext()
        try:
            return await self._resolve(credential)
        except SecurityError as exc:
            await self._deny(exc, ctx)
            raise

    async def authorize(
        self,
        credential: str | None,
        requirement: Requirement,
        ctx: RequestContext | None = None,
    ) -> Decision:
        """Run the full pipeline.  Returns an allowed Decision or raises after auditing."""
        ctx = ctx or RequestContext()
        principal = await self.authenticate(credential, ctx)
        return await self.check(principal, requirement, ctx)

    async def check(
        self,
        principal: Principal,
        requirement: Requirement,
        ctx: RequestContext | None = None,
    ) -> Decision:
        """Step 4 for an already-authenticated principal."""
        ctx = ctx or RequestContext()
        if self._granted(principal, requirement):
            return Decision(allowed=True, principal=principal)
        exc = AuthorizationError(str(requirement), user_id=principal.user_id)
        await self._deny(exc, ctx, principal=principal, requirement=requirement)
        raise exc

    async def evaluate(
        self,
        credential: str | None,
        requirement: Requirement,
        ctx: RequestContext | None = None,
    ) -> Decision:
        """Like ``authorize`` but returns a denied Decision instead of raising."""
        try:
            return await self.authorize(credential, requirement, ctx)
        except SecurityError as exc:
            return Decision(
                allowed=False,
                reason=str(exc.context.get("reason") or exc.context.get("state")),
                event_id=exc.context.get("audit_event_id"),
            )

    def scope_filter(self, principal: Principal) -> AccessScope:
        return self._permissions.scope_filter(principal)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _resolve(self, credential: str | None) -> Principal:
        claims = self._tokens.verify(credential)
        record = await self._users.get(claims.user_id)
        if record is None:
            raise AuthenticationError(
                AuthenticationFailure.PRINCIPAL_NOT_FOUND, subject=claims.user_id
            )
        principal = record.to_principal()
        if not principal.is_active:
            raise AccountStateError(AccountState.DISABLED, user_id=principal.user_id)
        if principal.is_locked_at(time.time()):
            raise AccountStateError(
                AccountState.LOCKED,
                user_id=principal.user_id,
                locked_until=principal.locked_until,
            )
        return principal

    def _granted(self, principal: Principal, requirement: Requirement) -> bool:
        if isinstance(requirement, RoleRequirement):
            return self._permissions.has_role(principal, requirement.roles)
        return self._permissions.has_permission(
            principal, requirement.module, requirement.action
        )

    async def _deny(
        self,
        exc: SecurityError,
        ctx: RequestContext,
        *,
        principal: Principal | None = None,
        requirement: Requirement | None = None,
    ) -> None:
        reason, category, severity = _classify(exc)
        actor_id = principal.user_id if principal else _subject_of(exc)
        actor_name = principal.username if principal else (actor_id or "anonymous")
        details: dict[str, object] = {"reason": reason}
        if requirement is not None:
            details["requirement"] = str(requirement)
        if ctx.path:
            details["path"] = ctx.path
        if ctx.request_id:
            details["request_id"] = ctx.request_id

        event = AuditEvent(
            action=AuditAction.USER_ACCESS_DENIED.value,
            actor_id=actor_id,
            actor_name=actor_name,
            resource_type=ResourceType.SECURITY,
            resource_id=ctx.path,
            ip=ctx.ip,
            user_agent=ctx.user_agent,
            category=category,
            severity=severity,
            result=EventResult.FAILURE,
            description=f"Access denied: {reason}",
            details=details,
        )
        event_id = await self._trail.append_durable(event)
        exc.context["audit_event_id"] = event_id
        log.info(
            "access_denied",
            reason=reason,
            actor_id=actor_id,
            requirement=str(requirement) if requirement else None,
            ip=ctx.ip,
        )

        if self._monitor is not None and reason != AuthenticationFailure.MISSING.value:
            self._monitor.schedule(
                AuditAction.UNAUTHORIZED_ACCESS,
                SecurityContext(
                    ip=ctx.ip,
                    user_agent=ctx.user_agent,
                    actor_id=actor_id,
                    actor_name=actor_name,
                    description=f"denied {reason}",
                    details=details,
                ),
            )


def _classify(exc: SecurityError) -> tuple[str, EventCategory, Severity]:
    if isinstance(exc, AuthenticationError):
        severity = Severity.MEDIUM if exc.reason in _MEDIUM_AUTH_FAILURES else Severity.HIGH
        return exc.reason.value, EventCategory.AUTHENTICATION, severity
    if isinstance(exc, AccountStateError):
        return exc.state.value, EventCategory.AUTHENTICATION, Severity.HIGH
    if isinstance(exc, AuthorizationError):
        return exc.reason.value, EventCategory.AUTHORIZATION, Severity.MEDIUM
    return type(exc).__name__, EventCategory.SECURITY, Severity.HIGH


def _subject_of(exc: SecurityError) -> str | None:
    if isinstance(exc, AuthenticationError):
        return exc.subject
    if isinstance(exc, (AccountStateError, AuthorizationError)):
        return exc.user_id
    return None
