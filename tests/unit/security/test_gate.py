"""Unit tests — AuthorizationGate pipeline and deny auditing."""

from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from warden.exceptions import (
    AccountState,
    AccountStateError,
    AuthenticationError,
    AuthenticationFailure,
    AuthorizationError,
    PersistenceError,
)
from warden.security.audit import AuditTrail
from warden.security.gate import AuthorizationGate, PermissionRequirement, RoleRequirement
from warden.security.models import (
    AuditAction,
    AuditFilter,
    EventCategory,
    EventResult,
    Principal,
    RequestContext,
    Role,
    Severity,
)
from warden.security.monitor import SecurityMonitor
from warden.security.tokens import TokenService
from warden.security.users import UserRecord, UserStore


DECRYPT = PermissionRequirement("passwords", "decrypt")
READ_INVENTORY = PermissionRequirement("inventory", "read")


async def _denials(trail: AuditTrail) -> list:
    page = await trail.query(AuditFilter(action=AuditAction.USER_ACCESS_DENIED.value))
    return page.events


@pytest.mark.unit
class TestAllowed:
    async def test_permission_granted(
        self, gate: AuthorizationGate, tokens: TokenService, admin_user: UserRecord, ctx: RequestContext
    ) -> None:
        token, _ = tokens.issue(admin_user.to_principal())
        decision = await gate.authorize(token, DECRYPT, ctx)
        assert decision.allowed is True
        assert decision.principal is not None
        assert decision.principal.user_id == admin_user.user_id

    async def test_allowed_is_not_audited(
        self,
        gate: AuthorizationGate,
        tokens: TokenService,
        observer_user: UserRecord,
        trail: AuditTrail,
        ctx: RequestContext,
    ) -> None:
        token, _ = tokens.issue(observer_user.to_principal())
        await gate.authorize(token, READ_INVENTORY, ctx)
        assert await trail.count() == 0

    async def test_role_requirement(
        self, gate: AuthorizationGate, tokens: TokenService, admin_user: UserRecord, ctx: RequestContext
    ) -> None:
        token, _ = tokens.issue(admin_user.to_principal())
        requirement = RoleRequirement(frozenset({Role.ADMIN, Role.SYSTEM_ADMIN}))
        decision = await gate.authorize(token, requirement, ctx)
        assert decision.allowed

    async def test_roles_are_read_from_the_store(
        self,
        gate: AuthorizationGate,
        tokens: TokenService,
        observer_user: UserRecord,
        user_store: UserStore,
        ctx: RequestContext,
    ) -> None:
        token, _ = tokens.issue(observer_user.to_principal())
        await user_store.set_roles(observer_user.user_id, [Role.SYSTEM_ADMIN])
        decision = await gate.authorize(token, DECRYPT, ctx)
        assert decision.allowed


@pytest.mark.unit
class TestDenied:
    async def test_missing_credential(
        self, gate: AuthorizationGate, trail: AuditTrail, monitor: SecurityMonitor, ctx: RequestContext
    ) -> None:
        with pytest.raises(AuthenticationError) as exc_info:
            await gate.authorize(None, DECRYPT, ctx)
        assert exc_info.value.reason == AuthenticationFailure.MISSING

        await monitor.drain()
        events = await _denials(trail)
        assert len(events) == 1
        event = events[0]
        assert event.severity == Severity.MEDIUM
        assert event.category == EventCategory.AUTHENTICATION
        assert event.result == EventResult.FAILURE
        assert event.details["reason"] == "missing"
        assert event.details["path"] == "/test"
        assert event.details["request_id"] == "req-1"
        assert exc_info.value.context["audit_event_id"] == event.id
        # Missing credentials do not feed the monitor.
        assert await trail.count(AuditFilter(action="UNAUTHORIZED_ACCESS")) == 0

    async def test_invalid_token(self, gate: AuthorizationGate, trail: AuditTrail, ctx: RequestContext) -> None:
        with pytest.raises(AuthenticationError) as exc_info:
            await gate.authorize("not-a-jwt", DECRYPT, ctx)
        assert exc_info.value.reason == AuthenticationFailure.INVALID

    async def test_foreign_signature(
        self, gate: AuthorizationGate, admin_user: UserRecord, ctx: RequestContext
    ) -> None:
        forged, _ = TokenService("a-different-secret-of-sufficient-length!!").issue(
            admin_user.to_principal()
        )
        with pytest.raises(AuthenticationError) as exc_info:
            await gate.authorize(forged, DECRYPT, ctx)
        assert exc_info.value.reason == AuthenticationFailure.INVALID

    async def test_expired_token(
        self, gate: AuthorizationGate, tokens: TokenService, admin_user: UserRecord, ctx: RequestContext
    ) -> None:
        issued = datetime.now(timezone.utc) - timedelta(hours=2)
        expired, _ = tokens.issue(admin_user.to_principal(), now=issued)
        with pytest.raises(AuthenticationError) as exc_info:
            await gate.authorize(expired, DECRYPT, ctx)
        assert exc_info.value.reason == AuthenticationFailure.EXPIRED

    async def test_deleted_principal(
        self, gate: AuthorizationGate, tokens: TokenService, trail: AuditTrail, ctx: RequestContext
    ) -> None:
        ghost = Principal(user_id="u-ghost", username="ghost", roles=frozenset({Role.ADMIN}))
        token, _ = tokens.issue(ghost)
        with pytest.raises(AuthenticationError) as exc_info:
            await gate.authorize(token, DECRYPT, ctx)
        assert exc_info.value.reason == AuthenticationFailure.PRINCIPAL_NOT_FOUND
        event = (await _denials(trail))[0]
        assert event.severity == Severity.HIGH
        assert event.actor_id == "u-ghost"

    async def test_disabled_account(
        self,
        gate: AuthorizationGate,
        tokens: TokenService,
        admin_user: UserRecord,
        user_store: UserStore,
        ctx: RequestContext,
    ) -> None:
        token, _ = tokens.issue(admin_user.to_principal())
        await user_store.set_active(admin_user.user_id, False)
        with pytest.raises(AccountStateError) as exc_info:
            await gate.authorize(token, DECRYPT, ctx)
        assert exc_info.value.state == AccountState.DISABLED

    async def test_locked_account(
        self,
        gate: AuthorizationGate,
        tokens: TokenService,
        admin_user: UserRecord,
        user_store: UserStore,
        ctx: RequestContext,
    ) -> None:
        token, _ = tokens.issue(admin_user.to_principal())
        await user_store.record_failed_login(
            admin_user.user_id, max_attempts=1, lock_seconds=600, now=time.time()
        )
        with pytest.raises(AccountStateError) as exc_info:
            await gate.authorize(token, READ_INVENTORY, ctx)
        assert exc_info.value.state == AccountState.LOCKED
        assert exc_info.value.locked_until is not None

    async def test_insufficient_permission(
        self,
        gate: AuthorizationGate,
        tokens: TokenService,
        observer_user: UserRecord,
        trail: AuditTrail,
        monitor: SecurityMonitor,
        ctx: RequestContext,
    ) -> None:
        token, _ = tokens.issue(observer_user.to_principal())
        with pytest.raises(AuthorizationError) as exc_info:
            await gate.authorize(token, DECRYPT, ctx)
        assert exc_info.value.requirement == "passwords.decrypt"

        await monitor.drain()
        event = (await _denials(trail))[0]
        assert event.category == EventCategory.AUTHORIZATION
        assert event.severity == Severity.MEDIUM
        assert event.actor_id == observer_user.user_id
        assert event.actor_name == "bob"
        assert event.details["requirement"] == "passwords.decrypt"
        assert event.details["reason"] == "insufficient_permission"
        assert await trail.count(AuditFilter(action="UNAUTHORIZED_ACCESS")) == 1

    async def test_repeated_denials_raise_alert(
        self,
        gate: AuthorizationGate,
        observer_principal,
        monitor: SecurityMonitor,
        notifier: AsyncMock,
        ctx: RequestContext,
    ) -> None:
        for _ in range(3):
            with pytest.raises(AuthorizationError):
                await gate.check(observer_principal, DECRYPT, ctx)
            await monitor.drain()
        notifier.notify.assert_awaited_once()
        alert = notifier.notify.await_args.args[2]
        assert alert.alert_type == "UNAUTHORIZED_ACCESS"
        assert alert.subject_key == observer_principal.user_id

    async def test_audit_failure_fails_closed(
        self, gate: AuthorizationGate, trail: AuditTrail, ctx: RequestContext
    ) -> None:
        await trail.store.close()
        with pytest.raises(PersistenceError):
            await gate.authorize(None, DECRYPT, ctx)


@pytest.mark.unit
class TestEvaluate:
    async def test_denied_decision(self, gate: AuthorizationGate, ctx: RequestContext) -> None:
        decision = await gate.evaluate(None, DECRYPT, ctx)
        assert decision.allowed is False
        assert decision.reason == "missing"
        assert decision.event_id is not None

    async def test_allowed_decision(
        self, gate: AuthorizationGate, tokens: TokenService, admin_user: UserRecord
    ) -> None:
        token, _ = tokens.issue(admin_user.to_principal())
        decision = await gate.evaluate(token, RoleRequirement(frozenset({Role.ADMIN})))
        assert decision.allowed is True


@pytest.mark.unit
class TestScopeFilter:
    async def test_department_manager_is_scoped(self, gate: AuthorizationGate, user_store: UserStore) -> None:
        manager = await user_store.create(
            "carol", "pw-carol-123", roles=[Role.DEPARTMENT_MANAGER], department="Sales"
        )
        scope = gate.scope_filter(manager.to_principal())
        assert not scope.unrestricted
        assert scope.allows({"department": "Sales"})
        assert not scope.allows({"department": "IT"})

    def test_admin_is_unrestricted(self, gate: AuthorizationGate, admin_principal) -> None:
        assert gate.scope_filter(admin_principal).unrestricted
