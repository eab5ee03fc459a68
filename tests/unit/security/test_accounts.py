"""Unit tests — AccountService login, lockout and administration flows."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from unittest.mock import AsyncMock

import pytest

from warden.exceptions import (
    AccountState,
    AccountStateError,
    AuthenticationError,
    AuthenticationFailure,
    UserExistsError,
    UserNotFoundError,
)
from warden.security.accounts import AccountService
from warden.security.audit import AuditTrail
from warden.security.models import AuditFilter, Principal, RequestContext, Role, Severity
from warden.security.monitor import SecurityMonitor
from warden.security.tokens import TokenService
from warden.security.users import UserRecord, UserStore


@pytest.fixture
async def service(
    accounts: AccountService, monitor: SecurityMonitor
) -> AsyncGenerator[AccountService, None]:
    yield accounts
    await monitor.drain()


async def _fail(service: AccountService, username: str, ctx: RequestContext, times: int) -> None:
    for _ in range(times):
        with pytest.raises(AuthenticationError):
            await service.login(username, "wrong-password", ctx)


@pytest.mark.unit
class TestLogin:
    async def test_success(
        self,
        service: AccountService,
        admin_user: UserRecord,
        tokens: TokenService,
        trail: AuditTrail,
        ctx: RequestContext,
    ) -> None:
        result = await service.login("alice", "s3cret-admin", ctx)
        assert result.principal.user_id == admin_user.user_id
        assert result.expires_in == 3600
        assert tokens.verify(result.token).user_id == admin_user.user_id

        body = result.to_dict()
        assert body["token_type"] == "bearer"
        assert body["user"]["username"] == "alice"

        page = await trail.query(AuditFilter(action="USER_LOGIN"))
        assert page.total == 1
        assert page.events[0].actor_id == admin_user.user_id

    async def test_unknown_user(
        self, service: AccountService, trail: AuditTrail, ctx: RequestContext
    ) -> None:
        with pytest.raises(AuthenticationError) as exc_info:
            await service.login("nobody", "whatever", ctx)
        assert exc_info.value.reason == AuthenticationFailure.INVALID

        event = (await trail.query(AuditFilter(action="USER_LOGIN_FAILED"))).events[0]
        assert event.severity == Severity.MEDIUM
        assert event.details["reason"] == "unknown_user"
        assert event.actor_id is None

    async def test_wrong_password_counts_attempts(
        self,
        service: AccountService,
        admin_user: UserRecord,
        user_store: UserStore,
        trail: AuditTrail,
        ctx: RequestContext,
    ) -> None:
        await _fail(service, "alice", ctx, 2)
        record = await user_store.get(admin_user.user_id)
        assert record is not None
        assert record.login_attempts == 2
        assert record.locked_until is None

        events = (await trail.query(AuditFilter(action="USER_LOGIN_FAILED"))).events
        assert events[0].details["attempts"] == 2
        assert events[0].severity == Severity.HIGH

    async def test_success_resets_attempts(
        self, service: AccountService, admin_user: UserRecord, user_store: UserStore, ctx: RequestContext
    ) -> None:
        await _fail(service, "alice", ctx, 3)
        await service.login("alice", "s3cret-admin", ctx)
        record = await user_store.get(admin_user.user_id)
        assert record is not None
        assert record.login_attempts == 0

    async def test_disabled_account(
        self, service: AccountService, admin_user: UserRecord, user_store: UserStore, ctx: RequestContext
    ) -> None:
        await user_store.set_active(admin_user.user_id, False)
        with pytest.raises(AccountStateError) as exc_info:
            await service.login("alice", "s3cret-admin", ctx)
        assert exc_info.value.state == AccountState.DISABLED


@pytest.mark.unit
class TestLockout:
    async def test_fifth_failure_locks(
        self,
        service: AccountService,
        admin_user: UserRecord,
        user_store: UserStore,
        trail: AuditTrail,
        clock,
        ctx: RequestContext,
    ) -> None:
        await _fail(service, "alice", ctx, 5)
        record = await user_store.get(admin_user.user_id)
        assert record is not None
        assert record.login_attempts == 5
        assert record.locked_until == pytest.approx(clock.now + 120 * 60)

        locked = (await trail.query(AuditFilter(action="USER_LOCKED"))).events
        assert len(locked) == 1
        assert locked[0].severity == Severity.CRITICAL
        assert locked[0].details["attempts"] == 5

    async def test_locked_refuses_correct_password(
        self, service: AccountService, admin_user: UserRecord, trail: AuditTrail, ctx: RequestContext
    ) -> None:
        await _fail(service, "alice", ctx, 5)
        with pytest.raises(AccountStateError) as exc_info:
            await service.login("alice", "s3cret-admin", ctx)
        assert exc_info.value.state == AccountState.LOCKED
        assert exc_info.value.locked_until is not None

        reasons = [
            e.details["reason"]
            for e in (await trail.query(AuditFilter(action="USER_LOGIN_FAILED"))).events
        ]
        assert reasons[0] == "locked"

    async def test_lock_expires(
        self,
        service: AccountService,
        admin_user: UserRecord,
        user_store: UserStore,
        clock,
        ctx: RequestContext,
    ) -> None:
        await _fail(service, "alice", ctx, 5)
        clock.advance(120 * 60 + 1)
        result = await service.login("alice", "s3cret-admin", ctx)
        assert result.principal.user_id == admin_user.user_id
        record = await user_store.get(admin_user.user_id)
        assert record is not None
        assert record.login_attempts == 0
        assert record.locked_until is None

    async def test_counter_restarts_after_expiry(
        self, service: AccountService, admin_user: UserRecord, user_store: UserStore, clock, ctx: RequestContext
    ) -> None:
        await _fail(service, "alice", ctx, 5)
        clock.advance(120 * 60 + 1)
        await _fail(service, "alice", ctx, 1)
        record = await user_store.get(admin_user.user_id)
        assert record is not None
        assert record.login_attempts == 1
        assert not record.is_locked_at(clock.now)

    async def test_failures_feed_monitor(
        self,
        service: AccountService,
        admin_user: UserRecord,
        monitor: SecurityMonitor,
        notifier: AsyncMock,
        trail: AuditTrail,
        ctx: RequestContext,
    ) -> None:
        await _fail(service, "alice", ctx, 5)
        await monitor.drain()
        assert await trail.count(AuditFilter(action="MULTIPLE_LOGIN_FAILURES")) == 5
        assert notifier.notify.await_count >= 1
        alert = notifier.notify.await_args.args[2]
        assert alert.subject_key == admin_user.user_id

    async def test_custom_limits(
        self,
        user_store: UserStore,
        tokens: TokenService,
        trail: AuditTrail,
        admin_user: UserRecord,
        clock,
        ctx: RequestContext,
    ) -> None:
        service = AccountService(
            user_store, tokens, trail, max_login_attempts=2, lock_duration_minutes=1, clock=clock
        )
        await _fail(service, "alice", ctx, 2)
        with pytest.raises(AccountStateError):
            await service.login("alice", "s3cret-admin", ctx)
        clock.advance(61)
        assert (await service.login("alice", "s3cret-admin", ctx)).principal.username == "alice"


@pytest.mark.unit
class TestAdministration:
    async def test_register(
        self, service: AccountService, admin_principal: Principal, trail: AuditTrail, ctx: RequestContext
    ) -> None:
        record = await service.register(
            "dave", "pw-dave-1234", roles=[Role.TECH_SUPPORT], actor=admin_principal, ctx=ctx
        )
        assert record.roles == frozenset({Role.TECH_SUPPORT})
        event = (await trail.query(AuditFilter(action="USER_CREATED"))).events[0]
        assert event.resource_id == record.user_id
        assert event.actor_id == admin_principal.user_id
        assert event.details["roles"] == ["TECH_SUPPORT"]

    async def test_register_duplicate(self, service: AccountService, admin_user: UserRecord) -> None:
        with pytest.raises(UserExistsError):
            await service.register("alice", "another-password")

    async def test_unlock(
        self,
        service: AccountService,
        admin_principal: Principal,
        observer_user: UserRecord,
        trail: AuditTrail,
        ctx: RequestContext,
    ) -> None:
        await _fail(service, "bob", ctx, 5)
        record = await service.unlock(observer_user.user_id, admin_principal, ctx)
        assert record.login_attempts == 0
        assert record.locked_until is None
        assert await trail.count(AuditFilter(action="USER_UNLOCKED")) == 1
        assert (await service.login("bob", "s3cret-observer", ctx)).principal.username == "bob"

    async def test_unlock_unknown(
        self, service: AccountService, admin_principal: Principal, ctx: RequestContext
    ) -> None:
        with pytest.raises(UserNotFoundError):
            await service.unlock("u-missing", admin_principal, ctx)

    async def test_change_roles(
        self,
        service: AccountService,
        admin_principal: Principal,
        observer_user: UserRecord,
        trail: AuditTrail,
        ctx: RequestContext,
    ) -> None:
        updated = await service.change_roles(
            observer_user.user_id, [Role.TECH_SUPPORT], admin_principal, ctx
        )
        assert updated.roles == frozenset({Role.TECH_SUPPORT})
        event = (await trail.query(AuditFilter(action="ROLE_CHANGED"))).events[0]
        assert event.details["old_roles"] == ["OBSERVER"]
        assert event.details["new_roles"] == ["TECH_SUPPORT"]

    async def test_granting_admin_alerts(
        self,
        service: AccountService,
        admin_principal: Principal,
        observer_user: UserRecord,
        monitor: SecurityMonitor,
        notifier: AsyncMock,
        ctx: RequestContext,
    ) -> None:
        await service.change_roles(observer_user.user_id, [Role.ADMIN], admin_principal, ctx)
        await monitor.drain()
        notifier.notify.assert_awaited_once()
        alert = notifier.notify.await_args.args[2]
        assert alert.alert_type == "CRITICAL_ROLE_CHANGE"
        assert "bob" in alert.message

    async def test_change_roles_unknown(
        self, service: AccountService, admin_principal: Principal, ctx: RequestContext
    ) -> None:
        with pytest.raises(UserNotFoundError):
            await service.change_roles("u-missing", [Role.OBSERVER], admin_principal, ctx)

    async def test_self_service_password_change(
        self, service: AccountService, observer_user: UserRecord, trail: AuditTrail, ctx: RequestContext
    ) -> None:
        me = observer_user.to_principal()
        with pytest.raises(AuthenticationError):
            await service.change_password(
                observer_user.user_id, "new-password-1", me, ctx, current_password="nope"
            )
        await service.change_password(
            observer_user.user_id, "new-password-1", me, ctx, current_password="s3cret-observer"
        )
        assert await trail.count(AuditFilter(action="PASSWORD_CHANGED")) == 1
        assert (await service.login("bob", "new-password-1", ctx)).principal.username == "bob"

    async def test_admin_password_reset(
        self,
        service: AccountService,
        admin_principal: Principal,
        observer_user: UserRecord,
        ctx: RequestContext,
    ) -> None:
        await service.change_password(observer_user.user_id, "reset-by-admin", admin_principal, ctx)
        assert (await service.login("bob", "reset-by-admin", ctx)).principal.username == "bob"
