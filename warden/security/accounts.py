"""Security layer — AccountService.

Audited account flows on top of ``UserStore`` and ``TokenService``:

  - ``login``           — password check, failed-attempt counting, lockout, token issue
  - ``logout``          — audit only (tokens are stateless)
  - ``unlock``          — administrative lock reset
  - ``change_roles``    — role assignment; granting ADMIN raises CRITICAL_ROLE_CHANGE
  - ``change_password`` — self-service (requires the current password) or administrative
  - ``register``        — account creation

Lockout: every wrong password increments ``login_attempts``.  Reaching
``max_login_attempts`` sets ``locked_until = now + lock_duration``.  While
locked, login is refused with ``AccountStateError(LOCKED)`` whatever the
password.  Once the lock expires the counter starts again from zero.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from warden.exceptions import (
    AccountState,
    AccountStateError,
    AuthenticationError,
    AuthenticationFailure,
    UserNotFoundError,
)
from warden.logging import get_logger
from warden.security.audit import AuditTrail, event_for
from warden.security.models import (
    AuditAction,
    EventCategory,
    Principal,
    RequestContext,
    ResourceType,
    Role,
    Severity,
)
from warden.security.monitor import SecurityContext, SecurityMonitor
from warden.security.tokens import TokenService
from warden.security.users import UserRecord, UserStore, verify_password

if TYPE_CHECKING:
    from warden.config import Settings

log = get_logger(__name__)


@dataclass(frozen=True)
class LoginResult:
    token: str
    expires_in: int
    principal: Principal

    def to_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.token,
            "token_type": "bearer",
            "expires_in": self.expires_in,
            "user": self.principal.to_dict(),
        }


class AccountService:
    """Login / lockout / role management with audit and monitor feeds."""

    def __init__(
        self,
        users: UserStore,
        tokens: TokenService,
        trail: AuditTrail,
        monitor: SecurityMonitor | None = None,
        *,
        max_login_attempts: int = 5,
        lock_duration_minutes: int = 120,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._users = users
        self._tokens = tokens
        self._trail = trail
        self._monitor = monitor
        self._max_attempts = max_login_attempts
        self._lock_seconds = lock_duration_minutes * 60.0
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: "Settings",
        users: UserStore,
        tokens: TokenService,
        trail: AuditTrail,
        monitor: SecurityMonitor | None = None,
    ) -> "AccountService":
        return cls(
            users,
            tokens,
            trail,
            monitor,
            max_login_attempts=settings.auth.max_login_attempts,
            lock_duration_minutes=settings.auth.lock_duration_minutes,
        )

    # ------------------------------------------------------------------
    # Login / logout
    # ------------------------------------------------------------------

    async def login(self, username: str, password: str, ctx: RequestContext) -> LoginResult:
        now = self._clock()
        record = await self._users.get_by_username(username)

        if record is None:
            await self._trail.record_login_failure(
                username, ctx, "unknown_user", severity=Severity.MEDIUM
            )
            self._feed(AuditAction.MULTIPLE_LOGIN_FAILURES, ctx, None, username)
            raise AuthenticationError(AuthenticationFailure.INVALID, subject=username)

        if not record.is_active:
            await self._trail.record_login_failure(
                username, ctx, "disabled", user_id=record.user_id
            )
            raise AccountStateError(AccountState.DISABLED, user_id=record.user_id)

        if record.is_locked_at(now):
            await self._trail.record_login_failure(
                username, ctx, "locked", user_id=record.user_id, severity=Severity.HIGH
            )
            raise AccountStateError(
                AccountState.LOCKED, user_id=record.user_id, locked_until=record.locked_until
            )

        if record.locked_until is not None:
            # Lock has expired: start counting afresh.
            await self._users.reset_login_attempts(record.user_id)

        if not verify_password(password, record.password_hash):
            await self._fail_password(record, ctx, now)
            raise AuthenticationError(AuthenticationFailure.INVALID, subject=record.user_id)

        if record.login_attempts:
            await self._users.reset_login_attempts(record.user_id)
        await self._users.rehash_if_needed(record, password)

        principal = record.to_principal()
        token, expires_in = self._tokens.issue(principal)
        await self._trail.record_login(principal, ctx)
        log.info("login_succeeded", user_id=record.user_id)
        return LoginResult(token=token, expires_in=expires_in, principal=principal)

    async def _fail_password(self, record: UserRecord, ctx: RequestContext, now: float) -> None:
        updated = await self._users.record_failed_login(
            record.user_id,
            max_attempts=self._max_attempts,
            lock_seconds=self._lock_seconds,
            now=now,
        )
        await self._trail.record_login_failure(
            record.username,
            ctx,
            "invalid_password",
            user_id=record.user_id,
            attempts=updated.login_attempts,
        )
        self._feed(AuditAction.MULTIPLE_LOGIN_FAILURES, ctx, record.user_id, record.username)

        if updated.is_locked_at(now) and updated.locked_until is not None:
            await self._trail.record_account_locked(
                record.user_id,
                record.username,
                ctx,
                attempts=updated.login_attempts,
                locked_until=updated.locked_until,
            )
            log.warning(
                "account_locked",
                user_id=record.user_id,
                attempts=updated.login_attempts,
                locked_until=updated.locked_until,
            )

    async def logout(self, principal: Principal, ctx: RequestContext) -> None:
        await self._trail.record_logout(principal, ctx)

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    async def register(
        self,
        username: str,
        password: str,
        *,
        roles: Iterable[Role] = (),
        email: str | None = None,
        department: str | None = None,
        actor: Principal | None = None,
        ctx: RequestContext | None = None,
    ) -> UserRecord:
        ctx = ctx or RequestContext()
        record = await self._users.create(
            username, password, roles=roles, email=email, department=department
        )
        await self._trail.append(
            event_for(
                AuditAction.USER_CREATED,
                ctx,
                actor,
                resource_type=ResourceType.USER,
                resource_id=record.user_id,
                category=EventCategory.DATA,
                description=f"User {record.username} created",
                details={"roles": sorted(r.value for r in record.roles)},
            )
        )
        return record

    async def unlock(self, user_id: str, actor: Principal, ctx: RequestContext) -> UserRecord:
        record = await self._users.unlock(user_id)
        await self._trail.record_account_unlocked(record.user_id, record.username, actor, ctx)
        return record

    async def change_roles(
        self,
        user_id: str,
        roles: Iterable[Role],
        actor: Principal,
        ctx: RequestContext,
    ) -> UserRecord:
        current = await self._users.get(user_id)
        if current is None:
            raise UserNotFoundError(user_id)
        new_roles = frozenset(Role(r) for r in roles)
        updated = await self._users.set_roles(user_id, new_roles)
        await self._trail.record_role_change(actor, user_id, current.roles, new_roles, ctx)

        if Role.ADMIN in new_roles and Role.ADMIN not in current.roles:
            self._feed(
                AuditAction.CRITICAL_ROLE_CHANGE,
                ctx,
                actor.user_id,
                actor.username,
                resource_type=ResourceType.USER,
                resource_id=user_id,
                description=f"ADMIN role granted to {current.username} by {actor.username}",
            )
        return updated

    async def change_password(
        self,
        user_id: str,
        new_password: str,
        actor: Principal,
        ctx: RequestContext,
        *,
        current_password: str | None = None,
    ) -> None:
        """Change *user_id*'s password.

        Self-service changes must present the current password; anyone else
        needs ``users.update`` (checked by the caller).
        """
        record = await self._users.get(user_id)
        if record is None:
            raise UserNotFoundError(user_id)
        if actor.user_id == user_id and not verify_password(
            current_password or "", record.password_hash
        ):
            await self._trail.record_login_failure(
                record.username, ctx, "password_change_rejected", user_id=user_id
            )
            raise AuthenticationError(AuthenticationFailure.INVALID, subject=user_id)
        await self._users.set_password(user_id, new_password)
        await self._trail.record_password_change(actor, user_id, ctx)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _feed(
        self,
        event_type: AuditAction,
        ctx: RequestContext,
        actor_id: str | None,
        actor_name: str,
        **fields: Any,
    ) -> None:
        if self._monitor is None:
            return
        self._monitor.schedule(
            event_type,
            SecurityContext(
                ip=ctx.ip,
                user_agent=ctx.user_agent,
                actor_id=actor_id,
                actor_name=actor_name or "anonymous",
                **fields,
            ),
        )
