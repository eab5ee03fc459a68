"""Security layer — SecurityManager aggregate.

Single object stored on ``app.state`` (and built by the CLI) grouping all
security subsystems:

    - ``permissions`` — static role matrices and department scoping
    - ``cipher``      — secret encryption at rest
    - ``audit``       — AuditTrail over the SQLite audit store
    - ``users``       — account store
    - ``tokens``      — bearer token issue / verify
    - ``monitor``     — threshold alerting
    - ``gate``        — per-request authorization
    - ``accounts``    — login, lockout and role management

Usage::

    sm = await SecurityManager.open(settings)
    try:
        decision = await sm.gate.authorize(token, PermissionRequirement("audit", "read"))
    finally:
        await sm.close()
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from warden.events.bus import EventBus, LogEventBus, NullEventBus
from warden.security.accounts import AccountService
from warden.security.audit import AuditTrail
from warden.security.audit_store import AuditStore
from warden.security.cipher import SecretCipher
from warden.security.gate import AuthorizationGate
from warden.security.monitor import SecurityMonitor
from warden.security.notifier import EventBusNotifier, FanoutNotifier, LogNotifier, Notifier
from warden.security.permissions import PermissionModel
from warden.security.tokens import TokenService
from warden.security.users import UserStore

if TYPE_CHECKING:
    from warden.config import Settings


@dataclass
class SecurityManager:
    """Aggregate of all security subsystems."""

    permissions: PermissionModel
    cipher: SecretCipher
    audit: AuditTrail
    users: UserStore
    tokens: TokenService
    monitor: SecurityMonitor
    gate: AuthorizationGate
    accounts: AccountService

    @classmethod
    async def open(
        cls,
        settings: "Settings",
        *,
        notifier: Notifier | None = None,
        fallback: EventBus | None = None,
    ) -> "SecurityManager":
        """Open the stores described by *settings* and wire every component."""
        audit_store = AuditStore(settings.audit.db_path, max_records=settings.audit.max_records)
        users = UserStore(settings.users.db_path)
        await audit_store.init()
        try:
            await users.init()
        except Exception:
            await audit_store.close()
            raise

        if fallback is None:
            fallback = (
                LogEventBus(settings.audit.fallback_file)
                if settings.audit.fallback_file
                else NullEventBus()
            )
        if notifier is None:
            notifier = LogNotifier()
            if settings.monitor.alert_file:
                notifier = FanoutNotifier(
                    [notifier, EventBusNotifier(LogEventBus(settings.monitor.alert_file))]
                )

        trail = AuditTrail(
            audit_store,
            fallback,
            write_timeout=settings.audit.write_timeout_seconds,
        )
        permissions = PermissionModel()
        tokens = TokenService.from_settings(settings)
        monitor = SecurityMonitor.from_settings(settings, trail, users, notifier)
        return cls(
            permissions=permissions,
            cipher=SecretCipher.from_settings(settings),
            audit=trail,
            users=users,
            tokens=tokens,
            monitor=monitor,
            gate=AuthorizationGate(tokens, users, permissions, trail, monitor),
            accounts=AccountService.from_settings(settings, users, tokens, trail, monitor),
        )

    async def close(self) -> None:
        """Finish pending monitor work, then close both stores."""
        await self.monitor.drain()
        await self.audit.store.close()
        await self.users.close()
