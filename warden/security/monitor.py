"""Security layer — SecurityMonitor.

Threshold-based anomaly detection over the audit trail.  For every recorded
security event the monitor:

  1. appends a FAILURE / SECURITY audit event of that type,
  2. counts events of the same type for the same subject (actor id, else
     source IP) inside a trailing window,
  3. compares the count with the type's threshold,
  4. when the threshold is reached, resolves recipients (active holders of
     the alert roles) and dispatches a ``SecurityAlert`` through a Notifier.

Every failure is logged as a ``MonitoringError`` and swallowed: monitoring
must never fail the operation that triggered it.

The count-then-alert step is not serialised.  Concurrent bursts from one
subject can each cross the threshold and each fire an alert.

Usage::

    monitor = SecurityMonitor(trail, users, LogNotifier())
    alert = await monitor.record_event("USER_LOGIN_FAILED", SecurityContext(ip="10.0.0.7"))
    monitor.schedule("UNAUTHORIZED_ACCESS", ctx)   # fire-and-forget
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Literal

from warden.exceptions import MonitoringError
from warden.logging import get_logger
from warden.security.audit import AuditTrail
from warden.security.models import (
    AuditAction,
    AuditEvent,
    AuditFilter,
    EventCategory,
    EventResult,
    ResourceType,
    Role,
    SecurityAlert,
    Severity,
)
from warden.security.notifier import Notifier, NullNotifier
from warden.security.users import UserStore
from warden.security.window import SlidingWindowCounter

if TYPE_CHECKING:
    from warden.config import Settings

log = get_logger(__name__)

DEFAULT_THRESHOLD = 5
DEFAULT_WINDOW_MINUTES = 60

DEFAULT_THRESHOLDS: dict[str, int] = {
    AuditAction.BRUTE_FORCE_ATTEMPT.value: 5,
    AuditAction.UNAUTHORIZED_ACCESS.value: 3,
    AuditAction.MULTIPLE_LOGIN_FAILURES.value: 5,
    AuditAction.USER_LOGIN_FAILED.value: 5,
    AuditAction.SUSPICIOUS_ACTIVITY.value: 3,
    AuditAction.CRITICAL_ROLE_CHANGE.value: 1,
    AuditAction.SENSITIVE_ADMIN_ACTION.value: 1,
}

_ALERT_MESSAGES: dict[str, str] = {
    AuditAction.BRUTE_FORCE_ATTEMPT.value: "BRUTE FORCE: attack against {username} detected from {ip}.",
    AuditAction.UNAUTHORIZED_ACCESS.value: "UNAUTHORIZED ACCESS: {username} attempted restricted access from {ip}.",
    AuditAction.MULTIPLE_LOGIN_FAILURES.value: "MULTIPLE LOGIN FAILURES: repeated failed logins for {username} from {ip}.",
    AuditAction.USER_LOGIN_FAILED.value: "MULTIPLE LOGIN FAILURES: repeated failed logins for {username} from {ip}.",
    AuditAction.SUSPICIOUS_ACTIVITY.value: "SUSPICIOUS ACTIVITY: unusual activity for {username} from {ip}.",
    AuditAction.CRITICAL_ROLE_CHANGE.value: "CRITICAL ROLE CHANGE: {description}",
    AuditAction.SENSITIVE_ADMIN_ACTION.value: "SENSITIVE ADMIN ACTION: {username} performed {description}.",
}

Counting = Literal["audit", "memory"]


@dataclass(frozen=True)
class SecurityContext:
    """Who / where a security event came from."""

    ip: str = "unknown"
    user_agent: str = ""
    actor_id: str | None = None
    actor_name: str = "anonymous"
    severity: Severity | None = None
    resource_type: ResourceType = ResourceType.SECURITY
    resource_id: str | None = None
    description: str = ""
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def subject_key(self) -> str:
        return self.actor_id or self.ip


class SecurityMonitor:
    """Per-(event type, subject) threshold evaluation and alert dispatch.

    Parameters
    ----------
    trail:
        Audit trail events are appended to and, with ``counting="audit"``,
        counted from.
    users:
        Source of alert recipients.  ``None`` sends alerts with no recipients.
    notifier:
        Dispatch backend.
    window_minutes:
        Trailing window events are counted in.
    thresholds:
        Overrides merged over ``DEFAULT_THRESHOLDS``.
    counting:
        ``"audit"`` re-queries the trail; ``"memory"`` keeps a
        ``SlidingWindowCounter``.
    cooldown_seconds:
        When positive, repeat alerts per (subject, type) inside this span
        are suppressed.  ``0`` re-alerts on every qualifying event.
    """

    def __init__(
        self,
        trail: AuditTrail,
        users: UserStore | None = None,
        notifier: Notifier | None = None,
        *,
        enabled: bool = True,
        window_minutes: int = DEFAULT_WINDOW_MINUTES,
        thresholds: Mapping[str, int] | None = None,
        default_threshold: int = DEFAULT_THRESHOLD,
        alert_roles: Iterable[Role] = (Role.ADMIN,),
        counting: Counting = "audit",
        cooldown_seconds: float = 0.0,
    ) -> None:
        self._trail = trail
        self._users = users
        self._notifier = notifier or NullNotifier()
        self._enabled = enabled
        self._window = window_minutes * 60.0
        self._thresholds = {**DEFAULT_THRESHOLDS, **(thresholds or {})}
        self._default_threshold = default_threshold
        self._alert_roles = frozenset(Role(r) for r in alert_roles)
        self._counting = counting
        self._counter = SlidingWindowCounter(self._window)
        self._cooldown = cooldown_seconds
        self._last_alert: dict[tuple[str, str], float] = {}
        self._tasks: set[asyncio.Task[SecurityAlert | None]] = set()

    @classmethod
    def from_settings(
        cls,
        settings: "Settings",
        trail: AuditTrail,
        users: UserStore | None,
        notifier: Notifier | None = None,
    ) -> "SecurityMonitor":
        cfg = settings.monitor
        return cls(
            trail,
            users,
            notifier,
            enabled=cfg.enabled,
            window_minutes=cfg.window_minutes,
            thresholds={k.upper(): v for k, v in cfg.thresholds.items()},
            default_threshold=cfg.default_threshold,
            alert_roles=[Role(r.upper()) for r in cfg.alert_roles],
            counting=cfg.counting,
            cooldown_seconds=cfg.alert_cooldown_seconds,
        )

    @property
    def enabled(self) -> bool:
        return self._enabled

    def threshold_for(self, event_type: str) -> int:
        return self._thresholds.get(event_type, self._default_threshold)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def record_event(
        self,
        event_type: str | AuditAction,
        context: SecurityContext | None = None,
    ) -> SecurityAlert | None:
        """Record a security event and alert if its threshold is reached.

        Returns the alert when one fired, else ``None``.  Never raises.
        """
        ctx = context or SecurityContext()
        name = getattr(event_type, "value", event_type)
        try:
            event = AuditEvent(
                action=name,
                actor_id=ctx.actor_id,
                actor_name=ctx.actor_name,
                resource_type=ctx.resource_type,
                resource_id=ctx.resource_id,
                ip=ctx.ip,
                user_agent=ctx.user_agent,
                category=EventCategory.SECURITY,
                severity=ctx.severity or Severity.HIGH,
                result=EventResult.FAILURE,
                description=ctx.description or _headline(name, ctx),
                details=ctx.details,
            )
            await self._trail.append(event)
            if not self._enabled:
                return None

            now = self._trail.now()
            event_ids = await self._window_ids(name, ctx, event.id, now)
            threshold = self.threshold_for(name)
            if len(event_ids) < threshold:
                return None

            if self._cooling_down(name, ctx.subject_key, now):
                log.info(
                    "security_alert_suppressed",
                    alert_type=name,
                    subject_key=ctx.subject_key,
                    count=len(event_ids),
                )
                return None

            return await self._dispatch(name, ctx, event_ids, threshold, now)
        except Exception as exc:
            err = MonitoringError(
                f"Security monitoring failed: {exc}",
                context={"event_type": name, "subject_key": ctx.subject_key},
            )
            log.error("security_monitor_failed", error=err.message, **err.context)
            return None

    def schedule(
        self,
        event_type: str | AuditAction,
        context: SecurityContext | None = None,
    ) -> asyncio.Task[SecurityAlert | None]:
        """Run ``record_event`` in the background."""
        task = asyncio.create_task(self.record_event(event_type, context))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for every scheduled evaluation to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _window_ids(
        self,
        event_type: str,
        ctx: SecurityContext,
        event_id: str,
        now: float,
    ) -> list[str]:
        if self._counting == "memory":
            return self._counter.record((event_type, ctx.subject_key), event_id, now)
        flt = AuditFilter(action=event_type, start=now - self._window)
        if ctx.actor_id:
            flt.actor_id = ctx.actor_id
        else:
            flt.ip = ctx.ip
        return await self._trail.matching_ids(flt)

    def _cooling_down(self, event_type: str, subject_key: str, now: float) -> bool:
        if self._cooldown <= 0:
            return False
        key = (subject_key, event_type)
        last = self._last_alert.get(key)
        if last is not None and now - last < self._cooldown:
            return True
        self._last_alert[key] = now
        return False

    async def _dispatch(
        self,
        event_type: str,
        ctx: SecurityContext,
        event_ids: list[str],
        threshold: int,
        now: float,
    ) -> SecurityAlert:
        recipients = await self._recipients()
        message = _render_message(event_type, ctx, now)
        alert = SecurityAlert(
            alert_type=event_type,
            subject_key=ctx.subject_key,
            triggering_event_ids=tuple(event_ids),
            recipients=recipients,
            message=message,
            count=len(event_ids),
            threshold=threshold,
            timestamp=now,
        )
        try:
            await self._notifier.notify(recipients, message, alert)
        except Exception as exc:
            err = MonitoringError(
                f"Alert dispatch failed: {exc}",
                context={"alert_type": event_type, "subject_key": ctx.subject_key},
            )
            log.error("security_alert_dispatch_failed", error=err.message, **err.context)
        else:
            log.warning(
                "security_alert_dispatched",
                alert_type=event_type,
                subject_key=ctx.subject_key,
                count=alert.count,
                threshold=threshold,
                recipients=len(recipients),
            )
        return alert

    async def _recipients(self) -> tuple[str, ...]:
        if self._users is None:
            return ()
        try:
            holders = await self._users.list_by_roles(self._alert_roles)
        except Exception as exc:
            log.error("security_alert_recipients_failed", error=str(exc))
            return ()
        return tuple(u.user_id for u in holders)


def _render_message(event_type: str, ctx: SecurityContext, now: float) -> str:
    stamp = datetime.fromtimestamp(now, tz=timezone.utc).isoformat()
    headline = _headline(event_type, ctx)
    details = json.dumps(ctx.details, default=str, sort_keys=True)
    return f"[{stamp}] {headline}\nIP: {ctx.ip}\nDetails: {details}"


def _headline(event_type: str, ctx: SecurityContext) -> str:
    template = _ALERT_MESSAGES.get(event_type, "SECURITY ALERT: {event_type} detected.")
    return template.format(
        event_type=event_type,
        username=ctx.actor_name,
        ip=ctx.ip,
        description=ctx.description or event_type.lower().replace("_", " "),
    )
