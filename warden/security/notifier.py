"""Security layer — Alert notification dispatch.

The monitor hands each ``SecurityAlert`` to a Notifier together with the
recipient list and a rendered message.  Delivery mechanics (mail, chat,
in-app inbox) live outside Warden; the implementations here cover the
in-process cases:

  - NullNotifier      → discards alerts
  - LogNotifier       → structured log record per alert
  - EventBusNotifier  → publishes to ``TOPIC_ALERTS`` (NDJSON via LogEventBus)
  - FanoutNotifier    → several of the above at once

Implementations may raise; ``SecurityMonitor`` catches and logs dispatch
failures.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Sequence

from warden.events.bus import TOPIC_ALERTS, EventBus
from warden.logging import get_logger
from warden.security.models import SecurityAlert

log = get_logger(__name__)


class Notifier(ABC):
    @abstractmethod
    async def notify(self, recipients: Sequence[str], message: str, alert: SecurityAlert) -> None:
        """Deliver *message* about *alert* to *recipients*."""


class NullNotifier(Notifier):
    async def notify(self, recipients: Sequence[str], message: str, alert: SecurityAlert) -> None:
        pass


class LogNotifier(Notifier):
    """Writes one warning-level log record per alert."""

    async def notify(self, recipients: Sequence[str], message: str, alert: SecurityAlert) -> None:
        log.warning(
            "security_alert",
            alert_type=alert.alert_type,
            subject_key=alert.subject_key,
            count=alert.count,
            threshold=alert.threshold,
            recipients=list(recipients),
        )


class EventBusNotifier(Notifier):
    """Publishes alerts on the ``warden.alerts`` topic."""

    def __init__(self, bus: EventBus) -> None:
        self._bus = bus

    async def notify(self, recipients: Sequence[str], message: str, alert: SecurityAlert) -> None:
        await self._bus.emit(
            TOPIC_ALERTS,
            {"event": "security_alert", **alert.to_dict()},
        )


class FanoutNotifier(Notifier):
    """Delivers each alert through several notifiers in parallel.

    A failing backend does not stop the others; the first failure is
    re-raised once all have run so the monitor can log it.
    """

    def __init__(self, notifiers: Sequence[Notifier]) -> None:
        self._notifiers = list(notifiers)

    async def notify(self, recipients: Sequence[str], message: str, alert: SecurityAlert) -> None:
        results = await asyncio.gather(
            *(n.notify(recipients, message, alert) for n in self._notifiers),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, Exception):
                raise result
