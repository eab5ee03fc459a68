"""Event streaming layer — EventBus infrastructure.

Carries audit events that could not be persisted and security alerts
raised by the monitor.

Current implementations:
  - NullEventBus   — default, discards all events
  - LogEventBus    — NDJSON append-only file

Quick start::

    from warden.events import LogEventBus, TOPIC_ALERTS

    bus = LogEventBus(Path("~/.warden/alerts.ndjson"))
    await bus.emit(TOPIC_ALERTS, {"event": "security_alert", "alert_type": "BRUTE_FORCE_ATTEMPT"})
"""

from warden.events.bus import (
    TOPIC_ALERTS,
    TOPIC_AUDIT_FALLBACK,
    EventBus,
    LogEventBus,
    NullEventBus,
)

__all__ = [
    # Interface
    "EventBus",
    # Implementations
    "NullEventBus",
    "LogEventBus",
    # Topic constants
    "TOPIC_AUDIT_FALLBACK",
    "TOPIC_ALERTS",
]
