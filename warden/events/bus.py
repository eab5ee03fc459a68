"""Event streaming infrastructure — EventBus protocol and implementations.

The EventBus carries the events that must survive even when the audit store
does not: audit records that failed to persist, and security alerts raised
by the monitor.

Architecture:
                                                ┌──────────────────┐
  AuditTrail ─emit("warden.audit.fallback")───► │  EventBus impl   │──► NDJSON file
  SecurityMonitor ─emit("warden.alerts")──────► │                  │
                                                └──────────────────┘

Swap the backend by injecting a different EventBus implementation:
  - NullEventBus    → default (no-op, zero overhead)
  - LogEventBus     → NDJSON append-only file

Standard topic names:
  TOPIC_AUDIT_FALLBACK = "warden.audit.fallback"  — events the store rejected
  TOPIC_ALERTS         = "warden.alerts"          — SecurityAlert dispatch
"""

from __future__ import annotations

import asyncio
import json
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from warden.logging import get_logger

log = get_logger(__name__)

# ---------------------------------------------------------------------------
# Standard topic constants
# ---------------------------------------------------------------------------

TOPIC_AUDIT_FALLBACK = "warden.audit.fallback"
TOPIC_ALERTS = "warden.alerts"


# ---------------------------------------------------------------------------
# Abstract interface
# ---------------------------------------------------------------------------


class EventBus(ABC):
    """Abstract event bus.  All implementations must be safe for concurrent async use.

    An event is a plain dict.  The bus adds a ``_topic`` key and a
    ``_timestamp`` (Unix epoch float) before forwarding to the backend.
    """

    @abstractmethod
    async def emit(self, topic: str, event: dict[str, Any]) -> None:
        """Publish *event* to *topic*.

        This method must not raise — failures are logged and swallowed so that
        a backend outage never propagates into the request path.
        """

    def _stamp(self, topic: str, event: dict[str, Any]) -> dict[str, Any]:
        """Add metadata fields to *event* in-place and return it."""
        event.setdefault("_topic", topic)
        event.setdefault("_timestamp", time.time())
        return event


# ---------------------------------------------------------------------------
# NullEventBus: default
# ---------------------------------------------------------------------------


class NullEventBus(EventBus):
    """Discards all events.  Used when no fallback file is configured."""

    async def emit(self, topic: str, event: dict[str, Any]) -> None:
        pass


# ---------------------------------------------------------------------------
# LogEventBus: NDJSON file
# ---------------------------------------------------------------------------


class LogEventBus(EventBus):
    """Writes events as NDJSON to a file — one line per event, append-only.

    Usage::

        bus = LogEventBus(Path("~/.warden/audit-fallback.ndjson"))
        await bus.emit(TOPIC_AUDIT_FALLBACK, {"event": "audit_event", "id": "..."})
    """

    def __init__(self, log_file: Path | None = None) -> None:
        self._file = log_file.expanduser() if log_file else None
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path | None:
        return self._file

    async def emit(self, topic: str, event: dict[str, Any]) -> None:
        self._stamp(topic, event)
        log.debug("event_bus_emit", topic=topic, event_type=event.get("event"))
        if self._file is None:
            return
        async with self._lock:
            try:
                line = json.dumps(event, default=str) + "\n"
                self._file.parent.mkdir(parents=True, exist_ok=True)
                with self._file.open("a", encoding="utf-8") as f:
                    f.write(line)
            except (OSError, TypeError, ValueError) as exc:
                log.error("event_bus_write_failed", topic=topic, error=str(exc))

