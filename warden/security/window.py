"""Security layer — In-memory sliding window counter.

Counts events per ``(event_type, subject_key)`` over a trailing window
without re-querying the audit store.  Used by ``SecurityMonitor`` when
``monitor.counting = "memory"``.

Entries older than the window are pruned on every touch of their key, and
``prune()`` drops keys that have gone quiet so the map cannot grow without
bound.

Usage::

    counter = SlidingWindowCounter(window_seconds=3600)
    ids = counter.record(("USER_LOGIN_FAILED", "10.0.0.7"), event_id)
    if len(ids) >= threshold: ...
"""

from __future__ import annotations

import time
from collections import deque

WindowKey = tuple[str, str]


class SlidingWindowCounter:
    """Per-key sliding window of ``(timestamp, event_id)`` entries."""

    def __init__(self, window_seconds: float = 3600.0) -> None:
        self._window = window_seconds
        self._entries: dict[WindowKey, deque[tuple[float, str]]] = {}

    @property
    def window_seconds(self) -> float:
        return self._window

    def record(self, key: WindowKey, event_id: str, now: float | None = None) -> list[str]:
        """Add an entry and return the ids currently inside the window, oldest first."""
        now = time.time() if now is None else now
        entries = self._entries.setdefault(key, deque())
        entries.append((now, event_id))
        self._prune_key(key, now)
        return [eid for _, eid in self._entries.get(key, ())]

    def count(self, key: WindowKey, now: float | None = None) -> int:
        now = time.time() if now is None else now
        self._prune_key(key, now)
        return len(self._entries.get(key, ()))

    def reset(self, key: WindowKey | None = None) -> None:
        """Reset one key, or every key when *key* is ``None``."""
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)

    def prune(self, now: float | None = None) -> int:
        """Prune every key.  Returns the number of keys dropped."""
        now = time.time() if now is None else now
        before = len(self._entries)
        for key in list(self._entries):
            self._prune_key(key, now)
        return before - len(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _prune_key(self, key: WindowKey, now: float) -> None:
        entries = self._entries.get(key)
        if entries is None:
            return
        cutoff = now - self._window
        while entries and entries[0][0] < cutoff:
            entries.popleft()
        if not entries:
            del self._entries[key]
