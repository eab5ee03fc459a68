"""Security layer — SQLite-backed audit event persistence.

Append-only store for ``AuditEvent`` records.  Rows are never updated; they
leave the table only through:
  - capped eviction — the oldest rows go once ``max_records`` is exceeded
  - ``delete_before(cutoff)`` — explicit retention purge

Schema::

    CREATE TABLE audit_events (
        id            TEXT PRIMARY KEY,
        timestamp     REAL NOT NULL,
        actor_id      TEXT,
        actor_name    TEXT NOT NULL,
        action        TEXT NOT NULL,
        resource_type TEXT NOT NULL,
        resource_id   TEXT,
        ip            TEXT NOT NULL,
        user_agent    TEXT NOT NULL,
        category      TEXT NOT NULL,
        severity      TEXT NOT NULL,
        result        TEXT NOT NULL,
        description   TEXT NOT NULL,
        details       TEXT NOT NULL      -- JSON object
    );

Usage::

    store = AuditStore(Path("~/.warden/audit.db"), max_records=100_000)
    await store.init()
    await store.insert(event)
    events, total = await store.query(AuditFilter(action="USER_LOGIN_FAILED"), page=1, page_size=20)
    await store.close()
"""

from __future__ import annotations

import asyncio
import json
import sqlite3
from pathlib import Path
from typing import Any

import aiosqlite

from warden.exceptions import PersistenceError
from warden.logging import get_logger
from warden.security.models import (
    SECURITY_ACTIONS,
    AuditEvent,
    AuditFilter,
    EventCategory,
    EventResult,
    ResourceType,
    Severity,
)

log = get_logger(__name__)

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS audit_events (
    id            TEXT PRIMARY KEY,
    timestamp     REAL NOT NULL,
    actor_id      TEXT,
    actor_name    TEXT NOT NULL,
    action        TEXT NOT NULL,
    resource_type TEXT NOT NULL,
    resource_id   TEXT,
    ip            TEXT NOT NULL,
    user_agent    TEXT NOT NULL DEFAULT '',
    category      TEXT NOT NULL,
    severity      TEXT NOT NULL,
    result        TEXT NOT NULL,
    description   TEXT NOT NULL DEFAULT '',
    details       TEXT NOT NULL DEFAULT '{}'
);

CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON audit_events (timestamp);
CREATE INDEX IF NOT EXISTS idx_audit_action    ON audit_events (action, timestamp);
CREATE INDEX IF NOT EXISTS idx_audit_actor     ON audit_events (actor_id, timestamp);
CREATE INDEX IF NOT EXISTS idx_audit_ip        ON audit_events (ip, timestamp);
CREATE INDEX IF NOT EXISTS idx_audit_resource  ON audit_events (resource_type, resource_id);
CREATE INDEX IF NOT EXISTS idx_audit_severity  ON audit_events (severity);
"""

_COLUMNS = (
    "id, timestamp, actor_id, actor_name, action, resource_type, resource_id, "
    "ip, user_agent, category, severity, result, description, details"
)

# Expressions usable as GROUP BY keys.
GROUP_EXPRESSIONS: dict[str, str] = {
    "action": "action",
    "resource_type": "resource_type",
    "severity": "severity",
    "actor_id": "COALESCE(actor_id, 'anonymous')",
    "category": "category",
    "result": "result",
    "ip": "ip",
    "day": "strftime('%Y-%m-%d', timestamp, 'unixepoch')",
    "hour": "strftime('%Y-%m-%dT%H:00', timestamp, 'unixepoch')",
}

_TIME_BUCKETS = frozenset({"day", "hour"})

_SECURITY_ACTIONS = sorted(SECURITY_ACTIONS)


def _like(term: str) -> str:
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def build_where(flt: AuditFilter | None) -> tuple[str, list[Any]]:
    """Translate *flt* into a WHERE clause (without the keyword) and parameters."""
    if flt is None:
        return "1=1", []

    clauses: list[str] = []
    params: list[Any] = []

    if flt.action:
        clauses.append("action = ?")
        params.append(flt.action)
    if flt.actions:
        clauses.append(f"action IN ({', '.join('?' for _ in flt.actions)})")
        params.extend(flt.actions)
    if flt.resource_type is not None:
        clauses.append("resource_type = ?")
        params.append(flt.resource_type.value)
    if flt.resource_id:
        clauses.append("resource_id = ?")
        params.append(flt.resource_id)
    if flt.actor_id:
        clauses.append("actor_id = ?")
        params.append(flt.actor_id)
    if flt.ip:
        clauses.append("ip = ?")
        params.append(flt.ip)
    if flt.category is not None:
        clauses.append("category = ?")
        params.append(flt.category.value)
    if flt.result is not None:
        clauses.append("result = ?")
        params.append(flt.result.value)

    if flt.severity is not None:
        clauses.append("severity = ?")
        params.append(flt.severity.value)
    if flt.severities:
        clauses.append(f"severity IN ({', '.join('?' for _ in flt.severities)})")
        params.extend(s.value for s in flt.severities)
    if flt.security_only:
        clauses.append(
            f"(action IN ({', '.join('?' for _ in _SECURITY_ACTIONS)}) "
            "OR severity IN (?, ?))"
        )
        params.extend(_SECURITY_ACTIONS)
        params.extend([Severity.HIGH.value, Severity.CRITICAL.value])
    if flt.search:
        clauses.append(
            "(description LIKE ? ESCAPE '\\' OR user_agent LIKE ? ESCAPE '\\' "
            "OR actor_name LIKE ? ESCAPE '\\')"
        )
        pattern = _like(flt.search)
        params.extend([pattern, pattern, pattern])
    if flt.start is not None:
        clauses.append("timestamp >= ?")
        params.append(flt.start)
    if flt.end is not None:
        clauses.append("timestamp < ?")
        params.append(flt.end)

    return (" AND ".join(clauses) if clauses else "1=1"), params


class AuditStore:
    """Async SQLite store for audit events.

    Parameters
    ----------
    db_path:
        SQLite database file.  Parent directories are created.
    max_records:
        Cap on stored rows.  ``None`` or ``0`` disables eviction.
    """

    def __init__(self, db_path: Path | str, max_records: int | None = 100_000) -> None:
        self._db_path = Path(db_path).expanduser()
        self._max_records = max_records or None
        self._conn: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()
        self._count = 0

    @property
    def path(self) -> Path:
        return self._db_path

    async def init(self) -> None:
        """Open the database and create tables if they do not exist."""
        try:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = await aiosqlite.connect(str(self._db_path))
            await self._conn.execute("PRAGMA journal_mode=WAL")
            await self._conn.executescript(_SCHEMA_SQL)
            await self._conn.commit()
            async with self._conn.execute("SELECT COUNT(*) FROM audit_events") as cursor:
                row = await cursor.fetchone()
            self._count = row[0] if row else 0
            log.info("audit_store_ready", db=str(self._db_path), events=self._count)
        except (sqlite3.Error, OSError) as exc:
            raise PersistenceError(f"Failed to initialise audit store: {exc}") from exc

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None

    # ------------------------------------------------------------------
    # Write operations
    # ------------------------------------------------------------------

    async def insert(self, event: AuditEvent) -> None:
        """Persist *event*, then evict the oldest rows past ``max_records``."""
        conn = self._require_conn()
        async with self._lock:
            try:
                await conn.execute(
                    f"INSERT INTO audit_events ({_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    self._event_to_row(event),
                )
                count = self._count + 1
                evicted = 0
                if self._max_records is not None and count > self._max_records:
                    cursor = await conn.execute(
                        "DELETE FROM audit_events WHERE rowid IN ("
                        "SELECT rowid FROM audit_events ORDER BY timestamp ASC, rowid ASC LIMIT ?)",
                        (count - self._max_records,),
                    )
                    evicted = max(cursor.rowcount, 0)
                    count -= evicted
                await conn.commit()
                self._count = count
            except asyncio.CancelledError:
                # A timed-out insert must not be committed later by another writer.
                await self._rollback(conn)
                raise
            except sqlite3.Error as exc:
                await self._rollback(conn)
                raise PersistenceError(
                    f"Failed to persist audit event: {exc}", context={"event_id": event.id}
                ) from exc
        if evicted:
            log.debug("audit_store_evicted", count=evicted, max_records=self._max_records)

    async def delete_before(self, cutoff: float) -> int:
        """Delete events with ``timestamp < cutoff``.  Returns the number removed."""
        conn = self._require_conn()
        async with self._lock:
            try:
                cursor = await conn.execute(
                    "DELETE FROM audit_events WHERE timestamp < ?", (cutoff,)
                )
                await conn.commit()
            except sqlite3.Error as exc:
                raise PersistenceError(f"Failed to purge audit events: {exc}") from exc
        deleted = max(cursor.rowcount, 0)
        self._count = max(self._count - deleted, 0)
        return deleted

    # ------------------------------------------------------------------
    # Read operations
    # ------------------------------------------------------------------

    async def get(self, event_id: str) -> AuditEvent | None:
        rows = await self._fetchall(
            f"SELECT {_COLUMNS} FROM audit_events WHERE id = ?", [event_id]
        )
        return self._row_to_event(rows[0]) if rows else None

    async def query(
        self,
        flt: AuditFilter | None,
        *,
        page: int = 1,
        page_size: int = 50,
    ) -> tuple[list[AuditEvent], int]:
        """Return one page of matching events (newest first) and the total match count."""
        where, params = build_where(flt)
        total = await self.count(flt)
        offset = (max(page, 1) - 1) * page_size
        rows = await self._fetchall(
            f"SELECT {_COLUMNS} FROM audit_events WHERE {where} "
            "ORDER BY timestamp DESC, rowid DESC LIMIT ? OFFSET ?",
            [*params, page_size, offset],
        )
        return [self._row_to_event(r) for r in rows], total

    async def fetch(self, flt: AuditFilter | None, *, limit: int | None = None) -> list[AuditEvent]:
        """Return every matching event, newest first, optionally capped at *limit*."""
        where, params = build_where(flt)
        sql = (
            f"SELECT {_COLUMNS} FROM audit_events WHERE {where} "
            "ORDER BY timestamp DESC, rowid DESC"
        )
        if limit is not None:
            sql += " LIMIT ?"
            params = [*params, limit]
        rows = await self._fetchall(sql, params)
        return [self._row_to_event(r) for r in rows]

    async def select_ids(self, flt: AuditFilter | None) -> list[str]:
        """Return the ids of matching events, oldest first."""
        where, params = build_where(flt)
        rows = await self._fetchall(
            f"SELECT id FROM audit_events WHERE {where} ORDER BY timestamp ASC, rowid ASC",
            params,
        )
        return [r[0] for r in rows]

    async def count(self, flt: AuditFilter | None = None) -> int:
        where, params = build_where(flt)
        rows = await self._fetchall(f"SELECT COUNT(*) FROM audit_events WHERE {where}", params)
        return rows[0][0] if rows else 0

    async def aggregate(
        self,
        group_by: str,
        flt: AuditFilter | None = None,
        *,
        limit: int | None = None,
    ) -> list[tuple[str, int]]:
        """Group matching events by *group_by* and count each group.

        Time buckets (``day`` / ``hour``) come back in chronological order;
        every other grouping is ordered by descending count.
        """
        expr = GROUP_EXPRESSIONS.get(group_by)
        if expr is None:
            raise ValueError(
                f"Unsupported group_by '{group_by}'. Expected one of: {sorted(GROUP_EXPRESSIONS)}"
            )
        where, params = build_where(flt)
        order = "bucket ASC" if group_by in _TIME_BUCKETS else "n DESC, bucket ASC"
        sql = (
            f"SELECT {expr} AS bucket, COUNT(*) AS n FROM audit_events "
            f"WHERE {where} GROUP BY bucket ORDER BY {order}"
        )
        if limit is not None:
            sql += " LIMIT ?"
            params = [*params, limit]
        rows = await self._fetchall(sql, params)
        return [(str(r[0]), int(r[1])) for r in rows]

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    @staticmethod
    async def _rollback(conn: aiosqlite.Connection) -> None:
        try:
            await conn.rollback()
        except sqlite3.Error as exc:
            log.error("audit_store_rollback_failed", error=str(exc))

    def _require_conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise PersistenceError("Audit store is not open", context={"db": str(self._db_path)})
        return self._conn

    async def _fetchall(self, sql: str, params: list[Any]) -> list[Any]:
        conn = self._require_conn()
        try:
            async with conn.execute(sql, params) as cursor:
                return list(await cursor.fetchall())
        except sqlite3.Error as exc:
            raise PersistenceError(f"Audit query failed: {exc}") from exc

    @staticmethod
    def _event_to_row(event: AuditEvent) -> tuple[Any, ...]:
        return (
            event.id,
            event.timestamp,
            event.actor_id,
            event.actor_name,
            event.action,
            event.resource_type.value,
            event.resource_id,
            event.ip,
            event.user_agent,
            event.category.value,
            (event.severity or Severity.LOW).value,
            event.result.value,
            event.description,
            json.dumps(event.details, default=str),
        )

    @staticmethod
    def _row_to_event(row: Any) -> AuditEvent:
        return AuditEvent(
            id=row[0],
            timestamp=row[1],
            actor_id=row[2],
            actor_name=row[3],
            action=row[4],
            resource_type=ResourceType(row[5]),
            resource_id=row[6],
            ip=row[7],
            user_agent=row[8],
            category=EventCategory(row[9]),
            severity=Severity(row[10]),
            result=EventResult(row[11]),
            description=row[12],
            details=json.loads(row[13]) if row[13] else {},
        )
