"""Security layer — SQLite-backed user and role store.

Holds the persisted accounts from which ``Principal`` objects are built:
role set, active flag, failed-login counter, lock expiry and department.
Passwords are stored as Argon2 hashes.

Schema::

    CREATE TABLE users (
        user_id        TEXT PRIMARY KEY,
        username       TEXT NOT NULL UNIQUE COLLATE NOCASE,
        email          TEXT,
        password_hash  TEXT NOT NULL,
        roles          TEXT NOT NULL,       -- JSON array of Role values
        department     TEXT,
        is_active      INTEGER NOT NULL DEFAULT 1,
        login_attempts INTEGER NOT NULL DEFAULT 0,
        locked_until   REAL,
        created_at     REAL NOT NULL,
        updated_at     REAL NOT NULL
    );

Usage::

    users = UserStore(Path("~/.warden/users.db"))
    await users.init()
    record = await users.create("alice", "s3cret", roles=[Role.ADMIN])
    principal = record.to_principal()
"""

from __future__ import annotations

import asyncio
import json
import sqlite3
import time
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import aiosqlite
from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from warden.exceptions import PersistenceError, UserExistsError, UserNotFoundError
from warden.logging import get_logger
from warden.security.models import Principal, Role

log = get_logger(__name__)

_password_hasher = PasswordHasher()

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS users (
    user_id        TEXT PRIMARY KEY,
    username       TEXT NOT NULL UNIQUE COLLATE NOCASE,
    email          TEXT,
    password_hash  TEXT NOT NULL,
    roles          TEXT NOT NULL DEFAULT '[]',
    department     TEXT,
    is_active      INTEGER NOT NULL DEFAULT 1,
    login_attempts INTEGER NOT NULL DEFAULT 0,
    locked_until   REAL,
    created_at     REAL NOT NULL,
    updated_at     REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_users_active ON users (is_active);
"""

_COLUMNS = (
    "user_id, username, email, password_hash, roles, department, is_active, "
    "login_attempts, locked_until, created_at, updated_at"
)


# ---------------------------------------------------------------------------
# Passwords (Argon2)
# ---------------------------------------------------------------------------


def hash_password(password: str) -> str:
    return _password_hasher.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return _password_hasher.verify(password_hash, password)
    except (VerifyMismatchError, VerificationError, InvalidHashError):
        return False


# ---------------------------------------------------------------------------
# Record
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class UserRecord:
    user_id: str
    username: str
    password_hash: str
    roles: frozenset[Role] = frozenset()
    email: str | None = None
    department: str | None = None
    is_active: bool = True
    login_attempts: int = 0
    locked_until: float | None = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def is_locked_at(self, now: float) -> bool:
        return self.locked_until is not None and self.locked_until > now

    def to_principal(self) -> Principal:
        return Principal(
            user_id=self.user_id,
            username=self.username,
            roles=self.roles,
            is_active=self.is_active,
            locked_until=self.locked_until,
            department=self.department,
            email=self.email,
        )

    def to_dict(self) -> dict[str, Any]:
        """Public view of the account.  Never includes the password hash."""
        return {
            "user_id": self.user_id,
            "username": self.username,
            "email": self.email,
            "roles": sorted(r.value for r in self.roles),
            "department": self.department,
            "is_active": self.is_active,
            "login_attempts": self.login_attempts,
            "locked_until": self.locked_until,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


def _parse_roles(raw: str) -> frozenset[Role]:
    roles: set[Role] = set()
    for value in json.loads(raw or "[]"):
        try:
            roles.add(Role(value))
        except ValueError:
            log.warning("user_store_unknown_role", role=value)
    return frozenset(roles)


def _dump_roles(roles: Iterable[Role]) -> str:
    return json.dumps(sorted(Role(r).value for r in roles))


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class UserStore:
    """Async SQLite store for accounts."""

    def __init__(self, db_path: Path | str) -> None:
        self._db_path = Path(db_path).expanduser()
        self._conn: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    async def init(self) -> None:
        """Open the database and create tables if they do not exist."""
        try:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = await aiosqlite.connect(str(self._db_path))
            await self._conn.execute("PRAGMA journal_mode=WAL")
            await self._conn.executescript(_SCHEMA_SQL)
            await self._conn.commit()
            log.info("user_store_ready", db=str(self._db_path))
        except (sqlite3.Error, OSError) as exc:
            raise PersistenceError(f"Failed to initialise user store: {exc}") from exc

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None

    # ------------------------------------------------------------------
    # Write operations
    # ------------------------------------------------------------------

    async def create(
        self,
        username: str,
        password: str,
        *,
        roles: Iterable[Role] = (),
        email: str | None = None,
        department: str | None = None,
        is_active: bool = True,
        user_id: str | None = None,
    ) -> UserRecord:
        now = time.time()
        record = UserRecord(
            user_id=user_id or uuid.uuid4().hex,
            username=username.strip(),
            password_hash=hash_password(password),
            roles=frozenset(Role(r) for r in roles),
            email=email,
            department=department,
            is_active=is_active,
            created_at=now,
            updated_at=now,
        )
        conn = self._require_conn()
        async with self._lock:
            try:
                await conn.execute(
                    f"INSERT INTO users ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        record.user_id,
                        record.username,
                        record.email,
                        record.password_hash,
                        _dump_roles(record.roles),
                        record.department,
                        int(record.is_active),
                        record.login_attempts,
                        record.locked_until,
                        record.created_at,
                        record.updated_at,
                    ),
                )
                await conn.commit()
            except sqlite3.IntegrityError as exc:
                raise UserExistsError(record.username) from exc
        log.info("user_created", user_id=record.user_id, username=record.username)
        return record

    async def record_failed_login(
        self,
        user_id: str,
        *,
        max_attempts: int,
        lock_seconds: float,
        now: float | None = None,
    ) -> UserRecord:
        """Increment the failed-login counter, locking the account at *max_attempts*."""
        now = time.time() if now is None else now
        conn = self._require_conn()
        async with self._lock:
            await conn.execute(
                "UPDATE users SET login_attempts = login_attempts + 1, updated_at = ? "
                "WHERE user_id = ?",
                (now, user_id),
            )
            await conn.execute(
                "UPDATE users SET locked_until = ? "
                "WHERE user_id = ? AND login_attempts >= ? "
                "AND (locked_until IS NULL OR locked_until <= ?)",
                (now + lock_seconds, user_id, max_attempts, now),
            )
            await conn.commit()
        return await self._get_or_raise(user_id)

    async def reset_login_attempts(self, user_id: str) -> None:
        await self._update(user_id, "login_attempts = 0, locked_until = NULL")

    async def unlock(self, user_id: str) -> UserRecord:
        await self._update(user_id, "login_attempts = 0, locked_until = NULL")
        return await self._get_or_raise(user_id)

    async def set_roles(self, user_id: str, roles: Iterable[Role]) -> UserRecord:
        await self._update(user_id, "roles = ?", (_dump_roles(roles),))
        return await self._get_or_raise(user_id)

    async def set_password(self, user_id: str, password: str) -> None:
        await self._update(user_id, "password_hash = ?", (hash_password(password),))

    async def set_active(self, user_id: str, active: bool) -> UserRecord:
        await self._update(user_id, "is_active = ?", (int(active),))
        return await self._get_or_raise(user_id)

    async def rehash_if_needed(self, record: UserRecord, password: str) -> None:
        """Upgrade the stored hash when the hasher parameters changed."""
        if _password_hasher.check_needs_rehash(record.password_hash):
            await self.set_password(record.user_id, password)

    # ------------------------------------------------------------------
    # Read operations
    # ------------------------------------------------------------------

    async def get(self, user_id: str) -> UserRecord | None:
        rows = await self._fetchall(f"SELECT {_COLUMNS} FROM users WHERE user_id = ?", (user_id,))
        return self._row_to_record(rows[0]) if rows else None

    async def get_by_username(self, username: str) -> UserRecord | None:
        rows = await self._fetchall(
            f"SELECT {_COLUMNS} FROM users WHERE username = ?", (username.strip(),)
        )
        return self._row_to_record(rows[0]) if rows else None

    async def list_users(self, *, active_only: bool = False) -> list[UserRecord]:
        sql = f"SELECT {_COLUMNS} FROM users"
        if active_only:
            sql += " WHERE is_active = 1"
        rows = await self._fetchall(sql + " ORDER BY username", ())
        return [self._row_to_record(r) for r in rows]

    async def list_by_roles(self, roles: Iterable[Role]) -> list[UserRecord]:
        """Active accounts holding at least one of *roles*."""
        wanted = frozenset(Role(r) for r in roles)
        return [u for u in await self.list_users(active_only=True) if u.roles & wanted]

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _require_conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise PersistenceError("User store is not open", context={"db": str(self._db_path)})
        return self._conn

    async def _update(self, user_id: str, assignments: str, params: tuple[Any, ...] = ()) -> None:
        conn = self._require_conn()
        async with self._lock:
            cursor = await conn.execute(
                f"UPDATE users SET {assignments}, updated_at = ? WHERE user_id = ?",
                (*params, time.time(), user_id),
            )
            await conn.commit()
        if cursor.rowcount == 0:
            raise UserNotFoundError(user_id)

    async def _get_or_raise(self, user_id: str) -> UserRecord:
        record = await self.get(user_id)
        if record is None:
            raise UserNotFoundError(user_id)
        return record

    async def _fetchall(self, sql: str, params: tuple[Any, ...]) -> list[Any]:
        conn = self._require_conn()
        try:
            async with conn.execute(sql, params) as cursor:
                return list(await cursor.fetchall())
        except sqlite3.Error as exc:
            raise PersistenceError(f"User query failed: {exc}") from exc

    @staticmethod
    def _row_to_record(row: Any) -> UserRecord:
        return UserRecord(
            user_id=row[0],
            username=row[1],
            email=row[2],
            password_hash=row[3],
            roles=_parse_roles(row[4]),
            department=row[5],
            is_active=bool(row[6]),
            login_attempts=int(row[7]),
            locked_until=row[8],
            created_at=row[9],
            updated_at=row[10],
        )
