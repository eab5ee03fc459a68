"""Shared pytest fixtures for the warden test suite."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from warden.config import Settings, override_settings
from warden.security.accounts import AccountService
from warden.security.audit import AuditTrail
from warden.security.audit_store import AuditStore
from warden.security.cipher import SecretCipher
from warden.security.gate import AuthorizationGate
from warden.security.models import Principal, RequestContext, Role
from warden.security.monitor import SecurityMonitor
from warden.security.notifier import Notifier
from warden.security.permissions import PermissionModel
from warden.security.tokens import TokenService
from warden.security.users import UserRecord, UserStore

JWT_SECRET = "test-signing-secret-with-enough-entropy-0123456789"
MASTER_KEY = "test-master-key"
KDF_ITERATIONS = 1_000


class FakeClock:
    """Manually advanced replacement for ``time.time``."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    settings = Settings(
        auth={"jwt_secret": JWT_SECRET},
        audit={
            "db_path": str(tmp_path / "audit.db"),
            "fallback_file": str(tmp_path / "audit-fallback.ndjson"),
        },
        users={"db_path": str(tmp_path / "users.db")},
        secrets={"master_key": MASTER_KEY, "kdf_iterations": KDF_ITERATIONS},
        logging={"level": "debug", "format": "console"},
    )
    override_settings(settings)
    return settings


@pytest.fixture
def ctx() -> RequestContext:
    return RequestContext(ip="10.0.0.5", user_agent="pytest", request_id="req-1", path="/test")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


@pytest.fixture
async def audit_store(tmp_path: Path) -> AsyncGenerator[AuditStore, None]:
    store = AuditStore(tmp_path / "audit.db")
    await store.init()
    yield store
    await store.close()


@pytest.fixture
async def user_store(tmp_path: Path) -> AsyncGenerator[UserStore, None]:
    store = UserStore(tmp_path / "users.db")
    await store.init()
    yield store
    await store.close()


@pytest.fixture
def trail(audit_store: AuditStore, clock: FakeClock) -> AuditTrail:
    return AuditTrail(audit_store, clock=clock)


# ---------------------------------------------------------------------------
# Security components
# ---------------------------------------------------------------------------


@pytest.fixture
def permissions() -> PermissionModel:
    return PermissionModel()


@pytest.fixture
def tokens() -> TokenService:
    return TokenService(JWT_SECRET, ttl_minutes=60)


@pytest.fixture
def cipher() -> SecretCipher:
    return SecretCipher(MASTER_KEY, iterations=KDF_ITERATIONS)


@pytest.fixture
def notifier() -> AsyncMock:
    return AsyncMock(spec=Notifier)


@pytest.fixture
def monitor(trail: AuditTrail, user_store: UserStore, notifier: AsyncMock) -> SecurityMonitor:
    return SecurityMonitor(trail, user_store, notifier)


@pytest.fixture
def gate(
    tokens: TokenService,
    user_store: UserStore,
    permissions: PermissionModel,
    trail: AuditTrail,
    monitor: SecurityMonitor,
) -> AuthorizationGate:
    return AuthorizationGate(tokens, user_store, permissions, trail, monitor)


@pytest.fixture
def accounts(
    user_store: UserStore,
    tokens: TokenService,
    trail: AuditTrail,
    monitor: SecurityMonitor,
    clock: FakeClock,
) -> AccountService:
    return AccountService(user_store, tokens, trail, monitor, clock=clock)


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


@pytest.fixture
async def admin_user(user_store: UserStore) -> UserRecord:
    return await user_store.create("alice", "s3cret-admin", roles=[Role.ADMIN], department="IT")


@pytest.fixture
async def observer_user(user_store: UserStore) -> UserRecord:
    return await user_store.create("bob", "s3cret-observer", roles=[Role.OBSERVER], department="Sales")


@pytest.fixture
def admin_principal(admin_user: UserRecord) -> Principal:
    return admin_user.to_principal()


@pytest.fixture
def observer_principal(observer_user: UserRecord) -> Principal:
    return observer_user.to_principal()
